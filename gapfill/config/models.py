"""Configuration models for gap filling."""

from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class DetectionConfig(BaseModel):
    """Gap detection thresholds."""

    time_gap_hours: float = Field(
        default=40, gt=0, description="Effort difference that fires time_gap"
    )
    phase_jump: int = Field(
        default=2, ge=1, description="Phase distance that fires action_type_jump"
    )
    min_indicators: int = Field(
        default=3, ge=1, le=4, description="Indicators required to promote a gap"
    )
    max_gaps: int = Field(default=3, ge=1, description="Gaps kept per analysis")


class PipelineConfig(BaseModel):
    """Candidate pipeline limits, weights and timeouts."""

    max_candidates: int = Field(default=3, ge=1, description="Candidates kept per gap")
    history_top_k: int = Field(
        default=10, ge=0, description="Similar historical tasks sent with each request"
    )
    duplicate_threshold: float = Field(
        default=0.90, ge=0, le=1, description="Similarity above which a candidate is a duplicate"
    )
    weight_history: float = Field(default=0.4, ge=0, description="Weight of past-pattern similarity")
    weight_gap: float = Field(default=0.3, ge=0, description="Weight of gap confidence")
    weight_provider: float = Field(default=0.3, ge=0, description="Weight of provider confidence")
    generation_timeout_sec: float = Field(default=5.0, gt=0, description="Generation timeout per attempt")
    similarity_timeout_sec: float = Field(default=5.0, gt=0, description="Similarity call timeout")
    max_generation_attempts: int = Field(
        default=2, ge=1, description="Attempts per gap when failures are transient"
    )
    max_concurrent_gaps: int = Field(default=3, ge=1, description="Parallel gap analyses")


class GeneratorConfig(BaseModel):
    """Generation collaborator configuration."""

    mode: str = Field(default="openai_api", description="Generation backend")
    model: Optional[str] = Field(
        default=None,
        description="Chat model (falls back to OPENAI_MODEL)",
    )
    api_key_env: Optional[str] = Field(default=None, description="API key env var name")
    temperature: float = Field(default=0.3, ge=0, le=2, description="Sampling temperature")


class SimilarityConfig(BaseModel):
    """Similarity collaborator configuration."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    mode: str = Field(default="openai_api", description="Similarity backend")
    model: str = Field(default="text-embedding-3-small", description="Embedding model")
    api_key_env: Optional[str] = Field(default=None, description="API key env var name")
    history_file: Optional[Path] = Field(
        default=None, description="Historical task texts, one per line, searched for anchors"
    )


class StorageConfig(BaseModel):
    """Session storage configuration."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    state_dir: Path = Field(
        default=Path(".gapfill/sessions"), description="Directory for session records"
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    level: str = Field(default="INFO", description="Log level")
    log_dir: Optional[Path] = Field(default=None, description="Log directory")
    rotation_mb: int = Field(default=10, description="Log rotation size (MB)")
    retention_days: int = Field(default=7, description="Log retention days")

    @field_validator("level")
    @classmethod
    def _check_level(cls, value: str) -> str:
        value = value.upper()
        if value not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {value}")
        return value


class GapFillConfig(BaseModel):
    """Main configuration model."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    detection: DetectionConfig = Field(default_factory=DetectionConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    generator: GeneratorConfig = Field(default_factory=GeneratorConfig)
    similarity: SimilarityConfig = Field(default_factory=SimilarityConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def _check_concurrency(self) -> "GapFillConfig":
        if self.pipeline.max_concurrent_gaps > self.detection.max_gaps:
            raise ValueError(
                "pipeline.max_concurrent_gaps cannot exceed detection.max_gaps"
            )
        return self
