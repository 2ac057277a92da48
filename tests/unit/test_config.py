"""Unit tests for configuration models and loader."""

from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from gapfill.config.loader import (
    ConfigError,
    create_default_config,
    load_config,
    load_config_or_default,
)
from gapfill.config.models import DetectionConfig, GapFillConfig, PipelineConfig


def test_detection_config_defaults():
    """Test DetectionConfig default thresholds."""
    config = DetectionConfig()
    assert config.time_gap_hours == 40
    assert config.phase_jump == 2
    assert config.min_indicators == 3
    assert config.max_gaps == 3


def test_pipeline_config_defaults():
    """Test PipelineConfig default limits and weights."""
    config = PipelineConfig()
    assert config.max_candidates == 3
    assert config.duplicate_threshold == 0.90
    assert (config.weight_history, config.weight_gap, config.weight_provider) == (0.4, 0.3, 0.3)
    assert config.generation_timeout_sec == 5.0
    assert config.max_generation_attempts == 2


def test_min_indicators_bounds():
    """Test min_indicators must be between 1 and 4."""
    with pytest.raises(ValidationError):
        DetectionConfig(min_indicators=5)
    with pytest.raises(ValidationError):
        DetectionConfig(min_indicators=0)


def test_concurrency_cannot_exceed_max_gaps():
    """Test max_concurrent_gaps is capped by max_gaps."""
    with pytest.raises(ValidationError, match="max_concurrent_gaps"):
        GapFillConfig(
            detection=DetectionConfig(max_gaps=2),
            pipeline=PipelineConfig(max_concurrent_gaps=3),
        )


def test_gapfill_config_defaults():
    """Test GapFillConfig builds every section by default."""
    config = GapFillConfig()
    assert config.generator.mode == "openai_api"
    assert config.similarity.model == "text-embedding-3-small"
    assert config.similarity.history_file is None
    assert config.storage.state_dir == Path(".gapfill/sessions")
    assert config.logging.level == "INFO"


def test_create_and_load_default_config(tmp_path):
    """Test the generated default config loads and resolves paths."""
    config_path = tmp_path / ".gapfill" / "config.yml"
    create_default_config(config_path)

    config = load_config(config_path)
    assert config.detection.max_gaps == 3
    assert config.pipeline.max_concurrent_gaps == 3
    assert config.storage.state_dir == (config_path.parent / "sessions").resolve()


def test_history_file_resolved_relative_to_config(tmp_path):
    """Test similarity.history_file is resolved next to the config file."""
    config_path = tmp_path / "config.yml"
    config_path.write_text(
        yaml.dump({"similarity": {"history_file": "history.txt"}, "detection": {"max_gaps": 4}})
    )

    config = load_config(config_path)
    assert config.similarity.history_file == (tmp_path / "history.txt").resolve()
    assert config.detection.max_gaps == 4


def test_load_config_missing(tmp_path):
    """Test missing config raises ConfigError."""
    with pytest.raises(ConfigError, match="not found"):
        load_config(tmp_path / "missing.yml")


def test_load_config_or_default_missing(tmp_path):
    """Test missing config falls back to defaults."""
    config = load_config_or_default(tmp_path / "missing.yml")
    assert config == GapFillConfig()


@pytest.mark.parametrize(
    "content,message",
    [
        ("", "Empty"),
        ("- a\n- b\n", "mapping"),
        ("detection: [unclosed\n", "Invalid YAML"),
        ("detection:\n  min_indicators: 9\n", "validation failed"),
        ("logging:\n  level: LOUD\n", "Unknown log level"),
    ],
)
def test_load_config_invalid(tmp_path, content, message):
    """Test invalid config files raise ConfigError."""
    config_path = tmp_path / "config.yml"
    config_path.write_text(content)
    with pytest.raises(ConfigError, match=message):
        load_config(config_path)
