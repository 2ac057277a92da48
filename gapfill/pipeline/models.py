"""Bridging candidate models."""

from dataclasses import dataclass, field
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from ..graph.dag import TaskGraph
from ..graph.models import CognitionLevel

MIN_CANDIDATE_TEXT = 10
MAX_CANDIDATE_TEXT = 200
MIN_CANDIDATE_HOURS = 8
MAX_CANDIDATE_HOURS = 160


class BridgingCandidate(BaseModel):
    """An AI-proposed task for one gap, as produced by the generator.

    Candidates are immutable; user edits live on the review item so the
    provider's original output stays available for audit.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    gap_id: str
    predecessor_id: str
    successor_id: str
    text: str = Field(min_length=MIN_CANDIDATE_TEXT, max_length=MAX_CANDIDATE_TEXT)
    estimated_effort_hours: float = Field(ge=MIN_CANDIDATE_HOURS, le=MAX_CANDIDATE_HOURS)
    required_cognition: CognitionLevel
    confidence: float = Field(ge=0, le=1, description="Composite confidence")
    provider_confidence: float = Field(ge=0, le=1)
    history_similarity: float = Field(default=0.0, ge=0, le=1)
    similarity_to_existing: float = Field(default=0.0, ge=0, le=1)
    reasoning: str = ""


@dataclass
class GraphContext:
    """Graph snapshot and surrounding context handed to the pipeline."""

    graph: TaskGraph
    document_context: Optional[str] = None
    manual_examples: list[str] = field(default_factory=list)


@dataclass
class GenerationStats:
    """Counters filled in by one generate_candidates call."""

    attempts: int = 0
    search_queries: int = 0
    raw_candidates: int = 0
    duplicates_filtered: int = 0
    duration_ms: int = 0
