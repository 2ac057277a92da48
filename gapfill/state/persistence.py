"""Review session records with atomic writes."""

import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from ..detection.models import Gap
from ..pipeline.models import BridgingCandidate


class SessionState(str, Enum):
    """Review session states."""

    CREATED = "created"
    ANALYZING = "analyzing"
    AWAITING_REVIEW = "awaiting_review"
    COMMITTING = "committing"
    COMMITTED = "committed"
    ABORTED = "aborted"
    FAILED = "failed"


class CandidateState(str, Enum):
    """Per-candidate review states."""

    PROPOSED = "proposed"
    EDITED = "edited"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class GapStatus(str, Enum):
    """Outcome of candidate generation for one gap."""

    PENDING = "pending"
    PROPOSED = "proposed"
    GENERATION_FAILED = "generation_failed"


class ReviewItem(BaseModel):
    """A candidate under review, with the user's edits kept beside it."""

    candidate: BridgingCandidate
    state: CandidateState = Field(default=CandidateState.PROPOSED)
    edited_text: Optional[str] = Field(default=None)
    edited_hours: Optional[float] = Field(default=None)

    @property
    def final_text(self) -> str:
        return self.edited_text if self.edited_text is not None else self.candidate.text

    @property
    def final_hours(self) -> float:
        if self.edited_hours is not None:
            return self.edited_hours
        return self.candidate.estimated_effort_hours


class GapRecord(BaseModel):
    """One gap and the candidates generated for it."""

    gap: Gap
    status: GapStatus = Field(default=GapStatus.PENDING)
    candidates: list[ReviewItem] = Field(default_factory=list)
    error: Optional[dict] = Field(default=None, description="GenerationFailure details")
    attempts: int = Field(default=0, description="Pipeline runs for this gap")


class PerformanceMetrics(BaseModel):
    """Timings and call counts for one session."""

    detection_ms: int = Field(default=0)
    generation_ms: dict[str, int] = Field(default_factory=dict, description="Gap ID -> ms")
    insertion_ms: int = Field(default=0)
    total_ms: int = Field(default=0)
    search_query_count: int = Field(default=0)


class SessionRecord(BaseModel):
    """Persisted review session."""

    session_id: str = Field(description="Unique session identifier")
    plan_id: str = Field(default="plan", description="Plan the session works on")
    plan_path: Optional[str] = Field(default=None, description="Plan file, when loaded from disk")
    graph_version: int = Field(default=0, description="Graph version analysed")
    state: SessionState = Field(default=SessionState.CREATED)
    outcome: Optional[str] = Field(default=None, description="success/aborted/failed")
    outcome_text: Optional[str] = Field(default=None, description="User's stated outcome")

    gaps: list[GapRecord] = Field(default_factory=list)
    inserted_task_ids: list[str] = Field(default_factory=list)
    metrics: PerformanceMetrics = Field(default_factory=PerformanceMetrics)

    started_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    updated_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    completed_at: Optional[str] = Field(default=None)

    # Error tracking
    error_message: Optional[str] = Field(default=None)
    error_context: Optional[dict] = Field(default=None)

    def get_gap(self, gap_id: str) -> Optional[GapRecord]:
        for record in self.gaps:
            if record.gap.id == gap_id:
                return record
        return None

    def find_item(self, candidate_id: str) -> Optional[tuple[GapRecord, ReviewItem]]:
        for record in self.gaps:
            for item in record.candidates:
                if item.candidate.id == candidate_id:
                    return record, item
        return None

    @property
    def failed_gaps(self) -> list[GapRecord]:
        return [g for g in self.gaps if g.status == GapStatus.GENERATION_FAILED]


def session_path(state_dir: Path, session_id: str) -> Path:
    return Path(state_dir) / f"{session_id}.json"


def load_session(path: Path) -> Optional[SessionRecord]:
    """Load a session record.

    Args:
        path: Path to session JSON file

    Returns:
        SessionRecord or None if file doesn't exist
    """
    if not path.exists():
        return None

    with open(path, "r") as f:
        data = json.load(f)

    return SessionRecord(**data)


def save_session(record: SessionRecord, path: Path) -> None:
    """Save a session record with atomic write.

    Args:
        record: Record to save
        path: Destination path
    """
    record.updated_at = datetime.now(timezone.utc).isoformat()
    path.parent.mkdir(parents=True, exist_ok=True)

    temp_path = path.with_suffix(".tmp")
    with open(temp_path, "w") as f:
        json.dump(record.model_dump(mode="json"), f, indent=2)
        f.flush()
    temp_path.replace(path)


def list_sessions(state_dir: Path) -> list[SessionRecord]:
    """Load every session record in a directory, oldest first."""
    state_dir = Path(state_dir)
    if not state_dir.exists():
        return []

    records = []
    for path in sorted(state_dir.glob("*.json")):
        record = load_session(path)
        if record is not None:
            records.append(record)
    records.sort(key=lambda r: r.started_at)
    return records


def generate_session_id() -> str:
    """Generate unique session ID.

    Returns:
        Timestamp plus random suffix
    """
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    return f"session_{timestamp}_{uuid.uuid4().hex[:6]}"
