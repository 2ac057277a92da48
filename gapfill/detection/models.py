"""Gap detection models."""

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field, model_validator


class GapIndicators(BaseModel):
    """The four independent gap indicators."""

    model_config = ConfigDict(frozen=True)

    time_gap: bool = False
    action_type_jump: bool = False
    missing_dependency: bool = False
    skill_jump: bool = False

    @property
    def count(self) -> int:
        return sum(
            (self.time_gap, self.action_type_jump, self.missing_dependency, self.skill_jump)
        )

    def fired(self) -> list[str]:
        """Names of indicators that fired."""
        return [name for name, value in self.model_dump().items() if value]


class Gap(BaseModel):
    """A detected discontinuity between two adjacent tasks."""

    model_config = ConfigDict(frozen=True)

    id: str
    predecessor_id: str
    successor_id: str
    indicators: GapIndicators
    confidence: float = Field(ge=0, le=1)
    detected_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @model_validator(mode="after")
    def _check_pair(self) -> "Gap":
        if self.predecessor_id == self.successor_id:
            raise ValueError("predecessor_id and successor_id must be different")
        return self

    @property
    def indicator_count(self) -> int:
        return self.indicators.count


def gap_id_for(predecessor_id: str, successor_id: str) -> str:
    """Deterministic gap id for a task pair."""
    return f"gap-{predecessor_id}-{successor_id}"
