"""Task models and ordinal task ids."""

import re
from enum import Enum
from typing import Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_serializer,
    field_validator,
    model_validator,
)

TASK_ID_PATTERN = re.compile(r"^\d+(\.\d+)*$")

MIN_TASK_HOURS = 1
MAX_TASK_HOURS = 200


class CognitionLevel(str, Enum):
    """Required cognition for a task."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TaskSource(str, Enum):
    """Where a task came from."""

    USER_EXTRACTED = "user_extracted"
    AI_GENERATED = "ai_generated"


def ordinal_key(task_id: str) -> tuple[int, ...]:
    """Return the sort key of a dotted ordinal id (``"2.1"`` -> ``(2, 1)``).

    Raises:
        ValueError: If the id is not a dotted ordinal
    """
    if not TASK_ID_PATTERN.match(task_id):
        raise ValueError(f"Task id must be a dotted ordinal like '3' or '2.1': {task_id!r}")
    return tuple(int(part) for part in task_id.split("."))


def format_ordinal(key: tuple[int, ...]) -> str:
    """Inverse of ordinal_key."""
    return ".".join(str(part) for part in key)


class GenerationProvenance(BaseModel):
    """Audit trail for an AI generated task."""

    model_config = ConfigDict(frozen=True)

    predecessor_id: str
    successor_id: str
    gap_id: Optional[str] = None
    candidate_id: Optional[str] = None
    provider_confidence: Optional[float] = None
    composite_confidence: Optional[float] = None
    reasoning: Optional[str] = None
    original_text: Optional[str] = None
    original_hours: Optional[float] = None
    edited: bool = False


class Task(BaseModel):
    """A committed task in a plan graph."""

    model_config = ConfigDict(frozen=True)

    id: str
    text: str = Field(min_length=1)
    estimated_effort_hours: float = Field(ge=MIN_TASK_HOURS, le=MAX_TASK_HOURS)
    required_cognition: CognitionLevel = CognitionLevel.MEDIUM
    depends_on: frozenset[str] = Field(default_factory=frozenset)
    source: TaskSource = TaskSource.USER_EXTRACTED
    generation_provenance: Optional[GenerationProvenance] = None
    requires_review: bool = False

    @field_validator("id", mode="before")
    @classmethod
    def _check_id(cls, value) -> str:
        # YAML plans often carry bare integer ids
        value = str(value).strip()
        ordinal_key(value)
        return value

    @field_validator("text")
    @classmethod
    def _strip_text(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Task text must not be blank")
        return value

    @field_validator("depends_on", mode="before")
    @classmethod
    def _coerce_dependencies(cls, value):
        if value is None:
            return frozenset()
        if isinstance(value, str):
            value = [value]
        deps = frozenset(str(dep).strip() for dep in value if str(dep).strip())
        for dep in deps:
            ordinal_key(dep)
        return deps

    @field_serializer("depends_on")
    def _serialize_dependencies(self, value: frozenset[str]) -> list[str]:
        return sorted(value, key=ordinal_key)

    @model_validator(mode="after")
    def _check_provenance(self) -> "Task":
        if self.id in self.depends_on:
            raise ValueError(f"Task {self.id} cannot depend on itself")
        if self.source == TaskSource.AI_GENERATED and self.generation_provenance is None:
            raise ValueError(f"AI generated task {self.id} requires generation_provenance")
        if self.source == TaskSource.USER_EXTRACTED and self.generation_provenance is not None:
            raise ValueError(f"User task {self.id} cannot carry generation_provenance")
        return self

    @property
    def sort_key(self) -> tuple[int, ...]:
        return ordinal_key(self.id)
