"""External collaborator interfaces for generation and similarity."""

from abc import ABC, abstractmethod
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from ..graph.models import CognitionLevel


class AgentError(Exception):
    """External collaborator failure."""

    pass


class SimilarTask(BaseModel):
    """A historical task returned by similarity search."""

    text: str
    similarity: float = Field(ge=0, le=1)


class GenerationRequest(BaseModel):
    """Everything the generator receives for one gap."""

    gap_id: str
    predecessor_text: str
    successor_text: str
    outcome_text: Optional[str] = None
    document_context: Optional[str] = None
    similar_tasks: list[SimilarTask] = Field(default_factory=list, max_length=10)
    manual_examples: list[str] = Field(default_factory=list, max_length=2)
    max_candidates: int = Field(default=3, ge=1)


class GeneratedCandidate(BaseModel):
    """Schema the generator output must conform to."""

    model_config = ConfigDict(extra="ignore")

    text: str = Field(min_length=10, max_length=200)
    estimated_effort_hours: float = Field(ge=8, le=160)
    required_cognition: CognitionLevel
    confidence: float = Field(ge=0, le=1)
    reasoning: str = Field(min_length=1)


class GenerationProvider(ABC):
    """Drafts bridging task candidates for a gap."""

    def __init__(self, config: dict):
        """Initialize provider.

        Args:
            config: Provider configuration dict
        """
        self.config = config

    @abstractmethod
    async def generate(self, request: GenerationRequest) -> list[dict]:
        """Generate raw candidates for a gap.

        Args:
            request: Generation request

        Returns:
            List of candidate dicts with keys text, estimated_effort_hours,
            required_cognition, confidence and reasoning. The caller
            validates them against GeneratedCandidate.

        Raises:
            AgentError: On provider failure
        """
        pass


class SimilarityProvider(ABC):
    """Scores semantic similarity between task texts."""

    @abstractmethod
    async def similarity(self, text_a: str, text_b: str) -> float:
        """Return similarity in [0, 1].

        Raises:
            AgentError: On provider failure
        """
        pass

    @abstractmethod
    async def top_k_similar(self, text: str, k: int) -> list[SimilarTask]:
        """Return up to k historical tasks most similar to text.

        Raises:
            AgentError: On provider failure
        """
        pass
