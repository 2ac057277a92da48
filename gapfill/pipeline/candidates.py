"""Candidate pipeline: generate, validate, deduplicate and score bridging tasks."""

import asyncio
import logging
import time
import uuid
from typing import Optional

from pydantic import TypeAdapter, ValidationError

from ..agents.base import (
    GeneratedCandidate,
    GenerationProvider,
    GenerationRequest,
    SimilarityProvider,
    SimilarTask,
)
from ..config.models import PipelineConfig
from ..detection.models import Gap
from ..utils.logging import log_context
from .models import BridgingCandidate, GenerationStats, GraphContext

logger = logging.getLogger(__name__)

_CANDIDATES_ADAPTER = TypeAdapter(list[GeneratedCandidate])

_TRANSIENT_MARKERS = ("rate limit", "temporarily", "overload", "connection", "timeout", "try again")


class GenerationFailure(Exception):
    """Candidate generation failed for one gap.

    Attributes:
        gap_id: Gap the failure belongs to
        code: timeout, provider_error, invalid_output, similarity_error,
            invalid_gap or no_valid_candidates
        indicators: Indicator names that triggered the gap
        transient: Whether an automatic retry may succeed
    """

    def __init__(
        self,
        message: str,
        gap_id: str,
        code: str,
        indicators: Optional[list[str]] = None,
        transient: bool = False,
    ):
        super().__init__(message)
        self.gap_id = gap_id
        self.code = code
        self.indicators = indicators or []
        self.transient = transient

    def to_dict(self) -> dict:
        return {
            "gap_id": self.gap_id,
            "code": self.code,
            "message": str(self),
            "indicators": self.indicators,
        }


def is_transient_error(error: Exception) -> bool:
    """Classify a provider error as worth an automatic retry."""
    if isinstance(error, asyncio.TimeoutError):
        return True
    message = str(error).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


def composite_confidence(
    history_similarity: float,
    gap_confidence: float,
    provider_confidence: float,
    config: Optional[PipelineConfig] = None,
) -> float:
    """Blend past-pattern similarity, gap strength and provider certainty.

    Returns:
        Weighted sum clamped to [0, 1]
    """
    config = config or PipelineConfig()
    score = (
        config.weight_history * history_similarity
        + config.weight_gap * gap_confidence
        + config.weight_provider * provider_confidence
    )
    return max(0.0, min(1.0, score))


class CandidatePipeline:
    """Turns a gap into scored, deduplicated bridging candidates."""

    def __init__(
        self,
        generator: GenerationProvider,
        similarity: SimilarityProvider,
        config: Optional[PipelineConfig] = None,
    ):
        """Initialize pipeline.

        Args:
            generator: External generation collaborator
            similarity: External similarity collaborator
            config: Pipeline limits, weights and timeouts
        """
        self.generator = generator
        self.similarity = similarity
        self.config = config or PipelineConfig()

    async def generate_candidates(
        self,
        gap: Gap,
        context: GraphContext,
        outcome_text: Optional[str] = None,
        stats: Optional[GenerationStats] = None,
    ) -> list[BridgingCandidate]:
        """Generate bridging candidates for one gap.

        Args:
            gap: Detected gap
            context: Graph snapshot and document context
            outcome_text: User's stated outcome
            stats: Optional counters to fill in

        Returns:
            At most ``max_candidates`` candidates, highest composite
            confidence first

        Raises:
            GenerationFailure: If generation fails or nothing survives filtering
        """
        stats = stats if stats is not None else GenerationStats()
        started = time.monotonic()
        try:
            with log_context(gap=gap.id):
                return await self._generate(gap, context, outcome_text, stats)
        finally:
            stats.duration_ms = int((time.monotonic() - started) * 1000)

    async def _generate(
        self,
        gap: Gap,
        context: GraphContext,
        outcome_text: Optional[str],
        stats: GenerationStats,
    ) -> list[BridgingCandidate]:
        indicators = gap.indicators.fired()
        predecessor = context.graph.get(gap.predecessor_id)
        successor = context.graph.get(gap.successor_id)
        if predecessor is None or successor is None:
            raise GenerationFailure(
                f"Gap {gap.id} references tasks missing from the graph",
                gap_id=gap.id,
                code="invalid_gap",
                indicators=indicators,
            )

        history = await self._find_similar_history(
            f"{predecessor.text} followed by {successor.text}", gap, stats
        )

        request = GenerationRequest(
            gap_id=gap.id,
            predecessor_text=predecessor.text,
            successor_text=successor.text,
            outcome_text=outcome_text,
            document_context=context.document_context,
            similar_tasks=history,
            manual_examples=[] if history else context.manual_examples[:2],
            max_candidates=self.config.max_candidates,
        )

        raw = await self._call_generator(request, gap, indicators, stats)
        generated = self._validate(raw, gap, indicators)
        stats.raw_candidates = len(generated)

        generated = self._drop_echoes(generated, predecessor.text, successor.text, gap)

        candidates: list[BridgingCandidate] = []
        existing_texts = [task.text for task in context.graph]
        for item in generated:
            max_existing = await self._max_similarity(item.text, existing_texts, gap, indicators, stats)
            if max_existing > self.config.duplicate_threshold:
                stats.duplicates_filtered += 1
                logger.info(
                    f"Duplicate filtered for {gap.id}: '{item.text[:50]}' "
                    f"(similarity {max_existing:.2f} to existing task)"
                )
                continue

            history_similarity = await self._max_similarity(
                item.text, [h.text for h in history], gap, indicators, stats
            )
            candidates.append(
                BridgingCandidate(
                    id=f"cand-{uuid.uuid4().hex[:12]}",
                    gap_id=gap.id,
                    predecessor_id=gap.predecessor_id,
                    successor_id=gap.successor_id,
                    text=item.text.strip(),
                    estimated_effort_hours=item.estimated_effort_hours,
                    required_cognition=item.required_cognition,
                    confidence=composite_confidence(
                        history_similarity, gap.confidence, item.confidence, self.config
                    ),
                    provider_confidence=item.confidence,
                    history_similarity=history_similarity,
                    similarity_to_existing=max_existing,
                    reasoning=item.reasoning.strip(),
                )
            )

        if not candidates:
            raise GenerationFailure(
                f"No valid bridging candidates for {gap.id} after filtering",
                gap_id=gap.id,
                code="no_valid_candidates",
                indicators=indicators,
            )

        candidates.sort(key=lambda c: c.confidence, reverse=True)
        kept = candidates[: self.config.max_candidates]
        logger.info(
            f"Gap {gap.id}: {len(kept)} candidates kept "
            f"({stats.raw_candidates} generated, {stats.duplicates_filtered} duplicates)"
        )
        return kept

    async def _find_similar_history(
        self, query: str, gap: Gap, stats: GenerationStats
    ) -> list[SimilarTask]:
        if self.config.history_top_k <= 0:
            return []
        stats.search_queries += 1
        try:
            results = await asyncio.wait_for(
                self.similarity.top_k_similar(query, self.config.history_top_k),
                timeout=self.config.similarity_timeout_sec,
            )
        except Exception as e:
            # Generation still works without anchors, only less on-tone.
            logger.warning(f"Similar-task search failed for {gap.id}: {e or 'timeout'}")
            return []
        return list(results)[: self.config.history_top_k]

    async def _call_generator(
        self,
        request: GenerationRequest,
        gap: Gap,
        indicators: list[str],
        stats: GenerationStats,
    ) -> object:
        attempts = self.config.max_generation_attempts
        for attempt in range(1, attempts + 1):
            stats.attempts = attempt
            try:
                return await asyncio.wait_for(
                    self.generator.generate(request),
                    timeout=self.config.generation_timeout_sec,
                )
            except asyncio.TimeoutError:
                failure = GenerationFailure(
                    f"Generation timed out after {self.config.generation_timeout_sec}s",
                    gap_id=gap.id,
                    code="timeout",
                    indicators=indicators,
                    transient=True,
                )
            except Exception as e:
                failure = GenerationFailure(
                    f"Generation failed: {e}",
                    gap_id=gap.id,
                    code="provider_error",
                    indicators=indicators,
                    transient=is_transient_error(e),
                )

            if failure.transient and attempt < attempts:
                logger.warning(f"Gap {gap.id} attempt {attempt}/{attempts} failed, retrying: {failure}")
                continue
            logger.error(f"Gap {gap.id} generation failed ({failure.code}): {failure}")
            raise failure

        raise AssertionError("unreachable")

    def _validate(self, raw: object, gap: Gap, indicators: list[str]) -> list[GeneratedCandidate]:
        try:
            return _CANDIDATES_ADAPTER.validate_python(raw)
        except ValidationError as e:
            logger.error(f"Gap {gap.id} generator output failed schema validation: {e}")
            raise GenerationFailure(
                f"Generator returned malformed candidates: {e.error_count()} schema errors",
                gap_id=gap.id,
                code="invalid_output",
                indicators=indicators,
            ) from e

    def _drop_echoes(
        self,
        generated: list[GeneratedCandidate],
        predecessor_text: str,
        successor_text: str,
        gap: Gap,
    ) -> list[GeneratedCandidate]:
        """Drop candidates repeating each other or the gap's own tasks."""
        seen = {predecessor_text.strip().lower(), successor_text.strip().lower()}
        unique: list[GeneratedCandidate] = []
        for item in generated:
            normalized = item.text.strip().lower()
            if normalized in seen:
                logger.info(f"Duplicate filtered for {gap.id}: '{item.text[:50]}' repeats gap text")
                continue
            seen.add(normalized)
            unique.append(item)
        return unique

    async def _max_similarity(
        self,
        text: str,
        others: list[str],
        gap: Gap,
        indicators: list[str],
        stats: GenerationStats,
    ) -> float:
        if not others:
            return 0.0
        stats.search_queries += len(others)
        try:
            scores = await asyncio.wait_for(
                asyncio.gather(*(self.similarity.similarity(text, other) for other in others)),
                timeout=self.config.similarity_timeout_sec,
            )
        except asyncio.TimeoutError as e:
            raise GenerationFailure(
                "Similarity check timed out",
                gap_id=gap.id,
                code="similarity_error",
                indicators=indicators,
                transient=True,
            ) from e
        except Exception as e:
            raise GenerationFailure(
                f"Similarity check failed: {e}",
                gap_id=gap.id,
                code="similarity_error",
                indicators=indicators,
                transient=is_transient_error(e),
            ) from e
        return max(max(0.0, min(1.0, float(score))) for score in scores)
