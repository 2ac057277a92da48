"""OpenAI-backed generation and similarity providers."""

import json
import logging
import math
import os
from collections.abc import Iterable

from .base import (
    AgentError,
    GenerationProvider,
    GenerationRequest,
    SimilarityProvider,
    SimilarTask,
)

logger = logging.getLogger(__name__)


def _resolve_api_key(api_key_env: str) -> str:
    api_key = os.environ.get(api_key_env)
    if not api_key:
        raise AgentError(f"API key not found: {api_key_env}")
    return api_key


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Cosine similarity clamped to [0, 1]."""
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return max(0.0, min(1.0, dot / (norm_a * norm_b)))


def parse_candidates_json(output: str) -> list[dict]:
    """Pull the candidate list out of model output.

    Scans for JSON objects and prefers the last one carrying a ``candidates``
    list; a bare top-level list is accepted too.

    Raises:
        AgentError: If no candidate payload is found
    """
    decoder = json.JSONDecoder()
    found: list[object] = []
    idx = 0
    while idx < len(output):
        if output[idx] in "[{":
            try:
                parsed, end = decoder.raw_decode(output[idx:])
                found.append(parsed)
                idx += end
                continue
            except json.JSONDecodeError:
                pass
        idx += 1

    for parsed in reversed(found):
        if isinstance(parsed, dict) and isinstance(parsed.get("candidates"), list):
            return parsed["candidates"]
        if isinstance(parsed, list):
            return parsed

    raise AgentError("No candidate JSON found in generator output")


class OpenAIGenerator(GenerationProvider):
    """Bridging task generator using the OpenAI chat API."""

    def __init__(self, config: dict):
        """Initialize generator.

        Args:
            config: Generator config with model, api_key_env, temperature
        """
        super().__init__(config)
        self.model = config.get("model") or os.environ.get("OPENAI_MODEL")
        # Some configs specify api_key_env=null; treat that as unset.
        self.api_key_env = config.get("api_key_env") or "OPENAI_API_KEY"
        self.temperature = config.get("temperature", 0.3)
        self._client = None

    def _get_client(self):
        if self._client is None:
            import openai

            self._client = openai.AsyncOpenAI(api_key=_resolve_api_key(self.api_key_env))
        return self._client

    def _build_prompt(self, request: GenerationRequest) -> str:
        lines = [
            "Propose tasks that bridge the gap between two adjacent tasks of a plan.",
            "",
            f"Outcome: {request.outcome_text or 'Not provided.'}",
            f"Predecessor task: {request.predecessor_text}",
            f"Successor task: {request.successor_text}",
        ]
        if request.document_context:
            lines.extend(["", "Context:", request.document_context])
        if request.similar_tasks:
            lines.extend(["", "Similar past tasks:"])
            for i, item in enumerate(request.similar_tasks, 1):
                lines.append(f"{i}. {item.text} ({item.similarity:.0%} similar)")
        if request.manual_examples:
            lines.extend(["", "Example tasks from the user:"])
            for i, example in enumerate(request.manual_examples, 1):
                lines.append(f"{i}. {example}")
        lines.extend(
            [
                "",
                f"Return at most {request.max_candidates} candidates as JSON: "
                '{"candidates": [{"text": str (10-200 chars), '
                '"estimated_effort_hours": number (8-160), '
                '"required_cognition": "low"|"medium"|"high", '
                '"confidence": number (0-1), "reasoning": str}]}',
            ]
        )
        return "\n".join(lines)

    async def generate(self, request: GenerationRequest) -> list[dict]:
        """Generate candidates via chat completion."""
        if not self.model:
            raise AgentError("Model not configured. Set generator.model or OPENAI_MODEL.")

        client = self._get_client()
        try:
            response = await client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": self._build_prompt(request)}],
                temperature=self.temperature,
                response_format={"type": "json_object"},
            )
        except Exception as e:
            raise AgentError(f"OpenAI generation error: {e}") from e

        output = response.choices[0].message.content or ""
        candidates = parse_candidates_json(output)
        logger.debug(f"Generator returned {len(candidates)} raw candidates for {request.gap_id}")
        return candidates


class OpenAISimilarity(SimilarityProvider):
    """Embedding-based similarity using the OpenAI embeddings API.

    ``top_k_similar`` searches a fixed corpus of historical task texts.
    Embeddings are cached per text for the lifetime of the provider.
    """

    def __init__(self, config: dict, corpus: Iterable[str] = ()):
        """Initialize similarity provider.

        Args:
            config: Similarity config with model, api_key_env
            corpus: Historical task texts searched by top_k_similar
        """
        self.config = config
        self.model = config.get("model") or "text-embedding-3-small"
        self.api_key_env = config.get("api_key_env") or "OPENAI_API_KEY"
        self.corpus = list(dict.fromkeys(text.strip() for text in corpus if text.strip()))
        self._cache: dict[str, list[float]] = {}
        self._client = None

    def _get_client(self):
        if self._client is None:
            import openai

            self._client = openai.AsyncOpenAI(api_key=_resolve_api_key(self.api_key_env))
        return self._client

    async def _embed(self, texts: list[str]) -> list[list[float]]:
        missing = [t for t in dict.fromkeys(texts) if t not in self._cache]
        if missing:
            client = self._get_client()
            try:
                response = await client.embeddings.create(model=self.model, input=missing)
            except Exception as e:
                raise AgentError(f"OpenAI embedding error: {e}") from e
            for text, item in zip(missing, response.data):
                self._cache[text] = list(item.embedding)
        return [self._cache[t] for t in texts]

    async def similarity(self, text_a: str, text_b: str) -> float:
        vec_a, vec_b = await self._embed([text_a, text_b])
        return cosine_similarity(vec_a, vec_b)

    async def top_k_similar(self, text: str, k: int) -> list[SimilarTask]:
        if k <= 0 or not self.corpus:
            return []
        vectors = await self._embed([text] + self.corpus)
        query, rest = vectors[0], vectors[1:]
        scored = [
            SimilarTask(text=corpus_text, similarity=cosine_similarity(query, vec))
            for corpus_text, vec in zip(self.corpus, rest)
        ]
        scored.sort(key=lambda item: item.similarity, reverse=True)
        return scored[:k]
