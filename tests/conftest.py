"""Shared fixtures and fake collaborators."""

import asyncio
import random

import pytest

from gapfill.agents.base import (
    AgentError,
    GenerationProvider,
    GenerationRequest,
    SimilarityProvider,
    SimilarTask,
)
from gapfill.config.models import GapFillConfig, PipelineConfig
from gapfill.detection.heuristics import tokenize
from gapfill.graph.dag import TaskGraph
from gapfill.graph.models import Task
from gapfill.graph.store import GraphStore
from gapfill.pipeline.candidates import CandidatePipeline

DEFAULT_CANDIDATES = [
    {
        "text": "Build clickable prototype from the approved screens",
        "estimated_effort_hours": 24,
        "required_cognition": "medium",
        "confidence": 0.9,
        "reasoning": "Validates flows before launch",
    },
    {
        "text": "Run usability sessions with five target users",
        "estimated_effort_hours": 16,
        "required_cognition": "high",
        "confidence": 0.7,
        "reasoning": "Catches usability problems early",
    },
    {
        "text": "Prepare release checklist and rollback notes",
        "estimated_effort_hours": 8,
        "required_cognition": "low",
        "confidence": 0.5,
        "reasoning": "Launch needs an operational checklist",
    },
]


def word_similarity(text_a: str, text_b: str) -> float:
    """Jaccard overlap of word tokens."""
    tokens_a, tokens_b = set(tokenize(text_a)), set(tokenize(text_b))
    if not tokens_a or not tokens_b:
        return 0.0
    return len(tokens_a & tokens_b) / len(tokens_a | tokens_b)


class FakeGenerator(GenerationProvider):
    """Generator returning canned candidates per gap id.

    A behaviour may be a candidate list, an exception to raise, or "hang"
    to sleep past any timeout.
    """

    def __init__(self, behaviours: dict | None = None, default: list | None = None):
        super().__init__({})
        self.behaviours = behaviours or {}
        self.default = DEFAULT_CANDIDATES if default is None else default
        self.requests: list[GenerationRequest] = []

    async def generate(self, request: GenerationRequest) -> list[dict]:
        self.requests.append(request)
        behaviour = self.behaviours.get(request.gap_id, self.default)
        if isinstance(behaviour, list) and behaviour and isinstance(behaviour[0], Exception):
            # Sequence of outcomes, consumed one per call
            outcome = behaviour.pop(0)
            if not behaviour:
                self.behaviours[request.gap_id] = self.default
            raise outcome
        if isinstance(behaviour, Exception):
            raise behaviour
        if behaviour == "hang":
            await asyncio.sleep(60)
        return [dict(item) for item in behaviour]


class FakeSimilarity(SimilarityProvider):
    """Word-overlap similarity with optional overrides and history.

    Any call whose text contains one of ``broken_fragments`` raises a
    RuntimeError, as an unwrapped backend error would.
    """

    def __init__(
        self,
        history: list[SimilarTask] | None = None,
        overrides: dict | None = None,
        fail_search: bool = False,
        broken_fragments: tuple[str, ...] = (),
    ):
        self.history = history or []
        self.overrides = overrides or {}
        self.fail_search = fail_search
        self.broken_fragments = broken_fragments
        self.similarity_calls = 0
        self.search_calls = 0

    def _check_broken(self, *texts: str) -> None:
        for fragment in self.broken_fragments:
            if any(fragment in text for text in texts):
                raise RuntimeError("embedding backend 503")

    async def similarity(self, text_a: str, text_b: str) -> float:
        self.similarity_calls += 1
        self._check_broken(text_a, text_b)
        if (text_a, text_b) in self.overrides:
            return self.overrides[(text_a, text_b)]
        return word_similarity(text_a, text_b)

    async def top_k_similar(self, text: str, k: int) -> list[SimilarTask]:
        self.search_calls += 1
        if self.fail_search:
            raise AgentError("similarity service unavailable")
        self._check_broken(text)
        return self.history[:k]


def make_task(task_id, text, hours, depends_on=(), **kwargs) -> Task:
    return Task(
        id=task_id,
        text=text,
        estimated_effort_hours=hours,
        depends_on=frozenset(depends_on),
        **kwargs,
    )


def has_dependency_cycle(graph: TaskGraph) -> bool:
    """Colour-marking DFS over depends_on, independent of gapfill.graph.dag."""
    dependencies = {task.id: set(task.depends_on) for task in graph}
    visiting: set[str] = set()
    done: set[str] = set()

    def visit(task_id: str) -> bool:
        if task_id in done:
            return False
        if task_id in visiting:
            return True
        visiting.add(task_id)
        if any(visit(dep) for dep in dependencies.get(task_id, ())):
            return True
        visiting.discard(task_id)
        done.add(task_id)
        return False

    return any(visit(task_id) for task_id in dependencies)


def build_random_dag(seed: int, size: int = 12) -> TaskGraph:
    """Random DAG with ids 10, 20, ... where tasks depend only on earlier ids."""
    rng = random.Random(seed)
    tasks = []
    for i in range(1, size + 1):
        earlier = [str(j * 10) for j in range(1, i)]
        # Every third task has at least one dependency
        deps = rng.sample(earlier, min(len(earlier), rng.randint(0 if i % 3 else 1, 3)))
        tasks.append(make_task(str(i * 10), f"Plan step {i} of seed {seed}", rng.randint(1, 200), deps))
    return TaskGraph(tasks)


@pytest.fixture
def assert_acyclic():
    """Return a checker for committed graphs."""

    def check(graph: TaskGraph) -> None:
        ids = {task.id for task in graph}
        for task in graph:
            missing = task.depends_on - ids
            assert not missing, f"#{task.id} depends on unknown tasks {sorted(missing)}"
        assert not has_dependency_cycle(graph), f"dependency cycle among {sorted(ids)}"

    return check


@pytest.fixture
def random_dag():
    return build_random_dag


@pytest.fixture
def scenario_graph() -> TaskGraph:
    """#1 Define goals -> #2 Design mockups -> #5 Launch, no #2 -> #5 edge."""
    return TaskGraph(
        [
            make_task("1", "Define goals", 8),
            make_task("2", "Design mockups", 40, ["1"]),
            make_task("5", "Launch", 16),
        ]
    )


@pytest.fixture
def two_gap_graph() -> TaskGraph:
    """Graph with gaps 2 -> 5 and 5 -> 6."""
    return TaskGraph(
        [
            make_task("1", "Define goals", 8),
            make_task("2", "Design mockups", 40, ["1"]),
            make_task("5", "Launch", 16),
            make_task("6", "Research market pricing", 120),
        ]
    )


@pytest.fixture
def linear_graph() -> TaskGraph:
    """Seven densely linked build tasks with no jumps."""
    texts = [
        "Implement backend API for accounts",
        "Implement backend API for billing",
        "Implement backend API for invoices",
        "Implement backend API for reports",
        "Implement backend API for exports",
        "Implement backend API for webhooks",
        "Implement backend API for audit logs",
    ]
    tasks = []
    for i, text in enumerate(texts, 1):
        deps = [str(i - 1)] if i > 1 else []
        tasks.append(make_task(str(i), text, 16 + i, deps))
    return TaskGraph(tasks)


@pytest.fixture
def fake_generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def fake_similarity() -> FakeSimilarity:
    return FakeSimilarity()


@pytest.fixture
def fast_config() -> GapFillConfig:
    """Config with short timeouts for tests."""
    return GapFillConfig(
        pipeline=PipelineConfig(generation_timeout_sec=0.2, similarity_timeout_sec=0.2)
    )


@pytest.fixture
def pipeline(fake_generator, fake_similarity, fast_config) -> CandidatePipeline:
    return CandidatePipeline(fake_generator, fake_similarity, fast_config.pipeline)


@pytest.fixture
def store(scenario_graph) -> GraphStore:
    return GraphStore(scenario_graph, plan_id="plan-a")


@pytest.fixture
def task_factory():
    return make_task


@pytest.fixture
def generator_factory():
    return FakeGenerator


@pytest.fixture
def similarity_factory():
    return FakeSimilarity
