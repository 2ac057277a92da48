"""Transactional insertion of accepted bridging candidates."""

import logging
import time
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Optional

from ..detection.models import Gap
from ..graph.dag import CycleError, TaskGraph, find_cycle, toposort
from ..graph.models import (
    GenerationProvenance,
    Task,
    TaskSource,
    format_ordinal,
    ordinal_key,
)
from ..pipeline.models import (
    MAX_CANDIDATE_HOURS,
    MAX_CANDIDATE_TEXT,
    MIN_CANDIDATE_HOURS,
    MIN_CANDIDATE_TEXT,
    BridgingCandidate,
)

logger = logging.getLogger(__name__)

# Deepest dotted level tried before giving up on an id range
MAX_ID_DEPTH = 8

_CYCLE_TEXT_LIMIT = 50


class DecisionValidationError(Exception):
    """Commit decisions are malformed.

    Attributes:
        errors: One message per offending decision
    """

    def __init__(self, message: str, errors: Optional[list[str]] = None):
        super().__init__(message)
        self.errors = errors or [message]


@dataclass
class AcceptedCandidate:
    """A candidate the user accepted, with final (possibly edited) values."""

    candidate: BridgingCandidate
    text: Optional[str] = None
    estimated_effort_hours: Optional[float] = None

    def __post_init__(self):
        if self.text is None:
            self.text = self.candidate.text
        if self.estimated_effort_hours is None:
            self.estimated_effort_hours = self.candidate.estimated_effort_hours
        self.text = self.text.strip()

    @property
    def edited(self) -> bool:
        return (
            self.text != self.candidate.text
            or self.estimated_effort_hours != self.candidate.estimated_effort_hours
        )


@dataclass
class GapInsertion:
    """Accepted candidates for one gap, in insertion order."""

    gap: Gap
    accepted: list[AcceptedCandidate] = field(default_factory=list)
    rejected_ids: list[str] = field(default_factory=list)


@dataclass
class InsertionResult:
    graph: TaskGraph
    inserted_task_ids: list[str]
    rewired_task_ids: list[str]
    candidate_task_ids: dict[str, str]
    duration_ms: int = 0


def allocate_ids(
    predecessor_id: str,
    successor_id: str,
    count: int,
    used: Iterable[str],
) -> list[str]:
    """Allocate ``count`` unused ids ordered between predecessor and successor.

    Consecutive siblings of the predecessor are tried first (``2`` -> ``5``
    gives ``3, 4``). When those collide or reach the successor, allocation
    descends one dotted level (``2.1, 2.2``, then ``2.0.1, ...``). When the
    predecessor does not sort before the successor, only uniqueness applies.

    Raises:
        DecisionValidationError: If no free range exists within MAX_ID_DEPTH
    """
    used = set(used)
    low = ordinal_key(predecessor_id)
    high = ordinal_key(successor_id)
    bounded = low < high

    prefix = low
    for _ in range(MAX_ID_DEPTH):
        keys = [prefix[:-1] + (prefix[-1] + i,) for i in range(1, count + 1)]
        ids = [format_ordinal(key) for key in keys]
        if all(task_id not in used for task_id in ids) and (not bounded or keys[-1] < high):
            return ids
        prefix = prefix + (0,)

    raise DecisionValidationError(
        f"No free task ids between {predecessor_id} and {successor_id} for {count} tasks"
    )


def _short(text: str) -> str:
    if len(text) <= _CYCLE_TEXT_LIMIT:
        return text
    return text[: _CYCLE_TEXT_LIMIT - 3] + "..."


def _check_insertions(graph: TaskGraph, insertions: Sequence[GapInsertion]) -> None:
    errors: list[str] = []
    seen_candidates: set[str] = set()
    seen_gaps: set[str] = set()

    for insertion in insertions:
        gap = insertion.gap
        if gap.id in seen_gaps:
            errors.append(f"Gap {gap.id} appears twice in one commit")
        seen_gaps.add(gap.id)

        for task_id in (gap.predecessor_id, gap.successor_id):
            if task_id not in graph:
                errors.append(f"Gap {gap.id} references unknown task {task_id}")

        accepted_ids = {item.candidate.id for item in insertion.accepted}
        for candidate_id in insertion.rejected_ids:
            if candidate_id in accepted_ids:
                errors.append(f"Candidate {candidate_id} is both accepted and rejected")

        for item in insertion.accepted:
            candidate = item.candidate
            if candidate.id in seen_candidates:
                errors.append(f"Candidate {candidate.id} accepted more than once")
            seen_candidates.add(candidate.id)
            if candidate.gap_id != gap.id:
                errors.append(f"Candidate {candidate.id} belongs to {candidate.gap_id}, not {gap.id}")
            if not MIN_CANDIDATE_TEXT <= len(item.text) <= MAX_CANDIDATE_TEXT:
                errors.append(
                    f"Candidate {candidate.id} text must be "
                    f"{MIN_CANDIDATE_TEXT}-{MAX_CANDIDATE_TEXT} characters"
                )
            if not MIN_CANDIDATE_HOURS <= item.estimated_effort_hours <= MAX_CANDIDATE_HOURS:
                errors.append(
                    f"Candidate {candidate.id} hours must be "
                    f"{MIN_CANDIDATE_HOURS}-{MAX_CANDIDATE_HOURS}"
                )

    if errors:
        raise DecisionValidationError(f"Invalid insertion: {errors[0]}", errors)


def _new_task(task_id: str, depends_on: str, item: AcceptedCandidate, gap: Gap) -> Task:
    candidate = item.candidate
    return Task(
        id=task_id,
        text=item.text,
        estimated_effort_hours=item.estimated_effort_hours,
        required_cognition=candidate.required_cognition,
        depends_on=frozenset({depends_on}),
        source=TaskSource.AI_GENERATED,
        requires_review=True,
        generation_provenance=GenerationProvenance(
            predecessor_id=gap.predecessor_id,
            successor_id=gap.successor_id,
            gap_id=gap.id,
            candidate_id=candidate.id,
            provider_confidence=candidate.provider_confidence,
            composite_confidence=candidate.confidence,
            reasoning=candidate.reasoning,
            original_text=candidate.text,
            original_hours=candidate.estimated_effort_hours,
            edited=item.edited,
        ),
    )


def insert_many(graph: TaskGraph, insertions: Sequence[GapInsertion]) -> InsertionResult:
    """Insert accepted candidates for several gaps as one transaction.

    Args:
        graph: Current graph (not modified)
        insertions: Accepted candidates per gap

    Returns:
        InsertionResult with the new graph

    Raises:
        DecisionValidationError: On malformed insertions
        CycleError: If the updated graph would contain a cycle
    """
    started = time.monotonic()
    _check_insertions(graph, insertions)

    table: dict[str, Task] = dict(graph.tasks)
    inserted: list[str] = []
    rewired: list[str] = []
    candidate_tasks: dict[str, str] = {}
    new_edges: set[tuple[str, str]] = set()

    for insertion in insertions:
        if not insertion.accepted:
            continue
        gap = insertion.gap
        new_ids = allocate_ids(
            gap.predecessor_id, gap.successor_id, len(insertion.accepted), table.keys()
        )

        previous = gap.predecessor_id
        for task_id, item in zip(new_ids, insertion.accepted):
            table[task_id] = _new_task(task_id, previous, item, gap)
            new_edges.add((previous, task_id))
            candidate_tasks[task_id] = item.candidate.id
            inserted.append(task_id)
            previous = task_id

        successor = table[gap.successor_id]
        # The predecessor stays reachable through the new chain
        table[gap.successor_id] = successor.model_copy(
            update={"depends_on": (successor.depends_on - {gap.predecessor_id}) | {previous}}
        )
        new_edges.add((previous, gap.successor_id))
        rewired.append(gap.successor_id)

    dependencies = {task_id: task.depends_on for task_id, task in table.items()}
    order, cycle_nodes = toposort(table.keys(), dependencies)
    if cycle_nodes:
        raise _cycle_error(table, dependencies, new_edges, candidate_tasks)

    new_graph = TaskGraph(table[task_id] for task_id in order)
    duration_ms = int((time.monotonic() - started) * 1000)
    logger.info(
        f"Insertion validated: {len(inserted)} tasks added {inserted}, "
        f"{len(rewired)} successors rewired ({duration_ms}ms)"
    )
    return InsertionResult(
        graph=new_graph,
        inserted_task_ids=inserted,
        rewired_task_ids=rewired,
        candidate_task_ids=candidate_tasks,
        duration_ms=duration_ms,
    )


def _cycle_error(
    table: dict[str, Task],
    dependencies: dict[str, frozenset[str]],
    new_edges: set[tuple[str, str]],
    candidate_tasks: dict[str, str],
) -> CycleError:
    cycle = find_cycle(dependencies)
    steps = list(zip(cycle, cycle[1:]))
    edge = next((step for step in steps if step in new_edges), steps[-1] if steps else None)
    candidate_id = next(
        (candidate_tasks[task_id] for task_id in cycle if task_id in candidate_tasks), None
    )
    path = " -> ".join(f"#{task_id} '{_short(table[task_id].text)}'" for task_id in cycle)
    logger.warning(f"Insertion rejected, cycle detected: {' -> '.join(cycle)}")
    return CycleError(
        f"Insertion would create a dependency cycle: {path}",
        cycle=cycle,
        edge=edge,
        candidate_id=candidate_id,
    )


def insert_accepted(
    graph: TaskGraph,
    gap: Gap,
    accepted: Sequence[AcceptedCandidate],
    rejected_ids: Sequence[str] = (),
) -> InsertionResult:
    """Insert the accepted candidates of one gap.

    Rejected candidates are dropped. All accepted candidates are inserted or
    none are; the input graph is never modified.

    Raises:
        DecisionValidationError: On malformed input
        CycleError: If the insertion would create a cycle
    """
    return insert_many(
        graph, [GapInsertion(gap=gap, accepted=list(accepted), rejected_ids=list(rejected_ids))]
    )
