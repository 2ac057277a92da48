"""Gap detector over an ordered task sequence."""

import logging
from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Optional

from ..config.models import DetectionConfig
from ..graph.dag import TaskGraph, depends_transitively
from ..graph.models import Task
from .heuristics import classify_phase, classify_skill
from .models import Gap, GapIndicators, gap_id_for

logger = logging.getLogger(__name__)

INDICATOR_TOTAL = 4


def evaluate_pair(
    predecessor: Task,
    successor: Task,
    config: Optional[DetectionConfig] = None,
) -> GapIndicators:
    """Evaluate the four gap indicators for one adjacent pair.

    Args:
        predecessor: Earlier task
        successor: Later task
        config: Detection thresholds

    Returns:
        GapIndicators for the pair
    """
    config = config or DetectionConfig()

    time_gap = (
        abs(successor.estimated_effort_hours - predecessor.estimated_effort_hours)
        > config.time_gap_hours
    )

    predecessor_phase = classify_phase(predecessor.text)
    successor_phase = classify_phase(successor.text)
    action_type_jump = (
        predecessor_phase is not None
        and successor_phase is not None
        and abs(successor_phase.value - predecessor_phase.value) >= config.phase_jump
    )

    missing_dependency = predecessor.id not in successor.depends_on

    predecessor_skill = classify_skill(predecessor.text)
    successor_skill = classify_skill(successor.text)
    skill_jump = (
        predecessor_skill is not None
        and successor_skill is not None
        and predecessor_skill != successor_skill
    )

    return GapIndicators(
        time_gap=time_gap,
        action_type_jump=action_type_jump,
        missing_dependency=missing_dependency,
        skill_jump=skill_jump,
    )


def detect_gaps(
    ordered_tasks: Sequence[Task],
    config: Optional[DetectionConfig] = None,
    detected_at: Optional[str] = None,
) -> list[Gap]:
    """Scan adjacent task pairs and return detected gaps.

    Pure function: for the same tasks and config the returned gaps are
    identical (pass ``detected_at`` to pin the timestamp). A pair is
    promoted to a gap only when at least ``min_indicators`` fire, and it is
    skipped when the successor already reaches the predecessor through
    dependencies, since bridging it would close a cycle.

    Args:
        ordered_tasks: Tasks in topological order
        config: Detection thresholds
        detected_at: Timestamp stamped on every gap (default: now, UTC)

    Returns:
        Gaps sorted by confidence descending, ties in sequence order. The
        caller truncates to ``config.max_gaps``. Empty when nothing qualifies.
    """
    config = config or DetectionConfig()
    detected_at = detected_at or datetime.now(timezone.utc).isoformat()

    tasks = list(ordered_tasks)
    dependencies = {task.id: task.depends_on for task in tasks}
    gaps: list[Gap] = []

    for predecessor, successor in zip(tasks, tasks[1:]):
        indicators = evaluate_pair(predecessor, successor, config)
        count = indicators.count

        if count < config.min_indicators:
            logger.debug(
                f"No gap {predecessor.id} -> {successor.id}: "
                f"{count}/{INDICATOR_TOTAL} indicators {indicators.fired()}"
            )
            continue

        if depends_transitively(dependencies, predecessor.id, successor.id):
            logger.info(
                f"Gap {predecessor.id} -> {successor.id} skipped: "
                f"{predecessor.id} already depends on {successor.id}"
            )
            continue

        gap = Gap(
            id=gap_id_for(predecessor.id, successor.id),
            predecessor_id=predecessor.id,
            successor_id=successor.id,
            indicators=indicators,
            confidence=count / INDICATOR_TOTAL,
            detected_at=detected_at,
        )
        logger.info(
            f"Gap detected {predecessor.id} -> {successor.id} "
            f"(confidence {gap.confidence:.2f}, indicators {indicators.fired()})"
        )
        gaps.append(gap)

    # sorted() is stable, so equal confidences keep sequence order
    gaps = sorted(gaps, key=lambda g: g.confidence, reverse=True)

    logger.info(
        f"Gap analysis: {max(0, len(tasks) - 1)} pairs analysed, {len(gaps)} gaps found"
    )
    return gaps


def detect_graph_gaps(
    graph: TaskGraph,
    config: Optional[DetectionConfig] = None,
    detected_at: Optional[str] = None,
) -> list[Gap]:
    """Detect gaps over a graph's topological order, truncated to max_gaps."""
    config = config or DetectionConfig()
    gaps = detect_gaps(graph.ordered_tasks(), config, detected_at=detected_at)
    return gaps[: config.max_gaps]
