"""Session report rendering."""

import logging
from enum import Enum
from pathlib import Path

from ..detection.models import Gap
from ..state.persistence import (
    CandidateState,
    GapStatus,
    SessionRecord,
    SessionState,
)

logger = logging.getLogger(__name__)


class StatusSymbol(str, Enum):
    """Symbols for status display."""

    DONE = "✅"
    RUNNING = "🔄"
    PENDING = "⏳"
    FAILED = "❌"
    ABORTED = "🚫"


_SESSION_SYMBOLS = {
    SessionState.CREATED: StatusSymbol.PENDING,
    SessionState.ANALYZING: StatusSymbol.RUNNING,
    SessionState.AWAITING_REVIEW: StatusSymbol.PENDING,
    SessionState.COMMITTING: StatusSymbol.RUNNING,
    SessionState.COMMITTED: StatusSymbol.DONE,
    SessionState.ABORTED: StatusSymbol.ABORTED,
    SessionState.FAILED: StatusSymbol.FAILED,
}

_CANDIDATE_MARKS = {
    CandidateState.PROPOSED: " ",
    CandidateState.EDITED: "~",
    CandidateState.ACCEPTED: "+",
    CandidateState.REJECTED: "-",
}


def format_gap_line(gap: Gap) -> str:
    """One-line gap summary."""
    return (
        f"#{gap.predecessor_id} -> #{gap.successor_id}  "
        f"confidence {gap.confidence:.2f}  "
        f"[{', '.join(gap.indicators.fired())}]"
    )


def format_gaps(gaps: list[Gap]) -> str:
    if not gaps:
        return "No gaps found"
    lines = [f"{len(gaps)} gap(s) found:"]
    lines.extend(f"  {format_gap_line(gap)}" for gap in gaps)
    return "\n".join(lines)


class SessionReport:
    """Plain-text report of a review session."""

    def __init__(self, record: SessionRecord):
        """Initialize report.

        Args:
            record: Session record to render
        """
        self.record = record

    def render(self) -> str:
        record = self.record
        symbol = _SESSION_SYMBOLS[record.state].value
        lines = [
            f"Session: {record.session_id}",
            f"State: {symbol} {record.state.value}",
            f"Plan: {record.plan_path or record.plan_id} (v{record.graph_version})",
            f"Started: {record.started_at}",
        ]
        if record.completed_at:
            lines.append(f"Completed: {record.completed_at} ({record.outcome})")

        lines.append("")
        lines.extend(self._format_gaps())

        if record.inserted_task_ids:
            lines.append("")
            lines.append(f"Inserted tasks: {', '.join('#' + t for t in record.inserted_task_ids)}")

        lines.append("")
        lines.append(self._format_metrics())

        if record.error_message:
            lines.append("")
            lines.append(f"Error: {record.error_message}")

        return "\n".join(lines)

    def _format_gaps(self) -> list[str]:
        if not self.record.gaps:
            return ["No gaps found"]

        lines = []
        for gap_record in self.record.gaps:
            lines.append(f"Gap {gap_record.gap.id}: {format_gap_line(gap_record.gap)}")
            if gap_record.status == GapStatus.GENERATION_FAILED:
                error = gap_record.error or {}
                lines.append(
                    f"  {StatusSymbol.FAILED.value} generation_failed "
                    f"({error.get('code', 'unknown')}): {error.get('message', '')}"
                )
                lines.append(f"  retry with: gapfill retry {self.record.session_id} {gap_record.gap.id}")
                continue

            for item in gap_record.candidates:
                candidate = item.candidate
                mark = _CANDIDATE_MARKS[item.state]
                lines.append(
                    f"  [{mark}] {candidate.id}  {item.final_text}  "
                    f"({item.final_hours:g}h, {candidate.required_cognition.value}, "
                    f"confidence {candidate.confidence:.2f})"
                )
        return lines

    def _format_metrics(self) -> str:
        metrics = self.record.metrics
        generation = ", ".join(f"{gap_id}={ms}ms" for gap_id, ms in metrics.generation_ms.items())
        return (
            f"Metrics: detection {metrics.detection_ms}ms, "
            f"generation [{generation or 'none'}], "
            f"insertion {metrics.insertion_ms}ms, total {metrics.total_ms}ms, "
            f"{metrics.search_query_count} similarity queries"
        )

    def write(self, path: Path) -> None:
        """Write the report to a file."""
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            f.write(self.render() + "\n")
        logger.debug(f"Wrote session report {path}")
