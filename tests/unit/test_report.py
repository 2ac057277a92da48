"""Unit tests for session reports."""

from gapfill.detection.models import Gap, GapIndicators
from gapfill.observability.report import SessionReport, StatusSymbol, format_gap_line, format_gaps
from gapfill.pipeline.models import BridgingCandidate
from gapfill.state.persistence import (
    CandidateState,
    GapRecord,
    GapStatus,
    ReviewItem,
    SessionRecord,
    SessionState,
)

GAP = Gap(
    id="gap-2-5",
    predecessor_id="2",
    successor_id="5",
    indicators=GapIndicators(action_type_jump=True, missing_dependency=True, skill_jump=True),
    confidence=0.75,
)

FAILED_GAP = Gap(
    id="gap-5-6",
    predecessor_id="5",
    successor_id="6",
    indicators=GapIndicators(time_gap=True, action_type_jump=True, missing_dependency=True),
    confidence=0.75,
)


def make_item(state=CandidateState.PROPOSED, **edits) -> ReviewItem:
    candidate = BridgingCandidate(
        id="cand-1",
        gap_id=GAP.id,
        predecessor_id="2",
        successor_id="5",
        text="Build clickable prototype from the approved screens",
        estimated_effort_hours=24,
        required_cognition="medium",
        confidence=0.5,
        provider_confidence=0.9,
    )
    return ReviewItem(candidate=candidate, state=state, **edits)


def test_format_gap_line():
    """Test the one-line gap summary."""
    assert format_gap_line(GAP) == (
        "#2 -> #5  confidence 0.75  [action_type_jump, missing_dependency, skill_jump]"
    )


def test_format_gaps_empty():
    """Test the no-gap message."""
    assert format_gaps([]) == "No gaps found"
    assert format_gaps([GAP]).startswith("1 gap(s) found:")


def test_render_awaiting_review_with_failure():
    """Test candidates and failed gaps both appear in the report."""
    record = SessionRecord(
        session_id="session-r",
        state=SessionState.AWAITING_REVIEW,
        gaps=[
            GapRecord(gap=GAP, status=GapStatus.PROPOSED, candidates=[make_item()]),
            GapRecord(
                gap=FAILED_GAP,
                status=GapStatus.GENERATION_FAILED,
                error={"code": "timeout", "message": "Generation timed out after 5.0s"},
            ),
        ],
    )

    output = SessionReport(record).render()

    assert f"State: {StatusSymbol.PENDING.value} awaiting_review" in output
    assert "[ ] cand-1  Build clickable prototype from the approved screens  (24h, medium" in output
    assert "generation_failed (timeout): Generation timed out after 5.0s" in output
    assert "retry with: gapfill retry session-r gap-5-6" in output


def test_render_committed_shows_edits_and_inserts(tmp_path):
    """Test edited values, inserted ids and completion are rendered."""
    record = SessionRecord(
        session_id="session-r",
        state=SessionState.COMMITTED,
        outcome="success",
        completed_at="2026-01-01T00:10:00+00:00",
        inserted_task_ids=["3"],
        gaps=[
            GapRecord(
                gap=GAP,
                status=GapStatus.PROPOSED,
                candidates=[make_item(CandidateState.ACCEPTED, edited_text="Build a Figma prototype", edited_hours=30)],
            )
        ],
    )
    record.metrics.generation_ms["gap-2-5"] = 120

    report = SessionReport(record)
    output = report.render()

    assert StatusSymbol.DONE.value in output
    assert "Completed: 2026-01-01T00:10:00+00:00 (success)" in output
    assert "[+] cand-1  Build a Figma prototype  (30h" in output
    assert "Inserted tasks: #3" in output
    assert "generation [gap-2-5=120ms]" in output

    path = tmp_path / "reports" / "session-r.md"
    report.write(path)
    assert path.read_text() == output + "\n"


def test_render_aborted_without_gaps():
    """Test an aborted session with no gaps."""
    record = SessionRecord(session_id="session-r", state=SessionState.ABORTED, error_message="No gaps")
    output = SessionReport(record).render()

    assert f"{StatusSymbol.ABORTED.value} aborted" in output
    assert "No gaps found" in output
    assert "Error: No gaps" in output
