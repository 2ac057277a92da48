"""Unit tests for session record persistence."""

import json
import re

from gapfill.detection.models import Gap, GapIndicators
from gapfill.pipeline.models import BridgingCandidate
from gapfill.state.persistence import (
    CandidateState,
    GapRecord,
    GapStatus,
    ReviewItem,
    SessionRecord,
    SessionState,
    generate_session_id,
    list_sessions,
    load_session,
    save_session,
    session_path,
)


def make_record(session_id: str, started_at: str = "2026-01-01T00:00:00+00:00") -> SessionRecord:
    gap = Gap(
        id="gap-2-5",
        predecessor_id="2",
        successor_id="5",
        indicators=GapIndicators(action_type_jump=True, missing_dependency=True, skill_jump=True),
        confidence=0.75,
    )
    candidate = BridgingCandidate(
        id="cand-1",
        gap_id=gap.id,
        predecessor_id="2",
        successor_id="5",
        text="Build clickable prototype from the approved screens",
        estimated_effort_hours=24,
        required_cognition="medium",
        confidence=0.5,
        provider_confidence=0.9,
    )
    return SessionRecord(
        session_id=session_id,
        state=SessionState.AWAITING_REVIEW,
        started_at=started_at,
        gaps=[
            GapRecord(
                gap=gap,
                status=GapStatus.PROPOSED,
                candidates=[ReviewItem(candidate=candidate, state=CandidateState.EDITED, edited_hours=30)],
            )
        ],
    )


def test_save_and_load_round_trip(tmp_path):
    """Test a saved record loads back equal."""
    record = make_record("session-a")
    path = session_path(tmp_path / "sessions", "session-a")

    save_session(record, path)
    loaded = load_session(path)

    assert loaded == record
    assert loaded.gaps[0].candidates[0].final_hours == 30
    assert loaded.gaps[0].candidates[0].final_text == record.gaps[0].candidates[0].candidate.text
    assert not path.with_suffix(".tmp").exists()


def test_saved_file_is_plain_json(tmp_path):
    """Test records serialize enums as their values."""
    path = session_path(tmp_path, "session-a")
    save_session(make_record("session-a"), path)

    with open(path) as f:
        data = json.load(f)
    assert data["state"] == "awaiting_review"
    assert data["gaps"][0]["candidates"][0]["state"] == "edited"


def test_load_missing_session(tmp_path):
    """Test loading a missing record returns None."""
    assert load_session(session_path(tmp_path, "nope")) is None


def test_list_sessions_oldest_first(tmp_path):
    """Test records are listed by start time."""
    save_session(make_record("b", "2026-01-02T00:00:00+00:00"), session_path(tmp_path, "b"))
    save_session(make_record("a", "2026-01-03T00:00:00+00:00"), session_path(tmp_path, "a"))
    save_session(make_record("c", "2026-01-01T00:00:00+00:00"), session_path(tmp_path, "c"))

    assert [r.session_id for r in list_sessions(tmp_path)] == ["c", "b", "a"]
    assert list_sessions(tmp_path / "missing") == []


def test_record_lookups():
    """Test gap and candidate lookups on a record."""
    record = make_record("session-a")
    assert record.get_gap("gap-2-5").status == GapStatus.PROPOSED
    assert record.get_gap("gap-1-2") is None
    gap_record, item = record.find_item("cand-1")
    assert gap_record.gap.id == "gap-2-5"
    assert item.edited_hours == 30
    assert record.find_item("cand-2") is None
    assert record.failed_gaps == []


def test_generate_session_id_format():
    """Test session ids are timestamped and unique."""
    first = generate_session_id()
    assert re.match(r"^session_\d{8}_\d{6}_[0-9a-f]{6}$", first)
    assert first != generate_session_id()
