"""Review session state machine."""

import asyncio
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..config.models import GapFillConfig
from ..detection.detector import detect_graph_gaps
from ..detection.models import Gap
from ..graph.dag import CycleError
from ..graph.store import GraphStore, SessionConflictError, StaleGraphError
from ..insertion.validator import (
    AcceptedCandidate,
    DecisionValidationError,
    GapInsertion,
    InsertionResult,
    insert_many,
)
from ..pipeline.candidates import CandidatePipeline, GenerationFailure
from ..pipeline.models import (
    MAX_CANDIDATE_HOURS,
    MAX_CANDIDATE_TEXT,
    MIN_CANDIDATE_HOURS,
    MIN_CANDIDATE_TEXT,
    GenerationStats,
    GraphContext,
)
from ..state.persistence import (
    CandidateState,
    GapRecord,
    GapStatus,
    ReviewItem,
    SessionRecord,
    SessionState,
    save_session,
    session_path,
)
from ..utils.logging import log_context

logger = logging.getLogger(__name__)


class StateTransitionError(Exception):
    """Invalid session or candidate state transition."""

    pass


class SessionStateError(StateTransitionError):
    """Operation not allowed in the session's current state."""

    def __init__(self, message: str, state: SessionState):
        super().__init__(message)
        self.state = state


class Decision(BaseModel):
    """One review decision from the caller.

    Strings are stripped before length checks, so padded edits are judged
    by the text that would be inserted.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    candidate_id: str
    action: Literal["accept", "reject"]
    edited_text: Optional[str] = Field(
        default=None, min_length=MIN_CANDIDATE_TEXT, max_length=MAX_CANDIDATE_TEXT
    )
    edited_hours: Optional[float] = Field(
        default=None, ge=MIN_CANDIDATE_HOURS, le=MAX_CANDIDATE_HOURS
    )


def parse_decisions(raw: list) -> list[Decision]:
    """Validate raw decision dicts.

    Raises:
        DecisionValidationError: If any decision is malformed
    """
    if not isinstance(raw, list):
        raise DecisionValidationError("Decisions must be a list")

    decisions: list[Decision] = []
    errors: list[str] = []
    for i, item in enumerate(raw):
        if isinstance(item, Decision):
            decisions.append(item)
            continue
        try:
            decisions.append(Decision.model_validate(item))
        except ValidationError as e:
            for err in e.errors():
                loc = ".".join(str(part) for part in err["loc"]) or "decision"
                errors.append(f"decisions[{i}].{loc}: {err['msg']}")
    if errors:
        raise DecisionValidationError(f"Malformed decisions: {errors[0]}", errors)
    return decisions


class ReviewSession:
    """One detect, propose, decide and commit cycle over a graph store."""

    # Valid session transitions
    TRANSITIONS = {
        SessionState.CREATED: [
            SessionState.ANALYZING,
            SessionState.ABORTED,
        ],
        SessionState.ANALYZING: [
            SessionState.AWAITING_REVIEW,
            SessionState.ABORTED,  # No gaps or cancelled
            SessionState.FAILED,
        ],
        SessionState.AWAITING_REVIEW: [
            SessionState.COMMITTING,
            SessionState.ABORTED,
        ],
        SessionState.COMMITTING: [
            SessionState.COMMITTED,
            SessionState.FAILED,
        ],
        SessionState.COMMITTED: [],  # Terminal
        SessionState.ABORTED: [],  # Terminal
        SessionState.FAILED: [],  # Terminal
    }

    CANDIDATE_TRANSITIONS = {
        CandidateState.PROPOSED: [
            CandidateState.EDITED,
            CandidateState.ACCEPTED,
            CandidateState.REJECTED,
        ],
        CandidateState.EDITED: [
            CandidateState.EDITED,
            CandidateState.ACCEPTED,
            CandidateState.REJECTED,
        ],
        CandidateState.ACCEPTED: [],
        CandidateState.REJECTED: [],
    }

    def __init__(
        self,
        record: SessionRecord,
        store: GraphStore,
        pipeline: CandidatePipeline,
        config: Optional[GapFillConfig] = None,
        state_dir: Optional[Path] = None,
        document_context: Optional[str] = None,
        manual_examples: Optional[list[str]] = None,
    ):
        """Initialize session.

        Args:
            record: Session record (new or loaded)
            store: Graph store of the plan
            pipeline: Candidate pipeline
            config: Configuration
            state_dir: Directory to persist the record in (None keeps it in memory)
            document_context: Surrounding document text for generation
            manual_examples: User example tasks for generation
        """
        self.record = record
        self.store = store
        self.pipeline = pipeline
        self.config = config or GapFillConfig()
        self.state_dir = state_dir
        self.document_context = document_context
        self.manual_examples = manual_examples or []
        self._inflight: list[asyncio.Task] = []

    @property
    def session_id(self) -> str:
        return self.record.session_id

    @property
    def state(self) -> SessionState:
        return self.record.state

    @property
    def is_terminal(self) -> bool:
        return not self.TRANSITIONS[self.record.state]

    def _save(self) -> None:
        if self.state_dir is not None:
            save_session(self.record, session_path(self.state_dir, self.session_id))

    def can_transition_to(self, new_state: SessionState) -> bool:
        return new_state in self.TRANSITIONS.get(self.record.state, [])

    def transition(
        self,
        new_state: SessionState,
        error_message: str | None = None,
        error_context: dict | None = None,
    ) -> None:
        """Execute a session state transition.

        Raises:
            StateTransitionError: If the transition is invalid
        """
        if not self.can_transition_to(new_state):
            raise StateTransitionError(
                f"Invalid transition from {self.record.state.value} to {new_state.value}"
            )

        logger.info(f"Session {self.session_id}: {self.record.state.value} -> {new_state.value}")
        self.record.state = new_state

        if error_message:
            self.record.error_message = error_message
        if error_context:
            self.record.error_context = error_context

        if not self.TRANSITIONS[new_state]:
            self.record.completed_at = datetime.now(timezone.utc).isoformat()
            self.record.outcome = {
                SessionState.COMMITTED: "success",
                SessionState.ABORTED: "aborted",
                SessionState.FAILED: "failed",
            }[new_state]
            self.store.release(self.session_id)

        self._save()

    def _require(self, *states: SessionState) -> None:
        if self.record.state not in states:
            allowed = ", ".join(s.value for s in states)
            raise SessionStateError(
                f"Session {self.session_id} is {self.record.state.value}; expected {allowed}",
                state=self.record.state,
            )

    async def analyze(self, gaps: Optional[list[Gap]] = None) -> SessionRecord:
        """Detect gaps and generate candidates for each.

        Args:
            gaps: Pre-computed gaps (default: run the detector on the store's graph)

        Returns:
            Updated session record (awaiting_review, or aborted when no gaps)

        Raises:
            SessionConflictError: If another session holds the plan
            CycleError: If the plan's graph is cyclic; the session fails and
                releases the plan
        """
        with log_context(session=self.session_id):
            return await self._analyze(gaps)

    async def _analyze(self, gaps: Optional[list[Gap]]) -> SessionRecord:
        self._require(SessionState.CREATED)
        started = time.monotonic()
        self.record.graph_version = self.store.claim(self.session_id)
        graph, _ = self.store.snapshot()
        self.transition(SessionState.ANALYZING)

        if gaps is None:
            detect_started = time.monotonic()
            try:
                gaps = detect_graph_gaps(graph, self.config.detection)
            except Exception as e:
                self._fail_analysis(e)
                raise
            self.record.metrics.detection_ms = int((time.monotonic() - detect_started) * 1000)

        if not gaps:
            logger.info(f"Session {self.session_id}: no gaps found")
            self.record.metrics.total_ms = int((time.monotonic() - started) * 1000)
            self.transition(SessionState.ABORTED)
            return self.record

        self.record.gaps = [GapRecord(gap=gap) for gap in gaps]
        context = GraphContext(
            graph=graph,
            document_context=self.document_context,
            manual_examples=self.manual_examples,
        )
        semaphore = asyncio.Semaphore(self.config.pipeline.max_concurrent_gaps)

        async def run(gap_record: GapRecord) -> None:
            async with semaphore:
                await self._generate_for(gap_record, context)

        self._inflight = [asyncio.ensure_future(run(g)) for g in self.record.gaps]
        try:
            await asyncio.gather(*self._inflight)
        except asyncio.CancelledError:
            logger.info(f"Session {self.session_id}: analysis cancelled, results discarded")
            if self.record.state == SessionState.ABORTED:
                return self.record
            self._abort("Analysis cancelled")
            raise
        except Exception as e:
            for task in self._inflight:
                task.cancel()
            self._fail_analysis(e)
            raise
        finally:
            self._inflight = []

        if self.record.state == SessionState.ABORTED:
            return self.record

        self.record.metrics.total_ms = int((time.monotonic() - started) * 1000)
        proposed = sum(len(g.candidates) for g in self.record.gaps)
        logger.info(
            f"Session {self.session_id}: {len(gaps)} gaps, {proposed} candidates, "
            f"{len(self.record.failed_gaps)} generation failures"
        )
        self.transition(SessionState.AWAITING_REVIEW)
        return self.record

    def _fail_analysis(self, error: Exception) -> None:
        """Move to failed and release the plan; the caller re-raises."""
        logger.error(f"Session {self.session_id}: analysis failed: {error}")
        context: dict = {"type": type(error).__name__}
        if isinstance(error, CycleError):
            context["cycle"] = error.cycle
        self.transition(SessionState.FAILED, error_message=str(error), error_context=context)

    async def _generate_for(self, gap_record: GapRecord, context: GraphContext) -> None:
        gap = gap_record.gap
        stats = GenerationStats()
        gap_record.attempts += 1
        try:
            candidates = await self.pipeline.generate_candidates(
                gap, context, self.record.outcome_text, stats=stats
            )
        except GenerationFailure as failure:
            gap_record.status = GapStatus.GENERATION_FAILED
            gap_record.candidates = []
            gap_record.error = failure.to_dict()
            logger.warning(f"Session {self.session_id}: {gap.id} generation_failed ({failure.code})")
        else:
            gap_record.status = GapStatus.PROPOSED
            gap_record.candidates = [ReviewItem(candidate=c) for c in candidates]
            gap_record.error = None
        finally:
            self.record.metrics.generation_ms[gap.id] = stats.duration_ms
            self.record.metrics.search_query_count += stats.search_queries

    async def retry_gap(self, gap_id: str) -> GapRecord:
        """Re-run candidate generation for a failed gap.

        Raises:
            SessionStateError: If the session is not awaiting review
            DecisionValidationError: If the gap is unknown or did not fail
        """
        self._require(SessionState.AWAITING_REVIEW)
        gap_record = self.record.get_gap(gap_id)
        if gap_record is None:
            raise DecisionValidationError(f"Unknown gap: {gap_id}")
        if gap_record.status != GapStatus.GENERATION_FAILED:
            raise DecisionValidationError(f"Gap {gap_id} did not fail generation")

        graph, version = self.store.snapshot()
        if version != self.record.graph_version:
            raise StaleGraphError(
                f"Plan {self.store.plan_id} changed since analysis",
                expected_version=self.record.graph_version,
                actual_version=version,
            )

        logger.info(f"Session {self.session_id}: retrying {gap_id}")
        context = GraphContext(
            graph=graph,
            document_context=self.document_context,
            manual_examples=self.manual_examples,
        )
        with log_context(session=self.session_id):
            await self._generate_for(gap_record, context)
        self._save()
        return gap_record

    def _item(self, candidate_id: str) -> ReviewItem:
        found = self.record.find_item(candidate_id)
        if found is None:
            raise DecisionValidationError(f"Unknown candidate: {candidate_id}")
        return found[1]

    def _move(self, item: ReviewItem, new_state: CandidateState) -> None:
        if new_state not in self.CANDIDATE_TRANSITIONS[item.state]:
            raise StateTransitionError(
                f"Candidate {item.candidate.id} cannot go from {item.state.value} to {new_state.value}"
            )
        item.state = new_state

    def edit(
        self,
        candidate_id: str,
        text: Optional[str] = None,
        hours: Optional[float] = None,
    ) -> ReviewItem:
        """Edit a candidate's text or hours before accepting it."""
        self._require(SessionState.AWAITING_REVIEW)
        if text is None and hours is None:
            raise DecisionValidationError(f"Edit of {candidate_id} changes nothing")
        decision = parse_decisions(
            [{"candidate_id": candidate_id, "action": "accept", "edited_text": text, "edited_hours": hours}]
        )[0]
        item = self._item(candidate_id)
        self._move(item, CandidateState.EDITED)
        if decision.edited_text is not None:
            item.edited_text = decision.edited_text.strip()
        if decision.edited_hours is not None:
            item.edited_hours = decision.edited_hours
        self._save()
        return item

    def accept(self, candidate_id: str) -> ReviewItem:
        self._require(SessionState.AWAITING_REVIEW)
        item = self._item(candidate_id)
        self._move(item, CandidateState.ACCEPTED)
        self._save()
        return item

    def reject(self, candidate_id: str) -> ReviewItem:
        self._require(SessionState.AWAITING_REVIEW)
        item = self._item(candidate_id)
        self._move(item, CandidateState.REJECTED)
        self._save()
        return item

    def _check_decisions(self, decisions: list[Decision]) -> None:
        errors: list[str] = []
        seen: set[str] = set()
        for decision in decisions:
            if decision.candidate_id in seen:
                errors.append(f"Duplicate decision for candidate {decision.candidate_id}")
                continue
            seen.add(decision.candidate_id)

            found = self.record.find_item(decision.candidate_id)
            if found is None:
                errors.append(f"Unknown candidate: {decision.candidate_id}")
                continue
            item = found[1]
            target = CandidateState.ACCEPTED if decision.action == "accept" else CandidateState.REJECTED
            if item.state == target and decision.edited_text is None and decision.edited_hours is None:
                continue
            if target not in self.CANDIDATE_TRANSITIONS[item.state]:
                errors.append(
                    f"Candidate {decision.candidate_id} is already {item.state.value}"
                )
        if errors:
            raise DecisionValidationError(f"Invalid decisions: {errors[0]}", errors)

    def _apply_decisions(self, decisions: list[Decision]) -> None:
        for decision in decisions:
            item = self._item(decision.candidate_id)
            if decision.action == "reject":
                if item.state != CandidateState.REJECTED:
                    self._move(item, CandidateState.REJECTED)
                continue
            if decision.edited_text is not None or decision.edited_hours is not None:
                self._move(item, CandidateState.EDITED)
                if decision.edited_text is not None:
                    item.edited_text = decision.edited_text.strip()
                if decision.edited_hours is not None:
                    item.edited_hours = decision.edited_hours
            if item.state != CandidateState.ACCEPTED:
                self._move(item, CandidateState.ACCEPTED)

    def commit(self, decisions: Optional[list] = None) -> InsertionResult:
        """Apply decisions and insert every accepted candidate.

        Candidates left undecided are rejected. The graph is replaced in one
        step or not at all.

        Args:
            decisions: Decision dicts or Decision objects

        Returns:
            InsertionResult of the committed graph

        Raises:
            SessionStateError: If the session is not awaiting review (e.g.
                already committed)
            DecisionValidationError: On malformed decisions; the session
                stays awaiting_review
            CycleError: If insertion would create a cycle; the session fails
            StaleGraphError: If the plan changed since analysis; the session fails
        """
        with log_context(session=self.session_id):
            return self._commit(decisions)

    def _commit(self, decisions: Optional[list]) -> InsertionResult:
        if self.record.state == SessionState.COMMITTED:
            raise SessionStateError(
                f"Session {self.session_id} is already committed", state=self.record.state
            )
        self._require(SessionState.AWAITING_REVIEW)

        parsed = parse_decisions(decisions or [])
        self._check_decisions(parsed)
        self._apply_decisions(parsed)

        self.transition(SessionState.COMMITTING)

        insertions: list[GapInsertion] = []
        for gap_record in self.record.gaps:
            accepted: list[AcceptedCandidate] = []
            rejected: list[str] = []
            for item in gap_record.candidates:
                if item.state == CandidateState.ACCEPTED:
                    accepted.append(
                        AcceptedCandidate(
                            candidate=item.candidate,
                            text=item.final_text,
                            estimated_effort_hours=item.final_hours,
                        )
                    )
                else:
                    if item.state != CandidateState.REJECTED:
                        self._move(item, CandidateState.REJECTED)
                    rejected.append(item.candidate.id)
            insertions.append(GapInsertion(gap=gap_record.gap, accepted=accepted, rejected_ids=rejected))

        try:
            graph, version = self.store.snapshot()
            if version != self.record.graph_version:
                raise StaleGraphError(
                    f"Plan {self.store.plan_id} changed since analysis "
                    f"(v{self.record.graph_version} -> v{version})",
                    expected_version=self.record.graph_version,
                    actual_version=version,
                )
            result = insert_many(graph, insertions)
            self.store.commit(self.session_id, result.graph, self.record.graph_version)
        except CycleError as e:
            self.transition(
                SessionState.FAILED,
                error_message=str(e),
                error_context={
                    "type": "CycleError",
                    "cycle": e.cycle,
                    "edge": list(e.edge) if e.edge else None,
                    "candidate_id": e.candidate_id,
                },
            )
            raise
        except DecisionValidationError as e:
            self.transition(
                SessionState.FAILED,
                error_message=str(e),
                error_context={"type": "ValidationError", "errors": e.errors},
            )
            raise
        except (StaleGraphError, SessionConflictError) as e:
            self.transition(
                SessionState.FAILED,
                error_message=str(e),
                error_context={"type": type(e).__name__},
            )
            raise

        self.record.inserted_task_ids = result.inserted_task_ids
        self.record.metrics.insertion_ms = result.duration_ms
        self.transition(SessionState.COMMITTED)
        return result

    def _abort(self, reason: str) -> None:
        self.record.error_message = reason
        self.transition(SessionState.ABORTED)

    def cancel(self, reason: str = "Cancelled by user") -> None:
        """Abandon the session, discarding in-flight generation results.

        Raises:
            SessionStateError: If the session already finished
        """
        if self.is_terminal or self.record.state == SessionState.COMMITTING:
            raise SessionStateError(
                f"Session {self.session_id} is {self.record.state.value} and cannot be cancelled",
                state=self.record.state,
            )
        for task in self._inflight:
            task.cancel()
        self._abort(reason)
        logger.info(f"Session {self.session_id} cancelled: {reason}")
