"""Gap analysis service: the request/response boundary of a review session."""

import logging
from pathlib import Path
from typing import Optional

from ..config.models import GapFillConfig
from ..graph.dag import CycleError, TaskGraph
from ..graph.store import GraphStore, SessionConflictError, StaleGraphError
from ..insertion.validator import DecisionValidationError
from ..pipeline.candidates import CandidatePipeline
from ..state.persistence import (
    GapRecord,
    GapStatus,
    SessionRecord,
    SessionState,
    generate_session_id,
    list_sessions,
    load_session,
    session_path,
)
from .session import ReviewSession, SessionStateError

logger = logging.getLogger(__name__)

OPEN_STATES = (
    SessionState.CREATED,
    SessionState.ANALYZING,
    SessionState.AWAITING_REVIEW,
    SessionState.COMMITTING,
)


def cycle_error_payload(error: CycleError) -> dict:
    return {
        "type": "CycleError",
        "message": str(error),
        "cycle": error.cycle,
        "edge": list(error.edge) if error.edge else None,
        "candidate_id": error.candidate_id,
    }


def validation_error_payload(message: str, errors: Optional[list[str]] = None) -> dict:
    return {
        "type": "ValidationError",
        "message": message,
        "errors": errors or [message],
    }


def gap_payload(gap_record: GapRecord) -> dict:
    data = gap_record.gap.model_dump(mode="json")
    data["indicator_count"] = gap_record.gap.indicator_count
    data["status"] = gap_record.status.value
    return data


class GapAnalysisService:
    """Runs review sessions against per-plan graph stores.

    Open sessions live in memory; when ``state_dir`` is set their records are
    also persisted so a later process can resume, commit or abort them.
    Finished sessions are dropped from memory once their result is returned
    and stay readable only from ``state_dir``.
    """

    def __init__(
        self,
        pipeline: CandidatePipeline,
        config: Optional[GapFillConfig] = None,
        state_dir: Optional[Path] = None,
    ):
        """Initialize service.

        Args:
            pipeline: Candidate pipeline shared by all sessions
            config: Configuration
            state_dir: Directory for session records (None disables persistence)
        """
        self.pipeline = pipeline
        self.config = config or GapFillConfig()
        self.state_dir = Path(state_dir) if state_dir is not None else None
        self._stores: dict[str, GraphStore] = {}
        self._sessions: dict[str, ReviewSession] = {}

    def register_plan(self, graph: TaskGraph, plan_id: str = "plan", version: int = 0) -> GraphStore:
        """Create (or replace) the graph store for a plan.

        Raises:
            SessionConflictError: If a session currently holds the plan
        """
        existing = self._stores.get(plan_id)
        if existing is not None and existing.holder is not None:
            raise SessionConflictError(
                f"Plan {plan_id} is held by session {existing.holder}", holder=existing.holder
            )
        store = GraphStore(graph, plan_id=plan_id, version=version)
        self._stores[plan_id] = store
        return store

    def get_store(self, plan_id: str) -> Optional[GraphStore]:
        return self._stores.get(plan_id)

    def get_session(self, session_id: str) -> Optional[SessionRecord]:
        """Return a session record from memory or disk."""
        session = self._sessions.get(session_id)
        if session is not None:
            return session.record
        if self.state_dir is None:
            return None
        return load_session(session_path(self.state_dir, session_id))

    def _check_persisted_conflict(self, plan_id: str) -> None:
        if self.state_dir is None:
            return
        for record in list_sessions(self.state_dir):
            if (
                record.plan_id == plan_id
                and record.state in OPEN_STATES
                and record.session_id not in self._sessions
            ):
                raise SessionConflictError(
                    f"Plan {plan_id} already has an open review session {record.session_id}",
                    holder=record.session_id,
                )

    async def start_gap_analysis(
        self,
        plan_graph: Optional[TaskGraph] = None,
        plan_id: str = "plan",
        outcome_text: Optional[str] = None,
        document_context: Optional[str] = None,
        manual_examples: Optional[list[str]] = None,
        plan_path: Optional[Path] = None,
    ) -> dict:
        """Open a session, detect gaps and generate candidates.

        Args:
            plan_graph: Graph to analyse (default: the plan's registered graph)
            plan_id: Plan identifier
            outcome_text: User's stated outcome
            document_context: Surrounding document text
            manual_examples: Up to two user example tasks
            plan_path: Plan file the graph came from

        Returns:
            ``{session_id, gaps, candidates_by_gap, failed_gaps}``, or
            ``{session_id, gaps: []}`` when no gaps were found

        Raises:
            SessionConflictError: If another session holds the plan
            CycleError: If the graph is cyclic; no session is opened
        """
        store = self._stores.get(plan_id)
        if plan_graph is not None and (store is None or store.graph != plan_graph):
            version = store.version + 1 if store is not None else 0
            store = self.register_plan(plan_graph, plan_id, version=version)
        if store is None:
            raise ValueError(f"No graph registered for plan {plan_id}")

        # Cyclic plans are rejected before any session claims the store
        store.graph.topological_order()

        self._check_persisted_conflict(plan_id)

        record = SessionRecord(
            session_id=generate_session_id(),
            plan_id=plan_id,
            plan_path=str(plan_path) if plan_path else None,
            outcome_text=outcome_text,
        )
        session = ReviewSession(
            record=record,
            store=store,
            pipeline=self.pipeline,
            config=self.config,
            state_dir=self.state_dir,
            document_context=document_context,
            manual_examples=manual_examples,
        )

        self._sessions[record.session_id] = session
        try:
            await session.analyze()
        except SessionConflictError:
            del self._sessions[record.session_id]
            raise
        finally:
            self._forget_finished(record.session_id)

        return self.analysis_payload(record)

    def _forget_finished(self, session_id: str) -> None:
        """Drop a terminal session from memory; its record stays on disk."""
        session = self._sessions.get(session_id)
        if session is not None and session.is_terminal:
            del self._sessions[session_id]

    def analysis_payload(self, record: SessionRecord) -> dict:
        if not record.gaps:
            return {"session_id": record.session_id, "gaps": []}

        return {
            "session_id": record.session_id,
            "state": record.state.value,
            "gaps": [gap_payload(g) for g in record.gaps],
            "candidates_by_gap": {
                g.gap.id: [
                    {**item.candidate.model_dump(mode="json"), "state": item.state.value}
                    for item in g.candidates
                ]
                for g in record.gaps
                if g.status == GapStatus.PROPOSED
            },
            "failed_gaps": [{"gap_id": g.gap.id, "error": g.error} for g in record.failed_gaps],
        }

    def resume(self, session_id: str) -> Optional[ReviewSession]:
        """Rebuild a persisted session against its plan's registered store.

        Returns:
            The session, or None when no record exists

        Raises:
            ValueError: If the plan is not registered
            SessionConflictError: If another session holds the plan
        """
        session = self._sessions.get(session_id)
        if session is not None:
            return session

        record = self.get_session(session_id)
        if record is None:
            return None

        store = self._stores.get(record.plan_id)
        if store is None:
            raise ValueError(f"Plan {record.plan_id} is not registered")
        if record.state in OPEN_STATES:
            store.claim(session_id)

        session = ReviewSession(
            record=record,
            store=store,
            pipeline=self.pipeline,
            config=self.config,
            state_dir=self.state_dir,
        )
        self._sessions[session_id] = session
        logger.info(f"Resumed session {session_id} in state {record.state.value}")
        return session

    def commit_session(self, session_id: str, decisions: list) -> dict:
        """Apply decisions and commit accepted candidates.

        Returns:
            ``{status: committed, inserted_task_ids}`` or
            ``{status: failed, error}`` where error is a CycleError or
            ValidationError payload
        """
        try:
            session = self.resume(session_id)
        except (ValueError, SessionConflictError) as e:
            return {"status": "failed", "error": validation_error_payload(str(e))}
        if session is None:
            return {
                "status": "failed",
                "error": validation_error_payload(f"Unknown session: {session_id}"),
            }

        try:
            result = session.commit(decisions)
        except CycleError as e:
            return {"status": "failed", "error": cycle_error_payload(e)}
        except DecisionValidationError as e:
            return {"status": "failed", "error": validation_error_payload(str(e), e.errors)}
        except (StaleGraphError, SessionStateError, SessionConflictError) as e:
            return {"status": "failed", "error": validation_error_payload(str(e))}
        finally:
            self._forget_finished(session_id)

        return {
            "status": "committed",
            "inserted_task_ids": result.inserted_task_ids,
            "graph_version": session.store.version,
        }

    async def retry_gap(self, session_id: str, gap_id: str) -> dict:
        """Re-run generation for one failed gap.

        Raises:
            DecisionValidationError: If the session or gap is unknown
            SessionStateError: If the session is not awaiting review
        """
        session = self.resume(session_id)
        if session is None:
            raise DecisionValidationError(f"Unknown session: {session_id}")

        gap_record = await session.retry_gap(gap_id)
        return {
            "gap_id": gap_id,
            "status": gap_record.status.value,
            "candidates": [item.candidate.model_dump(mode="json") for item in gap_record.candidates],
            "error": gap_record.error,
        }

    def cancel_session(self, session_id: str, reason: str = "Cancelled by user") -> dict:
        """Abort a session; in-flight generation is cancelled.

        Raises:
            DecisionValidationError: If the session is unknown
            SessionStateError: If the session already finished
        """
        session = self.resume(session_id)
        if session is None:
            raise DecisionValidationError(f"Unknown session: {session_id}")
        try:
            session.cancel(reason)
        finally:
            self._forget_finished(session_id)
        return {"session_id": session_id, "state": session.state.value}
