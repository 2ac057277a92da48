"""Versioned task graph store with single-writer sessions."""

import logging
import threading
from typing import Optional

from .dag import TaskGraph

logger = logging.getLogger(__name__)


class SessionConflictError(Exception):
    """Another review session already holds the graph."""

    def __init__(self, message: str, holder: str):
        super().__init__(message)
        self.holder = holder


class StaleGraphError(Exception):
    """The graph changed since a session took its snapshot."""

    def __init__(self, message: str, expected_version: int, actual_version: int):
        super().__init__(message)
        self.expected_version = expected_version
        self.actual_version = actual_version


class GraphStore:
    """Holds the current graph of one plan.

    Readers call ``snapshot`` at any time and receive an immutable graph.
    Commits swap the graph reference in a single step under a lock, so a
    reader sees either the old or the new graph. At most one review session
    may hold uncommitted proposals at a time.
    """

    def __init__(self, graph: TaskGraph, plan_id: str = "plan", version: int = 0):
        """Initialize store.

        Args:
            graph: Initial graph
            plan_id: Identifier of the plan this store holds
            version: Starting version number
        """
        self.plan_id = plan_id
        self._graph = graph
        self._version = version
        self._lock = threading.Lock()
        self._holder: Optional[str] = None

    @property
    def version(self) -> int:
        return self._version

    @property
    def holder(self) -> Optional[str]:
        """Session currently holding the write claim."""
        return self._holder

    def snapshot(self) -> tuple[TaskGraph, int]:
        """Return the current graph and its version."""
        with self._lock:
            return self._graph, self._version

    @property
    def graph(self) -> TaskGraph:
        return self.snapshot()[0]

    def claim(self, session_id: str) -> int:
        """Claim the single-writer slot for a session.

        Args:
            session_id: Claiming session

        Returns:
            Graph version the session works against

        Raises:
            SessionConflictError: If another session holds the claim
        """
        with self._lock:
            if self._holder is not None and self._holder != session_id:
                raise SessionConflictError(
                    f"Plan {self.plan_id} already has an active review session {self._holder}",
                    holder=self._holder,
                )
            self._holder = session_id
            logger.debug(f"Session {session_id} claimed plan {self.plan_id} at v{self._version}")
            return self._version

    def release(self, session_id: str) -> None:
        """Release the claim if held by this session."""
        with self._lock:
            if self._holder == session_id:
                self._holder = None
                logger.debug(f"Session {session_id} released plan {self.plan_id}")

    def commit(self, session_id: str, graph: TaskGraph, expected_version: int) -> int:
        """Replace the graph atomically.

        Args:
            session_id: Committing session (must hold the claim)
            graph: Fully validated new graph
            expected_version: Version the session analysed

        Returns:
            New version number

        Raises:
            SessionConflictError: If the session does not hold the claim
            StaleGraphError: If the graph changed since expected_version
        """
        with self._lock:
            if self._holder != session_id:
                raise SessionConflictError(
                    f"Session {session_id} does not hold plan {self.plan_id}",
                    holder=self._holder or "",
                )
            if self._version != expected_version:
                raise StaleGraphError(
                    f"Plan {self.plan_id} changed (v{expected_version} -> v{self._version})",
                    expected_version=expected_version,
                    actual_version=self._version,
                )
            self._graph = graph
            self._version += 1
            logger.info(f"Plan {self.plan_id} committed at v{self._version} ({len(graph)} tasks)")
            return self._version
