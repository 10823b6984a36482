"""
Error taxonomy for the progress engine.

Validation and prerequisite errors are raised synchronously to the caller.
Write conflicts and store outages are transient: the coordinator retries them
and only surfaces CommitFailed once the retry budget is spent.
"""

from __future__ import annotations

from collections.abc import Iterable


class ProgressEngineError(Exception):
    """Base class for every error raised by the engine."""


class ValidationError(ProgressEngineError):
    """Malformed event or request; rejected before anything is applied."""


class HierarchyError(ValidationError):
    """Content hierarchy snapshot is inconsistent."""


class UnknownSession(ValidationError):
    """Session id was never issued by this tracker."""

    def __init__(self, session_id: str):
        super().__init__(f"Unknown session: {session_id}")
        self.session_id = session_id


class PrerequisiteUnmet(ProgressEngineError):
    """Section update rejected because a prerequisite unit is incomplete."""

    def __init__(self, unit_id: str, missing: Iterable[str]):
        self.unit_id = unit_id
        self.missing = tuple(missing)
        super().__init__(
            f"Unit {unit_id} has incomplete prerequisites: {', '.join(self.missing)}"
        )


class ConcurrentWriteConflict(ProgressEngineError):
    """Optimistic concurrency check failed on a progress record write."""

    def __init__(self, learner_id: str, unit_id: str, expected: int, actual: int | None):
        self.learner_id = learner_id
        self.unit_id = unit_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Version conflict for ({learner_id}, {unit_id}): expected {expected}, found {actual}"
        )


class StoreUnavailable(ProgressEngineError):
    """Persistence backend could not be reached or failed mid-transaction."""


class CommitFailed(ProgressEngineError):
    """Event could not be committed after exhausting the retry budget."""

    def __init__(self, event_id: str, attempts: int, cause: Exception | None = None):
        self.event_id = event_id
        self.attempts = attempts
        self.cause = cause
        super().__init__(f"Event {event_id} not committed after {attempts} attempts: {cause}")


class SessionClosed(ProgressEngineError):
    """Operation attempted on a finalized session."""

    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} is closed")
        self.session_id = session_id


# Errors the coordinator retries before giving up with CommitFailed
TRANSIENT_ERRORS: tuple[type[Exception], ...] = (ConcurrentWriteConflict, StoreUnavailable)
