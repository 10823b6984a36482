"""
Session Tracker.

Owns the single active learning session per learner. Sessions live in an
owned table (session id -> LearningSession) with a learner index; nothing
about a session is kept in ambient state.

Time accounting:
- elapsed time accrues continuously from start to end
- active time accrues only for gaps between consecutive events shorter
  than the idle threshold (default 120s)
- a gap longer than the session timeout (default 30 min) ends the session
  implicitly; the next start() opens a fresh one

Finalized summaries are persisted to the store; only the most recent ones
(summary_limit) stay in memory. Listeners registered with on_session_end()
hear about every session that ends or is dropped.
"""

from __future__ import annotations

import threading
from collections import OrderedDict, deque
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime
from uuid import uuid4

from loguru import logger

from progress_engine.config import Settings
from progress_engine.core.errors import SessionClosed, StoreUnavailable, UnknownSession
from progress_engine.core.models import (
    InteractionEvent,
    SessionEndReason,
    SessionSummary,
    ensure_aware,
    utcnow,
)
from progress_engine.db.store import ProgressStore


@dataclass(frozen=True)
class SessionConfig:
    idle_threshold_seconds: float = 120.0
    timeout_seconds: float = 1800.0
    event_log_limit: int = 500
    default_difficulty: int = 3
    summary_limit: int = 1000

    @classmethod
    def from_settings(cls, settings: Settings) -> SessionConfig:
        return cls(
            idle_threshold_seconds=settings.session_idle_threshold_seconds,
            timeout_seconds=settings.session_timeout_seconds,
            event_log_limit=settings.session_event_log_limit,
            default_difficulty=settings.difficulty_default,
            summary_limit=settings.session_summary_cache_size,
        )


@dataclass
class LearningSession:
    """Live session state. Mutated only by SessionTracker under its lock."""

    session_id: str
    learner_id: str
    started_at: datetime
    last_event_at: datetime
    difficulty_level: int
    pending_events: deque[InteractionEvent]
    active_seconds: float = 0.0
    event_count: int = 0
    active_unit_id: str | None = None
    seen_event_ids: set[str] = field(default_factory=set)

    def elapsed_seconds(self, now: datetime) -> float:
        return max(0.0, (ensure_aware(now) - self.started_at).total_seconds())

    def copy(self) -> LearningSession:
        return replace(
            self,
            pending_events=deque(self.pending_events, maxlen=self.pending_events.maxlen),
            seen_event_ids=set(self.seen_event_ids),
        )


class SessionTracker:
    """
    Track one active session per learner.

    Usage:
        session_id = tracker.start("learner-1")
        tracker.record(session_id, event)
        summary = tracker.end(session_id)
    """

    def __init__(self, config: SessionConfig | None = None, store: ProgressStore | None = None):
        self.config = config or SessionConfig()
        self._store = store
        self._lock = threading.RLock()
        self._sessions: dict[str, LearningSession] = {}
        self._by_learner: dict[str, str] = {}
        self._closed: OrderedDict[str, SessionSummary] = OrderedDict()
        self._end_listeners: list[Callable[[str], None]] = []

    def on_session_end(self, callback: Callable[[str], None]) -> None:
        """Register a callback taking the id of every session that ends or is dropped."""
        self._end_listeners.append(callback)

    # ========================================
    # Lifecycle
    # ========================================

    def start(self, learner_id: str, now: datetime | None = None) -> str:
        """
        Return the learner's active session, creating one if needed.

        Idempotent: a learner with a live session gets that session back.
        A session idle past the timeout is finalized first.
        """
        now = ensure_aware(now or utcnow())
        with self._lock:
            session_id = self._by_learner.get(learner_id)
            if session_id is not None:
                session = self._sessions[session_id]
                if not self._timed_out(session, now):
                    return session_id
                self._finalize(session, SessionEndReason.IDLE_TIMEOUT, session.last_event_at)

            session = LearningSession(
                session_id=uuid4().hex,
                learner_id=learner_id,
                started_at=now,
                last_event_at=now,
                difficulty_level=self.config.default_difficulty,
                pending_events=deque(maxlen=self.config.event_log_limit),
            )
            self._sessions[session.session_id] = session
            self._by_learner[learner_id] = session.session_id
        logger.info(f"Session {session.session_id} started for {learner_id}")
        return session.session_id

    def record(self, session_id: str, event: InteractionEvent) -> bool:
        """
        Add an event to the session's log and update time counters.

        Returns:
            False if the event id was already recorded in this session

        Raises:
            SessionClosed: session was ended explicitly or by idle timeout
            UnknownSession: session id was never issued
        """
        occurred_at = ensure_aware(event.occurred_at)
        with self._lock:
            session = self._live(session_id)
            if self._timed_out(session, occurred_at):
                self._finalize(session, SessionEndReason.IDLE_TIMEOUT, session.last_event_at)
                raise SessionClosed(session_id)
            if event.event_id in session.seen_event_ids:
                return False

            gap = (occurred_at - session.last_event_at).total_seconds()
            if 0 < gap < self.config.idle_threshold_seconds:
                session.active_seconds += gap
            if occurred_at > session.last_event_at:
                # Late (out-of-order) events never move the clock backwards
                session.last_event_at = occurred_at

            session.seen_event_ids.add(event.event_id)
            session.pending_events.append(event)
            session.event_count += 1
            session.active_unit_id = event.unit_id
            return True

    def end(self, session_id: str, now: datetime | None = None) -> SessionSummary:
        """
        Finalize a session and return its summary.

        Ending an already-closed session returns the stored summary.
        """
        with self._lock:
            if session_id in self._closed:
                return self._closed[session_id]
            session = self._live(session_id)
            end_at = ensure_aware(now or utcnow())
            return self._finalize(session, SessionEndReason.EXPLICIT, max(end_at, session.last_event_at))

    def expire_idle(self, now: datetime | None = None) -> list[SessionSummary]:
        """Finalize every session idle past the timeout."""
        now = ensure_aware(now or utcnow())
        with self._lock:
            expired = [s for s in self._sessions.values() if self._timed_out(s, now)]
            return [
                self._finalize(s, SessionEndReason.IDLE_TIMEOUT, s.last_event_at) for s in expired
            ]

    def end_all(self) -> list[SessionSummary]:
        """Finalize every live session at its last activity (shutdown)."""
        with self._lock:
            live = list(self._sessions.values())
            return [self._finalize(s, SessionEndReason.EXPLICIT, s.last_event_at) for s in live]

    def forget_learner(self, learner_id: str) -> None:
        """Drop the learner's live session and kept summaries without persisting anything."""
        with self._lock:
            session_id = self._by_learner.get(learner_id)
            if session_id is not None:
                self._drop(session_id)
            for closed_id in [k for k, v in self._closed.items() if v.learner_id == learner_id]:
                del self._closed[closed_id]

    # ========================================
    # Rollback of rejected events
    # ========================================

    def checkpoint(self, session_id: str) -> LearningSession:
        """Copy of a live session's state, taken before record()."""
        with self._lock:
            return self._live(session_id).copy()

    def restore(self, checkpoint: LearningSession) -> None:
        """Put a session back to a checkpoint; no-op once the session has ended."""
        with self._lock:
            if checkpoint.session_id in self._sessions:
                self._sessions[checkpoint.session_id] = checkpoint.copy()

    def abandon(self, session_id: str) -> None:
        """Drop a live session that never held a committed event; no summary is kept."""
        with self._lock:
            if session_id in self._sessions:
                self._drop(session_id)
                logger.debug(f"Session {session_id} abandoned")

    # ========================================
    # Accessors
    # ========================================

    def get(self, session_id: str) -> LearningSession:
        with self._lock:
            return self._live(session_id)

    def active_session_for(self, learner_id: str) -> str | None:
        with self._lock:
            return self._by_learner.get(learner_id)

    def summary(self, session_id: str) -> SessionSummary | None:
        with self._lock:
            return self._closed.get(session_id)

    def difficulty(self, session_id: str) -> int:
        with self._lock:
            return self._live(session_id).difficulty_level

    def set_difficulty(self, session_id: str, level: int) -> None:
        with self._lock:
            self._live(session_id).difficulty_level = level

    def flush(self, session_id: str) -> list[InteractionEvent]:
        """Drain the pending log once its events are committed."""
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return []
            drained = list(session.pending_events)
            session.pending_events.clear()
            return drained

    # ========================================
    # Internals
    # ========================================

    def _live(self, session_id: str) -> LearningSession:
        if session_id in self._closed:
            raise SessionClosed(session_id)
        session = self._sessions.get(session_id)
        if session is None:
            raise UnknownSession(session_id)
        return session

    def _drop(self, session_id: str) -> None:
        session = self._sessions.pop(session_id)
        if self._by_learner.get(session.learner_id) == session_id:
            del self._by_learner[session.learner_id]
        for callback in self._end_listeners:
            try:
                callback(session_id)
            except Exception as e:  # Listener faults are logged only
                logger.warning(f"Session end listener failed for {session_id}: {e}")

    def _timed_out(self, session: LearningSession, now: datetime) -> bool:
        return (now - session.last_event_at).total_seconds() > self.config.timeout_seconds

    def _finalize(
        self, session: LearningSession, reason: SessionEndReason, ended_at: datetime
    ) -> SessionSummary:
        summary = SessionSummary(
            session_id=session.session_id,
            learner_id=session.learner_id,
            started_at=session.started_at,
            ended_at=ended_at,
            elapsed_seconds=session.elapsed_seconds(ended_at),
            active_seconds=session.active_seconds,
            final_difficulty=session.difficulty_level,
            event_count=session.event_count,
            end_reason=reason,
        )
        self._drop(session.session_id)
        self._closed[session.session_id] = summary
        while len(self._closed) > self.config.summary_limit:
            self._closed.popitem(last=False)

        if self._store is not None:
            try:
                self._store.save_session_summary(summary)
            except StoreUnavailable as e:
                logger.error(f"Could not persist summary for session {session.session_id}: {e}")

        logger.info(
            f"Session {session.session_id} ended ({reason.value}): "
            f"{summary.event_count} events, {summary.active_seconds:.0f}s active "
            f"of {summary.elapsed_seconds:.0f}s"
        )
        return summary
