"""
Event Coordinator.

Entry point for every mutating interaction. Guarantees:

- at most one in-flight mutation per learner: learners are partitioned over
  a fixed pool of worker threads by a stable CRC32 hash, and each worker
  drains its own FIFO queue, so one learner's events commit in submission
  order while different learners proceed in parallel
- all downstream writes for one event (section, lesson, course records,
  evidence, mastery decisions, committed-event ledger) land in a single
  store transaction or not at all
- transient store failures are retried with bounded exponential backoff,
  then surfaced as CommitFailed
- resubmitting an event id returns the original CommitResult
"""
from __future__ import annotations

import queue
import threading
import time
import zlib
from collections import OrderedDict
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass, replace
from datetime import datetime

from loguru import logger

from progress_engine.adaptive.adaptation_engine import AdaptationEngine
from progress_engine.adaptive.session_tracker import LearningSession, SessionTracker
from progress_engine.config import Settings
from progress_engine.core.errors import (
    TRANSIENT_ERRORS,
    CommitFailed,
    ProgressEngineError,
    SessionClosed,
    ValidationError,
)
from progress_engine.core.events import (
    DifficultyAdapted,
    EventPublisher,
    MasteryAchieved,
    ProgressChanged,
)
from progress_engine.core.hierarchy import HierarchyHolder
from progress_engine.core.models import (
    AdaptationDecision,
    AssessmentEvidence,
    CommitResult,
    CommittedEvent,
    InteractionEvent,
    MasteryDecision,
    NoAdaptation,
    ProgressDelta,
    UpdatedRecords,
    ensure_aware,
)
from progress_engine.core.validation import validate_event
from progress_engine.db.store import ProgressStore
from progress_engine.progress.aggregator import ProgressAggregator
from progress_engine.progress.mastery import MasteryConfig, MasteryEvaluator

_STOP = object()


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for transient store failures."""

    max_attempts: int = 4
    backoff_base_seconds: float = 0.05
    backoff_max_seconds: float = 1.0

    def delay(self, attempt: int) -> float:
        """Wait before retrying after the given (1-based) failed attempt."""
        return min(self.backoff_max_seconds, self.backoff_base_seconds * 2 ** (attempt - 1))

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        return cls(
            max_attempts=settings.commit_max_attempts,
            backoff_base_seconds=settings.commit_backoff_base_seconds,
            backoff_max_seconds=settings.commit_backoff_max_seconds,
        )


@dataclass(frozen=True)
class _Committed:
    """What a successful store transaction produced."""

    updated: UpdatedRecords
    decisions: tuple[MasteryDecision, ...]
    newly_achieved: tuple[MasteryDecision, ...]
    unit_fraction: float
    attempts: int


class _ResultCache:
    """Thread-safe LRU of committed results keyed by event id."""

    def __init__(self, capacity: int):
        self.capacity = capacity
        self._items: OrderedDict[str, CommitResult] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, event_id: str) -> CommitResult | None:
        with self._lock:
            result = self._items.get(event_id)
            if result is not None:
                self._items.move_to_end(event_id)
            return result

    def put(self, result: CommitResult) -> None:
        with self._lock:
            self._items[result.event_id] = result
            self._items.move_to_end(result.event_id)
            while len(self._items) > self.capacity:
                self._items.popitem(last=False)

    def forget_learner(self, learner_id: str) -> None:
        with self._lock:
            for event_id in [k for k, v in self._items.items() if v.learner_id == learner_id]:
                del self._items[event_id]


def partition_for(learner_id: str, worker_count: int) -> int:
    """Stable worker index for a learner (same learner, same worker, every run)."""
    return zlib.crc32(learner_id.encode("utf-8")) % worker_count


class EventCoordinator:
    """
    Serialize per-learner mutations over a fixed worker pool.

    Usage:
        with EventCoordinator(holder, store, tracker, adaptation) as coordinator:
            result = coordinator.submit("learner-1", event)
    """

    def __init__(
        self,
        holder: HierarchyHolder,
        store: ProgressStore,
        tracker: SessionTracker,
        adaptation: AdaptationEngine,
        mastery_config: MasteryConfig | None = None,
        publisher: EventPublisher | None = None,
        worker_count: int = 4,
        retry: RetryPolicy | None = None,
        cache_size: int = 10000,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if worker_count < 1:
            raise ValueError("worker_count must be >= 1")
        self.holder = holder
        self.store = store
        self.tracker = tracker
        self.adaptation = adaptation
        self.mastery_config = mastery_config or MasteryConfig()
        self.publisher = publisher
        self.retry = retry or RetryPolicy()
        self._sleep = sleep
        self._cache = _ResultCache(cache_size)
        self._closed = False
        self._queues: list[queue.Queue] = [queue.Queue() for _ in range(worker_count)]
        self._workers = [
            threading.Thread(
                target=self._run_worker,
                args=(q,),
                name=f"progress-worker-{i}",
                daemon=True,
            )
            for i, q in enumerate(self._queues)
        ]
        for worker in self._workers:
            worker.start()
        logger.debug(f"EventCoordinator started with {worker_count} workers")

    # ========================================
    # Submission
    # ========================================

    def submit(self, learner_id: str, event: InteractionEvent) -> CommitResult:
        """
        Submit an event and wait for its commit.

        Raises:
            ValidationError: malformed event (raised before queueing)
            PrerequisiteUnmet: section gated by an incomplete prerequisite
            CommitFailed: transient failures outlasted the retry budget
        """
        return self.submit_async(learner_id, event).result()

    def submit_async(self, learner_id: str, event: InteractionEvent) -> Future:
        """
        Queue an event on its learner's worker.

        Validation runs synchronously so malformed input never enters a queue.

        Returns:
            Future resolving to the CommitResult
        """
        if self._closed:
            raise RuntimeError("EventCoordinator is closed")
        if event.learner_id != learner_id:
            raise ValidationError(
                f"Event {event.event_id} belongs to {event.learner_id}, not {learner_id}"
            )
        validate_event(event, self.holder.current)

        future: Future = Future()
        self._queues[partition_for(learner_id, len(self._queues))].put((event, future))
        return future

    def forget_learner(self, learner_id: str) -> None:
        """Drop cached results for a learner whose data was purged."""
        self._cache.forget_learner(learner_id)

    def close(self, timeout: float | None = None) -> None:
        """Drain queued events and stop the workers."""
        if self._closed:
            return
        self._closed = True
        for q in self._queues:
            q.put(_STOP)
        for worker in self._workers:
            worker.join(timeout)
        logger.debug("EventCoordinator stopped")

    def __enter__(self) -> EventCoordinator:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ========================================
    # Worker
    # ========================================

    def _run_worker(self, q: queue.Queue) -> None:
        while True:
            item = q.get()
            if item is _STOP:
                return
            event, future = item
            if not future.set_running_or_notify_cancel():
                continue
            try:
                future.set_result(self._process(event))
            except Exception as e:  # Delivered to the submitter through the future
                future.set_exception(e)

    def _process(self, event: InteractionEvent) -> CommitResult:
        cached = self._cache.get(event.event_id)
        if cached is not None:
            logger.debug(f"Duplicate event {event.event_id}; returning cached result")
            return replace(cached, duplicate=True)
        prior = self._ledger_entry(event.event_id)
        if prior is not None:
            logger.info(f"Event {event.event_id} already committed; replaying its ledger entry")
            return self._replay(prior)

        occurred_at = ensure_aware(event.occurred_at)
        session_id, checkpoint = self._record_in_session(event, occurred_at)

        try:
            committed = self._commit_with_retry(event, session_id, occurred_at)
        except CommitFailed:
            # The session keeps the event so a resubmission is not counted twice
            raise
        except Exception:
            self._undo_session(session_id, checkpoint)
            raise
        if isinstance(committed, CommittedEvent):
            # Another submission of this id won the race inside the store
            self._undo_session(session_id, checkpoint)
            return self._replay(committed)

        adaptation = None
        if event.response is not None:
            adaptation = self._adapt(session_id, event, committed.unit_fraction, occurred_at)
        self.tracker.flush(session_id)

        result = CommitResult(
            event_id=event.event_id,
            learner_id=event.learner_id,
            session_id=session_id,
            records=committed.updated.records,
            decisions=committed.decisions,
            adaptation=adaptation,
            attempts=committed.attempts,
        )
        self._cache.put(result)
        self._publish(event, committed, adaptation)
        return result

    def _replay(self, entry: CommittedEvent) -> CommitResult:
        result = entry.to_result(duplicate=False)
        self._cache.put(result)
        return replace(result, duplicate=True)

    def _ledger_entry(self, event_id: str) -> CommittedEvent | None:
        try:
            return self.store.get_event(event_id)
        except TRANSIENT_ERRORS as e:
            # The commit transaction checks the ledger again under retry
            logger.warning(f"Ledger lookup for {event_id} failed: {e}")
            return None

    def _record_in_session(
        self, event: InteractionEvent, occurred_at: datetime
    ) -> tuple[str, LearningSession | None]:
        """
        Record the event in the learner's session before committing.

        Returns:
            Session id, and a checkpoint of the session before the event
            (None when the session was opened for this event)
        """
        previous = self.tracker.active_session_for(event.learner_id)
        session_id = self.tracker.start(event.learner_id, now=occurred_at)
        try:
            checkpoint = self.tracker.checkpoint(session_id) if session_id == previous else None
            self.tracker.record(session_id, event)
        except SessionClosed:
            # Ended between start() and record(); open a fresh one
            session_id = self.tracker.start(event.learner_id, now=occurred_at)
            checkpoint = None
            self.tracker.record(session_id, event)
        return session_id, checkpoint

    def _undo_session(self, session_id: str, checkpoint: LearningSession | None) -> None:
        if checkpoint is None:
            self.tracker.abandon(session_id)
        else:
            self.tracker.restore(checkpoint)

    def _commit_with_retry(
        self, event: InteractionEvent, session_id: str, occurred_at: datetime
    ) -> _Committed | CommittedEvent:
        for attempt in range(1, self.retry.max_attempts + 1):
            try:
                return self._commit_once(event, session_id, occurred_at, attempt)
            except TRANSIENT_ERRORS as e:
                if attempt >= self.retry.max_attempts:
                    logger.error(
                        f"Event {event.event_id} failed after {attempt} attempts: {e}"
                    )
                    raise CommitFailed(event.event_id, attempt, e) from e
                wait = self.retry.delay(attempt)
                logger.warning(
                    f"Transient failure committing {event.event_id} "
                    f"(attempt {attempt}/{self.retry.max_attempts}): {e}. Retrying in {wait:.2f}s"
                )
                self._sleep(wait)
        raise CommitFailed(event.event_id, self.retry.max_attempts)

    def _commit_once(
        self, event: InteractionEvent, session_id: str, occurred_at: datetime, attempt: int
    ) -> _Committed | CommittedEvent:
        # One snapshot for the whole event, even if a refresh lands mid-commit
        snapshot = self.holder.current
        aggregator = ProgressAggregator(snapshot)
        evaluator = MasteryEvaluator(snapshot, self.mastery_config)

        with self.store.transaction() as tx:
            prior = tx.get_event(event.event_id)
            if prior is not None:
                return prior

            updated = aggregator.apply_section_progress(
                tx, event.learner_id, event.unit_id, ProgressDelta.from_event(event)
            )

            decisions = []
            newly_achieved = []
            for objective_id, evidence in _group_by_objective(event.evidence).items():
                previous = tx.latest_decision(event.learner_id, objective_id)
                decision = evaluator.evaluate(
                    tx, event.learner_id, objective_id, evidence, now=occurred_at
                )
                decisions.append(decision)
                if decision.is_achieved and (previous is None or not previous.is_achieved):
                    newly_achieved.append(decision)

            unit_fraction = aggregator.unit_fraction(tx, event.learner_id, event.unit_id)
            tx.mark_event(
                CommittedEvent(
                    event_id=event.event_id,
                    learner_id=event.learner_id,
                    committed_at=occurred_at,
                    session_id=session_id,
                    records=updated.records,
                    decisions=tuple(decisions),
                )
            )

        return _Committed(
            updated=updated,
            decisions=tuple(decisions),
            newly_achieved=tuple(newly_achieved),
            unit_fraction=unit_fraction,
            attempts=attempt,
        )

    def _adapt(
        self,
        session_id: str,
        event: InteractionEvent,
        unit_fraction: float,
        occurred_at: datetime,
    ) -> AdaptationDecision | NoAdaptation | None:
        try:
            return self.adaptation.adapt(session_id, event.response, unit_fraction, now=occurred_at)
        except ProgressEngineError as e:
            # The event is already committed; adaptation is best effort
            logger.warning(f"Adaptation skipped for {event.event_id}: {e}")
            return None

    def _publish(
        self,
        event: InteractionEvent,
        committed: _Committed,
        adaptation: AdaptationDecision | NoAdaptation | None,
    ) -> None:
        if self.publisher is None:
            return
        emitted = [ProgressChanged.from_change(event.event_id, c) for c in committed.updated.changes]
        emitted += [MasteryAchieved.from_decision(event.event_id, d) for d in committed.newly_achieved]
        if isinstance(adaptation, AdaptationDecision):
            emitted.append(DifficultyAdapted.from_decision(event.event_id, event.learner_id, adaptation))
        for item in emitted:
            try:
                self.publisher.publish(item)
            except Exception as e:  # Commit already succeeded; publication is a side channel
                logger.warning(f"Publishing {item.event_type} for {event.event_id} failed: {e}")


def _group_by_objective(
    evidence: tuple[AssessmentEvidence, ...],
) -> dict[str, list[AssessmentEvidence]]:
    grouped: dict[str, list[AssessmentEvidence]] = {}
    for item in evidence:
        grouped.setdefault(item.objective_id, []).append(item)
    return grouped
