"""
Adaptation Engine.

Adjusts a session's difficulty level from a sliding window of the last K
classified responses (K = 3 by default):

- K consecutive struggling responses -> one level down (clamped at the floor)
- K consecutive mastery responses    -> one level up (clamped at the ceiling),
                                        unless the active unit is complete
- anything else                      -> NoAdaptation with the reason

Difficulty is session-scoped and never persisted to the learner profile.
The window is cleared after every adjustment so one run of K responses
produces exactly one change.
"""
from __future__ import annotations

import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime

from loguru import logger

from progress_engine.adaptive.session_tracker import SessionTracker
from progress_engine.config import Settings
from progress_engine.core.hierarchy import HierarchyHolder
from progress_engine.core.learners import LearnerDirectory
from progress_engine.core.models import (
    COMPLETION_TOLERANCE,
    AdaptationDecision,
    NoAdaptation,
    NoAdaptationReason,
    ResponsePattern,
    ResponseSignal,
    TriggerReason,
    WindowEntry,
    utcnow,
)
from progress_engine.integrations.recommendation import (
    ContentRecommendationProvider,
    recommend_with_timeout,
)


@dataclass(frozen=True)
class AdaptationConfig:
    window_size: int = 3
    min_level: int = 1
    max_level: int = 5
    slow_ratio: float = 1.5
    fast_ratio: float = 1.0
    low_confidence: int = 2
    recommendation_timeout_seconds: float = 2.0

    @classmethod
    def from_settings(cls, settings: Settings) -> AdaptationConfig:
        return cls(
            window_size=settings.adaptation_window,
            min_level=settings.difficulty_min,
            max_level=settings.difficulty_max,
            slow_ratio=settings.slow_response_ratio,
            fast_ratio=settings.fast_response_ratio,
            low_confidence=settings.low_confidence_rating,
            recommendation_timeout_seconds=settings.recommendation_timeout_seconds,
        )


def classify_response(signal: ResponseSignal, config: AdaptationConfig) -> ResponsePattern:
    """
    Classify one response for the sliding window.

    Struggling: incorrect, or correct but slower than slow_ratio x expected.
    Mastery: correct, at or under fast_ratio x expected, and the learner did
    not report low confidence.
    """
    ratio = signal.time_ratio
    if not signal.correct or ratio > config.slow_ratio:
        return ResponsePattern.STRUGGLING
    low_confidence = (
        signal.self_confidence is not None and signal.self_confidence <= config.low_confidence
    )
    if ratio <= config.fast_ratio and not low_confidence:
        return ResponsePattern.MASTERY
    return ResponsePattern.NEUTRAL


class AdaptationEngine:
    """
    Per-session difficulty adaptation.

    Usage:
        engine = AdaptationEngine(tracker, recommender=provider, hierarchy_holder=holder)
        outcome = engine.adapt(session_id, signal, unit_fraction=0.4)
    """

    def __init__(
        self,
        tracker: SessionTracker,
        config: AdaptationConfig | None = None,
        recommender: ContentRecommendationProvider | None = None,
        hierarchy_holder: HierarchyHolder | None = None,
        learners: LearnerDirectory | None = None,
    ):
        self.tracker = tracker
        self.config = config or AdaptationConfig()
        self.recommender = recommender
        self.hierarchy_holder = hierarchy_holder
        self.learners = learners or LearnerDirectory()
        self._lock = threading.Lock()
        self._windows: dict[str, deque[WindowEntry]] = {}
        self._recommended: dict[str, set[str]] = {}
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="recommend")
        tracker.on_session_end(self.discard)

    def adapt(
        self,
        session_id: str,
        signal: ResponseSignal,
        unit_fraction: float = 0.0,
        now: datetime | None = None,
    ) -> AdaptationDecision | NoAdaptation:
        """
        Add a response to the session window and adjust difficulty if warranted.

        Args:
            session_id: Active session
            signal: Correctness, timing and self-confidence of the response
            unit_fraction: Committed completion fraction of the active unit
            now: Decision timestamp (defaults to UTC now)

        Returns:
            AdaptationDecision when the level changed, NoAdaptation otherwise

        Raises:
            SessionClosed / UnknownSession: session is not live
        """
        session = self.tracker.get(session_id)
        if not self.learners.personalization_allowed(session.learner_id):
            return NoAdaptation(session_id, NoAdaptationReason.PERSONALIZATION_DISABLED)

        current = session.difficulty_level
        pattern = classify_response(signal, self.config)
        entry = WindowEntry(
            correct=signal.correct,
            time_ratio=signal.time_ratio,
            self_confidence=signal.self_confidence,
            difficulty=current,
            pattern=pattern,
        )

        with self._lock:
            window = self._windows.setdefault(session_id, deque(maxlen=self.config.window_size))
            window.append(entry)
            snapshot = tuple(window)

            if len(snapshot) < self.config.window_size:
                return NoAdaptation(session_id, NoAdaptationReason.INSUFFICIENT_WINDOW, len(snapshot))

            patterns = {e.pattern for e in snapshot}
            if patterns == {ResponsePattern.STRUGGLING}:
                reason = TriggerReason.STRUGGLING_PATTERN
                target = max(self.config.min_level, current - 1)
            elif patterns == {ResponsePattern.MASTERY}:
                if unit_fraction >= 1.0 - COMPLETION_TOLERANCE:
                    return NoAdaptation(session_id, NoAdaptationReason.UNIT_COMPLETE, len(snapshot))
                reason = TriggerReason.MASTERY_PATTERN
                target = min(self.config.max_level, current + 1)
            else:
                return NoAdaptation(session_id, NoAdaptationReason.MIXED_WINDOW, len(snapshot))

            window.clear()

        if target == current:
            logger.debug(f"Session {session_id} already at level {current}; {reason.value} ignored")
            return NoAdaptation(session_id, NoAdaptationReason.AT_BOUND, len(snapshot))

        self.tracker.set_difficulty(session_id, target)
        recommended = self._recommend(session_id, signal, session.active_unit_id, target)

        logger.info(
            f"Session {session_id}: difficulty {current} -> {target} ({reason.value})"
            + (f", recommending {recommended}" if recommended else "")
        )
        return AdaptationDecision(
            session_id=session_id,
            reason=reason,
            previous_difficulty=current,
            new_difficulty=target,
            recommended_unit_id=recommended,
            window=snapshot,
            decided_at=now or utcnow(),
        )

    def window(self, session_id: str) -> tuple[WindowEntry, ...]:
        with self._lock:
            return tuple(self._windows.get(session_id, ()))

    def discard(self, session_id: str) -> None:
        """Drop per-session state once the session ends."""
        with self._lock:
            self._windows.pop(session_id, None)
            self._recommended.pop(session_id, None)

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    # ========================================
    # Internals
    # ========================================

    def _recommend(
        self,
        session_id: str,
        signal: ResponseSignal,
        active_unit_id: str | None,
        level: int,
    ) -> str | None:
        objective_id = signal.objective_id or self._objective_of(active_unit_id)
        if objective_id is None:
            return None

        with self._lock:
            exclude = set(self._recommended.get(session_id, ()))
        if active_unit_id:
            exclude.add(active_unit_id)

        unit = recommend_with_timeout(
            self.recommender,
            self._executor,
            objective_id,
            level,
            exclude,
            self.config.recommendation_timeout_seconds,
        )
        if unit is None:
            return None
        if unit.unit_id in exclude:
            logger.warning(f"Recommender returned excluded unit {unit.unit_id}; dropping it")
            return None

        with self._lock:
            self._recommended.setdefault(session_id, set()).add(unit.unit_id)
        return unit.unit_id

    def _objective_of(self, unit_id: str | None) -> str | None:
        if unit_id is None:
            return None
        if self.hierarchy_holder is not None and unit_id in self.hierarchy_holder.current:
            unit = self.hierarchy_holder.current.get(unit_id)
            if unit.objective_ids:
                return unit.objective_ids[0]
        return unit_id
