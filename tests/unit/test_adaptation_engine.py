"""
Unit tests for AdaptationEngine.

Sessions start at difficulty 3 on a 1-5 scale with a window of K=3.
"""

import threading

import pytest

from progress_engine.adaptive.adaptation_engine import (
    AdaptationConfig,
    AdaptationEngine,
    classify_response,
)
from progress_engine.adaptive.session_tracker import SessionConfig, SessionTracker
from progress_engine.core.learners import LearnerDirectory
from progress_engine.core.models import (
    AdaptationDecision,
    Learner,
    NoAdaptation,
    NoAdaptationReason,
    ResponsePattern,
    ResponseSignal,
    TriggerReason,
)
from progress_engine.integrations.recommendation import StaticRecommendationProvider

WRONG = ResponseSignal(correct=False, response_time_seconds=20, expected_time_seconds=30)
SLOW = ResponseSignal(correct=True, response_time_seconds=60, expected_time_seconds=30)
FAST = ResponseSignal(correct=True, response_time_seconds=20, expected_time_seconds=30)
STEADY = ResponseSignal(correct=True, response_time_seconds=40, expected_time_seconds=30)


class RecordingProvider:
    """Returns a fixed unit per call and remembers what was excluded."""

    def __init__(self, holder, unit_ids):
        self.holder = holder
        self.unit_ids = list(unit_ids)
        self.calls = []

    def recommend(self, objective_id, difficulty_level, exclude_unit_ids):
        self.calls.append((objective_id, difficulty_level, set(exclude_unit_ids)))
        return self.holder.current.get(self.unit_ids.pop(0)) if self.unit_ids else None


@pytest.fixture
def session_id(tracker, make_event, t0):
    sid = tracker.start("learner-1", now=t0)
    tracker.record(sid, make_event("S1"))
    return sid


@pytest.fixture
def adaptation(tracker, holder):
    engine = AdaptationEngine(
        tracker,
        AdaptationConfig(recommendation_timeout_seconds=0.5),
        recommender=StaticRecommendationProvider(holder),
        hierarchy_holder=holder,
    )
    yield engine
    engine.close()


def feed(engine, session_id, signals, unit_fraction=0.0):
    return [engine.adapt(session_id, s, unit_fraction=unit_fraction) for s in signals]


class TestClassifyResponse:
    config = AdaptationConfig()

    def test_incorrect_is_struggling(self):
        assert classify_response(WRONG, self.config) == ResponsePattern.STRUGGLING

    def test_correct_but_slow_is_struggling(self):
        assert classify_response(SLOW, self.config) == ResponsePattern.STRUGGLING

    def test_correct_and_fast_is_mastery(self):
        assert classify_response(FAST, self.config) == ResponsePattern.MASTERY

    def test_fast_with_low_confidence_is_neutral(self):
        unsure = ResponseSignal(True, 20, 30, self_confidence=2)
        assert classify_response(unsure, self.config) == ResponsePattern.NEUTRAL

    def test_correct_at_normal_pace_is_neutral(self):
        assert classify_response(STEADY, self.config) == ResponsePattern.NEUTRAL


class TestWindowSizing:
    def test_fewer_than_k_responses_never_adapt(self, adaptation, session_id):
        outcomes = feed(adaptation, session_id, [WRONG, WRONG])

        assert all(isinstance(o, NoAdaptation) for o in outcomes)
        assert outcomes[-1].reason == NoAdaptationReason.INSUFFICIENT_WINDOW
        assert outcomes[-1].window_size == 2

    def test_k_struggling_responses_lower_once(self, adaptation, tracker, session_id):
        outcome = feed(adaptation, session_id, [WRONG, SLOW, WRONG])[-1]

        assert isinstance(outcome, AdaptationDecision)
        assert outcome.reason == TriggerReason.STRUGGLING_PATTERN
        assert (outcome.previous_difficulty, outcome.new_difficulty) == (3, 2)
        assert len(outcome.window) == 3
        assert tracker.difficulty(session_id) == 2

    def test_one_adjustment_per_window(self, adaptation, session_id):
        outcomes = feed(adaptation, session_id, [WRONG] * 6)
        decisions = [o for o in outcomes if isinstance(o, AdaptationDecision)]

        assert [outcomes.index(d) for d in decisions] == [2, 5]
        assert [(d.previous_difficulty, d.new_difficulty) for d in decisions] == [(3, 2), (2, 1)]

    def test_window_cleared_after_adjustment(self, adaptation, session_id):
        feed(adaptation, session_id, [WRONG] * 3)
        assert adaptation.window(session_id) == ()

    def test_mixed_window_holds_level(self, adaptation, tracker, session_id):
        outcome = feed(adaptation, session_id, [WRONG, FAST, WRONG])[-1]

        assert outcome.reason == NoAdaptationReason.MIXED_WINDOW
        assert tracker.difficulty(session_id) == 3


class TestRaise:
    def test_k_mastery_responses_raise(self, adaptation, session_id):
        outcome = feed(adaptation, session_id, [FAST] * 3, unit_fraction=0.5)[-1]

        assert outcome.reason == TriggerReason.MASTERY_PATTERN
        assert (outcome.previous_difficulty, outcome.new_difficulty) == (3, 4)
        assert outcome.recommended_unit_id == "S4"

    def test_no_raise_once_unit_complete(self, adaptation, tracker, session_id):
        outcome = feed(adaptation, session_id, [FAST] * 3, unit_fraction=1.0)[-1]

        assert isinstance(outcome, NoAdaptation)
        assert outcome.reason == NoAdaptationReason.UNIT_COMPLETE
        assert tracker.difficulty(session_id) == 3


class TestBounds:
    def test_floor_clamped(self, store, holder, t0):
        tracker = SessionTracker(SessionConfig(default_difficulty=1), store=store)
        sid = tracker.start("learner-1", now=t0)
        engine = AdaptationEngine(tracker, hierarchy_holder=holder)

        outcome = feed(engine, sid, [WRONG] * 3)[-1]
        engine.close()

        assert outcome.reason == NoAdaptationReason.AT_BOUND
        assert tracker.difficulty(sid) == 1
        assert engine.window(sid) == ()

    def test_ceiling_clamped(self, store, holder, t0):
        tracker = SessionTracker(SessionConfig(default_difficulty=5), store=store)
        sid = tracker.start("learner-1", now=t0)
        engine = AdaptationEngine(tracker, hierarchy_holder=holder)

        outcome = feed(engine, sid, [FAST] * 3)[-1]
        engine.close()

        assert outcome.reason == NoAdaptationReason.AT_BOUND
        assert tracker.difficulty(sid) == 5


class TestRecommendation:
    def test_static_provider_skips_active_unit(self, adaptation, session_id):
        outcome = feed(adaptation, session_id, [WRONG] * 3)[-1]
        # No OBJ-1 section at level 2, so any level-2 section is offered
        assert outcome.recommended_unit_id == "S3"

    def test_recommended_units_excluded_later(self, tracker, holder, session_id):
        provider = RecordingProvider(holder, ["S3", "S2"])
        engine = AdaptationEngine(tracker, recommender=provider, hierarchy_holder=holder)

        feed(engine, session_id, [WRONG] * 3)
        feed(engine, session_id, [FAST] * 3)
        engine.close()

        assert provider.calls[0] == ("OBJ-1", 2, {"S1"})
        assert provider.calls[1] == ("OBJ-1", 3, {"S1", "S3"})

    def test_signal_objective_takes_precedence(self, tracker, holder, session_id):
        provider = RecordingProvider(holder, [])
        engine = AdaptationEngine(tracker, recommender=provider, hierarchy_holder=holder)

        tagged = ResponseSignal(False, 20, 30, objective_id="OBJ-2")
        outcome = feed(engine, session_id, [tagged] * 3)[-1]
        engine.close()

        assert provider.calls[0][0] == "OBJ-2"
        assert outcome.recommended_unit_id is None

    def test_timeout_degrades_to_no_recommendation(self, tracker, holder, session_id):
        release = threading.Event()

        class SlowProvider:
            def recommend(self, objective_id, difficulty_level, exclude_unit_ids):
                release.wait(5)
                return holder.current.get("S3")

        engine = AdaptationEngine(
            tracker,
            AdaptationConfig(recommendation_timeout_seconds=0.05),
            recommender=SlowProvider(),
            hierarchy_holder=holder,
        )
        try:
            outcome = feed(engine, session_id, [WRONG] * 3)[-1]
        finally:
            release.set()
            engine.close()

        assert isinstance(outcome, AdaptationDecision)
        assert outcome.new_difficulty == 2
        assert outcome.recommended_unit_id is None

    def test_provider_error_degrades_to_no_recommendation(self, tracker, holder, session_id):
        class BrokenProvider:
            def recommend(self, objective_id, difficulty_level, exclude_unit_ids):
                raise RuntimeError("recommendation service down")

        engine = AdaptationEngine(tracker, recommender=BrokenProvider(), hierarchy_holder=holder)
        outcome = feed(engine, session_id, [WRONG] * 3)[-1]
        engine.close()

        assert outcome.new_difficulty == 2
        assert outcome.recommended_unit_id is None


class TestConsent:
    def test_personalization_opt_out(self, tracker, holder, session_id):
        learners = LearnerDirectory()
        learners.register(Learner("learner-1", personalization_consent=False))
        engine = AdaptationEngine(tracker, hierarchy_holder=holder, learners=learners)

        outcomes = feed(engine, session_id, [WRONG] * 3)
        engine.close()

        assert {o.reason for o in outcomes} == {NoAdaptationReason.PERSONALIZATION_DISABLED}
        assert engine.window(session_id) == ()
        assert tracker.difficulty(session_id) == 3

    def test_default_consent_is_configurable(self):
        assert LearnerDirectory(personalization_default=False).personalization_allowed("x") is False
