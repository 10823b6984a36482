"""
Unit tests for EventCoordinator.

The coordinator runs real worker threads over the in-memory store; backoff
sleeps are captured instead of slept.
"""

from datetime import timedelta

import pytest

from progress_engine.adaptive.adaptation_engine import AdaptationEngine
from progress_engine.coordination.coordinator import (
    EventCoordinator,
    RetryPolicy,
    partition_for,
)
from progress_engine.core.errors import (
    CommitFailed,
    ConcurrentWriteConflict,
    PrerequisiteUnmet,
    StoreUnavailable,
    ValidationError,
)
from progress_engine.core.events import InMemoryEventBus
from progress_engine.core.models import (
    AssessmentEvidence,
    ProgressStatus,
    ResponseSignal,
)
from progress_engine.db.store import InMemoryProgressStore
from progress_engine.integrations.recommendation import StaticRecommendationProvider

WRONG = ResponseSignal(correct=False, response_time_seconds=20, expected_time_seconds=30)


class FlakyStore(InMemoryProgressStore):
    """Fails the first `failures` commits with the given transient error."""

    def __init__(self, failures, error=StoreUnavailable):
        super().__init__()
        self.failures = failures
        self.error = error

    def _commit(self, tx):
        if self.failures > 0:
            self.failures -= 1
            if self.error is ConcurrentWriteConflict:
                raise ConcurrentWriteConflict("learner-1", "S1", 0, 1)
            raise self.error("database is locked")
        super()._commit(tx)


@pytest.fixture
def bus():
    return InMemoryEventBus()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def build(holder, tracker, bus, sleeps):
    """Coordinator factory; every coordinator built is closed at teardown."""
    created = []

    def _build(store, retry=None, cache_size=10000):
        adaptation = AdaptationEngine(
            tracker,
            recommender=StaticRecommendationProvider(holder),
            hierarchy_holder=holder,
        )
        coordinator = EventCoordinator(
            holder,
            store,
            tracker,
            adaptation,
            publisher=bus,
            worker_count=2,
            retry=retry or RetryPolicy(max_attempts=3, backoff_base_seconds=0.1, backoff_max_seconds=0.15),
            cache_size=cache_size,
            sleep=sleeps.append,
        )
        created.append((coordinator, adaptation))
        return coordinator

    yield _build
    for coordinator, adaptation in created:
        coordinator.close()
        adaptation.close()


@pytest.fixture
def coordinator(build, store):
    return build(store)


def evidence(score, at, source):
    return AssessmentEvidence("OBJ-1", score, at, source)


class TestLessonScenario:
    def test_two_sections_then_stale_report(self, coordinator, store, make_event):
        result = coordinator.submit("learner-1", make_event("S1", fraction=1.0))
        lesson = result.record_for("L1")
        assert lesson.fraction == pytest.approx(0.5)
        assert lesson.status == ProgressStatus.IN_PROGRESS

        result = coordinator.submit("learner-1", make_event("S2", fraction=1.0))
        assert result.record_for("L1").status == ProgressStatus.COMPLETED
        assert result.record_for("L1").fraction == 1.0

        result = coordinator.submit("learner-1", make_event("S1", fraction=0.5))
        assert result.records == ()
        assert store.get_record("learner-1", "S1").fraction == 1.0
        assert store.get_record("learner-1", "L1").fraction == 1.0


class TestIdempotence:
    def test_duplicate_returns_prior_result(self, coordinator, store, make_event):
        event = make_event("S1", fraction=0.4, time_spent_seconds=30)

        first = coordinator.submit("learner-1", event)
        second = coordinator.submit("learner-1", event)

        assert second.duplicate is True
        assert second.records == first.records
        assert store.get_record("learner-1", "S1").time_spent_seconds == 30

    def test_ledger_catches_duplicates_after_cache_eviction(self, coordinator, store, make_event):
        event = make_event("S1", fraction=0.4, time_spent_seconds=30)
        first = coordinator.submit("learner-1", event)
        coordinator.forget_learner("learner-1")

        again = coordinator.submit("learner-1", event)

        assert again.duplicate is True
        assert again.records == first.records
        assert again.session_id == first.session_id
        assert store.get_record("learner-1", "S1").time_spent_seconds == 30

    def test_evicted_result_replayed_from_ledger(self, build, store, make_event, t0):
        coordinator = build(store, cache_size=1)
        event = make_event("S1", fraction=0.4, evidence=(evidence(0.9, t0, "q-1"),))
        first = coordinator.submit("learner-1", event)
        coordinator.submit("learner-1", make_event("S2", fraction=0.2))

        again = coordinator.submit("learner-1", event)

        assert again.duplicate is True
        assert again.records == first.records
        assert again.decisions == first.decisions
        assert store.get_record("learner-1", "S1").fraction == 0.4


class TestOrdering:
    def test_same_learner_events_apply_in_submission_order(self, coordinator, store, bus, make_event):
        futures = [
            coordinator.submit_async("learner-1", make_event("S1", fraction=i / 20))
            for i in range(1, 21)
        ]
        results = [f.result(timeout=10) for f in futures]

        assert all(not r.duplicate for r in results)
        fractions = [
            e.fraction for e in bus.of_type("progress_changed") if e.unit_id == "S1"
        ]
        assert fractions == sorted(fractions)
        assert store.get_record("learner-1", "S1").fraction == 1.0

    def test_learners_processed_independently(self, coordinator, store, make_event):
        learners = [f"learner-{i}" for i in range(8)]
        futures = [
            coordinator.submit_async(lid, make_event("S1", learner_id=lid, time_spent_seconds=10))
            for _ in range(5)
            for lid in learners
        ]
        for future in futures:
            future.result(timeout=10)

        for lid in learners:
            assert store.get_record(lid, "S1").time_spent_seconds == 50

    def test_partition_is_stable(self):
        assert partition_for("learner-1", 4) == partition_for("learner-1", 4)
        assert 0 <= partition_for("anyone", 3) < 3


class TestValidation:
    def test_out_of_range_fraction_rejected_synchronously(self, coordinator, store, make_event):
        with pytest.raises(ValidationError):
            coordinator.submit_async("learner-1", make_event("S1", fraction=1.5))
        assert store.list_records("learner-1") == []

    def test_unknown_unit_rejected(self, coordinator, make_event):
        with pytest.raises(ValidationError):
            coordinator.submit("learner-1", make_event("S99", fraction=0.5))

    def test_negative_time_rejected(self, coordinator, make_event):
        with pytest.raises(ValidationError):
            coordinator.submit("learner-1", make_event("S1", time_spent_seconds=-5))

    def test_learner_mismatch_rejected(self, coordinator, make_event):
        with pytest.raises(ValidationError):
            coordinator.submit("someone-else", make_event("S1", fraction=0.5))


class TestPrerequisites:
    def test_gated_section_rejected_then_accepted(self, coordinator, store, make_event):
        with pytest.raises(PrerequisiteUnmet):
            coordinator.submit("learner-1", make_event("S3", fraction=0.5))
        assert store.get_record("learner-1", "S3") is None

        coordinator.submit("learner-1", make_event("S1", fraction=1.0))
        coordinator.submit("learner-1", make_event("S2", fraction=1.0))
        result = coordinator.submit("learner-1", make_event("S3", fraction=0.5))

        assert result.record_for("S3").fraction == 0.5

    def test_override_flag(self, coordinator, make_event):
        result = coordinator.submit(
            "learner-1", make_event("S3", fraction=0.5, admin_override=True)
        )
        assert result.record_for("L2").fraction == pytest.approx(0.25)

    def test_rejected_event_leaves_session_untouched(self, coordinator, tracker, make_event):
        first = coordinator.submit("learner-1", make_event("S1", fraction=0.5))
        session = tracker.get(first.session_id)
        before = (session.event_count, session.active_seconds, session.active_unit_id, session.last_event_at)

        with pytest.raises(PrerequisiteUnmet):
            coordinator.submit("learner-1", make_event("S3", fraction=0.5))

        session = tracker.get(first.session_id)
        assert (session.event_count, session.active_seconds, session.active_unit_id, session.last_event_at) == before
        assert list(session.pending_events) == []

        accepted = coordinator.submit("learner-1", make_event("S2", fraction=0.5))
        assert accepted.session_id == first.session_id
        assert tracker.get(first.session_id).event_count == 2

    def test_rejected_first_event_opens_no_session(self, coordinator, tracker, make_event):
        with pytest.raises(PrerequisiteUnmet):
            coordinator.submit("learner-1", make_event("S3", fraction=0.5))

        assert tracker.active_session_for("learner-1") is None


class TestRetries:
    def test_transient_failures_retried_with_backoff(self, build, sleeps, make_event):
        store = FlakyStore(failures=2)
        coordinator = build(store)

        result = coordinator.submit("learner-1", make_event("S1", fraction=0.5))

        assert result.attempts == 3
        assert sleeps == [0.1, 0.15]
        assert store.get_record("learner-1", "S1").fraction == 0.5

    def test_write_conflicts_are_transient(self, build, make_event):
        store = FlakyStore(failures=1, error=ConcurrentWriteConflict)
        coordinator = build(store)

        result = coordinator.submit("learner-1", make_event("S1", fraction=0.5))

        assert result.attempts == 2

    def test_commit_failed_after_budget_then_safe_retry(self, build, tracker, make_event):
        store = FlakyStore(failures=10)
        coordinator = build(store)
        event = make_event("S1", fraction=0.5, time_spent_seconds=12)

        with pytest.raises(CommitFailed) as exc_info:
            coordinator.submit("learner-1", event)
        assert exc_info.value.attempts == 3
        assert store.list_records("learner-1") == []

        store.failures = 0
        result = coordinator.submit("learner-1", event)

        assert result.duplicate is False
        assert store.get_record("learner-1", "S1").time_spent_seconds == 12
        assert tracker.get(result.session_id).event_count == 1

    def test_retry_delay_is_capped(self):
        policy = RetryPolicy(max_attempts=10, backoff_base_seconds=0.05, backoff_max_seconds=1.0)
        assert [policy.delay(n) for n in (1, 2, 3)] == [0.05, 0.1, 0.2]
        assert policy.delay(9) == 1.0


class TestDownstream:
    def test_mastery_achieved_published_once(self, coordinator, bus, make_event, t0):
        items = tuple(evidence(0.9, t0, f"q-{i}") for i in range(10))
        first = coordinator.submit("learner-1", make_event("S1", evidence=items))

        assert first.decisions[0].is_achieved
        coordinator.submit("learner-1", make_event("S1", evidence=(evidence(0.95, t0, "q-10"),)))

        achieved = bus.of_type("mastery_achieved")
        assert len(achieved) == 1
        assert achieved[0].objective_id == "OBJ-1"

    def test_evidence_event_counts_an_attempt(self, coordinator, store, make_event, t0):
        coordinator.submit("learner-1", make_event("S1", evidence=(evidence(0.5, t0, "q-1"),)))
        assert store.get_record("learner-1", "S1").attempt_count == 1

    def test_struggling_responses_lower_difficulty(self, coordinator, bus, tracker, make_event):
        results = [
            coordinator.submit("learner-1", make_event("S1", response=WRONG)) for _ in range(3)
        ]

        assert [r.adapted for r in results] == [False, False, True]
        assert tracker.difficulty(results[-1].session_id) == 2
        adapted = bus.of_type("difficulty_adapted")
        assert len(adapted) == 1
        assert adapted[0].new_difficulty == 2
        assert adapted[0].recommended_unit_id == "S3"

    def test_failing_subscriber_does_not_fail_commit(self, coordinator, bus, store, make_event):
        def broken(event):
            raise RuntimeError("notification service down")

        bus.subscribe(broken)
        result = coordinator.submit("learner-1", make_event("S1", fraction=0.3))

        assert result.record_for("S1").fraction == 0.3
        assert store.get_record("learner-1", "S1").fraction == 0.3

    def test_events_share_one_session(self, coordinator, make_event):
        first = coordinator.submit("learner-1", make_event("S1", fraction=0.1))
        second = coordinator.submit("learner-1", make_event("S1", fraction=0.2))
        assert first.session_id == second.session_id

    def test_gap_past_timeout_starts_new_session(self, coordinator, make_event, t0):
        first = coordinator.submit("learner-1", make_event("S1", fraction=0.1))
        later = make_event("S1", fraction=0.2, occurred_at=t0 + timedelta(hours=2))
        second = coordinator.submit("learner-1", later)
        assert first.session_id != second.session_id

    def test_idle_timeout_discards_adaptation_window(self, coordinator, make_event, t0):
        first = coordinator.submit("learner-1", make_event("S1", response=WRONG))
        assert len(coordinator.adaptation.window(first.session_id)) == 1

        later = make_event("S1", response=WRONG, occurred_at=t0 + timedelta(hours=2))
        second = coordinator.submit("learner-1", later)

        assert coordinator.adaptation.window(first.session_id) == ()
        assert len(coordinator.adaptation.window(second.session_id)) == 1


class TestShutdown:
    def test_submit_after_close_rejected(self, coordinator, make_event):
        coordinator.close()
        with pytest.raises(RuntimeError):
            coordinator.submit("learner-1", make_event("S1", fraction=0.1))
