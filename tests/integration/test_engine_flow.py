"""
Integration Tests for the LearningProgressEngine facade.

Drives the whole pipeline (coordinator, aggregator, evaluator, sessions,
adaptation, event bus) over the SQLAlchemy store on SQLite.
"""

from datetime import timedelta

import pytest

from progress_engine.config import Settings
from progress_engine.core.errors import SessionClosed
from progress_engine.core.models import (
    AssessmentEvidence,
    ContentUnit,
    InteractionEvent,
    Learner,
    MasteryOutcome,
    ProgressStatus,
    ResponseSignal,
    UnitKind,
)
from progress_engine.engine import LearningProgressEngine

pytestmark = pytest.mark.integration


@pytest.fixture
def engine(tmp_path, hierarchy):
    settings = Settings(
        _env_file=None,
        database_url=f"sqlite:///{tmp_path / 'engine.db'}",
        worker_count=1,
        commit_backoff_base_seconds=0.0,
    )
    with LearningProgressEngine.from_settings(hierarchy, settings) as instance:
        yield instance


def event(event_id, unit_id, at, **fields):
    return InteractionEvent(
        event_id=event_id, learner_id="learner-1", unit_id=unit_id, occurred_at=at, **fields
    )


class TestProgressFlow:
    def test_lesson_completion_persists(self, engine, t0):
        engine.submit(event("e1", "S1", t0, fraction=1.0, time_spent_seconds=60))
        engine.submit(event("e2", "S2", t0 + timedelta(seconds=30), fraction=1.0, time_spent_seconds=45))

        lesson = engine.get_progress("learner-1", "L1")
        course = engine.get_progress("learner-1", "C1")

        assert lesson.status == ProgressStatus.COMPLETED
        assert lesson.time_spent_seconds == 105
        assert course.fraction == pytest.approx(0.5)
        assert [r.unit_id for r in engine.progress_report("learner-1")] == ["C1", "L1", "S1", "S2"]

    def test_untouched_unit_reports_empty_record(self, engine):
        record = engine.get_progress("learner-1", "S4")
        assert record.status == ProgressStatus.NOT_STARTED
        assert record.version == 0

    def test_mastery_decision_queryable(self, engine, t0):
        items = tuple(AssessmentEvidence("OBJ-2", 0.92, t0, f"q-{i}") for i in range(10))
        engine.submit(event("e1", "S2", t0, evidence=items))

        decision = engine.latest_decision("learner-1", "OBJ-2")

        assert decision.outcome == MasteryOutcome.ACHIEVED
        assert len(engine.bus.of_type("mastery_achieved")) == 1


class TestSessionsAndPrivacy:
    def test_end_session_persists_summary(self, engine, t0):
        result = engine.submit(event("e1", "S1", t0, fraction=0.2))
        summary = engine.end_session(result.session_id)

        assert summary.event_count == 1
        assert engine.store.list_session_summaries("learner-1") == [summary]
        with pytest.raises(SessionClosed):
            engine.tracker.record(result.session_id, event("e2", "S1", t0))

    def test_opted_out_learner_keeps_difficulty(self, engine, t0):
        engine.register_learner(Learner("learner-1", personalization_consent=False))
        wrong = ResponseSignal(False, 20, 30)
        results = [
            engine.submit(event(f"e{i}", "S1", t0 + timedelta(seconds=i), response=wrong))
            for i in range(3)
        ]

        assert not any(r.adapted for r in results)
        assert engine.tracker.difficulty(results[-1].session_id) == 3

    def test_forget_learner_removes_everything(self, engine, t0):
        earlier = engine.submit(event("e1", "S1", t0, fraction=0.5))
        engine.end_session(earlier.session_id)
        engine.submit(event("e2", "S2", t0 + timedelta(minutes=1), fraction=0.5))

        removed = engine.forget_learner("learner-1")

        assert removed > 0
        assert engine.progress_report("learner-1") == []
        assert engine.tracker.active_session_for("learner-1") is None
        assert engine.tracker.summary(earlier.session_id) is None
        assert engine.store.list_session_summaries("learner-1") == []

    def test_close_ends_live_sessions(self, tmp_path, hierarchy, t0):
        settings = Settings(
            _env_file=None,
            database_url=f"sqlite:///{tmp_path / 'close.db'}",
            worker_count=1,
        )
        with LearningProgressEngine.from_settings(hierarchy, settings) as instance:
            instance.submit(event("e1", "S1", t0, fraction=0.2))
            instance.submit(event("e2", "S1", t0 + timedelta(seconds=45), fraction=0.4))
            store = instance.store

        summaries = store.list_session_summaries("learner-1")
        assert len(summaries) == 1
        assert summaries[0].event_count == 2
        assert summaries[0].ended_at == t0 + timedelta(seconds=45)


class TestHierarchyRefresh:
    def test_refresh_bumps_version_and_keeps_aggregates(self, engine, units, t0):
        engine.submit(event("e1", "S1", t0, fraction=1.0))
        engine.submit(event("e2", "S2", t0, fraction=1.0))

        refreshed = [u for u in units if u.unit_id != "L1"] + [
            ContentUnit("L1", UnitKind.LESSON, children=("S1", "S2", "S5")),
            ContentUnit("S5", UnitKind.SECTION, objective_ids=("OBJ-5",)),
        ]
        version = engine.refresh_hierarchy(refreshed)
        engine.submit(event("e3", "S5", t0 + timedelta(seconds=5), fraction=0.5))

        assert version == 2
        assert engine.get_progress("learner-1", "L1").fraction == 1.0
        assert engine.get_progress("learner-1", "S5").fraction == 0.5
