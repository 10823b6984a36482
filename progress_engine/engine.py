"""
Learning Progress Engine facade.

Wires the hierarchy holder, progress store, session tracker, adaptation
engine, event coordinator and event bus into a single object. All state is
held by this instance; two engines in one process share nothing.
"""

from __future__ import annotations

from collections.abc import Iterable

from loguru import logger

from progress_engine.adaptive.adaptation_engine import AdaptationConfig, AdaptationEngine
from progress_engine.adaptive.session_tracker import SessionConfig, SessionTracker
from progress_engine.config import Settings, get_settings
from progress_engine.coordination.coordinator import EventCoordinator, RetryPolicy
from progress_engine.core.events import InMemoryEventBus
from progress_engine.core.hierarchy import HierarchyHolder, UnitHierarchy
from progress_engine.core.learners import LearnerDirectory
from progress_engine.core.models import (
    CommitResult,
    ContentUnit,
    InteractionEvent,
    Learner,
    MasteryDecision,
    ProgressRecord,
    SessionSummary,
)
from progress_engine.db.database import create_db_engine, create_session_factory, init_db
from progress_engine.db.sql_store import SqlProgressStore
from progress_engine.db.store import InMemoryProgressStore, ProgressStore
from progress_engine.integrations.recommendation import (
    ContentRecommendationProvider,
    HttpRecommendationProvider,
    StaticRecommendationProvider,
)
from progress_engine.progress.mastery import MasteryConfig


class LearningProgressEngine:
    """
    Public entry point for progress tracking and adaptive difficulty.

    Usage:
        engine = LearningProgressEngine(UnitHierarchy(units))
        result = engine.submit(event)
        engine.end_session(result.session_id)
        engine.close()
    """

    def __init__(
        self,
        hierarchy: UnitHierarchy,
        store: ProgressStore | None = None,
        recommender: ContentRecommendationProvider | None = None,
        settings: Settings | None = None,
    ):
        settings = settings or Settings()
        self.settings = settings
        self.holder = HierarchyHolder(hierarchy)
        self.store = store or InMemoryProgressStore()
        self.bus = InMemoryEventBus()
        self.learners = LearnerDirectory(settings.personalization_default)
        self.tracker = SessionTracker(SessionConfig.from_settings(settings), store=self.store)
        self.recommender = recommender or StaticRecommendationProvider(self.holder)
        self.adaptation = AdaptationEngine(
            self.tracker,
            AdaptationConfig.from_settings(settings),
            recommender=self.recommender,
            hierarchy_holder=self.holder,
            learners=self.learners,
        )
        self.coordinator = EventCoordinator(
            self.holder,
            self.store,
            self.tracker,
            self.adaptation,
            mastery_config=MasteryConfig.from_settings(settings),
            publisher=self.bus,
            worker_count=settings.worker_count,
            retry=RetryPolicy.from_settings(settings),
            cache_size=settings.idempotency_cache_size,
        )

    @classmethod
    def from_settings(
        cls, hierarchy: UnitHierarchy, settings: Settings | None = None
    ) -> LearningProgressEngine:
        """
        Build an engine backed by the configured database.

        Uses the HTTP recommendation service when RECOMMENDATION_API_URL is
        set, otherwise recommends sections from the hierarchy itself.
        """
        settings = settings or get_settings()
        db_engine = create_db_engine(settings.database_url, echo=settings.database_echo)
        init_db(db_engine)
        store = SqlProgressStore(create_session_factory(db_engine))

        recommender: ContentRecommendationProvider | None = None
        if settings.recommendation_api_url:
            recommender = HttpRecommendationProvider(
                settings.recommendation_api_url,
                timeout_seconds=settings.recommendation_timeout_seconds,
            )
        logger.info(f"Progress engine using {settings.database_url}")
        return cls(hierarchy, store=store, recommender=recommender, settings=settings)

    # ========================================
    # Events and sessions
    # ========================================

    def submit(self, event: InteractionEvent) -> CommitResult:
        return self.coordinator.submit(event.learner_id, event)

    def start_session(self, learner_id: str) -> str:
        return self.tracker.start(learner_id)

    def end_session(self, session_id: str) -> SessionSummary:
        return self.tracker.end(session_id)

    def expire_idle_sessions(self) -> list[SessionSummary]:
        return self.tracker.expire_idle()

    # ========================================
    # Queries
    # ========================================

    def get_progress(self, learner_id: str, unit_id: str) -> ProgressRecord:
        """Committed record for a unit; an empty record if never touched."""
        self.holder.current.get(unit_id)
        return self.store.get_record(learner_id, unit_id) or ProgressRecord.empty(learner_id, unit_id)

    def progress_report(self, learner_id: str) -> list[ProgressRecord]:
        return sorted(self.store.list_records(learner_id), key=lambda r: r.unit_id)

    def latest_decision(self, learner_id: str, objective_id: str) -> MasteryDecision | None:
        return self.store.latest_decision(learner_id, objective_id)

    # ========================================
    # Administration
    # ========================================

    def refresh_hierarchy(self, units: Iterable[ContentUnit] | UnitHierarchy) -> int:
        """
        Swap in a new hierarchy snapshot.

        In-flight events finish on the snapshot they started with.

        Returns:
            Version of the new snapshot
        """
        snapshot = units if isinstance(units, UnitHierarchy) else UnitHierarchy(units)
        self.holder.refresh(snapshot)
        return self.holder.current.version

    def register_learner(self, learner: Learner) -> None:
        self.learners.register(learner)

    def forget_learner(self, learner_id: str) -> int:
        """
        Remove everything held about a learner.

        Returns:
            Number of stored entries removed
        """
        self.tracker.forget_learner(learner_id)
        removed = self.store.purge_learner(learner_id)
        self.coordinator.forget_learner(learner_id)
        self.learners.forget(learner_id)
        return removed

    def close(self) -> None:
        """Drain the workers, then end live sessions at their last activity."""
        self.coordinator.close()
        self.tracker.end_all()
        self.adaptation.close()
        if isinstance(self.recommender, HttpRecommendationProvider):
            self.recommender.close()

    def __enter__(self) -> LearningProgressEngine:
        return self

    def __exit__(self, *exc) -> None:
        self.close()
