"""
Emitted Domain Events.

Plain, versioned records published after a commit for downstream consumers
(notifications, achievements, analytics). Publication is a side channel: a
failing subscriber is logged and never affects the commit that produced the
event.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import datetime
from typing import Literal, Protocol, Union

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from progress_engine.core.models import (
    AdaptationDecision,
    MasteryDecision,
    RecordChange,
)

SCHEMA_VERSION = 1


class _EmittedEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    schema_version: int = SCHEMA_VERSION
    source_event_id: str = Field(..., description="InteractionEvent that caused this event")
    learner_id: str
    emitted_at: datetime


class ProgressChanged(_EmittedEvent):
    """A progress record moved forward."""

    event_type: Literal["progress_changed"] = "progress_changed"
    unit_id: str
    previous_status: str
    status: str
    previous_fraction: float
    fraction: float
    version: int

    @classmethod
    def from_change(cls, source_event_id: str, change: RecordChange) -> ProgressChanged:
        after = change.after
        return cls(
            source_event_id=source_event_id,
            learner_id=after.learner_id,
            emitted_at=after.updated_at,
            unit_id=after.unit_id,
            previous_status=change.before.status.value,
            status=after.status.value,
            previous_fraction=change.before.fraction,
            fraction=after.fraction,
            version=after.version,
        )


class MasteryAchieved(_EmittedEvent):
    """An objective reached mastery for the first time."""

    event_type: Literal["mastery_achieved"] = "mastery_achieved"
    objective_id: str
    mastery_level: float
    confidence: float
    evidence_count: int

    @classmethod
    def from_decision(cls, source_event_id: str, decision: MasteryDecision) -> MasteryAchieved:
        return cls(
            source_event_id=source_event_id,
            learner_id=decision.learner_id,
            emitted_at=decision.decided_at,
            objective_id=decision.objective_id,
            mastery_level=decision.mastery_level,
            confidence=decision.confidence,
            evidence_count=decision.evidence_count,
        )


class DifficultyAdapted(_EmittedEvent):
    """Session difficulty changed."""

    event_type: Literal["difficulty_adapted"] = "difficulty_adapted"
    session_id: str
    reason: str
    previous_difficulty: int
    new_difficulty: int
    recommended_unit_id: str | None = None
    window: list[str] = Field(default_factory=list, description="Response patterns in the window")

    @classmethod
    def from_decision(
        cls, source_event_id: str, learner_id: str, decision: AdaptationDecision
    ) -> DifficultyAdapted:
        return cls(
            source_event_id=source_event_id,
            learner_id=learner_id,
            emitted_at=decision.decided_at,
            session_id=decision.session_id,
            reason=decision.reason.value,
            previous_difficulty=decision.previous_difficulty,
            new_difficulty=decision.new_difficulty,
            recommended_unit_id=decision.recommended_unit_id,
            window=[entry.pattern.value for entry in decision.window],
        )


EmittedEvent = Union[ProgressChanged, MasteryAchieved, DifficultyAdapted]


class EventPublisher(Protocol):
    """Anything that can take emitted events (message bus adapter, queue)."""

    def publish(self, event: EmittedEvent) -> None:
        ...


class InMemoryEventBus:
    """
    In-process publisher with synchronous subscribers.

    Keeps the last published events for inspection (tests, CLI replay).
    """

    def __init__(self, history_limit: int = 1000):
        self._subscribers: list[Callable[[EmittedEvent], None]] = []
        self._history: list[EmittedEvent] = []
        self._history_limit = history_limit
        self._lock = threading.Lock()

    def subscribe(self, handler: Callable[[EmittedEvent], None]) -> None:
        with self._lock:
            self._subscribers.append(handler)

    def publish(self, event: EmittedEvent) -> None:
        with self._lock:
            self._history.append(event)
            if len(self._history) > self._history_limit:
                del self._history[: len(self._history) - self._history_limit]
            subscribers = list(self._subscribers)

        for handler in subscribers:
            try:
                handler(event)
            except Exception as e:  # Subscriber faults never reach the committing worker
                logger.warning(f"Subscriber {handler!r} failed on {event.event_type}: {e}")

    @property
    def history(self) -> list[EmittedEvent]:
        with self._lock:
            return list(self._history)

    def of_type(self, event_type: str) -> list[EmittedEvent]:
        return [e for e in self.history if e.event_type == event_type]
