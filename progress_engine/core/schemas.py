"""
Wire schemas for JSON documents exchanged with callers.

Hierarchy files and event streams (CLI replay, service adapters) are parsed
with these models and converted to the immutable domain dataclasses.
Unknown fields are rejected so ad hoc payloads fail loudly.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from progress_engine.core.models import (
    AssessmentEvidence,
    ContentUnit,
    InteractionEvent,
    ResponseSignal,
    UnitKind,
    utcnow,
)


class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid")


class UnitPayload(_Payload):
    """Request model for a content unit."""

    unit_id: str = Field(..., alias="id", description="Unit identifier")
    kind: UnitKind
    title: str = ""
    children: list[str] = Field(default_factory=list)
    prerequisites: list[str] = Field(default_factory=list)
    objective_ids: list[str] = Field(default_factory=list)
    mastery_threshold: float = Field(0.80, ge=0.0, le=1.0)
    confidence_threshold: float = Field(0.85, ge=0.0, le=1.0)
    difficulty: int | None = Field(None, ge=1)

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    def to_domain(self) -> ContentUnit:
        return ContentUnit(
            unit_id=self.unit_id,
            kind=self.kind,
            children=tuple(self.children),
            prerequisites=tuple(self.prerequisites),
            objective_ids=tuple(self.objective_ids),
            mastery_threshold=self.mastery_threshold,
            confidence_threshold=self.confidence_threshold,
            difficulty=self.difficulty,
            title=self.title,
        )


class HierarchyDocument(_Payload):
    """A full hierarchy snapshot as served by the content provider."""

    version: int = Field(1, ge=1)
    units: list[UnitPayload]

    def to_domain(self) -> list[ContentUnit]:
        return [unit.to_domain() for unit in self.units]


class EvidencePayload(_Payload):
    objective_id: str
    score: float = Field(..., ge=0.0, le=1.0)
    timestamp: datetime | None = None
    source_interaction_id: str | None = None
    recency_weight: float = Field(1.0, gt=0.0)
    sub_skill_id: str | None = None

    def to_domain(self, default_time: datetime, default_source: str) -> AssessmentEvidence:
        return AssessmentEvidence(
            objective_id=self.objective_id,
            score=self.score,
            timestamp=self.timestamp or default_time,
            source_interaction_id=self.source_interaction_id or default_source,
            recency_weight=self.recency_weight,
            sub_skill_id=self.sub_skill_id,
        )


class ResponsePayload(_Payload):
    correct: bool
    response_time_seconds: float = Field(..., ge=0.0)
    expected_time_seconds: float = Field(..., gt=0.0)
    self_confidence: int | None = Field(None, ge=1, le=5)
    objective_id: str | None = None

    def to_domain(self) -> ResponseSignal:
        return ResponseSignal(
            correct=self.correct,
            response_time_seconds=self.response_time_seconds,
            expected_time_seconds=self.expected_time_seconds,
            self_confidence=self.self_confidence,
            objective_id=self.objective_id,
        )


class EventPayload(_Payload):
    """One line of an interaction event stream."""

    event_id: str
    learner_id: str
    unit_id: str
    occurred_at: datetime | None = None
    fraction: float | None = Field(None, ge=0.0, le=1.0)
    time_spent_seconds: float = Field(0.0, ge=0.0)
    evidence: list[EvidencePayload] = Field(default_factory=list)
    response: ResponsePayload | None = None
    mark_complete: bool = False
    admin_override: bool = False

    def to_domain(self) -> InteractionEvent:
        occurred_at = self.occurred_at or utcnow()
        return InteractionEvent(
            event_id=self.event_id,
            learner_id=self.learner_id,
            unit_id=self.unit_id,
            occurred_at=occurred_at,
            fraction=self.fraction,
            time_spent_seconds=self.time_spent_seconds,
            evidence=tuple(
                e.to_domain(occurred_at, f"{self.event_id}:{i}")
                for i, e in enumerate(self.evidence)
            ),
            response=self.response.to_domain() if self.response else None,
            mark_complete=self.mark_complete,
            admin_override=self.admin_override,
        )
