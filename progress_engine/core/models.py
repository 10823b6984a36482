"""
Core domain models.

Immutable dataclasses shared by every component. Records are never mutated
in place: a new version is produced with dataclasses.replace() and written
back through the store.

Design:
- ContentUnit: node of the course -> lesson -> section hierarchy
- ProgressRecord: authoritative completion state for one (learner, unit)
- AssessmentEvidence / MasteryDecision: mastery inputs and outputs
- ResponseSignal / AdaptationDecision / NoAdaptation: difficulty adaptation
- InteractionEvent / CommitResult: coordinator input and output
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

# Fractions within this distance of 1.0 count as complete
COMPLETION_TOLERANCE = 1e-9


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class UnitKind(str, Enum):
    """Level of a content unit in the hierarchy."""

    COURSE = "course"
    LESSON = "lesson"
    SECTION = "section"

    @property
    def child_kind(self) -> UnitKind | None:
        """Kind expected for this unit's children."""
        return {
            UnitKind.COURSE: UnitKind.LESSON,
            UnitKind.LESSON: UnitKind.SECTION,
            UnitKind.SECTION: None,
        }[self]


class ProgressStatus(str, Enum):
    """Forward-only completion status."""

    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    @classmethod
    def from_fraction(cls, fraction: float) -> ProgressStatus:
        """
        Derive status from a completion fraction.

        Args:
            fraction: Completion fraction between 0 and 1

        Returns:
            COMPLETED at 1.0 (within tolerance), IN_PROGRESS above 0, else NOT_STARTED
        """
        if fraction >= 1.0 - COMPLETION_TOLERANCE:
            return cls.COMPLETED
        if fraction > 0.0:
            return cls.IN_PROGRESS
        return cls.NOT_STARTED

    def promote(self, other: ProgressStatus) -> ProgressStatus:
        """Return whichever status is further along."""
        return other if other.rank > self.rank else self


_STATUS_RANK = {
    ProgressStatus.NOT_STARTED: 0,
    ProgressStatus.IN_PROGRESS: 1,
    ProgressStatus.COMPLETED: 2,
}


class MasteryOutcome(str, Enum):
    """Mastery decision outcome."""

    ACHIEVED = "achieved"
    IN_PROGRESS = "in_progress"


class TriggerReason(str, Enum):
    """Why a difficulty adjustment fired."""

    STRUGGLING_PATTERN = "struggling_pattern"
    MASTERY_PATTERN = "mastery_pattern"


class NoAdaptationReason(str, Enum):
    """Why the adaptation engine left the difficulty unchanged."""

    INSUFFICIENT_WINDOW = "insufficient_window"
    MIXED_WINDOW = "mixed_window"
    UNIT_COMPLETE = "unit_complete"
    AT_BOUND = "at_bound"
    PERSONALIZATION_DISABLED = "personalization_disabled"


class ResponsePattern(str, Enum):
    """Classification of a single response for the sliding window."""

    STRUGGLING = "struggling"
    MASTERY = "mastery"
    NEUTRAL = "neutral"


class SessionEndReason(str, Enum):
    EXPLICIT = "explicit"
    IDLE_TIMEOUT = "idle_timeout"


@dataclass(frozen=True)
class Learner:
    """
    Learner identity plus consent flags.

    The flags are opaque to the engine except for gating personalization.
    """

    learner_id: str
    personalization_consent: bool = True
    analytics_consent: bool = False


@dataclass(frozen=True)
class ContentUnit:
    """A node in the course/lesson/section hierarchy."""

    unit_id: str
    kind: UnitKind
    children: tuple[str, ...] = ()
    prerequisites: tuple[str, ...] = ()
    objective_ids: tuple[str, ...] = ()
    mastery_threshold: float = 0.80
    confidence_threshold: float = 0.85
    difficulty: int | None = None
    title: str = ""

    def __post_init__(self):
        # Accept lists from callers but keep the snapshot immutable
        object.__setattr__(self, "kind", UnitKind(self.kind))
        object.__setattr__(self, "children", tuple(self.children))
        object.__setattr__(self, "prerequisites", tuple(self.prerequisites))
        object.__setattr__(self, "objective_ids", tuple(self.objective_ids))

    @property
    def is_leaf(self) -> bool:
        return not self.children


@dataclass(frozen=True)
class ProgressRecord:
    """
    Authoritative completion state for one (learner, unit) pair.

    Invariants: fraction never decreases and status only moves forward
    across versions of the same record.
    """

    learner_id: str
    unit_id: str
    status: ProgressStatus = ProgressStatus.NOT_STARTED
    fraction: float = 0.0
    time_spent_seconds: float = 0.0
    attempt_count: int = 0
    updated_at: datetime | None = None
    best_score: float | None = None
    version: int = 0

    @property
    def is_completed(self) -> bool:
        return self.status == ProgressStatus.COMPLETED

    @classmethod
    def empty(cls, learner_id: str, unit_id: str) -> ProgressRecord:
        """Unsaved record for a unit the learner has not touched."""
        return cls(learner_id=learner_id, unit_id=unit_id)


@dataclass(frozen=True)
class AssessmentEvidence:
    """One graded observation for a learning objective."""

    objective_id: str
    score: float
    timestamp: datetime
    source_interaction_id: str
    recency_weight: float = 1.0  # base weight, multiplied by decay ** age_days
    sub_skill_id: str | None = None


@dataclass(frozen=True)
class ResponseSignal:
    """Real-time performance signal for one response."""

    correct: bool
    response_time_seconds: float
    expected_time_seconds: float
    self_confidence: int | None = None  # 1-5
    objective_id: str | None = None

    @property
    def time_ratio(self) -> float:
        """Response time relative to expected time."""
        if self.expected_time_seconds <= 0:
            return 1.0
        return self.response_time_seconds / self.expected_time_seconds


@dataclass(frozen=True)
class InteractionEvent:
    """
    A learner interaction submitted to the coordinator.

    Every mutating input to the engine arrives as one of these; fields are a
    closed set so malformed payloads fail validation instead of being ignored.
    """

    event_id: str
    learner_id: str
    unit_id: str
    occurred_at: datetime
    fraction: float | None = None
    time_spent_seconds: float = 0.0
    evidence: tuple[AssessmentEvidence, ...] = ()
    response: ResponseSignal | None = None
    mark_complete: bool = False
    admin_override: bool = False

    def __post_init__(self):
        object.__setattr__(self, "evidence", tuple(self.evidence))


@dataclass(frozen=True)
class ProgressDelta:
    """The part of an event the aggregator applies to a unit."""

    occurred_at: datetime | None = None
    fraction: float | None = None
    time_spent_seconds: float = 0.0
    mark_complete: bool = False
    admin_override: bool = False
    best_score: float | None = None
    counts_attempt: bool = False  # event carried an assessment or a response

    @classmethod
    def from_event(cls, event: InteractionEvent) -> ProgressDelta:
        scores = [e.score for e in event.evidence]
        return cls(
            occurred_at=event.occurred_at,
            fraction=event.fraction,
            time_spent_seconds=event.time_spent_seconds,
            mark_complete=event.mark_complete,
            admin_override=event.admin_override,
            best_score=max(scores) if scores else None,
            counts_attempt=bool(event.evidence) or event.response is not None,
        )


@dataclass(frozen=True)
class RecordChange:
    """Before/after pair for a record touched by one event."""

    before: ProgressRecord
    after: ProgressRecord

    @property
    def fraction_delta(self) -> float:
        return self.after.fraction - self.before.fraction

    @property
    def status_changed(self) -> bool:
        return self.before.status != self.after.status


@dataclass(frozen=True)
class UpdatedRecords:
    """Records written by the aggregator for a single event, leaf first."""

    changes: tuple[RecordChange, ...] = ()

    @property
    def records(self) -> tuple[ProgressRecord, ...]:
        return tuple(change.after for change in self.changes)

    def get(self, unit_id: str) -> ProgressRecord | None:
        for change in self.changes:
            if change.after.unit_id == unit_id:
                return change.after
        return None


@dataclass(frozen=True)
class MasteryDecision:
    """
    Mastery decision for one learner and objective.

    Immutable once created; a newer decision for the same objective
    supersedes it in the append-only decision log.
    """

    objective_id: str
    learner_id: str
    outcome: MasteryOutcome
    mastery_level: float
    confidence: float
    gaps: frozenset[str] = frozenset()
    evidence_count: int = 0
    decided_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        object.__setattr__(self, "gaps", frozenset(self.gaps))

    @property
    def is_achieved(self) -> bool:
        return self.outcome == MasteryOutcome.ACHIEVED


@dataclass(frozen=True)
class WindowEntry:
    """A classified response kept in the adaptation sliding window."""

    correct: bool
    time_ratio: float
    self_confidence: int | None
    difficulty: int
    pattern: ResponsePattern


@dataclass(frozen=True)
class AdaptationDecision:
    """Session-scoped difficulty change with the evidence that produced it."""

    session_id: str
    reason: TriggerReason
    previous_difficulty: int
    new_difficulty: int
    recommended_unit_id: str | None
    window: tuple[WindowEntry, ...]
    decided_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class NoAdaptation:
    """Explicit "no change" outcome of an adaptation check."""

    session_id: str
    reason: NoAdaptationReason
    window_size: int = 0


@dataclass(frozen=True)
class SessionSummary:
    """Final, immutable accounting for a learning session."""

    session_id: str
    learner_id: str
    started_at: datetime
    ended_at: datetime
    elapsed_seconds: float
    active_seconds: float
    final_difficulty: int
    event_count: int
    end_reason: SessionEndReason = SessionEndReason.EXPLICIT


@dataclass(frozen=True)
class CommitResult:
    """Everything one committed event produced."""

    event_id: str
    learner_id: str
    session_id: str | None
    records: tuple[ProgressRecord, ...] = ()
    decisions: tuple[MasteryDecision, ...] = ()
    adaptation: AdaptationDecision | NoAdaptation | None = None
    duplicate: bool = False
    attempts: int = 1

    def record_for(self, unit_id: str) -> ProgressRecord | None:
        for record in self.records:
            if record.unit_id == unit_id:
                return record
        return None

    @property
    def adapted(self) -> bool:
        return isinstance(self.adaptation, AdaptationDecision)


@dataclass(frozen=True)
class CommittedEvent:
    """
    Ledger entry for a committed event.

    Holds the records and decisions the event produced so a resubmission
    gets the original result back after the in-memory cache forgot it.
    """

    event_id: str
    learner_id: str
    committed_at: datetime
    session_id: str | None = None
    records: tuple[ProgressRecord, ...] = ()
    decisions: tuple[MasteryDecision, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "records", tuple(self.records))
        object.__setattr__(self, "decisions", tuple(self.decisions))

    def to_result(self, duplicate: bool = True) -> CommitResult:
        return CommitResult(
            event_id=self.event_id,
            learner_id=self.learner_id,
            session_id=self.session_id,
            records=self.records,
            decisions=self.decisions,
            duplicate=duplicate,
        )
