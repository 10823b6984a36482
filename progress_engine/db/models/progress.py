"""
Progress Store Models.

SQLAlchemy models for the progress engine's durable state:
- Per-(learner, unit) progress records with an optimistic-concurrency version
- Append-only mastery decision log
- Assessment evidence per objective
- Committed event ledger (idempotency)
- Finalized session summaries
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, DateTime, Float, Index, Integer, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class ProgressRecordRow(Base):
    """
    Authoritative completion state per learner per content unit.

    `version` increments on every write; writers must present the version
    they read (compare-and-set).
    """

    __tablename__ = "progress_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    learner_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    unit_id: Mapped[str] = mapped_column(Text, nullable=False)

    status: Mapped[str] = mapped_column(Text, default="not_started")  # not_started, in_progress, completed
    fraction: Mapped[float] = mapped_column(Float, default=0.0)
    time_spent_seconds: Mapped[float] = mapped_column(Float, default=0.0)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0)
    best_score: Mapped[float | None] = mapped_column(Float)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint("learner_id", "unit_id", name="uq_progress_learner_unit"),
        Index("idx_progress_status", "learner_id", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<ProgressRecordRow learner={self.learner_id} unit={self.unit_id} "
            f"fraction={self.fraction} v{self.version}>"
        )


class MasteryDecisionRow(Base):
    """Append-only mastery decisions; the newest row per objective wins."""

    __tablename__ = "mastery_decisions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    learner_id: Mapped[str] = mapped_column(Text, nullable=False)
    objective_id: Mapped[str] = mapped_column(Text, nullable=False)
    outcome: Mapped[str] = mapped_column(Text, nullable=False)  # achieved, in_progress
    mastery_level: Mapped[float] = mapped_column(Float, nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    gaps: Mapped[list] = mapped_column(JSON, default=list)
    evidence_count: Mapped[int] = mapped_column(Integer, default=0)
    decided_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("idx_decision_lookup", "learner_id", "objective_id", "id"),)

    def __repr__(self) -> str:
        return f"<MasteryDecisionRow learner={self.learner_id} objective={self.objective_id} outcome={self.outcome}>"


class AssessmentEvidenceRow(Base):
    """Graded evidence for a learner's objective."""

    __tablename__ = "assessment_evidence"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    learner_id: Mapped[str] = mapped_column(Text, nullable=False)
    objective_id: Mapped[str] = mapped_column(Text, nullable=False)
    score: Mapped[float] = mapped_column(Float, nullable=False)
    recency_weight: Mapped[float] = mapped_column(Float, default=1.0)
    sub_skill_id: Mapped[str | None] = mapped_column(Text)
    source_interaction_id: Mapped[str] = mapped_column(Text, nullable=False)
    observed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "learner_id", "objective_id", "source_interaction_id", name="uq_evidence_source"
        ),
        Index("idx_evidence_lookup", "learner_id", "objective_id"),
    )


class CommittedEventRow(Base):
    """Ledger of committed interaction events, used to make submission idempotent."""

    __tablename__ = "committed_events"

    event_id: Mapped[str] = mapped_column(Text, primary_key=True)
    learner_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    committed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    session_id: Mapped[str | None] = mapped_column(Text)

    # Snapshot of the CommitResult, replayed for resubmitted event ids
    records: Mapped[list] = mapped_column(JSON, default=list)
    decisions: Mapped[list] = mapped_column(JSON, default=list)


class SessionSummaryRow(Base):
    """Finalized learning session."""

    __tablename__ = "session_summaries"

    session_id: Mapped[str] = mapped_column(Text, primary_key=True)
    learner_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ended_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    elapsed_seconds: Mapped[float] = mapped_column(Float, default=0.0)
    active_seconds: Mapped[float] = mapped_column(Float, default=0.0)
    final_difficulty: Mapped[int] = mapped_column(Integer, nullable=False)
    event_count: Mapped[int] = mapped_column(Integer, default=0)
    end_reason: Mapped[str] = mapped_column(Text, default="explicit")  # explicit, idle_timeout
