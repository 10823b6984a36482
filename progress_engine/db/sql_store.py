"""
SQLAlchemy-backed progress store.

Each StoreTransaction wraps one ORM session; its writes are flushed eagerly
so reads inside the transaction see them, and the session commits once at
the end. Version checks are done with conditional UPDATEs (compare-and-set).
"""

from __future__ import annotations

from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime

from loguru import logger
from sqlalchemy import delete, exists, insert, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from progress_engine.core.errors import ConcurrentWriteConflict, StoreUnavailable
from progress_engine.core.models import (
    AssessmentEvidence,
    CommittedEvent,
    MasteryDecision,
    MasteryOutcome,
    ProgressRecord,
    ProgressStatus,
    SessionEndReason,
    SessionSummary,
    ensure_aware,
)
from progress_engine.db.database import session_scope
from progress_engine.db.models import (
    AssessmentEvidenceRow,
    CommittedEventRow,
    MasteryDecisionRow,
    ProgressRecordRow,
    SessionSummaryRow,
)
from progress_engine.db.store import ProgressStore, StoreTransaction


def _aware(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on the way back
    return ensure_aware(value) if value is not None else None


def _to_record(row: ProgressRecordRow) -> ProgressRecord:
    return ProgressRecord(
        learner_id=row.learner_id,
        unit_id=row.unit_id,
        status=ProgressStatus(row.status),
        fraction=row.fraction,
        time_spent_seconds=row.time_spent_seconds,
        attempt_count=row.attempt_count,
        updated_at=_aware(row.updated_at),
        best_score=row.best_score,
        version=row.version,
    )


def _to_decision(row: MasteryDecisionRow) -> MasteryDecision:
    return MasteryDecision(
        objective_id=row.objective_id,
        learner_id=row.learner_id,
        outcome=MasteryOutcome(row.outcome),
        mastery_level=row.mastery_level,
        confidence=row.confidence,
        gaps=frozenset(row.gaps or []),
        evidence_count=row.evidence_count,
        decided_at=_aware(row.decided_at),
    )


def _to_evidence(row: AssessmentEvidenceRow) -> AssessmentEvidence:
    return AssessmentEvidence(
        objective_id=row.objective_id,
        score=row.score,
        timestamp=_aware(row.observed_at),
        source_interaction_id=row.source_interaction_id,
        recency_weight=row.recency_weight,
        sub_skill_id=row.sub_skill_id,
    )


def _record_to_json(record: ProgressRecord) -> dict:
    return {
        "unit_id": record.unit_id,
        "status": record.status.value,
        "fraction": record.fraction,
        "time_spent_seconds": record.time_spent_seconds,
        "attempt_count": record.attempt_count,
        "updated_at": record.updated_at.isoformat() if record.updated_at else None,
        "best_score": record.best_score,
        "version": record.version,
    }


def _record_from_json(learner_id: str, data: dict) -> ProgressRecord:
    updated_at = data.get("updated_at")
    return ProgressRecord(
        learner_id=learner_id,
        unit_id=data["unit_id"],
        status=ProgressStatus(data["status"]),
        fraction=data["fraction"],
        time_spent_seconds=data["time_spent_seconds"],
        attempt_count=data["attempt_count"],
        updated_at=_aware(datetime.fromisoformat(updated_at)) if updated_at else None,
        best_score=data.get("best_score"),
        version=data["version"],
    )


def _decision_to_json(decision: MasteryDecision) -> dict:
    return {
        "objective_id": decision.objective_id,
        "outcome": decision.outcome.value,
        "mastery_level": decision.mastery_level,
        "confidence": decision.confidence,
        "gaps": sorted(decision.gaps),
        "evidence_count": decision.evidence_count,
        "decided_at": decision.decided_at.isoformat(),
    }


def _decision_from_json(learner_id: str, data: dict) -> MasteryDecision:
    return MasteryDecision(
        objective_id=data["objective_id"],
        learner_id=learner_id,
        outcome=MasteryOutcome(data["outcome"]),
        mastery_level=data["mastery_level"],
        confidence=data["confidence"],
        gaps=frozenset(data["gaps"]),
        evidence_count=data["evidence_count"],
        decided_at=_aware(datetime.fromisoformat(data["decided_at"])),
    )


def _to_committed(row: CommittedEventRow) -> CommittedEvent:
    return CommittedEvent(
        event_id=row.event_id,
        learner_id=row.learner_id,
        committed_at=_aware(row.committed_at),
        session_id=row.session_id,
        records=tuple(_record_from_json(row.learner_id, r) for r in row.records or []),
        decisions=tuple(_decision_from_json(row.learner_id, d) for d in row.decisions or []),
    )


def _to_summary(row: SessionSummaryRow) -> SessionSummary:
    return SessionSummary(
        session_id=row.session_id,
        learner_id=row.learner_id,
        started_at=_aware(row.started_at),
        ended_at=_aware(row.ended_at),
        elapsed_seconds=row.elapsed_seconds,
        active_seconds=row.active_seconds,
        final_difficulty=row.final_difficulty,
        event_count=row.event_count,
        end_reason=SessionEndReason(row.end_reason),
    )


class SqlTransaction(StoreTransaction):
    """StoreTransaction bound to a single SQLAlchemy session."""

    def __init__(self, session: Session):
        self.session = session
        self.last_key: tuple[str, str] = ("", "")

    def get_record(self, learner_id: str, unit_id: str) -> ProgressRecord | None:
        row = self.session.scalars(
            select(ProgressRecordRow).where(
                ProgressRecordRow.learner_id == learner_id,
                ProgressRecordRow.unit_id == unit_id,
            )
        ).first()
        return _to_record(row) if row else None

    def _current_version(self, learner_id: str, unit_id: str) -> int | None:
        return self.session.scalar(
            select(ProgressRecordRow.version).where(
                ProgressRecordRow.learner_id == learner_id,
                ProgressRecordRow.unit_id == unit_id,
            )
        )

    def put_record(self, record: ProgressRecord, expected_version: int) -> ProgressRecord:
        values = {
            "status": record.status.value,
            "fraction": record.fraction,
            "time_spent_seconds": record.time_spent_seconds,
            "attempt_count": record.attempt_count,
            "best_score": record.best_score,
            "updated_at": record.updated_at,
            "version": expected_version + 1,
        }

        self.last_key = (record.learner_id, record.unit_id)
        if expected_version == 0:
            actual = self._current_version(record.learner_id, record.unit_id)
            if actual is not None:
                raise ConcurrentWriteConflict(
                    record.learner_id, record.unit_id, expected_version, actual
                )
            # A racing insert surfaces as IntegrityError at commit
            self.session.execute(
                insert(ProgressRecordRow).values(
                    learner_id=record.learner_id, unit_id=record.unit_id, **values
                )
            )
        else:
            result = self.session.execute(
                update(ProgressRecordRow)
                .where(
                    ProgressRecordRow.learner_id == record.learner_id,
                    ProgressRecordRow.unit_id == record.unit_id,
                    ProgressRecordRow.version == expected_version,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                actual = self._current_version(record.learner_id, record.unit_id)
                raise ConcurrentWriteConflict(
                    record.learner_id, record.unit_id, expected_version, actual
                )

        self.session.expire_all()
        return ProgressRecord(
            learner_id=record.learner_id,
            unit_id=record.unit_id,
            status=record.status,
            fraction=record.fraction,
            time_spent_seconds=record.time_spent_seconds,
            attempt_count=record.attempt_count,
            updated_at=record.updated_at,
            best_score=record.best_score,
            version=expected_version + 1,
        )

    def list_evidence(self, learner_id: str, objective_id: str) -> list[AssessmentEvidence]:
        rows = self.session.scalars(
            select(AssessmentEvidenceRow)
            .where(
                AssessmentEvidenceRow.learner_id == learner_id,
                AssessmentEvidenceRow.objective_id == objective_id,
            )
            .order_by(AssessmentEvidenceRow.id)
        )
        return [_to_evidence(row) for row in rows]

    def append_evidence(self, learner_id: str, evidence: AssessmentEvidence) -> bool:
        already = self.session.scalar(
            select(
                exists().where(
                    AssessmentEvidenceRow.learner_id == learner_id,
                    AssessmentEvidenceRow.objective_id == evidence.objective_id,
                    AssessmentEvidenceRow.source_interaction_id == evidence.source_interaction_id,
                )
            )
        )
        if already:
            return False
        self.session.add(
            AssessmentEvidenceRow(
                learner_id=learner_id,
                objective_id=evidence.objective_id,
                score=evidence.score,
                recency_weight=evidence.recency_weight,
                sub_skill_id=evidence.sub_skill_id,
                source_interaction_id=evidence.source_interaction_id,
                observed_at=evidence.timestamp,
            )
        )
        self.session.flush()
        return True

    def latest_decision(self, learner_id: str, objective_id: str) -> MasteryDecision | None:
        row = self.session.scalars(
            select(MasteryDecisionRow)
            .where(
                MasteryDecisionRow.learner_id == learner_id,
                MasteryDecisionRow.objective_id == objective_id,
            )
            .order_by(MasteryDecisionRow.id.desc())
            .limit(1)
        ).first()
        return _to_decision(row) if row else None

    def append_decision(self, decision: MasteryDecision) -> None:
        self.session.add(
            MasteryDecisionRow(
                learner_id=decision.learner_id,
                objective_id=decision.objective_id,
                outcome=decision.outcome.value,
                mastery_level=decision.mastery_level,
                confidence=decision.confidence,
                gaps=sorted(decision.gaps),
                evidence_count=decision.evidence_count,
                decided_at=decision.decided_at,
            )
        )
        self.session.flush()

    def get_event(self, event_id: str) -> CommittedEvent | None:
        row = self.session.get(CommittedEventRow, event_id)
        return _to_committed(row) if row else None

    def has_event(self, event_id: str) -> bool:
        return self.session.get(CommittedEventRow, event_id) is not None

    def mark_event(self, entry: CommittedEvent) -> None:
        self.session.add(
            CommittedEventRow(
                event_id=entry.event_id,
                learner_id=entry.learner_id,
                committed_at=entry.committed_at,
                session_id=entry.session_id,
                records=[_record_to_json(r) for r in entry.records],
                decisions=[_decision_to_json(d) for d in entry.decisions],
            )
        )
        self.session.flush()


class SqlProgressStore(ProgressStore):
    """Progress store on any SQLAlchemy-supported database."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    @contextmanager
    def transaction(self) -> Generator[SqlTransaction, None, None]:
        tx: SqlTransaction | None = None
        try:
            with session_scope(self._session_factory) as session:
                tx = SqlTransaction(session)
                yield tx
        except IntegrityError as e:
            # Lost a race on a unique key to a writer outside this process
            learner_id, unit_id = tx.last_key if tx else ("", "")
            raise ConcurrentWriteConflict(learner_id, unit_id, 0, None) from e
        except (OperationalError, DBAPIError) as e:
            logger.warning(f"Progress store unavailable: {e}")
            raise StoreUnavailable(str(e)) from e

    def list_records(self, learner_id: str) -> list[ProgressRecord]:
        with self.transaction() as tx:
            rows = tx.session.scalars(
                select(ProgressRecordRow)
                .where(ProgressRecordRow.learner_id == learner_id)
                .order_by(ProgressRecordRow.unit_id)
            )
            return [_to_record(row) for row in rows]

    def decision_history(self, learner_id: str, objective_id: str) -> list[MasteryDecision]:
        with self.transaction() as tx:
            rows = tx.session.scalars(
                select(MasteryDecisionRow)
                .where(
                    MasteryDecisionRow.learner_id == learner_id,
                    MasteryDecisionRow.objective_id == objective_id,
                )
                .order_by(MasteryDecisionRow.id)
            )
            return [_to_decision(row) for row in rows]

    def latest_decisions(self, learner_id: str) -> list[MasteryDecision]:
        with self.transaction() as tx:
            rows = tx.session.scalars(
                select(MasteryDecisionRow)
                .where(MasteryDecisionRow.learner_id == learner_id)
                .order_by(MasteryDecisionRow.id)
            )
            latest: dict[str, MasteryDecision] = {}
            for row in rows:
                latest[row.objective_id] = _to_decision(row)
            return list(latest.values())

    def save_session_summary(self, summary: SessionSummary) -> None:
        with self.transaction() as tx:
            tx.session.merge(
                SessionSummaryRow(
                    session_id=summary.session_id,
                    learner_id=summary.learner_id,
                    started_at=summary.started_at,
                    ended_at=summary.ended_at,
                    elapsed_seconds=summary.elapsed_seconds,
                    active_seconds=summary.active_seconds,
                    final_difficulty=summary.final_difficulty,
                    event_count=summary.event_count,
                    end_reason=summary.end_reason.value,
                )
            )

    def list_session_summaries(self, learner_id: str) -> list[SessionSummary]:
        with self.transaction() as tx:
            rows = tx.session.scalars(
                select(SessionSummaryRow)
                .where(SessionSummaryRow.learner_id == learner_id)
                .order_by(SessionSummaryRow.started_at)
            )
            return [_to_summary(row) for row in rows]

    def purge_learner(self, learner_id: str) -> int:
        removed = 0
        with self.transaction() as tx:
            for model in (
                ProgressRecordRow,
                MasteryDecisionRow,
                AssessmentEvidenceRow,
                CommittedEventRow,
                SessionSummaryRow,
            ):
                result = tx.session.execute(delete(model).where(model.learner_id == learner_id))
                removed += result.rowcount or 0
        logger.info(f"Purged {removed} rows for learner {learner_id}")
        return removed
