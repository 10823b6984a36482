"""
Progress Store.

Durable keyed storage of per-(learner, unit) progress records; the single
source of truth for progress and mastery. All writes for one interaction
event go through a StoreTransaction and become visible together on commit,
or not at all.

Implementations:
- InMemoryProgressStore: thread-safe dictionaries (tests, embedded use)
- SqlProgressStore: SQLAlchemy backend (see sql_store.py)
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import replace

from loguru import logger

from progress_engine.core.errors import ConcurrentWriteConflict
from progress_engine.core.models import (
    AssessmentEvidence,
    CommittedEvent,
    MasteryDecision,
    ProgressRecord,
    SessionSummary,
)


class StoreTransaction(ABC):
    """Unit of work with read-your-writes semantics."""

    @abstractmethod
    def get_record(self, learner_id: str, unit_id: str) -> ProgressRecord | None:
        ...

    @abstractmethod
    def put_record(self, record: ProgressRecord, expected_version: int) -> ProgressRecord:
        """
        Write a record if the stored version still equals expected_version.

        Args:
            record: New record contents (its own version field is ignored)
            expected_version: Version the caller read; 0 for a record that does not exist yet

        Returns:
            The record as stored, with version = expected_version + 1

        Raises:
            ConcurrentWriteConflict: stored version differs from expected_version
        """

    @abstractmethod
    def list_evidence(self, learner_id: str, objective_id: str) -> list[AssessmentEvidence]:
        ...

    @abstractmethod
    def append_evidence(self, learner_id: str, evidence: AssessmentEvidence) -> bool:
        """Store evidence; returns False when the source interaction was already recorded."""

    @abstractmethod
    def latest_decision(self, learner_id: str, objective_id: str) -> MasteryDecision | None:
        ...

    @abstractmethod
    def append_decision(self, decision: MasteryDecision) -> None:
        ...

    @abstractmethod
    def get_event(self, event_id: str) -> CommittedEvent | None:
        """Ledger entry for a committed event id, or None."""

    def has_event(self, event_id: str) -> bool:
        return self.get_event(event_id) is not None

    @abstractmethod
    def mark_event(self, entry: CommittedEvent) -> None:
        ...


class ProgressStore(ABC):
    """Transactional progress storage shared by all coordinator workers."""

    @abstractmethod
    def transaction(self) -> Generator[StoreTransaction, None, None]:
        """Context manager: commit on clean exit, discard everything on error."""

    # ----- single-operation conveniences -----

    def get_record(self, learner_id: str, unit_id: str) -> ProgressRecord | None:
        with self.transaction() as tx:
            return tx.get_record(learner_id, unit_id)

    def put_record(self, record: ProgressRecord, expected_version: int) -> ProgressRecord:
        with self.transaction() as tx:
            return tx.put_record(record, expected_version)

    def append_decision(self, decision: MasteryDecision) -> None:
        with self.transaction() as tx:
            tx.append_decision(decision)

    def latest_decision(self, learner_id: str, objective_id: str) -> MasteryDecision | None:
        with self.transaction() as tx:
            return tx.latest_decision(learner_id, objective_id)

    def list_evidence(self, learner_id: str, objective_id: str) -> list[AssessmentEvidence]:
        with self.transaction() as tx:
            return tx.list_evidence(learner_id, objective_id)

    def has_event(self, event_id: str) -> bool:
        with self.transaction() as tx:
            return tx.has_event(event_id)

    def get_event(self, event_id: str) -> CommittedEvent | None:
        with self.transaction() as tx:
            return tx.get_event(event_id)

    # ----- learner-scoped queries -----

    @abstractmethod
    def list_records(self, learner_id: str) -> list[ProgressRecord]:
        ...

    @abstractmethod
    def decision_history(self, learner_id: str, objective_id: str) -> list[MasteryDecision]:
        """All decisions for an objective, oldest first."""

    @abstractmethod
    def latest_decisions(self, learner_id: str) -> list[MasteryDecision]:
        """Latest decision per objective for a learner."""

    @abstractmethod
    def save_session_summary(self, summary: SessionSummary) -> None:
        ...

    @abstractmethod
    def list_session_summaries(self, learner_id: str) -> list[SessionSummary]:
        ...

    @abstractmethod
    def purge_learner(self, learner_id: str) -> int:
        """Delete everything stored for a learner; returns rows removed."""


# ============================================================================
# In-memory implementation
# ============================================================================


class InMemoryTransaction(StoreTransaction):
    """Buffers writes and applies them under the store lock on commit."""

    def __init__(self, store: InMemoryProgressStore):
        self._store = store
        self.records: dict[tuple[str, str], ProgressRecord] = {}
        self.base_versions: dict[tuple[str, str], int] = {}
        self.evidence: list[tuple[str, AssessmentEvidence]] = []
        self.decisions: list[MasteryDecision] = []
        self.events: dict[str, CommittedEvent] = {}

    def get_record(self, learner_id: str, unit_id: str) -> ProgressRecord | None:
        key = (learner_id, unit_id)
        if key in self.records:
            return self.records[key]
        return self._store._read_record(key)

    def put_record(self, record: ProgressRecord, expected_version: int) -> ProgressRecord:
        key = (record.learner_id, record.unit_id)
        current = self.get_record(*key)
        actual = current.version if current else 0
        if actual != expected_version:
            raise ConcurrentWriteConflict(record.learner_id, record.unit_id, expected_version, actual)
        if key not in self.base_versions:
            self.base_versions[key] = actual
        stored = replace(record, version=expected_version + 1)
        self.records[key] = stored
        return stored

    def list_evidence(self, learner_id: str, objective_id: str) -> list[AssessmentEvidence]:
        pending = [
            e for lid, e in self.evidence if lid == learner_id and e.objective_id == objective_id
        ]
        return self._store._read_evidence(learner_id, objective_id) + pending

    def append_evidence(self, learner_id: str, evidence: AssessmentEvidence) -> bool:
        known = {
            e.source_interaction_id for e in self.list_evidence(learner_id, evidence.objective_id)
        }
        if evidence.source_interaction_id in known:
            return False
        self.evidence.append((learner_id, evidence))
        return True

    def latest_decision(self, learner_id: str, objective_id: str) -> MasteryDecision | None:
        for decision in reversed(self.decisions):
            if decision.learner_id == learner_id and decision.objective_id == objective_id:
                return decision
        history = self._store._read_decisions(learner_id, objective_id)
        return history[-1] if history else None

    def append_decision(self, decision: MasteryDecision) -> None:
        self.decisions.append(decision)

    def get_event(self, event_id: str) -> CommittedEvent | None:
        return self.events.get(event_id) or self._store._read_event(event_id)

    def mark_event(self, entry: CommittedEvent) -> None:
        self.events[entry.event_id] = entry


class InMemoryProgressStore(ProgressStore):
    """Thread-safe dictionary-backed store."""

    def __init__(self):
        self._lock = threading.RLock()
        self._records: dict[tuple[str, str], ProgressRecord] = {}
        self._evidence: dict[tuple[str, str], list[AssessmentEvidence]] = {}
        self._decisions: dict[tuple[str, str], list[MasteryDecision]] = {}
        self._events: dict[str, CommittedEvent] = {}
        self._sessions: dict[str, SessionSummary] = {}

    @contextmanager
    def transaction(self) -> Generator[InMemoryTransaction, None, None]:
        tx = InMemoryTransaction(self)
        yield tx
        self._commit(tx)

    def _commit(self, tx: InMemoryTransaction) -> None:
        with self._lock:
            for key, base in tx.base_versions.items():
                current = self._records.get(key)
                actual = current.version if current else 0
                if actual != base:
                    raise ConcurrentWriteConflict(key[0], key[1], base, actual)
            self._records.update(tx.records)
            for learner_id, evidence in tx.evidence:
                self._evidence.setdefault((learner_id, evidence.objective_id), []).append(evidence)
            for decision in tx.decisions:
                key = (decision.learner_id, decision.objective_id)
                self._decisions.setdefault(key, []).append(decision)
            self._events.update(tx.events)

    # ----- raw reads used by transactions -----

    def _read_record(self, key: tuple[str, str]) -> ProgressRecord | None:
        with self._lock:
            return self._records.get(key)

    def _read_evidence(self, learner_id: str, objective_id: str) -> list[AssessmentEvidence]:
        with self._lock:
            return list(self._evidence.get((learner_id, objective_id), []))

    def _read_decisions(self, learner_id: str, objective_id: str) -> list[MasteryDecision]:
        with self._lock:
            return list(self._decisions.get((learner_id, objective_id), []))

    def _read_event(self, event_id: str) -> CommittedEvent | None:
        with self._lock:
            return self._events.get(event_id)

    # ----- lock-only reads, no transaction needed -----

    def get_record(self, learner_id: str, unit_id: str) -> ProgressRecord | None:
        return self._read_record((learner_id, unit_id))

    def latest_decision(self, learner_id: str, objective_id: str) -> MasteryDecision | None:
        history = self._read_decisions(learner_id, objective_id)
        return history[-1] if history else None

    def list_evidence(self, learner_id: str, objective_id: str) -> list[AssessmentEvidence]:
        return self._read_evidence(learner_id, objective_id)

    def has_event(self, event_id: str) -> bool:
        return self._read_event(event_id) is not None

    def get_event(self, event_id: str) -> CommittedEvent | None:
        return self._read_event(event_id)

    # ----- learner-scoped queries -----

    def list_records(self, learner_id: str) -> list[ProgressRecord]:
        with self._lock:
            return [r for (lid, _), r in self._records.items() if lid == learner_id]

    def decision_history(self, learner_id: str, objective_id: str) -> list[MasteryDecision]:
        return self._read_decisions(learner_id, objective_id)

    def latest_decisions(self, learner_id: str) -> list[MasteryDecision]:
        with self._lock:
            return [
                history[-1]
                for (lid, _), history in self._decisions.items()
                if lid == learner_id and history
            ]

    def save_session_summary(self, summary: SessionSummary) -> None:
        with self._lock:
            self._sessions[summary.session_id] = summary

    def list_session_summaries(self, learner_id: str) -> list[SessionSummary]:
        with self._lock:
            return [s for s in self._sessions.values() if s.learner_id == learner_id]

    def purge_learner(self, learner_id: str) -> int:
        removed = 0
        with self._lock:
            for table in (self._records, self._evidence, self._decisions):
                for key in [k for k in table if k[0] == learner_id]:
                    del table[key]
                    removed += 1
            for event_id in [e for e, entry in self._events.items() if entry.learner_id == learner_id]:
                del self._events[event_id]
                removed += 1
            for session_id in [s for s, v in self._sessions.items() if v.learner_id == learner_id]:
                del self._sessions[session_id]
                removed += 1
        logger.info(f"Purged {removed} entries for learner {learner_id}")
        return removed

