"""
Progress Aggregator.

The only component allowed to compute completion fractions. Section records
hold the reported truth; lesson and course records are derived from them:

    section.fraction = max(stored, reported)
    lesson.fraction  = mean(section fractions)
    course.fraction  = mean(lesson fractions)

A unit is completed exactly when its fraction reaches 1.0 (within 1e-9);
partial fractions are in_progress above 0 and not_started at 0. Childless
lessons/courses stay at 0 until an explicit mark_complete signal.
"""
from __future__ import annotations

from dataclasses import replace
from statistics import fmean

from loguru import logger

from progress_engine.core.errors import PrerequisiteUnmet
from progress_engine.core.hierarchy import UnitHierarchy
from progress_engine.core.models import (
    COMPLETION_TOLERANCE,
    ContentUnit,
    ProgressDelta,
    ProgressRecord,
    ProgressStatus,
    RecordChange,
    UpdatedRecords,
)
from progress_engine.db.store import StoreTransaction


def normalize_fraction(fraction: float) -> float:
    """Clamp to [0, 1] and snap values within tolerance of 1.0 to exactly 1.0."""
    fraction = min(1.0, max(0.0, fraction))
    if fraction >= 1.0 - COMPLETION_TOLERANCE:
        return 1.0
    return fraction


class ProgressAggregator:
    """
    Apply section progress and recompute lesson/course aggregates.

    Every write goes through the caller's StoreTransaction so the section
    update and all derived aggregates land together or not at all.
    """

    def __init__(self, hierarchy: UnitHierarchy):
        self.hierarchy = hierarchy

    def apply_section_progress(
        self,
        tx: StoreTransaction,
        learner_id: str,
        unit_id: str,
        delta: ProgressDelta,
    ) -> UpdatedRecords:
        """
        Apply one event's progress delta to a unit and propagate upward.

        Args:
            tx: Open store transaction
            learner_id: Learner identifier
            unit_id: Section (or childless unit with mark_complete) being updated
            delta: Fraction, time and completion signal carried by the event

        Returns:
            UpdatedRecords with every record written, leaf first

        Raises:
            PrerequisiteUnmet: a prerequisite is not completed and no override is set
            ValidationError: unknown unit id
        """
        unit = self.hierarchy.get(unit_id)
        if not delta.admin_override:
            self.check_prerequisites(tx, learner_id, unit)
        elif self.hierarchy.required_prerequisites(unit_id):
            logger.info(f"Prerequisite check overridden for {learner_id} on {unit_id}")

        changes: list[RecordChange] = []
        leaf_change = self._apply_to_leaf(tx, learner_id, unit, delta)
        if leaf_change is not None:
            changes.append(leaf_change)
            for ancestor in self.hierarchy.ancestors(unit_id):
                change = self._recompute(tx, learner_id, ancestor, delta)
                if change is not None:
                    changes.append(change)

        return UpdatedRecords(changes=tuple(changes))

    def check_prerequisites(
        self, tx: StoreTransaction, learner_id: str, unit: ContentUnit
    ) -> None:
        missing = []
        for prereq_id in self.hierarchy.required_prerequisites(unit.unit_id):
            record = tx.get_record(learner_id, prereq_id)
            if record is None or not record.is_completed:
                missing.append(prereq_id)
        if missing:
            raise PrerequisiteUnmet(unit.unit_id, missing)

    def recompute(self, tx: StoreTransaction, learner_id: str, unit_id: str) -> UpdatedRecords:
        """
        Rebuild a unit's aggregate and its ancestors' from section truth.

        Used after a hierarchy refresh or to repair derived records.
        """
        unit = self.hierarchy.get(unit_id)
        delta = ProgressDelta()  # no new time or fraction
        chain = self.hierarchy.ancestors(unit_id)
        if unit.children:
            chain.insert(0, unit)
        changes = []
        for target in chain:
            change = self._recompute(tx, learner_id, target, delta)
            if change is not None:
                changes.append(change)
        return UpdatedRecords(changes=tuple(changes))

    def unit_fraction(self, tx: StoreTransaction, learner_id: str, unit_id: str) -> float:
        record = tx.get_record(learner_id, unit_id)
        return record.fraction if record else 0.0

    # ========================================
    # Internals
    # ========================================

    def _apply_to_leaf(
        self,
        tx: StoreTransaction,
        learner_id: str,
        unit: ContentUnit,
        delta: ProgressDelta,
    ) -> RecordChange | None:
        before = tx.get_record(learner_id, unit.unit_id) or ProgressRecord.empty(
            learner_id, unit.unit_id
        )

        if delta.mark_complete:
            reported = 1.0
        elif delta.fraction is not None:
            reported = normalize_fraction(delta.fraction)
        else:
            reported = before.fraction

        if reported < before.fraction:
            logger.debug(
                f"Stale fraction for {learner_id}/{unit.unit_id}: "
                f"{reported:.3f} < {before.fraction:.3f}, keeping stored value"
            )
        fraction = max(before.fraction, reported)
        status = before.status.promote(ProgressStatus.from_fraction(fraction))

        best_score = before.best_score
        if delta.best_score is not None:
            best_score = delta.best_score if best_score is None else max(best_score, delta.best_score)

        after = replace(
            before,
            fraction=fraction,
            status=status,
            time_spent_seconds=before.time_spent_seconds + delta.time_spent_seconds,
            attempt_count=before.attempt_count + (1 if delta.counts_attempt else 0),
            best_score=best_score,
            updated_at=delta.occurred_at or before.updated_at,
        )
        if self._same_state(before, after, ignore_attempts=True) and not delta.counts_attempt:
            # Stale or empty report; leave the record untouched
            return None

        stored = tx.put_record(after, expected_version=before.version)
        return RecordChange(before=before, after=stored)

    def _recompute(
        self,
        tx: StoreTransaction,
        learner_id: str,
        unit: ContentUnit,
        delta: ProgressDelta,
    ) -> RecordChange | None:
        before = tx.get_record(learner_id, unit.unit_id) or ProgressRecord.empty(
            learner_id, unit.unit_id
        )
        child_records = [
            tx.get_record(learner_id, child_id) for child_id in unit.children
        ]
        if child_records:
            derived = normalize_fraction(
                fmean(r.fraction if r else 0.0 for r in child_records)
            )
            time_spent = sum(r.time_spent_seconds for r in child_records if r)
        else:
            derived = before.fraction
            time_spent = before.time_spent_seconds

        if derived < before.fraction:
            # Only possible when a hierarchy refresh added children
            logger.warning(
                f"Aggregate for {learner_id}/{unit.unit_id} would regress "
                f"({before.fraction:.4f} -> {derived:.4f}); keeping stored fraction"
            )
        fraction = max(before.fraction, derived)
        status = before.status.promote(ProgressStatus.from_fraction(fraction))

        after = replace(
            before,
            fraction=fraction,
            status=status,
            time_spent_seconds=max(before.time_spent_seconds, time_spent),
            updated_at=delta.occurred_at or before.updated_at,
        )
        if self._same_state(before, after):
            return None

        stored = tx.put_record(after, expected_version=before.version)
        if stored.status != before.status:
            logger.info(
                f"{unit.kind.value.title()} {unit.unit_id} for {learner_id}: "
                f"{before.status.value} -> {stored.status.value} ({stored.fraction:.0%})"
            )
        return RecordChange(before=before, after=stored)

    @staticmethod
    def _same_state(before: ProgressRecord, after: ProgressRecord, ignore_attempts: bool = False) -> bool:
        return (
            before.fraction == after.fraction
            and before.status == after.status
            and before.time_spent_seconds == after.time_spent_seconds
            and before.best_score == after.best_score
            and (ignore_attempts or before.attempt_count == after.attempt_count)
        )
