"""
Mastery Evaluator.

Turns noisy assessment evidence into explainable mastery decisions.

Formula:
    weight_i       = recency_weight_i * decay ** age_days_i
    weighted_score = sum(score_i * weight_i) / sum(weight_i)
    variance       = sum(weight_i * (score_i - weighted_score) ** 2) / sum(weight_i)
    confidence     = (1 - 1 / (1 + n)) / (1 + variance_penalty * variance)

Decision rule:
    achieved    iff weighted_score >= mastery_threshold
                and confidence     >= confidence_threshold
    in_progress otherwise, with gaps = sub-skills scoring below threshold

Decisions are appended, never edited; the newest one per objective wins.
An achieved objective is never retracted by later, weaker evidence.
"""

from __future__ import annotations

import math
from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime

from loguru import logger

from progress_engine.config import Settings
from progress_engine.core.hierarchy import UnitHierarchy
from progress_engine.core.models import (
    AssessmentEvidence,
    MasteryDecision,
    MasteryOutcome,
    ensure_aware,
    utcnow,
)
from progress_engine.db.store import StoreTransaction

# Absorbs float noise so a score that equals the threshold on paper passes
SCORE_TOLERANCE = 1e-12


@dataclass(frozen=True)
class MasteryConfig:
    """Tunables for mastery evaluation."""

    decay: float = 0.95
    default_mastery_threshold: float = 0.80
    default_confidence_threshold: float = 0.85
    variance_penalty: float = 10.0

    @classmethod
    def from_settings(cls, settings: Settings) -> MasteryConfig:
        return cls(
            decay=settings.mastery_decay,
            default_mastery_threshold=settings.default_mastery_threshold,
            default_confidence_threshold=settings.default_confidence_threshold,
            variance_penalty=settings.confidence_variance_penalty,
        )


@dataclass(frozen=True)
class EvidenceScore:
    """Aggregate of a set of evidence."""

    weighted_score: float
    confidence: float
    variance: float
    evidence_count: int
    total_weight: float


# ============================================================================
# Formulas
# ============================================================================


def evidence_age_days(timestamp: datetime, now: datetime) -> float:
    """
    Days between an observation and now.

    Evidence stamped in the future (clock skew) counts as age 0.
    """
    delta = ensure_aware(now) - ensure_aware(timestamp)
    return max(0.0, delta.total_seconds() / 86400.0)


def recency_weight(evidence: AssessmentEvidence, now: datetime, decay: float) -> float:
    return evidence.recency_weight * decay ** evidence_age_days(evidence.timestamp, now)


def confidence_from(evidence_count: int, variance: float, variance_penalty: float) -> float:
    """
    Confidence grows with evidence count and shrinks with score variance.

    Saturates towards 1.0 as count grows: 1 piece -> 0.5, 3 -> 0.75, 9 -> 0.9.
    """
    if evidence_count <= 0:
        return 0.0
    count_factor = 1.0 - 1.0 / (1.0 + evidence_count)
    return count_factor / (1.0 + variance_penalty * variance)


def score_evidence(
    evidence: Sequence[AssessmentEvidence],
    now: datetime,
    decay: float,
    variance_penalty: float,
) -> EvidenceScore:
    """
    Compute the recency-weighted score and confidence for a set of evidence.

    Args:
        evidence: Evidence for one objective (or one sub-skill)
        now: Evaluation time
        decay: Per-day decay in (0, 1]
        variance_penalty: Variance multiplier in the confidence formula

    Returns:
        EvidenceScore (all zero for empty evidence)
    """
    if not evidence:
        return EvidenceScore(0.0, 0.0, 0.0, 0, 0.0)

    weights = [recency_weight(e, now, decay) for e in evidence]
    total = math.fsum(weights)
    if total <= 0:
        return EvidenceScore(0.0, 0.0, 0.0, len(evidence), 0.0)

    score = math.fsum(e.score * w for e, w in zip(evidence, weights)) / total
    variance = math.fsum(w * (e.score - score) ** 2 for e, w in zip(evidence, weights)) / total
    return EvidenceScore(
        weighted_score=score,
        confidence=confidence_from(len(evidence), variance, variance_penalty),
        variance=variance,
        evidence_count=len(evidence),
        total_weight=total,
    )


def meets(value: float, threshold: float) -> bool:
    """Inclusive threshold check: equality grants the bar."""
    return value >= threshold - SCORE_TOLERANCE


# ============================================================================
# Evaluator
# ============================================================================


class MasteryEvaluator:
    """
    Evaluate learning objectives from stored and incoming evidence.

    Thresholds come from the content unit the objective is bound to, falling
    back to the configured defaults for unbound objectives.
    """

    def __init__(self, hierarchy: UnitHierarchy, config: MasteryConfig | None = None):
        self.hierarchy = hierarchy
        self.config = config or MasteryConfig()

    def thresholds(self, objective_id: str) -> tuple[float, float]:
        """(mastery_threshold, confidence_threshold) for an objective."""
        unit = self.hierarchy.unit_for_objective(objective_id)
        if unit is None:
            return (
                self.config.default_mastery_threshold,
                self.config.default_confidence_threshold,
            )
        return unit.mastery_threshold, unit.confidence_threshold

    def evaluate(
        self,
        tx: StoreTransaction,
        learner_id: str,
        objective_id: str,
        new_evidence: Iterable[AssessmentEvidence],
        now: datetime | None = None,
    ) -> MasteryDecision:
        """
        Record new evidence and append a fresh decision for the objective.

        Args:
            tx: Open store transaction
            learner_id: Learner identifier
            objective_id: Objective being evaluated
            new_evidence: Evidence carried by the current event
            now: Evaluation time (defaults to UTC now)

        Returns:
            The appended MasteryDecision
        """
        now = now or utcnow()
        for evidence in new_evidence:
            if not tx.append_evidence(learner_id, evidence):
                logger.debug(
                    f"Ignoring duplicate evidence {evidence.source_interaction_id} for {objective_id}"
                )

        previous = tx.latest_decision(learner_id, objective_id)
        decision = self.decide(
            learner_id,
            objective_id,
            tx.list_evidence(learner_id, objective_id),
            now=now,
            previous=previous,
        )
        tx.append_decision(decision)

        if decision.is_achieved and (previous is None or not previous.is_achieved):
            logger.info(
                f"Mastery achieved: {learner_id}/{objective_id} "
                f"level={decision.mastery_level:.3f} confidence={decision.confidence:.3f}"
            )
        return decision

    def decide(
        self,
        learner_id: str,
        objective_id: str,
        evidence: Sequence[AssessmentEvidence],
        now: datetime,
        previous: MasteryDecision | None = None,
    ) -> MasteryDecision:
        """Pure decision over a complete evidence set."""
        mastery_threshold, confidence_threshold = self.thresholds(objective_id)
        scored = score_evidence(evidence, now, self.config.decay, self.config.variance_penalty)

        achieved = meets(scored.weighted_score, mastery_threshold) and meets(
            scored.confidence, confidence_threshold
        )
        gaps: frozenset[str] = frozenset()
        if not achieved:
            gaps = self.sub_skill_gaps(evidence, now, mastery_threshold)

        if not achieved and previous is not None and previous.is_achieved:
            # No decay-triggered "un-mastery": the achievement stands
            logger.debug(
                f"{learner_id}/{objective_id} below bar "
                f"(score={scored.weighted_score:.3f}, confidence={scored.confidence:.3f}); "
                f"keeping achieved outcome"
            )
            achieved = True

        return MasteryDecision(
            objective_id=objective_id,
            learner_id=learner_id,
            outcome=MasteryOutcome.ACHIEVED if achieved else MasteryOutcome.IN_PROGRESS,
            mastery_level=scored.weighted_score,
            confidence=scored.confidence,
            gaps=gaps,
            evidence_count=scored.evidence_count,
            decided_at=now,
        )

    def sub_skill_gaps(
        self,
        evidence: Sequence[AssessmentEvidence],
        now: datetime,
        mastery_threshold: float,
    ) -> frozenset[str]:
        """Sub-skills whose own weighted score falls below the mastery threshold."""
        by_skill: dict[str, list[AssessmentEvidence]] = defaultdict(list)
        for item in evidence:
            if item.sub_skill_id:
                by_skill[item.sub_skill_id].append(item)

        gaps = set()
        for skill_id, items in by_skill.items():
            scored = score_evidence(items, now, self.config.decay, self.config.variance_penalty)
            if not meets(scored.weighted_score, mastery_threshold):
                gaps.add(skill_id)
        return frozenset(gaps)
