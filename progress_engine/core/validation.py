"""Synchronous validation of interaction events against a hierarchy snapshot."""

from __future__ import annotations

import math

from progress_engine.core.errors import ValidationError
from progress_engine.core.hierarchy import UnitHierarchy
from progress_engine.core.models import InteractionEvent, UnitKind


def _check_unit_interval(name: str, value: float) -> None:
    if math.isnan(value) or not 0.0 <= value <= 1.0:
        raise ValidationError(f"{name} must be within [0, 1], got {value}")


def validate_event(event: InteractionEvent, hierarchy: UnitHierarchy) -> None:
    """
    Reject malformed events before anything is queued or applied.

    Raises:
        ValidationError: unknown unit, out-of-range fraction or score,
            negative time, or a progress signal the unit cannot accept
    """
    if not event.event_id:
        raise ValidationError("event_id is required")
    if not event.learner_id:
        raise ValidationError("learner_id is required")

    unit = hierarchy.get(event.unit_id)

    if event.fraction is not None:
        _check_unit_interval("fraction", event.fraction)
        if unit.kind != UnitKind.SECTION:
            raise ValidationError(
                f"Fractions are reported on sections; {unit.unit_id} is a {unit.kind.value}"
            )

    if math.isnan(event.time_spent_seconds) or event.time_spent_seconds < 0:
        raise ValidationError(f"time_spent_seconds must be >= 0, got {event.time_spent_seconds}")

    if event.mark_complete and unit.kind != UnitKind.SECTION and unit.children:
        raise ValidationError(
            f"{unit.unit_id} has children; its completion is derived from them"
        )

    for evidence in event.evidence:
        _check_unit_interval("evidence score", evidence.score)
        if not evidence.objective_id:
            raise ValidationError("evidence objective_id is required")
        if evidence.recency_weight <= 0:
            raise ValidationError(f"recency_weight must be > 0, got {evidence.recency_weight}")

    response = event.response
    if response is not None:
        if response.response_time_seconds < 0:
            raise ValidationError("response_time_seconds must be >= 0")
        if response.expected_time_seconds <= 0:
            raise ValidationError("expected_time_seconds must be > 0")
        if response.self_confidence is not None and not 1 <= response.self_confidence <= 5:
            raise ValidationError(
                f"self_confidence must be within 1-5, got {response.self_confidence}"
            )
