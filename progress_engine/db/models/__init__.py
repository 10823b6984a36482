# SQLAlchemy models
from .base import Base
from .progress import (
    AssessmentEvidenceRow,
    CommittedEventRow,
    MasteryDecisionRow,
    ProgressRecordRow,
    SessionSummaryRow,
)

__all__ = [
    "Base",
    "AssessmentEvidenceRow",
    "CommittedEventRow",
    "MasteryDecisionRow",
    "ProgressRecordRow",
    "SessionSummaryRow",
]
