"""
Session-scoped adaptation.

Components:
- SessionTracker: one active session per learner, active/elapsed time
- AdaptationEngine: sliding-window difficulty adjustment
"""
from progress_engine.adaptive.adaptation_engine import (
    AdaptationConfig,
    AdaptationEngine,
    classify_response,
)
from progress_engine.adaptive.session_tracker import SessionConfig, SessionTracker

__all__ = [
    "AdaptationConfig",
    "AdaptationEngine",
    "classify_response",
    "SessionConfig",
    "SessionTracker",
]
