"""
Progress and mastery computation.

Components:
- ProgressAggregator: section truth -> lesson/course aggregates
- MasteryEvaluator: recency-weighted mastery decisions
"""
from progress_engine.progress.aggregator import ProgressAggregator
from progress_engine.progress.mastery import MasteryConfig, MasteryEvaluator

__all__ = ["ProgressAggregator", "MasteryConfig", "MasteryEvaluator"]
