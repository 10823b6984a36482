"""
External integrations.

Modules:
- recommendation: content recommendation providers (static and HTTP)
"""
from .recommendation import (
    ContentRecommendationProvider,
    HttpRecommendationProvider,
    StaticRecommendationProvider,
    recommend_with_timeout,
)

__all__ = [
    "ContentRecommendationProvider",
    "HttpRecommendationProvider",
    "StaticRecommendationProvider",
    "recommend_with_timeout",
]
