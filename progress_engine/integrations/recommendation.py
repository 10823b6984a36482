"""
Content recommendation providers.

The recommendation lookup is the only blocking external call on the
adaptation path. Every call goes through recommend_with_timeout(): a slow or
failing provider degrades to "no recommendation", never to an error for the
event being processed.
"""

from __future__ import annotations

from collections.abc import Iterable
from concurrent.futures import Executor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Protocol

import httpx
from loguru import logger

from progress_engine.core.hierarchy import HierarchyHolder
from progress_engine.core.models import ContentUnit
from progress_engine.core.schemas import UnitPayload


class ContentRecommendationProvider(Protocol):
    """External collaborator that suggests content at a difficulty level."""

    def recommend(
        self,
        objective_id: str,
        difficulty_level: int,
        exclude_unit_ids: Iterable[str],
    ) -> ContentUnit | None:
        ...


def recommend_with_timeout(
    provider: ContentRecommendationProvider | None,
    executor: Executor,
    objective_id: str,
    difficulty_level: int,
    exclude_unit_ids: Iterable[str],
    timeout_seconds: float,
) -> ContentUnit | None:
    """
    Ask a provider for content, bounded by a timeout.

    Returns:
        The recommended unit, or None on timeout, provider error or no match
    """
    if provider is None:
        return None
    exclude = frozenset(exclude_unit_ids)
    future = executor.submit(provider.recommend, objective_id, difficulty_level, exclude)
    try:
        return future.result(timeout=timeout_seconds)
    except FutureTimeout:
        future.cancel()
        logger.warning(
            f"Recommendation for {objective_id} at level {difficulty_level} "
            f"timed out after {timeout_seconds}s"
        )
    except Exception as e:  # Provider faults degrade to no recommendation
        logger.warning(f"Recommendation provider failed for {objective_id}: {e}")
    return None


class StaticRecommendationProvider:
    """
    Recommend sections from the current hierarchy snapshot.

    Picks the first section bound to the objective at the requested
    difficulty, falling back to any section at that difficulty.
    """

    def __init__(self, holder: HierarchyHolder):
        self._holder = holder

    def recommend(
        self,
        objective_id: str,
        difficulty_level: int,
        exclude_unit_ids: Iterable[str],
    ) -> ContentUnit | None:
        exclude = set(exclude_unit_ids)
        candidates = [
            unit
            for unit in self._holder.current.sections()
            if unit.difficulty == difficulty_level and unit.unit_id not in exclude
        ]
        for unit in candidates:
            if objective_id in unit.objective_ids:
                return unit
        return candidates[0] if candidates else None


class HttpRecommendationProvider:
    """HTTP client for a content recommendation service."""

    def __init__(self, api_url: str, timeout_seconds: float = 2.0, client: httpx.Client | None = None):
        """
        Initialize recommendation client.

        Args:
            api_url: Base URL of the recommendation service
            timeout_seconds: Per-request timeout
            client: Optional pre-configured httpx client (tests inject a MockTransport)
        """
        self.api_url = api_url.rstrip("/")
        self.client = client or httpx.Client(
            timeout=httpx.Timeout(timeout_seconds),
            follow_redirects=True,
        )

    def close(self) -> None:
        """Close the HTTP client."""
        self.client.close()

    def recommend(
        self,
        objective_id: str,
        difficulty_level: int,
        exclude_unit_ids: Iterable[str],
    ) -> ContentUnit | None:
        """
        Request a unit for an objective at a difficulty level.

        Returns:
            ContentUnit, or None when the service has no match (404 / null body)

        Raises:
            httpx.HTTPError: On API communication failure
        """
        response = self.client.get(
            f"{self.api_url}/recommendations",
            params={
                "objective_id": objective_id,
                "difficulty": difficulty_level,
                "exclude": sorted(exclude_unit_ids),
            },
        )
        if response.status_code == 404:
            return None
        response.raise_for_status()

        data = response.json()
        if not data:
            return None
        return UnitPayload.model_validate(data.get("unit", data)).to_domain()
