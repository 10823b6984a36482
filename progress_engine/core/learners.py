"""Learner directory: consent flags that gate personalization."""

from __future__ import annotations

import threading

from loguru import logger

from progress_engine.core.models import Learner


class LearnerDirectory:
    """
    In-memory registry of learner consent flags.

    Learners never registered get the configured default consent.
    """

    def __init__(self, personalization_default: bool = True):
        self.personalization_default = personalization_default
        self._learners: dict[str, Learner] = {}
        self._lock = threading.Lock()

    def register(self, learner: Learner) -> None:
        with self._lock:
            self._learners[learner.learner_id] = learner
        logger.debug(
            f"Learner {learner.learner_id} registered "
            f"(personalization={learner.personalization_consent})"
        )

    def get(self, learner_id: str) -> Learner:
        with self._lock:
            learner = self._learners.get(learner_id)
        if learner is None:
            return Learner(learner_id, personalization_consent=self.personalization_default)
        return learner

    def personalization_allowed(self, learner_id: str) -> bool:
        return self.get(learner_id).personalization_consent

    def forget(self, learner_id: str) -> bool:
        with self._lock:
            return self._learners.pop(learner_id, None) is not None
