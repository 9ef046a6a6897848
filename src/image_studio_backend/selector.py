"""
Backend ranking and recommendation.

Scoring rule for a backend and task type:

    quality
    + 5 if the backend declares every capability the task requires, else - 3
    + 3 if quality >= the task's preferred quality
    - 10 if the backend is not currently available

Ties keep catalog order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

from .catalog import ModelCapabilityCatalog
from .errors import NoBackendsAvailableError
from .registry import BackendRegistry

logger = logging.getLogger(__name__)

CAPABILITY_BONUS = 5
CAPABILITY_PENALTY = 3
QUALITY_BONUS = 3
UNAVAILABLE_PENALTY = 10


@dataclass(frozen=True)
class SelectionResult:
    backend_id: str
    score: int
    available: bool
    capable: bool
    reason: str

    def to_dict(self) -> dict:
        return {
            "backend_id": self.backend_id,
            "score": self.score,
            "available": self.available,
            "capable": self.capable,
            "reason": self.reason,
        }


class ModelSelector:
    def __init__(self, registry: BackendRegistry, catalog: Optional[ModelCapabilityCatalog] = None) -> None:
        self.registry = registry
        self.catalog = catalog or registry.catalog

    def rank(self, task_type: str) -> List[SelectionResult]:
        """Every catalog backend scored for the task, highest first."""
        requirement = self.catalog.requirement_for(task_type)
        results = []
        for descriptor in self.catalog.all_backends():
            available = self.registry.is_available(descriptor.id)
            capable = descriptor.supports(requirement.required_capabilities)
            meets_quality = descriptor.quality >= requirement.preferred_quality

            score = descriptor.quality
            score += CAPABILITY_BONUS if capable else -CAPABILITY_PENALTY
            if meets_quality:
                score += QUALITY_BONUS
            if not available:
                score -= UNAVAILABLE_PENALTY

            reasons = [f"quality {descriptor.quality}/10"]
            reasons.append("supports all required capabilities" if capable else "missing required capabilities")
            if meets_quality:
                reasons.append(f"meets preferred quality {requirement.preferred_quality}")
            if not available:
                reasons.append("not configured")

            results.append(
                SelectionResult(
                    backend_id=descriptor.id,
                    score=score,
                    available=available,
                    capable=capable,
                    reason=", ".join(reasons),
                )
            )

        return sorted(results, key=lambda result: -result.score)

    def available_ranking(self, task_type: str) -> List[SelectionResult]:
        return [result for result in self.rank(task_type) if result.available]

    def recommend(self, task_type: str, user_preference: Optional[str] = None) -> str:
        """
        Pick one backend for a task.

        An available user preference wins outright. Otherwise the best ranked
        available backend that declares the task's capabilities is chosen,
        then any available backend, then the static quality-ordered list.

        Raises:
            NoBackendsAvailableError: If even the static list is empty
        """
        if user_preference and self.registry.is_available(user_preference):
            logger.info(f"Using preferred backend {user_preference} for {task_type}")
            return user_preference

        ranking = self.available_ranking(task_type)
        for result in ranking:
            if result.capable:
                logger.info(f"Recommended {result.backend_id} for {task_type} (score {result.score})")
                return result.backend_id
        if ranking:
            logger.warning(f"No capable backend available for {task_type}, using {ranking[0].backend_id}")
            return ranking[0].backend_id

        priority = self.catalog.priority_order()
        if not priority:
            raise NoBackendsAvailableError()
        logger.warning(f"No backends available for {task_type}, falling back to {priority[0]}")
        return priority[0]
