"""
Multi-backend fallback with bounded retries.

A unit of work is an async callable taking a BackendClient. The executor runs
it against each ranked available backend in turn:

- success returns immediately;
- a rate limit abandons the backend after that attempt, with no wait;
- an authentication failure abandons the backend without retrying;
- any other failure waits ``base_delay * 2 ** (attempt - 1)`` and retries,
  up to ``max_retries_per_backend`` attempts, then moves on.

Backoff waits are awaited timers, so other jobs keep running meanwhile.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Generic, List, Optional, TypeVar

from .backends import BackendClient
from .errors import BackendUnavailableError, ImageStudioError, NoConfigurationError, is_fatal, is_rate_limited
from .registry import BackendRegistry
from .selector import ModelSelector

logger = logging.getLogger(__name__)

T = TypeVar("T")

UnitOfWork = Callable[[BackendClient], Awaitable[T]]

NO_BACKENDS_MESSAGE = "No backends available for processing"


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    TRANSIENT_FAILURE = "transient_failure"
    RATE_LIMITED = "rate_limited"
    FATAL = "fatal"


@dataclass(frozen=True)
class FallbackAttempt:
    backend_id: str
    attempt: int
    outcome: AttemptOutcome
    elapsed: float
    error: Optional[str] = None


@dataclass
class FallbackOutcome(Generic[T]):
    success: bool
    result: Optional[T] = None
    backend_used: Optional[str] = None
    chain: List[str] = field(default_factory=list)
    attempts: List[FallbackAttempt] = field(default_factory=list)
    error: Optional[str] = None

    def chain_summary(self) -> str:
        return " -> ".join(self.chain)


def _error_message(exc: BaseException) -> str:
    if isinstance(exc, ImageStudioError):
        return exc.detail
    return str(exc) or exc.__class__.__name__


class FallbackExecutor:
    def __init__(
        self,
        selector: ModelSelector,
        registry: BackendRegistry,
        max_retries_per_backend: int = 3,
        base_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.selector = selector
        self.registry = registry
        self.max_retries_per_backend = max_retries_per_backend
        self.base_delay = base_delay
        self._sleep = sleep

    def candidates(self, task_type: str, user_preference: Optional[str] = None) -> List[str]:
        ranked = [result.backend_id for result in self.selector.available_ranking(task_type)]
        if user_preference and user_preference in ranked:
            ranked.remove(user_preference)
            ranked.insert(0, user_preference)
        return ranked

    def backoff_delay(self, attempt: int) -> float:
        return self.base_delay * (2 ** (attempt - 1))

    async def execute(
        self,
        task_type: str,
        unit_of_work: UnitOfWork,
        user_preference: Optional[str] = None,
        max_retries_per_backend: Optional[int] = None,
    ) -> FallbackOutcome:
        """
        Run ``unit_of_work`` against the candidate backends until one succeeds.

        Args:
            task_type: Task used for ranking (optimize, edit or refine)
            unit_of_work: Async callable receiving the backend client
            user_preference: Backend to try first when it is available
            max_retries_per_backend: Attempts per backend; 1 disables retries,
                None uses the configured default

        Returns:
            FallbackOutcome with the result or the last error, plus the chain
            of backends tried and every attempt made.

        Raises:
            ValueError: If max_retries_per_backend is below 1
        """
        max_retries = self.max_retries_per_backend if max_retries_per_backend is None else max_retries_per_backend
        if max_retries < 1:
            raise ValueError(f"max_retries_per_backend must be at least 1, got {max_retries}")
        candidates = self.candidates(task_type, user_preference)
        if not candidates:
            logger.warning(f"{NO_BACKENDS_MESSAGE} ({task_type})")
            return FallbackOutcome(success=False, error=NO_BACKENDS_MESSAGE)

        outcome: FallbackOutcome = FallbackOutcome(success=False)
        last_error: Optional[str] = None

        for backend_id in candidates:
            outcome.chain.append(backend_id)
            try:
                client = self.registry.get_client(backend_id)
            except (BackendUnavailableError, NoConfigurationError) as exc:
                logger.warning(f"Skipping {backend_id}: {exc.detail}")
                last_error = exc.detail
                continue

            for attempt in range(1, max_retries + 1):
                started = time.monotonic()
                try:
                    result = await unit_of_work(client)
                except Exception as exc:  # noqa: BLE001
                    elapsed = time.monotonic() - started
                    last_error = _error_message(exc)

                    if is_rate_limited(exc):
                        outcome.attempts.append(FallbackAttempt(backend_id, attempt, AttemptOutcome.RATE_LIMITED, elapsed, last_error))
                        logger.warning(f"{backend_id} rate limited, moving to next backend")
                        break
                    if is_fatal(exc):
                        outcome.attempts.append(FallbackAttempt(backend_id, attempt, AttemptOutcome.FATAL, elapsed, last_error))
                        logger.error(f"{backend_id} failed permanently: {last_error}")
                        break

                    outcome.attempts.append(FallbackAttempt(backend_id, attempt, AttemptOutcome.TRANSIENT_FAILURE, elapsed, last_error))
                    if attempt < max_retries:
                        delay = self.backoff_delay(attempt)
                        logger.warning(f"{backend_id} attempt {attempt}/{max_retries} failed: {last_error}; retrying in {delay}s")
                        await self._sleep(delay)
                    else:
                        logger.warning(f"{backend_id} failed after {max_retries} attempt(s): {last_error}")
                    continue

                elapsed = time.monotonic() - started
                outcome.attempts.append(FallbackAttempt(backend_id, attempt, AttemptOutcome.SUCCESS, elapsed))
                outcome.success = True
                outcome.result = result
                outcome.backend_used = backend_id
                if len(outcome.chain) > 1:
                    logger.info(f"{task_type} succeeded on fallback backend {backend_id} (chain {outcome.chain_summary()})")
                else:
                    logger.info(f"{task_type} succeeded on {backend_id} (attempt {attempt})")
                return outcome

        outcome.error = f"All backends failed. Last error: {last_error}"
        logger.error(f"{task_type}: {outcome.error} (chain {outcome.chain_summary()})")
        return outcome
