import time
from threading import Lock
from typing import Callable, Dict, Iterable, Tuple

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .errors import ImageStudioError

JOB_SUBMISSION_PATHS = ("/edit", "/edit/feature", "/edit/refine", "/generate")


class RateLimiter:
    """
    Simple in-memory rate limiter using a fixed window algorithm.
    Tracks requests per client within a one minute window.
    """

    def __init__(
        self,
        requests_per_minute: int = 60,
        clock: Callable[[], float] = time.time,
        cleanup_interval: float = 60.0,
    ):
        self.rpm = requests_per_minute
        self._clock = clock
        self._lock = Lock()
        self.cleanup_interval = cleanup_interval
        self._last_cleanup = clock()
        # identifier -> (count, window_start_time)
        self.requests: Dict[str, Tuple[int, float]] = {}

    def is_allowed(self, identifier: str) -> bool:
        now = self._clock()
        with self._lock:
            count, start_time = self.requests.get(identifier, (0, now))

            if now - start_time >= 60:
                # New window
                self.requests[identifier] = (1, now)
                return True

            if count >= self.rpm:
                return False

            self.requests[identifier] = (count + 1, start_time)
            return True

    def retry_after(self, identifier: str) -> int:
        with self._lock:
            _, start_time = self.requests.get(identifier, (0, self._clock()))
        return max(1, int(60 - (self._clock() - start_time)))

    def cleanup(self) -> None:
        """Drop expired windows."""
        now = self._clock()
        with self._lock:
            expired = [k for k, v in self.requests.items() if now - v[1] >= 60]
            for k in expired:
                del self.requests[k]
            self._last_cleanup = now

    def maybe_cleanup(self) -> None:
        """Run cleanup() at most once per cleanup_interval."""
        if self._clock() - self._last_cleanup >= self.cleanup_interval:
            self.cleanup()


class RateLimitExceededError(ImageStudioError):
    status_code = 429
    error_code = "E_RATE_LIMIT_EXCEEDED"
    category = "availability"
    retryable = True


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Applies a RateLimiter to job-submitting POST requests, keyed by client address."""

    def __init__(self, app, limiter: RateLimiter, paths: Iterable[str] = JOB_SUBMISSION_PATHS):
        super().__init__(app)
        self.limiter = limiter
        self.paths = frozenset(paths)

    async def dispatch(self, request: Request, call_next):
        if request.method != "POST" or request.url.path not in self.paths:
            return await call_next(request)

        self.limiter.maybe_cleanup()
        identifier = request.client.host if request.client else "anonymous"
        if not self.limiter.is_allowed(identifier):
            retry_after = self.limiter.retry_after(identifier)
            error = RateLimitExceededError(f"Too many requests. Try again in {retry_after} seconds.")
            return JSONResponse(
                status_code=error.status_code,
                content=error.to_dict(),
                headers={"Retry-After": str(retry_after)},
            )
        return await call_next(request)
