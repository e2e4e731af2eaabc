"""
Retry + circuit breaker for outbound commerce calls.

RetryPolicy retries transient ExternalServiceErrors with jittered
exponential backoff. CircuitBreaker opens after ``failure_threshold``
consecutive failures and rejects calls with BLK-EXT-003 until
``reset_s`` has elapsed; the next call is a half-open trial.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from bulkorder.core.errors import ExternalServiceError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    initial_delay_s: float = 1.0
    max_delay_s: float = 10.0
    multiplier: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Full-jitter delay before retry number ``attempt`` (0-based)."""
        ceiling = min(self.max_delay_s, self.initial_delay_s * (self.multiplier ** attempt))
        return random.uniform(ceiling / 2, ceiling)

    async def run(
        self,
        operation: str,
        call: Callable[[], Awaitable[T]],
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> T:
        last_exc: Optional[ExternalServiceError] = None
        for attempt in range(max(1, self.attempts)):
            try:
                return await call()
            except ExternalServiceError as exc:
                if exc.code == "BLK-EXT-003":
                    raise
                last_exc = exc
                if attempt + 1 < self.attempts:
                    delay = self.delay_for(attempt)
                    logger.warning(
                        "%s retry %d/%d after %s (wait %.2fs)",
                        operation, attempt + 1, self.attempts - 1, exc.code, delay,
                    )
                    await sleep(delay)
        logger.error("%s failed after %d attempts: %s", operation, self.attempts, last_exc)
        raise last_exc  # type: ignore[misc]


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_s: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_s = reset_s
        self._clock = clock
        self._failures = 0
        self._opened_at: Optional[float] = None

    @property
    def state(self) -> str:
        if self._opened_at is None:
            return "closed"
        if self._clock() - self._opened_at >= self.reset_s:
            return "half_open"
        return "open"

    async def call(self, call: Callable[[], Awaitable[T]]) -> T:
        if self.state == "open":
            raise ExternalServiceError(
                "BLK-EXT-003",
                detail=f"circuit {self.name} open",
                context={"circuit": self.name, "failures": self._failures},
            )
        try:
            result = await call()
        except ExternalServiceError:
            self._record_failure()
            raise
        self._failures = 0
        self._opened_at = None
        return result

    def _record_failure(self) -> None:
        self._failures += 1
        if self._opened_at is not None or self._failures >= self.failure_threshold:
            if self._opened_at is None:
                logger.warning(
                    "Circuit %s opened after %d consecutive failures",
                    self.name,
                    self._failures,
                )
            self._opened_at = self._clock()
