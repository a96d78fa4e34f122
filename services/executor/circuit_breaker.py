"""
Per-provider call guards: circuit breaker and rate limiter.
"""

import asyncio
import time
from typing import Awaitable, Callable

import structlog

from shared.models import CircuitBreakerState, ProviderName

logger = structlog.get_logger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]


class CircuitBreaker:
    """
    Failure-count gate for one provider.

    Opens after ``threshold`` failures. Once ``timeout`` has passed since
    the last failure a single trial call is let through; success closes
    the breaker, failure re-opens it for another ``timeout``.
    """

    def __init__(
        self,
        provider: ProviderName,
        threshold: int = 5,
        timeout: float = 60.0,
        clock: Clock = time.monotonic,
    ):
        self.provider = provider
        self.threshold = threshold
        self.timeout = timeout
        self._clock = clock
        self.failure_count = 0
        self.last_failure_at: float | None = None
        self._trial_in_flight = False

    @property
    def is_open(self) -> bool:
        return self.failure_count >= self.threshold

    @property
    def half_open(self) -> bool:
        return self.is_open and self._timeout_elapsed()

    def _timeout_elapsed(self) -> bool:
        return self.last_failure_at is not None and self._clock() - self.last_failure_at >= self.timeout

    def allow_request(self) -> bool:
        """Whether a call may go out now. Claims the trial slot when half-open."""
        if not self.is_open:
            return True
        if self._timeout_elapsed() and not self._trial_in_flight:
            self._trial_in_flight = True
            logger.info("circuit_half_open", provider=self.provider.value)
            return True
        return False

    def record_success(self) -> None:
        if self.failure_count:
            logger.info("circuit_closed", provider=self.provider.value)
        self.failure_count = 0
        self.last_failure_at = None
        self._trial_in_flight = False

    def record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_at = self._clock()
        self._trial_in_flight = False
        if self.failure_count == self.threshold:
            logger.warning(
                "circuit_opened",
                provider=self.provider.value,
                failures=self.failure_count,
                timeout=self.timeout,
            )

    def release_trial(self) -> None:
        """Give back a trial slot whose call ended without an outcome."""
        self._trial_in_flight = False

    def reset(self) -> None:
        self.record_success()

    def state(self) -> CircuitBreakerState:
        return CircuitBreakerState(
            provider=self.provider,
            failure_count=self.failure_count,
            last_failure_at=self.last_failure_at,
            is_open=self.is_open,
            half_open=self.half_open,
        )


class RateLimiter:
    """
    Minimum spacing between calls to one provider.

    Callers are delayed, never rejected. The delay is an ordinary
    ``asyncio.sleep`` so task cancellation interrupts it.
    """

    def __init__(
        self,
        min_interval: float = 0.5,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ):
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._last_call: float | None = None
        self._lock = asyncio.Lock()

    async def acquire(self) -> float:
        """
        Wait until the next call is allowed.

        Returns:
            Seconds waited
        """
        async with self._lock:
            waited = 0.0
            if self._last_call is not None:
                waited = self.min_interval - (self._clock() - self._last_call)
                if waited > 0:
                    await self._sleep(waited)
                else:
                    waited = 0.0
            self._last_call = self._clock()
            return waited
