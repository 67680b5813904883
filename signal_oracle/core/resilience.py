"""
Resilience wrapper shared by every external collaborator.

``CircuitBreaker`` tracks consecutive failures and moves
CLOSED → OPEN → HALF_OPEN → CLOSED.  ``ResilientCaller`` combines a
per-attempt timeout, bounded immediate retries and the breaker into one
``call`` so call sites never hand-roll their own retry loops.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import httpx

from .errors import CircuitOpenError, TransientIOError
from .settings import ResilienceSettings

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Consecutive-failure circuit breaker.

    CLOSED: failures count up; reaching ``failure_threshold`` opens it.
    OPEN: requests are refused until ``recovery_timeout`` has elapsed.
    HALF_OPEN: probes go through; ``success_threshold`` successes close it,
    any failure re-opens it.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        success_threshold: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.success_threshold = success_threshold
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._opened_at = 0.0
        self.total_trips = 0

    @property
    def state(self) -> CircuitState:
        if self._state == CircuitState.OPEN:
            elapsed = self._clock() - self._opened_at
            if elapsed >= self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
                self._success_count = 0
                logger.info("Breaker '%s' HALF_OPEN after %.1fs", self.name, elapsed)
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def allows_request(self) -> bool:
        return self.state != CircuitState.OPEN

    def record_success(self) -> None:
        current = self.state
        if current == CircuitState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= self.success_threshold:
                self._close()
                logger.info("Breaker '%s' CLOSED", self.name)
        elif current == CircuitState.CLOSED:
            self._failure_count = 0

    def record_failure(self) -> None:
        current = self.state
        if current == CircuitState.HALF_OPEN:
            self._open()
            logger.warning("Breaker '%s' re-OPENED (probe failed)", self.name)
        elif current == CircuitState.CLOSED:
            self._failure_count += 1
            if self._failure_count >= self.failure_threshold:
                self._open()
                self.total_trips += 1
                logger.warning(
                    "Breaker '%s' OPENED after %d consecutive failures (trip #%d)",
                    self.name, self._failure_count, self.total_trips,
                )

    def reset(self) -> None:
        self._close()

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._success_count = 0

    def _close(self) -> None:
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0


class ResilientCaller:
    """
    Timeout + bounded retry + circuit breaker for one collaborator.

    Retries are immediate (no backoff); anything beyond ``retries`` is left
    to the next poll tick or cycle.  Every failure surfaces as
    ``TransientIOError`` (``CircuitOpenError`` when short-circuited).
    """

    def __init__(
        self,
        name: str,
        timeout: float = 30.0,
        retries: int = 0,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.name = name
        self.timeout = timeout
        self.retries = max(0, retries)
        self.breaker = breaker

    async def call(self, fn: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        if self.breaker is not None and not self.breaker.allows_request():
            raise CircuitOpenError(f"{self.name}: circuit open")

        last_error: Optional[BaseException] = None
        for attempt in range(self.retries + 1):
            try:
                result = await asyncio.wait_for(fn(*args, **kwargs), timeout=self.timeout)
            except asyncio.TimeoutError as e:
                last_error = e
                logger.debug("%s: timeout after %.1fs (attempt %d)", self.name, self.timeout, attempt + 1)
            except (httpx.HTTPError, OSError, TransientIOError) as e:
                last_error = e
                logger.debug("%s: %s (attempt %d)", self.name, e, attempt + 1)
            except Exception:
                # Non-transport errors are not retried but still count against the breaker.
                if self.breaker is not None:
                    self.breaker.record_failure()
                raise
            else:
                if self.breaker is not None:
                    self.breaker.record_success()
                return result

        if self.breaker is not None:
            self.breaker.record_failure()
        raise TransientIOError(f"{self.name}: {last_error or 'timeout'}") from last_error


def build_caller(name: str, settings: ResilienceSettings, *, estimator: bool = False) -> ResilientCaller:
    """Caller for a collaborator, configured from ``ResilienceSettings``."""
    if estimator:
        return ResilientCaller(
            name,
            timeout=settings.estimator_timeout,
            retries=settings.estimator_retries,
            breaker=CircuitBreaker(
                name,
                failure_threshold=settings.failure_threshold,
                recovery_timeout=settings.cooldown_seconds,
            ),
        )
    return ResilientCaller(
        name,
        timeout=settings.market_data_timeout,
        retries=settings.market_data_retries,
    )
