"""
Circuit breaker for calls to the chat gateway.

CLOSED: calls pass; ``failure_threshold`` consecutive failures open the
circuit.  OPEN: calls fail fast with ``CircuitOpenError`` until
``reset_timeout`` seconds have passed since the last failure.  HALF_OPEN:
calls pass as probes; one failure re-opens, ``half_open_successes``
successes close.

Exceptions listed in ``excluded`` (4xx-style rejections) prove the remote
side is reachable, so they neither count as failures nor as successes.
"""

from __future__ import annotations

import enum
import logging
import time
from typing import Any, Awaitable, Callable, TypeVar

from prima.errors import CircuitOpenError, GatewayPermanentError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:

    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int = 5,
        reset_timeout: float = 30.0,
        half_open_successes: int = 3,
        excluded: tuple[type[BaseException], ...] = (GatewayPermanentError,),
        clock: Callable[[], float] = time.monotonic,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.half_open_successes = half_open_successes
        self._excluded = excluded
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._opened_at: float | None = None
        self._last_failure_at: float | None = None

    @property
    def state(self) -> CircuitState:
        if self._state == CircuitState.OPEN and self._cooldown_remaining() <= 0:
            self._transition(CircuitState.HALF_OPEN)
            self._success_count = 0
        return self._state

    def _cooldown_remaining(self) -> float:
        if self._last_failure_at is None:
            return 0.0
        return self.reset_timeout - (self._clock() - self._last_failure_at)

    def _transition(self, new_state: CircuitState) -> None:
        if new_state != self._state:
            logger.warning("Circuit breaker %s: %s -> %s", self.name, self._state.value, new_state.value)
            self._state = new_state
            if new_state == CircuitState.OPEN:
                self._opened_at = self._clock()

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        if self.state == CircuitState.OPEN:
            raise CircuitOpenError(self.name, retry_after=max(self._cooldown_remaining(), 0.0))

        try:
            result = await func(*args, **kwargs)
        except self._excluded:
            raise
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def record_success(self) -> None:
        if self._state == CircuitState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= self.half_open_successes:
                self._failure_count = 0
                self._success_count = 0
                self._transition(CircuitState.CLOSED)
        else:
            self._failure_count = 0

    def record_failure(self) -> None:
        self._last_failure_at = self._clock()
        if self._state == CircuitState.HALF_OPEN:
            self._transition(CircuitState.OPEN)
            return
        self._failure_count += 1
        if self._failure_count >= self.failure_threshold:
            self._transition(CircuitState.OPEN)

    def reset(self) -> None:
        self._transition(CircuitState.CLOSED)
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_at = None
        self._opened_at = None

    def snapshot(self) -> dict[str, Any]:
        state = self.state
        return {
            "name": self.name,
            "state": state.value,
            "failure_count": self._failure_count,
            "success_count": self._success_count,
            "retry_after": max(self._cooldown_remaining(), 0.0) if state == CircuitState.OPEN else 0.0,
        }
