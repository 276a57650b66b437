"""Per-operation circuit breakers guarding calls to external systems."""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from bounty_board_service.logging import get_logger


class CircuitState(StrEnum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass(frozen=True)
class BreakerSettings:
    """Thresholds applied to every breaker in a registry."""

    failure_threshold: int = 5
    recovery_timeout_seconds: float = 60.0
    half_open_max_calls: int = 3


class CircuitBreaker:
    """
    Three-state breaker for one named operation.

    CLOSED lets calls through and counts consecutive failures. Reaching
    ``failure_threshold`` opens the breaker. After ``recovery_timeout_seconds``
    the next call moves it to HALF_OPEN, where ``half_open_max_calls``
    consecutive successes close it again and any failure re-opens it.
    """

    def __init__(self, name: str, settings: BreakerSettings) -> None:
        self.name = name
        self._settings = settings
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._half_open_successes = 0
        self._last_failure_at: float | None = None
        self._next_attempt_at: float | None = None

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def allow_request(self) -> bool:
        """Return True if a call may proceed, moving OPEN to HALF_OPEN when due."""
        logger = get_logger(__name__)

        if self._state == CircuitState.OPEN:
            if self._next_attempt_at is None or time.monotonic() < self._next_attempt_at:
                return False
            self._state = CircuitState.HALF_OPEN
            self._half_open_successes = 0
            logger.info("Circuit breaker half-open", extra={"operation": self.name})

        if self._state == CircuitState.HALF_OPEN:
            return self._half_open_successes < self._settings.half_open_max_calls

        return True

    def record_success(self) -> None:
        logger = get_logger(__name__)
        self._failure_count = 0
        if self._state != CircuitState.HALF_OPEN:
            return
        self._half_open_successes += 1
        if self._half_open_successes >= self._settings.half_open_max_calls:
            self._state = CircuitState.CLOSED
            self._half_open_successes = 0
            logger.info("Circuit breaker closed", extra={"operation": self.name})

    def record_failure(self) -> None:
        logger = get_logger(__name__)
        now = time.monotonic()
        self._failure_count += 1
        self._last_failure_at = now

        if (
            self._state == CircuitState.HALF_OPEN
            or self._failure_count >= self._settings.failure_threshold
        ):
            self._state = CircuitState.OPEN
            self._next_attempt_at = now + self._settings.recovery_timeout_seconds
            logger.warning(
                "Circuit breaker opened",
                extra={"operation": self.name, "failure_count": self._failure_count},
            )

    def reset(self) -> None:
        """Return to CLOSED and forget all counters."""
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._half_open_successes = 0
        self._last_failure_at = None
        self._next_attempt_at = None

    def snapshot(self) -> dict[str, Any]:
        return {
            "state": str(self._state),
            "failure_count": self._failure_count,
        }


class CircuitBreakerRegistry:
    """Lazily creates one breaker per operation name."""

    def __init__(self, settings: BreakerSettings | None = None) -> None:
        self._settings = settings if settings is not None else BreakerSettings()
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, name: str) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(name, self._settings)
            self._breakers[name] = breaker
        return breaker

    def status(self) -> dict[str, dict[str, Any]]:
        """Current state of every breaker created so far."""
        return {name: breaker.snapshot() for name, breaker in sorted(self._breakers.items())}

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()
