"""
Timeout, retry and circuit-breaker wrapper for calls to external systems.

Every ledger, issue tracker and vault call made by the orchestrator goes
through ``execute_with_retry`` with the policy configured for that system.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeVar

from bounty_board_service.core.exceptions import (
    CircuitOpenError,
    OperationTimeoutError,
    RateLimitError,
)
from bounty_board_service.logging import get_logger

if TYPE_CHECKING:
    from bounty_board_service.config import RetryPolicyConfig
    from bounty_board_service.services.circuit_breaker import CircuitBreakerRegistry

T = TypeVar("T")

RetryCondition = Callable[[Exception, int], bool]

_TRANSIENT_MESSAGE_MARKERS = ("timeout", "network", "connection", "econnreset", "enotfound")
_JITTER_RATIO = 0.1


def default_retry_condition(error: Exception, _attempt: int) -> bool:
    """
    Decide whether a failed attempt is worth repeating.

    Errors that carry a ``retryable`` flag decide for themselves. Otherwise
    timeouts and errors whose message looks like a transport failure are
    retried.
    """
    retryable = getattr(error, "retryable", None)
    if isinstance(retryable, bool):
        return retryable
    if isinstance(error, (OperationTimeoutError, TimeoutError)):
        return True
    message = str(error).lower()
    return any(marker in message for marker in _TRANSIENT_MESSAGE_MARKERS)


def only_explicitly_retryable(error: Exception, _attempt: int) -> bool:
    """Retry only errors flagged retryable; used for calls that are not idempotent."""
    return getattr(error, "retryable", False) is True


@dataclass(frozen=True)
class RetryOptions:
    max_retries: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 30000
    timeout_ms: int = 60000
    use_circuit_breaker: bool = True
    retry_condition: RetryCondition = default_retry_condition
    fallback: Callable[[], Awaitable[Any]] | None = None

    @classmethod
    def from_policy(cls, policy: RetryPolicyConfig, **overrides: Any) -> RetryOptions:
        """Build options from a configured policy, with per-call overrides."""
        values: dict[str, Any] = {
            "max_retries": policy.max_retries,
            "base_delay_ms": policy.base_delay_ms,
            "max_delay_ms": policy.max_delay_ms,
            "timeout_ms": policy.timeout_ms,
            "use_circuit_breaker": policy.use_circuit_breaker,
        }
        values.update(overrides)
        return cls(**values)


def compute_delay(
    error: Exception,
    attempt: int,
    base_delay_ms: int,
    max_delay_ms: int,
    rng: Callable[[], float] = random.random,
) -> float:
    """Milliseconds to wait before the attempt after ``attempt`` (zero-based)."""
    if isinstance(error, RateLimitError):
        if error.retry_after:
            return min(error.retry_after * 1000, max_delay_ms)
        return min(base_delay_ms * 2 ** (attempt + 2), max_delay_ms)

    delay = min(base_delay_ms * 2**attempt, max_delay_ms)
    return delay + rng() * _JITTER_RATIO * delay


async def _run_attempts(
    name: str,
    operation: Callable[[], Awaitable[T]],
    options: RetryOptions,
    sleep: Callable[[float], Awaitable[Any]],
    rng: Callable[[], float],
) -> T:
    logger = get_logger(__name__)
    attempts = max(1, options.max_retries)

    for attempt in range(attempts):
        error: Exception
        try:
            result = await asyncio.wait_for(operation(), timeout=options.timeout_ms / 1000)
        except TimeoutError as exc:
            error = OperationTimeoutError(name, options.timeout_ms)
            error.__cause__ = exc
        except Exception as exc:
            error = exc
        else:
            if attempt > 0:
                logger.info(
                    "Operation succeeded after retry",
                    extra={"operation": name, "attempt": attempt + 1, "total_attempts": attempts},
                )
            return result

        retryable = options.retry_condition(error, attempt)
        logger.warning(
            "Operation attempt failed",
            extra={
                "operation": name,
                "attempt": attempt + 1,
                "total_attempts": attempts,
                "error_type": type(error).__name__,
                "retryable": retryable,
            },
        )
        if not retryable or attempt == attempts - 1:
            raise error

        delay_ms = compute_delay(error, attempt, options.base_delay_ms, options.max_delay_ms, rng)
        await sleep(delay_ms / 1000)

    msg = "unreachable"
    raise AssertionError(msg)


async def execute_with_retry(
    name: str,
    operation: Callable[[], Awaitable[T]],
    options: RetryOptions,
    breakers: CircuitBreakerRegistry | None = None,
    *,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    rng: Callable[[], float] = random.random,
) -> T:
    """
    Run ``operation`` with a per-attempt timeout, backoff and optional breaker.

    ``options.max_retries`` is the total number of attempts. The breaker for
    ``name`` counts one failure per exhausted call. ``options.fallback`` runs
    only after attempts are exhausted, the retry condition rejects the error,
    or the breaker is open.

    Raises:
        CircuitOpenError: breaker open and no fallback
        OperationTimeoutError: the last attempt timed out
        Exception: the last attempt's error, unchanged
    """
    logger = get_logger(__name__)
    breaker = breakers.get(name) if options.use_circuit_breaker and breakers is not None else None

    if breaker is not None and not breaker.allow_request():
        logger.warning("Circuit breaker rejected call", extra={"operation": name})
        if options.fallback is not None:
            fallback_result: T = await options.fallback()
            return fallback_result
        raise CircuitOpenError(name)

    try:
        result = await _run_attempts(name, operation, options, sleep, rng)
    except Exception as exc:
        if breaker is not None:
            breaker.record_failure()
        logger.error(
            "Operation failed after retries",
            extra={"operation": name, "error_type": type(exc).__name__},
        )
        if options.fallback is not None:
            logger.warning("Using fallback", extra={"operation": name})
            fallback_result = await options.fallback()
            return fallback_result
        raise

    if breaker is not None:
        breaker.record_success()
    return result
