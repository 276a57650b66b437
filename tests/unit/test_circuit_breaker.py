"""Tests for circuit breaker state transitions."""

from __future__ import annotations

import pytest
from freezegun import freeze_time

from bounty_board_service.services.circuit_breaker import (
    BreakerSettings,
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
)

SETTINGS = BreakerSettings(failure_threshold=3, recovery_timeout_seconds=30, half_open_max_calls=2)


def _open_breaker() -> CircuitBreaker:
    breaker = CircuitBreaker("ledger.transfer", SETTINGS)
    for _ in range(SETTINGS.failure_threshold):
        breaker.record_failure()
    return breaker


@pytest.mark.unit
def test_opens_after_threshold():
    breaker = CircuitBreaker("ledger.transfer", SETTINGS)
    breaker.record_failure()
    breaker.record_failure()

    assert breaker.state == CircuitState.CLOSED
    assert breaker.allow_request() is True

    breaker.record_failure()

    assert breaker.state == CircuitState.OPEN
    assert breaker.allow_request() is False


@pytest.mark.unit
def test_success_resets_failure_count():
    breaker = CircuitBreaker("ledger.transfer", SETTINGS)
    breaker.record_failure()
    breaker.record_failure()
    breaker.record_success()
    breaker.record_failure()

    assert breaker.state == CircuitState.CLOSED
    assert breaker.failure_count == 1


@pytest.mark.unit
def test_half_open_after_recovery_timeout():
    with freeze_time("2026-01-01 00:00:00") as frozen:
        breaker = _open_breaker()
        frozen.tick(29)
        assert breaker.allow_request() is False

        frozen.tick(2)
        assert breaker.allow_request() is True
        assert breaker.state == CircuitState.HALF_OPEN


@pytest.mark.unit
def test_half_open_closes_after_enough_successes():
    with freeze_time("2026-01-01 00:00:00") as frozen:
        breaker = _open_breaker()
        frozen.tick(31)
        assert breaker.allow_request() is True

        breaker.record_success()
        assert breaker.state == CircuitState.HALF_OPEN
        breaker.record_success()

        assert breaker.state == CircuitState.CLOSED


@pytest.mark.unit
def test_half_open_failure_reopens():
    with freeze_time("2026-01-01 00:00:00") as frozen:
        breaker = _open_breaker()
        frozen.tick(31)
        breaker.allow_request()

        breaker.record_failure()

        assert breaker.state == CircuitState.OPEN
        assert breaker.allow_request() is False


@pytest.mark.unit
def test_registry_reuses_breakers_and_reports_status():
    registry = CircuitBreakerRegistry(SETTINGS)
    breaker = registry.get("vault.decrypt")
    breaker.record_failure()

    assert registry.get("vault.decrypt") is breaker
    assert registry.status() == {"vault.decrypt": {"state": "CLOSED", "failure_count": 1}}

    registry.reset_all()

    assert registry.status()["vault.decrypt"]["failure_count"] == 0
