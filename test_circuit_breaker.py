"""
Circuit Breaker Tests

1. A batch counts as failed at the failure ratio, not only when all jobs fail
2. Consecutive failed batches open the circuit; a good batch resets the count
3. After the recovery delay one trial batch is allowed (half-open)
4. Module breakers are independent of each other
"""

import pytest

from conftest import FakeClock
from core.config import CircuitBreakerSettings
from sync_engine.circuit_breaker import (
    CLOSED,
    HALF_OPEN,
    OPEN,
    CircuitBreaker,
    ModuleCircuitBreaker,
    build_breakers,
)


@pytest.fixture
def breaker(clock):
    return CircuitBreaker(failure_threshold=3, failure_ratio=0.8, recovery_seconds=300, clock=clock)


class TestCircuitBreaker:

    def test_opens_after_consecutive_failed_batches(self, breaker):
        assert breaker.record_batch(0, 5) is False
        assert breaker.record_batch(1, 4) is False
        assert breaker.is_available()

        assert breaker.record_batch(0, 2) is True
        assert breaker.state == OPEN
        assert not breaker.is_available()

    def test_batch_below_ratio_resets_count(self, breaker):
        breaker.record_batch(0, 5)
        breaker.record_batch(0, 5)
        breaker.record_batch(2, 3)

        assert breaker.consecutive_failures == 0
        assert breaker.record_batch(0, 5) is False

    def test_empty_batch_ignored(self, breaker):
        breaker.record_batch(0, 5)
        breaker.record_batch(0, 0)
        assert breaker.consecutive_failures == 1

    def test_half_open_after_recovery_delay(self, breaker, clock):
        for _ in range(3):
            breaker.record_batch(0, 1)

        clock.advance(299)
        assert breaker.state == OPEN
        clock.advance(1)
        assert breaker.state == HALF_OPEN
        assert breaker.is_available()

    def test_successful_trial_batch_closes(self, breaker, clock):
        for _ in range(3):
            breaker.record_batch(0, 1)
        clock.advance(300)

        breaker.record_batch(1, 0)

        assert breaker.state == CLOSED
        assert breaker.consecutive_failures == 0

    def test_failed_trial_batch_reopens_for_full_delay(self, breaker, clock):
        for _ in range(3):
            breaker.record_batch(0, 1)
        clock.advance(300)

        assert breaker.record_batch(0, 1) is True
        assert breaker.state == OPEN
        clock.advance(299)
        assert not breaker.is_available()

    def test_reset(self, breaker):
        for _ in range(3):
            breaker.record_batch(0, 1)
        breaker.reset()
        assert breaker.state == CLOSED


class TestModuleCircuitBreaker:

    def test_modules_are_independent(self):
        modules = ModuleCircuitBreaker(failure_threshold=2, clock=FakeClock())

        modules.record_batch("billing", 0, 3)
        assert modules.record_batch("billing", 0, 1) is True
        modules.record_batch("crm", 4, 0)

        assert not modules.is_available("billing")
        assert modules.is_available("crm")
        assert modules.is_available("never-seen")
        assert modules.open_modules() == ["billing"]
        assert modules.consecutive_failures("billing") == 2

    def test_half_open_module_not_listed_as_open(self):
        clock = FakeClock()
        modules = ModuleCircuitBreaker(failure_threshold=1, recovery_seconds=600, clock=clock)
        modules.record_batch("billing", 0, 1)

        clock.advance(600)

        assert modules.open_modules() == []
        assert modules.is_available("billing")

    def test_manual_reset(self):
        modules = ModuleCircuitBreaker(failure_threshold=1, clock=FakeClock())
        modules.record_batch("billing", 0, 1)

        modules.reset("billing")

        assert modules.is_available("billing")
        assert modules.consecutive_failures("billing") == 0


class TestBuildBreakers:

    def test_from_settings(self, clock):
        settings = CircuitBreakerSettings(failure_threshold=2, module_failure_threshold=7, module_recovery_seconds=60)

        remote, modules = build_breakers(settings, clock=clock)

        assert remote.failure_threshold == 2
        assert modules.failure_threshold == 7
        assert modules.recovery_seconds == 60

    def test_disabled(self):
        assert build_breakers(CircuitBreakerSettings(enabled=False)) == (None, None)
