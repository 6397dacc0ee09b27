"""Circuit breakers for queue processing.

``CircuitBreaker`` guards the remote as a whole: when most jobs of several
consecutive batches fail to reach it, processing pauses for a recovery
delay and then a single trial batch is let through (half-open). A good
trial batch closes the circuit, a bad one opens it again.

``ModuleCircuitBreaker`` keeps one such breaker per module, so a module
whose remote model was removed or whose access rights changed is paused
while the other modules keep syncing.

A batch counts as failed when its failure ratio reaches the configured
threshold (80% by default), so a few lucky successes do not hide an
outage and a few bad payloads do not trip a healthy remote.

State lives in memory for the lifetime of the process (one worker holds
one ``SyncContext``).
"""

from datetime import datetime, timedelta
from typing import Dict, List, Optional

from core.clock import Clock, utcnow
from core.config import CircuitBreakerSettings
from core.observability.logging import get_logger


logger = get_logger(__name__)

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"


class CircuitBreaker:
    """Ratio-based breaker over batch outcomes.

    Usage:
        breaker = CircuitBreaker(failure_threshold=3, recovery_seconds=300)
        if breaker.is_available():
            ...
            breaker.record_batch(successes, failures)
    """

    def __init__(
        self,
        failure_threshold: int = 3,
        failure_ratio: float = 0.8,
        recovery_seconds: float = 300,
        clock: Clock = utcnow,
        name: str = "remote",
    ):
        self.failure_threshold = failure_threshold
        self.failure_ratio = failure_ratio
        self.recovery_seconds = recovery_seconds
        self.clock = clock
        self.name = name
        self.consecutive_failures = 0
        self.opened_at: Optional[datetime] = None

    @property
    def state(self) -> str:
        if self.opened_at is None:
            return CLOSED
        if self.clock() - self.opened_at >= timedelta(seconds=self.recovery_seconds):
            return HALF_OPEN
        return OPEN

    def is_available(self) -> bool:
        """True when closed, or half-open (one trial batch allowed)."""
        state = self.state
        if state == HALF_OPEN:
            logger.info("Circuit breaker half-open, allowing trial batch", extra_fields={"breaker": self.name})
        return state != OPEN

    def record_batch(self, successes: int, failures: int) -> bool:
        """Feed one batch outcome.

        Returns:
            True if this batch opened the circuit
        """
        total = successes + failures
        if total == 0:
            return False
        if failures / total >= self.failure_ratio:
            return self.record_failure(successes, failures)
        self.record_success()
        return False

    def record_success(self) -> None:
        if self.opened_at is not None:
            logger.info("Circuit breaker closed, recovered", extra_fields={"breaker": self.name})
        self.consecutive_failures = 0
        self.opened_at = None

    def record_failure(self, successes: int = 0, failures: int = 0) -> bool:
        self.consecutive_failures += 1
        if self.consecutive_failures < self.failure_threshold:
            return False

        # A failed trial batch re-opens for another full recovery delay.
        self.opened_at = self.clock()
        logger.warning(
            "Circuit breaker opened",
            extra_fields={
                "breaker": self.name,
                "consecutive_batch_failures": self.consecutive_failures,
                "last_batch_successes": successes,
                "last_batch_failures": failures,
                "recovery_seconds": self.recovery_seconds,
            },
        )
        return True

    def reset(self) -> None:
        self.consecutive_failures = 0
        self.opened_at = None


class ModuleCircuitBreaker:
    """One ``CircuitBreaker`` per module, created on first failure."""

    def __init__(
        self,
        failure_threshold: int = 5,
        failure_ratio: float = 0.8,
        recovery_seconds: float = 600,
        clock: Clock = utcnow,
    ):
        self.failure_threshold = failure_threshold
        self.failure_ratio = failure_ratio
        self.recovery_seconds = recovery_seconds
        self.clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}

    def is_available(self, module: str) -> bool:
        breaker = self._breakers.get(module)
        return breaker is None or breaker.is_available()

    def record_batch(self, module: str, successes: int, failures: int) -> bool:
        """Feed the module's share of a batch; True if its circuit opened."""
        breaker = self._breakers.get(module)
        if breaker is None:
            if failures == 0:
                return False
            breaker = self._breakers[module] = CircuitBreaker(
                failure_threshold=self.failure_threshold,
                failure_ratio=self.failure_ratio,
                recovery_seconds=self.recovery_seconds,
                clock=self.clock,
                name=f"module:{module}",
            )
        return breaker.record_batch(successes, failures)

    def consecutive_failures(self, module: str) -> int:
        breaker = self._breakers.get(module)
        return breaker.consecutive_failures if breaker else 0

    def open_modules(self) -> List[str]:
        """Modules currently paused (half-open modules are not listed)."""
        return sorted(m for m, b in self._breakers.items() if b.state == OPEN)

    def reset(self, module: str) -> None:
        """Manual recovery for one module."""
        if self._breakers.pop(module, None) is not None:
            logger.info("Module circuit breaker reset", extra_fields={"module": module})


def build_breakers(settings: CircuitBreakerSettings, clock: Clock = utcnow):
    """Remote and per-module breakers from settings; (None, None) when disabled."""
    if not settings.enabled:
        return None, None
    remote = CircuitBreaker(
        failure_threshold=settings.failure_threshold,
        failure_ratio=settings.failure_ratio,
        recovery_seconds=settings.recovery_seconds,
        clock=clock,
    )
    modules = ModuleCircuitBreaker(
        failure_threshold=settings.module_failure_threshold,
        failure_ratio=settings.failure_ratio,
        recovery_seconds=settings.module_recovery_seconds,
        clock=clock,
    )
    return remote, modules
