"""
Circuit Breaker for rate providers

States:
- CLOSED: Normal operation, provider calls pass through
- OPEN: Consecutive failures reached the threshold, provider is skipped
- HALF_OPEN: Cooldown elapsed, a single trial call checks whether the provider
  recovered; other callers are blocked until it reports back

One breaker exists per provider. A "failure" is one provider call whose
retries were exhausted, not one attempt. State is shared across concurrent
aggregations (and worker threads for blocking providers), so every read and
update goes through a lock.
"""
import logging
import threading
from datetime import datetime, timezone
from typing import Dict, Optional
from enum import Enum

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """
    Circuit breaker guarding one external rate provider.

    Attributes:
        name: Identifier for this circuit breaker (the provider name)
        failure_threshold: Consecutive failures before opening
        recovery_timeout: Base seconds to wait before trying the provider again
    """

    FAILURE_THRESHOLD = 5
    RECOVERY_TIMEOUT = 30
    MAX_BACKOFF_MULTIPLIER = 16

    def __init__(
        self,
        name: str,
        failure_threshold: Optional[int] = None,
        recovery_timeout: Optional[float] = None,
    ):
        self.name = name
        self.failure_threshold = failure_threshold or self.FAILURE_THRESHOLD
        self.recovery_timeout = self.RECOVERY_TIMEOUT if recovery_timeout is None else recovery_timeout

        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._trial_in_flight = False
        self.failure_count = 0
        self.last_failure_time: Optional[datetime] = None
        self.backoff_multiplier = 1

        # Metrics
        self.total_calls = 0
        self.total_failures = 0
        self.total_blocked = 0
        self.last_state_change: Optional[datetime] = None

    @property
    def state(self) -> CircuitState:
        return self._state

    def _set_state(self, new_state: CircuitState):
        if new_state != self._state:
            old_state = self._state
            self._state = new_state
            self.last_state_change = datetime.now(timezone.utc)
            logger.info(
                f"[CircuitBreaker:{self.name}] State changed: {old_state.value} -> {new_state.value}"
            )

    def _remaining_cooldown(self) -> float:
        if self._state != CircuitState.OPEN or not self.last_failure_time:
            return 0
        elapsed = (datetime.now(timezone.utc) - self.last_failure_time).total_seconds()
        return max(0, self.recovery_timeout * self.backoff_multiplier - elapsed)

    def get_retry_after_seconds(self) -> float:
        """Seconds until an open circuit will let a trial call through."""
        with self._lock:
            return self._remaining_cooldown()

    def is_call_permitted(self) -> bool:
        """
        Check whether the provider may be called now.

        An OPEN circuit whose cooldown has elapsed moves to HALF_OPEN and
        permits exactly one trial call. Blocked calls are counted.
        """
        with self._lock:
            self.total_calls += 1
            if self._state == CircuitState.OPEN:
                if self._remaining_cooldown() > 0:
                    self.total_blocked += 1
                    return False
                self._set_state(CircuitState.HALF_OPEN)
                self._trial_in_flight = True
                return True
            if self._state == CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    self.total_blocked += 1
                    return False
                self._trial_in_flight = True
            return True

    def record_success(self):
        with self._lock:
            self._trial_in_flight = False
            if self._state == CircuitState.HALF_OPEN:
                logger.info(f"[CircuitBreaker:{self.name}] CLOSED - provider recovered")
                self.backoff_multiplier = 1
            self._set_state(CircuitState.CLOSED)
            self.failure_count = 0

    def record_failure(self, error: Optional[BaseException] = None):
        with self._lock:
            self._trial_in_flight = False
            self.failure_count += 1
            self.total_failures += 1
            self.last_failure_time = datetime.now(timezone.utc)
            error_name = type(error).__name__ if error else "unknown"

            if self._state == CircuitState.HALF_OPEN:
                # Trial call failed, reopen with a longer cooldown
                self.backoff_multiplier = min(self.backoff_multiplier * 2, self.MAX_BACKOFF_MULTIPLIER)
                self._set_state(CircuitState.OPEN)
                logger.warning(
                    f"[CircuitBreaker:{self.name}] OPENED (half-open trial call failed) - "
                    f"error={error_name}, backoff={self.backoff_multiplier}x"
                )
            elif self._state == CircuitState.CLOSED and self.failure_count >= self.failure_threshold:
                self._set_state(CircuitState.OPEN)
                logger.warning(
                    f"[CircuitBreaker:{self.name}] OPENED - "
                    f"failures={self.failure_count}, error={error_name}"
                )

    def reset(self):
        """Manually reset the circuit breaker to CLOSED state."""
        with self._lock:
            self._set_state(CircuitState.CLOSED)
            self._trial_in_flight = False
            self.failure_count = 0
            self.backoff_multiplier = 1
            self.last_failure_time = None

    def get_metrics(self) -> dict:
        """Get circuit breaker metrics for the provider status endpoint."""
        with self._lock:
            return {
                "name": self.name,
                "state": self._state.value,
                "failure_count": self.failure_count,
                "backoff_multiplier": self.backoff_multiplier,
                "total_calls": self.total_calls,
                "total_failures": self.total_failures,
                "total_blocked": self.total_blocked,
                "retry_after_seconds": self._remaining_cooldown(),
                "last_failure_time": self.last_failure_time.isoformat() if self.last_failure_time else None,
                "last_state_change": self.last_state_change.isoformat() if self.last_state_change else None,
            }


class CircuitBreakerRegistry:
    """Get-or-create registry of breakers keyed by provider name."""

    def __init__(self, failure_threshold: Optional[int] = None, recovery_timeout: Optional[float] = None):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, name: str) -> CircuitBreaker:
        with self._lock:
            if name not in self._breakers:
                self._breakers[name] = CircuitBreaker(
                    name,
                    failure_threshold=self.failure_threshold,
                    recovery_timeout=self.recovery_timeout,
                )
            return self._breakers[name]

    def all(self) -> Dict[str, CircuitBreaker]:
        with self._lock:
            return self._breakers.copy()
