"""
Circuit breaker for outbound collaborator calls.
Stops hammering a build service or webhook that keeps failing.
"""
from enum import Enum
from typing import Callable, Dict, Optional
import logging
import time

logger = logging.getLogger(__name__)


FAILURE_THRESHOLD = 3  # Trip after N consecutive failures
OPEN_STATE_DURATION = 60.0  # Seconds to stay OPEN before a trial request


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerError(Exception):
    """Raised when a call is refused because the circuit is open."""
    pass


class CircuitBreaker:
    """
    Consecutive-failure circuit breaker.

    CLOSED -> OPEN after ``failure_threshold`` consecutive failures.
    OPEN -> HALF_OPEN once ``open_duration`` has elapsed; a single trial
    request is let through. Success closes the circuit, failure reopens it.
    """

    def __init__(
        self,
        service_name: str,
        failure_threshold: int = FAILURE_THRESHOLD,
        open_duration: float = OPEN_STATE_DURATION,
        clock: Callable[[], float] = time.monotonic
    ):
        self.service_name = service_name
        self.failure_threshold = failure_threshold
        self.open_duration = open_duration
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        if (
            self._state == CircuitState.OPEN
            and self._opened_at is not None
            and self._clock() - self._opened_at >= self.open_duration
        ):
            logger.warning("Circuit breaker for %s: OPEN -> HALF_OPEN", self.service_name)
            self._state = CircuitState.HALF_OPEN
            self._trial_in_flight = False
        return self._state

    def check(self) -> None:
        """
        Raise if the call must not be attempted.

        Raises:
            CircuitBreakerError: If the circuit is open or a trial is already in flight
        """
        state = self.state
        if state == CircuitState.OPEN:
            raise CircuitBreakerError(f"{self.service_name} circuit is open")
        if state == CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                raise CircuitBreakerError(f"{self.service_name} circuit is half-open, trial in flight")
            self._trial_in_flight = True

    def record_success(self) -> None:
        if self._state == CircuitState.HALF_OPEN:
            logger.warning("Circuit breaker for %s: HALF_OPEN -> CLOSED", self.service_name)
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at = None
        self._trial_in_flight = False

    def record_failure(self) -> None:
        self._failure_count += 1
        if self._state == CircuitState.HALF_OPEN or (
            self._state == CircuitState.CLOSED and self._failure_count >= self.failure_threshold
        ):
            logger.warning(
                "Circuit breaker for %s: %s -> OPEN (%d consecutive failures)",
                self.service_name, self._state.value.upper(), self._failure_count,
            )
            self._state = CircuitState.OPEN
            self._opened_at = self._clock()
            self._trial_in_flight = False


_circuit_breakers: Dict[str, CircuitBreaker] = {}


def get_circuit_breaker(service_name: str) -> CircuitBreaker:
    """Get or create the process-wide circuit breaker for a service."""
    if service_name not in _circuit_breakers:
        _circuit_breakers[service_name] = CircuitBreaker(service_name)
    return _circuit_breakers[service_name]
