# bookings_service/circuit_breaker.py
import threading
from datetime import datetime, timedelta
from typing import Callable, Optional

from .models import utcnow


class CircuitBreaker:
    """
    In-memory circuit breaker for calls to external collaborators.

    States:
    - closed: calls pass, failures are counted
    - open: calls are refused until ``reset_timeout`` elapses
    - half_open: one trial call is let through; success closes the
      circuit, failure opens it again
    """

    def __init__(
        self,
        name: str,
        max_failures: int = 3,
        reset_timeout_seconds: int = 30,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.name = name
        self.max_failures = max_failures
        self.reset_timeout = timedelta(seconds=reset_timeout_seconds)
        self.clock = clock
        self.failure_count = 0
        self.state = "closed"  # "closed" | "open" | "half_open"
        self.last_failure_time: Optional[datetime] = None
        self._lock = threading.Lock()

    def allow_request(self) -> bool:
        """
        Return True if a call may go out, False while the circuit is open.
        """
        with self._lock:
            if self.state == "half_open":
                # a trial call is already in flight
                return False
            if self.state == "open":
                if self.last_failure_time is None:
                    return False
                if self.clock() - self.last_failure_time >= self.reset_timeout:
                    self.state = "half_open"
                    return True
                return False
            return True

    def record_success(self) -> None:
        with self._lock:
            self.failure_count = 0
            self.state = "closed"
            self.last_failure_time = None

    def record_failure(self) -> None:
        with self._lock:
            self.failure_count += 1
            self.last_failure_time = self.clock()
            if self.state == "half_open" or self.failure_count >= self.max_failures:
                self.state = "open"


# Circuit breaker instance for calling the Notifications service
notifications_circuit_breaker = CircuitBreaker(
    name="notifications_service",
    max_failures=3,
    reset_timeout_seconds=30,
)
