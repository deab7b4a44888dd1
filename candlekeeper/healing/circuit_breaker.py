"""Circuit breaker that pauses provider calls after consecutive healing failures."""

from datetime import datetime, timezone, timedelta
from typing import Callable, Tuple, Optional

from ..monitoring.logger import get_logger


class CircuitBreaker:
    """
    Circuit breaker that stops healing after consecutive failures.

    Rate limits, timeouts and provider errors all count as failures. While
    tripped, no provider calls should be issued. Auto-resets after a
    cooldown period.
    """

    def __init__(
        self,
        failure_threshold: int = 2,
        cooldown_minutes: float = 3,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of consecutive failures before tripping
            cooldown_minutes: Minutes to wait before allowing calls again
            clock: Returns the current UTC time (injectable for tests)
        """
        self.failure_threshold = failure_threshold
        self.cooldown_minutes = cooldown_minutes
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        # State
        self.consecutive_failures = 0
        self.trips = 0
        self.last_error: Optional[str] = None
        self._tripped_at: Optional[datetime] = None

        self.logger = get_logger(__name__)

    @property
    def is_open(self) -> bool:
        return not self.is_call_allowed()[0]

    def record_failure(self, error: Optional[str] = None) -> None:
        """
        Record a failed provider call.

        Args:
            error: Short description of the failure
        """
        self.consecutive_failures += 1
        self.last_error = error

        # Check if we should trip
        if self._tripped_at is None and self.consecutive_failures >= self.failure_threshold:
            self._trip()

    def record_success(self) -> None:
        """Success resets the failure counter."""
        self.consecutive_failures = 0
        self.last_error = None

    def _trip(self) -> None:
        """Trip the circuit breaker."""
        self._tripped_at = self._clock()
        self.trips += 1
        self.logger.warning(
            "Circuit breaker tripped",
            failures=self.consecutive_failures,
            cooldown_minutes=self.cooldown_minutes,
            error=self.last_error
        )

    def is_call_allowed(self) -> Tuple[bool, str]:
        """
        Check if provider calls are allowed.

        Returns:
            (allowed, reason) tuple
        """
        if self._tripped_at is None:
            return True, "OK"

        # Check if cooldown has elapsed
        cooldown_end = self._tripped_at + timedelta(minutes=self.cooldown_minutes)
        now = self._clock()

        if now >= cooldown_end:
            # Cooldown complete - reset
            self._tripped_at = None
            self.consecutive_failures = 0
            self.logger.info("Circuit breaker reset after cooldown")
            return True, "OK"

        # Still in cooldown
        remaining = cooldown_end - now
        seconds_left = int(remaining.total_seconds())

        return False, f"Circuit breaker open: {seconds_left} seconds remaining"

    def reset(self) -> None:
        """Manually reset the circuit breaker."""
        self._tripped_at = None
        self.consecutive_failures = 0
        self.last_error = None

    def get_status(self) -> dict:
        """Get current circuit breaker status."""
        allowed, _ = self.is_call_allowed()

        cooldown_remaining = None
        if not allowed:
            cooldown_end = self._tripped_at + timedelta(minutes=self.cooldown_minutes)
            remaining = cooldown_end - self._clock()
            cooldown_remaining = max(0, int(remaining.total_seconds()))

        return {
            'open': not allowed,
            'consecutive_failures': self.consecutive_failures,
            'failure_threshold': self.failure_threshold,
            'trips': self.trips,
            'last_error': self.last_error,
            'cooldown_remaining_seconds': cooldown_remaining
        }
