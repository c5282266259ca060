"""
Circuit Breaker for best-effort hooks

Upload and notification hooks talk to things the monitor does not control
(rclone remotes, webhooks, SMTP relays). When one of them keeps failing,
the breaker stops calling it for a cooldown period instead of retrying on
every cycle and flooding the diagnostic log.

States:
- CLOSED: calls pass through
- OPEN: calls are refused until the cooldown expires
- HALF_OPEN: one trial call is allowed; success closes, failure re-opens

Thread Safety:
    The upload hook runs on a background thread, so state changes are
    protected by a threading.Lock.
"""

import logging
import os
import threading
import time
from typing import Any, Callable, Optional

from .structured_events import StructuredEventLogger

logger = logging.getLogger(os.getenv("LOGGER_NAME", "HOP_MONITOR_DAEMON"))


class CircuitOpenError(Exception):
    """Raised by call() while the circuit is open."""


class CircuitBreaker:
    """
    Consecutive-failure circuit breaker.

    Attributes:
        threshold (int): Consecutive failures that open the circuit.
        timeout (int): Seconds to stay OPEN before allowing a trial call.
        service_name (str): Name used in logs.
        structured_logger (StructuredEventLogger): Optional structured event sink.
        failure_count (int): Current consecutive failures.
        state (str): "CLOSED", "OPEN" or "HALF_OPEN".
    """

    def __init__(self,
                 threshold: int = 3,
                 timeout: int = 600,
                 service_name: str = "unknown",
                 structured_logger: Optional[StructuredEventLogger] = None,
                 clock: Callable[[], float] = time.monotonic):
        if threshold < 1:
            raise ValueError("Threshold must be >= 1")
        if timeout < 1:
            raise ValueError("Timeout must be >= 1")

        self.threshold = threshold
        self.timeout = timeout
        self.service_name = service_name
        self.structured_logger = structured_logger
        self._clock = clock

        self.failure_count = 0
        self.opened_at: Optional[float] = None
        self.state = "CLOSED"
        self.lock = threading.Lock()

    def _emit(self, event_name: str, error_message: Optional[str] = None) -> None:
        if self.structured_logger:
            self.structured_logger.log_circuit_breaker_event(
                service=self.service_name,
                event_name=event_name,
                failure_count=self.failure_count,
                error_message=error_message,
            )

    def allow(self) -> bool:
        """True if a call may proceed now (may move OPEN -> HALF_OPEN)."""
        with self.lock:
            if self.state != "OPEN":
                return True
            if self._clock() - self.opened_at >= self.timeout:
                self.state = "HALF_OPEN"
                logger.info(f"Circuit breaker HALF_OPEN for {self.service_name}, allowing a trial call")
                self._emit("half_open")
                return True
            return False

    def record_success(self) -> None:
        with self.lock:
            was = self.state
            self.failure_count = 0
            self.opened_at = None
            self.state = "CLOSED"
        if was != "CLOSED":
            logger.info(f"Circuit breaker CLOSED for {self.service_name}")
            self._emit("closed")

    def record_failure(self, error_message: Optional[str] = None) -> None:
        with self.lock:
            self.failure_count += 1
            opening = self.state == "HALF_OPEN" or (
                self.state == "CLOSED" and self.failure_count >= self.threshold)
            if opening:
                self.state = "OPEN"
                self.opened_at = self._clock()
        if opening:
            logger.warning(f"Circuit breaker OPEN for {self.service_name} after "
                           f"{self.failure_count} failures; pausing for {self.timeout}s")
            self._emit("opened", error_message)
        else:
            logger.debug(f"Circuit breaker failure recorded for {self.service_name} "
                         f"({self.failure_count}/{self.threshold})")

    def call(self, func: Callable, *args, **kwargs) -> Any:
        """
        Run func under the breaker.

        Raises:
            CircuitOpenError: the circuit is open; func was not called.
            Exception: whatever func raised (after it is counted).
        """
        if not self.allow():
            self._emit("call_blocked", f"Circuit breaker OPEN for {self.service_name}")
            raise CircuitOpenError(f"Circuit breaker OPEN for {self.service_name}")
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            self.record_failure(str(e))
            raise
        self.record_success()
        return result
