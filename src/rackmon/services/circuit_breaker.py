from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, Optional

from src.rackmon.schemas.common import utc_now

logger = logging.getLogger(__name__)


class CircuitStatus(Enum):
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject requests
    HALF_OPEN = "half_open"  # One probe allowed


@dataclass
class EndpointCircuitState:
    """Failure tracking for one endpoint URL. Lives for the process lifetime only."""

    endpoint: str
    status: CircuitStatus = CircuitStatus.CLOSED
    consecutive_failures: int = 0
    last_failure_at: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None
    probe_in_flight: bool = False

    def as_dict(self) -> dict:
        return {
            "endpoint": self.endpoint,
            "status": self.status.value,
            "consecutiveFailures": self.consecutive_failures,
            "lastFailureAt": self.last_failure_at.isoformat() if self.last_failure_at else None,
            "nextRetryAt": self.next_retry_at.isoformat() if self.next_retry_at else None,
        }


class CircuitBreaker:
    """
    Per-endpoint circuit breaker.

    CLOSED -> OPEN after `failure_threshold` consecutive failures.
    OPEN -> HALF_OPEN once `reset_timeout` has elapsed; the first is_open() check after that
    returns False exactly once so a single probe can go through.
    HALF_OPEN -> CLOSED on success, -> OPEN (timer restarted) on failure.

    Not thread-safe: it is owned by one event loop.
    """

    def __init__(
        self,
        failure_threshold: int = 3,
        reset_timeout: float = 30.0,
        now_fn: Callable[[], datetime] = utc_now,
    ):
        self.failure_threshold = max(1, int(failure_threshold))
        self.reset_timeout = float(reset_timeout)
        self._now = now_fn
        self._states: Dict[str, EndpointCircuitState] = {}
        logger.debug(
            "Circuit breaker initialized failureThreshold=%s resetTimeout=%ss",
            self.failure_threshold,
            self.reset_timeout,
        )

    def _open(self, state: EndpointCircuitState, reason: str) -> None:
        old = state.status
        state.status = CircuitStatus.OPEN
        state.probe_in_flight = False
        state.next_retry_at = self._now() + timedelta(seconds=self.reset_timeout)
        logger.warning(
            "Circuit %s -> OPEN for endpoint %s (%s); next retry at %s",
            old.value.upper(),
            state.endpoint,
            reason,
            state.next_retry_at.isoformat(),
            extra={
                "endpoint": state.endpoint,
                "failures": state.consecutive_failures,
                "nextRetryInSeconds": round(self.reset_timeout),
            },
        )

    # PUBLIC_INTERFACE
    def is_open(self, endpoint: str) -> bool:
        """Return True when calls to `endpoint` should be skipped."""
        state = self._states.get(endpoint)
        if state is None:
            return False

        if state.status == CircuitStatus.OPEN:
            now = self._now()
            if state.next_retry_at is not None and now >= state.next_retry_at:
                state.status = CircuitStatus.HALF_OPEN
                state.probe_in_flight = True
                logger.info(
                    "Circuit OPEN -> HALF_OPEN for endpoint %s; allowing one probe",
                    endpoint,
                    extra={"endpoint": endpoint, "previousFailures": state.consecutive_failures},
                )
                return False
            remaining = (state.next_retry_at - now).total_seconds() if state.next_retry_at else 0.0
            logger.debug("Circuit for %s is open, %.0fs remaining until retry", endpoint, remaining)
            return True

        if state.status == CircuitStatus.HALF_OPEN:
            # The probe has been handed out; hold further calls until it reports back.
            return state.probe_in_flight

        return False

    # PUBLIC_INTERFACE
    def record_success(self, endpoint: str) -> None:
        """Close the circuit and reset counters, whatever the prior state. Untracked endpoints stay untracked."""
        previous = self._states.get(endpoint)
        if previous is None:
            logger.debug("Recorded success for %s", endpoint)
            return
        self._states[endpoint] = EndpointCircuitState(endpoint=endpoint)
        if previous.status != CircuitStatus.CLOSED:
            logger.info(
                "Circuit %s -> CLOSED for endpoint %s",
                previous.status.value.upper(),
                endpoint,
                extra={"endpoint": endpoint},
            )
        else:
            logger.debug("Recorded success for %s", endpoint)

    # PUBLIC_INTERFACE
    def record_failure(self, endpoint: str) -> None:
        """Count a failure; opens the circuit at the threshold or on a failed half-open probe."""
        state = self._states.get(endpoint)
        if state is None:
            state = EndpointCircuitState(endpoint=endpoint)
            self._states[endpoint] = state

        state.consecutive_failures += 1
        state.last_failure_at = self._now()

        if state.status == CircuitStatus.HALF_OPEN:
            self._open(state, "probe failed")
        elif state.consecutive_failures >= self.failure_threshold:
            self._open(state, "threshold reached")
        else:
            logger.debug(
                "Circuit for %s remains closed, failure count: %s/%s",
                endpoint,
                state.consecutive_failures,
                self.failure_threshold,
            )

    def state_of(self, endpoint: str) -> Optional[EndpointCircuitState]:
        state = self._states.get(endpoint)
        return replace(state) if state else None

    # PUBLIC_INTERFACE
    def snapshot(self) -> Dict[str, EndpointCircuitState]:
        """Copy of every tracked endpoint state."""
        return {endpoint: replace(state) for endpoint, state in self._states.items()}
