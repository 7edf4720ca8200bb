"""Circuit breaker for upstream collaborators (market data).

Sheds load after repeated upstream errors, then lets a single trial call
through to test recovery. Calls are wrapped in ``guard()`` so every call
is settled exactly once: a success, or a failure when anything escapes
the block (including cancellation by a caller's deadline).
"""

from __future__ import annotations

import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Final

import structlog

log = structlog.get_logger()

DEFAULT_CIRCUIT_BREAKER_THRESHOLD: Final[int] = 5
DEFAULT_CIRCUIT_BREAKER_TIMEOUT: Final[float] = 30.0  # seconds


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"  # Normal operation
    OPEN = "OPEN"  # Failing, reject requests
    HALF_OPEN = "HALF_OPEN"  # One trial call allowed


class CircuitOpenError(Exception):
    """Raised by ``guard()`` when the breaker sheds a call."""

    def __init__(self, name: str, retry_in: float) -> None:
        super().__init__(f"{name} circuit open, resets in {retry_in:.1f}s")
        self.retry_in = retry_in


@dataclass
class CircuitBreaker:
    """Failure counter with OPEN/HALF_OPEN/CLOSED states.

    Attributes:
        name: Upstream name used in logs.
        failure_threshold: Consecutive failures before opening.
        reset_timeout: Seconds the circuit stays OPEN before a trial call.
        clock: Monotonic clock (injectable for tests).
    """

    name: str = "upstream"
    failure_threshold: int = DEFAULT_CIRCUIT_BREAKER_THRESHOLD
    reset_timeout: float = DEFAULT_CIRCUIT_BREAKER_TIMEOUT
    clock: Any = field(default=time.monotonic, repr=False)
    state: CircuitState = field(default=CircuitState.CLOSED)
    failure_count: int = field(default=0)
    opened_at: float = field(default=0.0)
    half_open_in_flight: bool = field(default=False)

    # --------------------------------------------------------------------------
    # Admission
    # --------------------------------------------------------------------------
    def allow(self) -> bool:
        """Admit a call, moving OPEN to HALF_OPEN once the timeout elapsed."""
        if self.state == CircuitState.OPEN:
            if self.time_until_reset() > 0:
                return False
            self.state = CircuitState.HALF_OPEN
            self.half_open_in_flight = False
            log.info("Circuit breaker HALF_OPEN, probing upstream", upstream=self.name)

        if self.state == CircuitState.HALF_OPEN:
            if self.half_open_in_flight:
                return False
            self.half_open_in_flight = True
        return True

    @contextmanager
    def guard(self) -> Iterator[None]:
        """Run one upstream call under the breaker.

        Raises:
            CircuitOpenError: The call was shed.
        """
        if not self.allow():
            raise CircuitOpenError(self.name, self.time_until_reset())
        try:
            yield
        except BaseException:
            self.record_failure()
            raise
        self.record_success()

    # --------------------------------------------------------------------------
    # Outcomes
    # --------------------------------------------------------------------------
    def record_success(self) -> None:
        if self.state != CircuitState.CLOSED:
            log.info("Circuit breaker CLOSED, upstream recovered", upstream=self.name)
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.half_open_in_flight = False

    def record_failure(self) -> None:
        self.failure_count += 1
        self.half_open_in_flight = False
        # A failed trial call reopens at once; CLOSED needs the full threshold
        if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.failure_threshold:
            if self.state != CircuitState.OPEN:
                log.warning(
                    "Circuit breaker OPEN",
                    upstream=self.name,
                    failures=self.failure_count,
                    reset_in=self.reset_timeout,
                )
            self.state = CircuitState.OPEN
            self.opened_at = self.clock()

    def time_until_reset(self) -> float:
        """Seconds until an OPEN circuit admits a trial call."""
        if self.state != CircuitState.OPEN:
            return 0.0
        return max(0.0, self.reset_timeout - (self.clock() - self.opened_at))
