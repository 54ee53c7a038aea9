"""
Circuit breaker around the generation call.

After ``fail_threshold`` consecutive failures the circuit opens and calls
fail fast for ``cooldown_seconds``; the first call after the cooldown is a
half-open trial call whose outcome closes or re-opens the circuit.
"""

import logging
import time
from enum import Enum
from typing import Awaitable, Callable, TypeVar

from ai_batch_guard.logging import log_info, log_warning

from .errors import CircuitOpenError

T = TypeVar("T")
logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Consecutive-failure circuit breaker. A threshold of 0 disables it."""

    def __init__(
        self,
        fail_threshold: int = 5,
        cooldown_seconds: float = 10.0,
        clock: Callable[[], float] = time.time,
    ):
        self.fail_threshold = fail_threshold
        self.cooldown_seconds = cooldown_seconds
        self.clock = clock
        self.state = CircuitState.CLOSED
        self.failures = 0
        self._next_try = 0.0

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Invoke ``operation`` through the breaker.

        Raises:
            CircuitOpenError: While the circuit is open (the operation is not called)
        """
        if self.fail_threshold <= 0:
            return await operation()

        if self.state == CircuitState.OPEN:
            if self.clock() < self._next_try:
                raise CircuitOpenError("Circuit open: upstream calls suspended after repeated failures")
            self.state = CircuitState.HALF_OPEN
            log_info(logger=logger, event="Circuit half-open")

        try:
            result = await operation()
        except Exception:
            self._record_failure()
            raise

        if self.state != CircuitState.CLOSED:
            log_info(logger=logger, event="Circuit closed")
        self.failures = 0
        self.state = CircuitState.CLOSED
        return result

    def _record_failure(self) -> None:
        self.failures += 1
        if self.state == CircuitState.HALF_OPEN or self.failures >= self.fail_threshold:
            self.state = CircuitState.OPEN
            self._next_try = self.clock() + self.cooldown_seconds
            log_warning(
                logger=logger,
                event="Circuit opened",
                failures=self.failures,
                cooldown_seconds=self.cooldown_seconds,
            )
