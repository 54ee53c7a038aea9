"""
Retry with exponential backoff and jitter for flaky upstream calls.

Failures are classified as retryable (rate limited, 5xx, timeouts,
connection errors) or fatal (validation, permission). Unknown errors are
fatal so real bugs are not masked by retries.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from ai_batch_guard.logging import log_warning

from .errors import BatchGuardError

T = TypeVar("T")
logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

_RETRYABLE_MARKERS = (
    "429",
    "too many requests",
    "rate limit",
    "resource exhausted",
    "timed out",
    "timeout",
    "econnreset",
    "etimedout",
    "connection reset",
    "temporarily unavailable",
)


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters. Delays are in seconds."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 15.0
    jitter: float = 1.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0 or self.jitter < 0:
            raise ValueError("delays must be >= 0")


def compute_delay(attempt: int, policy: RetryPolicy, rng: Callable[[], float] = random.random) -> float:
    """Delay before the retry that follows failed attempt ``attempt`` (1-based).

    ``min(base_delay * 2**(attempt - 1), max_delay)`` plus uniform jitter
    in ``[0, policy.jitter)``.
    """
    backoff = min(policy.base_delay * (2 ** (attempt - 1)), policy.max_delay)
    return backoff + rng() * policy.jitter


def _status_code(exc: BaseException) -> Optional[int]:
    for attr in ("status_code", "status", "code"):
        value = getattr(exc, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    response = getattr(exc, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def is_retryable(exc: BaseException) -> bool:
    """Classify an exception as retryable (True) or fatal (False)."""
    if isinstance(exc, BatchGuardError):
        return exc.retryable

    if isinstance(exc, (TimeoutError, asyncio.TimeoutError, ConnectionError)):
        return True

    status = _status_code(exc)
    if status is not None:
        return status in RETRYABLE_STATUS_CODES

    message = str(exc).lower()
    return any(marker in message for marker in _RETRYABLE_MARKERS)


async def run_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    rng: Callable[[], float] = random.random,
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
) -> T:
    """Run ``operation`` until it succeeds, fails fatally, or attempts run out.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        policy: Backoff parameters (defaults to RetryPolicy())
        sleep: Awaitable sleep used between attempts
        rng: Uniform [0, 1) source for jitter
        on_retry: Called with (attempt, error, delay) before each retry sleep

    Returns:
        The operation's result

    Raises:
        The first fatal error, or the last retryable error once
        ``policy.max_attempts`` attempts have been made
    """
    policy = policy or RetryPolicy()
    attempt = 1
    while True:
        try:
            return await operation()
        except Exception as e:
            if not is_retryable(e) or attempt >= policy.max_attempts:
                raise
            delay = compute_delay(attempt, policy, rng)
            log_warning(
                logger=logger,
                event="Retrying after error",
                attempt=attempt,
                max_attempts=policy.max_attempts,
                delay=f"{delay:.2f}",
                error=str(e),
            )
            if on_retry is not None:
                on_retry(attempt, e, delay)
            await sleep(delay)
            attempt += 1
