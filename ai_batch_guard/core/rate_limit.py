"""
Per-user submission rate limiting.

Each user moves Idle -> Cooldown -> Idle: an accepted batch starts a cooldown
window during which further batches are denied. A daily batch count cap
resets at UTC midnight.

State lives in process memory behind one lock, so check-and-reserve is
atomic for concurrent requests within a process. Multiple orchestrator
processes do not share this state.
"""

import logging
import math
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from ai_batch_guard.logging import log_debug, log_info, log_warning

from .errors import ErrorCode

logger = logging.getLogger(__name__)

# Past this idle time a user has no cooldown left and no count for today.
STALE_AFTER_SECONDS = 24 * 60 * 60


@dataclass
class _UserActivity:
    last_accepted_at: float
    request_count: int
    daily_count: int
    day: str


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of a rate limit check.

    ``previous`` carries the user's state before the reservation so the
    caller can roll it back with ``RateLimiter.release``.
    """
    allowed: bool
    retry_after_seconds: int = 0
    code: Optional[ErrorCode] = None
    reason: Optional[str] = None
    previous: Optional[_UserActivity] = None


@dataclass(frozen=True)
class RateLimitStatus:
    """``daily_remaining`` is None when the daily batch limit is disabled."""
    next_available_at: Optional[float]
    daily_remaining: Optional[int]
    total_requests: int


def _day_of(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).date().isoformat()


class RateLimiter:
    """Cooldown and daily-count limiter keyed by user id."""

    def __init__(
        self,
        cooldown_seconds: float,
        daily_batch_limit: int = 0,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the limiter.

        Args:
            cooldown_seconds: Minimum time between accepted batches per user
            daily_batch_limit: Maximum accepted batches per user per UTC day (0 disables)
            clock: Source of the current epoch time in seconds
        """
        self.cooldown_seconds = cooldown_seconds
        self.daily_batch_limit = daily_batch_limit
        self.clock = clock
        self._activity: Dict[str, _UserActivity] = {}
        self._last_cleanup = clock()
        self._lock = threading.Lock()

    @property
    def stale_after_seconds(self) -> float:
        """Idle time after which a user's entry no longer affects any decision."""
        return max(STALE_AFTER_SECONDS, self.cooldown_seconds)

    @property
    def tracked_users(self) -> int:
        return len(self._activity)

    def check_and_reserve(self, user_id: str) -> RateLimitDecision:
        """Check the user's limits and, if allowed, reserve the slot.

        The check and the reservation happen under one lock, so two
        concurrent requests from the same user cannot both pass.

        Args:
            user_id: Submitting user

        Returns:
            RateLimitDecision; ``retry_after_seconds`` is set on cooldown denials
        """
        with self._lock:
            now = self.clock()
            if now - self._last_cleanup >= self.stale_after_seconds:
                self._drop_stale(now - self.stale_after_seconds)
                self._last_cleanup = now
            decision = self._evaluate(user_id, now)
            if not decision.allowed:
                log_warning(
                    logger=logger,
                    event="Rate limit denied",
                    user_id=user_id,
                    code=decision.code.value,
                    retry_after_seconds=decision.retry_after_seconds,
                )
                return decision

            activity = self._activity.get(user_id)
            previous = None
            today = _day_of(now)
            if activity is None:
                activity = _UserActivity(last_accepted_at=now, request_count=0, daily_count=0, day=today)
                self._activity[user_id] = activity
            else:
                previous = _UserActivity(**vars(activity))
                if activity.day != today:
                    activity.daily_count = 0
                    activity.day = today
            activity.last_accepted_at = now
            activity.request_count += 1
            activity.daily_count += 1

            log_info(
                logger=logger,
                event="Rate limit reserved",
                user_id=user_id,
                daily_count=activity.daily_count,
            )
            return RateLimitDecision(allowed=True, previous=previous)

    def peek(self, user_id: str) -> RateLimitDecision:
        """Evaluate the limits without reserving anything."""
        with self._lock:
            return self._evaluate(user_id, self.clock())

    def release(self, user_id: str, decision: RateLimitDecision) -> None:
        """Roll back a reservation made by ``check_and_reserve``.

        Used when a later admission step rejects the submission, or the
        submission turns out to be a duplicate that starts no new work.
        """
        if not decision.allowed:
            return
        with self._lock:
            if decision.previous is None:
                self._activity.pop(user_id, None)
            else:
                self._activity[user_id] = _UserActivity(**vars(decision.previous))
        log_debug(logger=logger, event="Rate limit reservation released", user_id=user_id)

    def status(self, user_id: str) -> RateLimitStatus:
        """Get the user's current rate limit status."""
        with self._lock:
            now = self.clock()
            activity = self._activity.get(user_id)
            daily_count = activity.daily_count if activity is not None and activity.day == _day_of(now) else 0
            daily_remaining = max(0, self.daily_batch_limit - daily_count) if self.daily_batch_limit else None
            if activity is None:
                return RateLimitStatus(next_available_at=None, daily_remaining=daily_remaining, total_requests=0)
            next_available = activity.last_accepted_at + self.cooldown_seconds
            return RateLimitStatus(
                next_available_at=next_available if next_available > now else None,
                daily_remaining=daily_remaining,
                total_requests=activity.request_count,
            )

    def clear(self, user_id: str) -> None:
        """Forget a user's activity (administrative reset)."""
        with self._lock:
            self._activity.pop(user_id, None)
        log_info(logger=logger, event="Rate limit cleared", user_id=user_id)

    def cleanup_stale(self, max_age_seconds: Optional[float] = None) -> int:
        """Drop users idle for longer than ``max_age_seconds``.

        ``check_and_reserve`` also does this on its own, at most once per
        ``stale_after_seconds``.

        Returns:
            Number of entries removed
        """
        if max_age_seconds is None:
            max_age_seconds = self.stale_after_seconds
        with self._lock:
            return self._drop_stale(self.clock() - max_age_seconds)

    def _drop_stale(self, cutoff: float) -> int:
        stale = [user_id for user_id, activity in self._activity.items() if activity.last_accepted_at < cutoff]
        for user_id in stale:
            del self._activity[user_id]
        if stale:
            log_debug(logger=logger, event="Stale rate limit entries removed", count=len(stale))
        return len(stale)

    def _evaluate(self, user_id: str, now: float) -> RateLimitDecision:
        activity = self._activity.get(user_id)
        if activity is None:
            return RateLimitDecision(allowed=True)

        elapsed = now - activity.last_accepted_at
        if elapsed < self.cooldown_seconds:
            retry_after = max(0, math.ceil(self.cooldown_seconds - elapsed))
            return RateLimitDecision(
                allowed=False,
                retry_after_seconds=retry_after,
                code=ErrorCode.RATE_LIMITED,
                reason=f"Please wait {retry_after} seconds before submitting another batch",
            )

        daily_count = activity.daily_count if activity.day == _day_of(now) else 0
        if self.daily_batch_limit and daily_count >= self.daily_batch_limit:
            return RateLimitDecision(
                allowed=False,
                code=ErrorCode.DAILY_BATCH_LIMIT,
                reason=f"Daily limit of {self.daily_batch_limit} batches reached. Resets at midnight UTC.",
            )

        return RateLimitDecision(allowed=True)
