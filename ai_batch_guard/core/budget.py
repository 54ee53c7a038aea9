"""
Daily budget admission control.

``check_budget`` is a pre-flight, advisory check against the estimate;
``record_spend`` books the actual cost once per finished batch. The guard
never blocks an in-flight batch.
"""

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from ai_batch_guard.logging import log_info, log_warning

from .alerts import AlertSeverity, SpendAlert, detect_spend_alerts
from .errors import ErrorCode

logger = logging.getLogger(__name__)


class SpendStore(Protocol):
    """Backing store for per-user daily spend."""

    def get_spent(self, user_id: str, date_bucket: str) -> Decimal: ...

    def add_spend(
        self, user_id: str, date_bucket: str, batch_id: str, amount: Decimal
    ) -> Optional[Tuple[Decimal, Decimal]]: ...


class InMemorySpendStore:
    """Process-local spend store. Only the latest day's buckets are kept."""

    def __init__(self):
        self._spent: Dict[Tuple[str, str], Decimal] = {}
        # batch id -> date bucket it was charged to
        self._recorded: Dict[str, str] = {}
        self._day: Optional[str] = None
        self._lock = threading.Lock()

    def get_spent(self, user_id: str, date_bucket: str) -> Decimal:
        with self._lock:
            self._roll_over(date_bucket)
            return self._spent.get((user_id, date_bucket), Decimal("0"))

    def add_spend(
        self, user_id: str, date_bucket: str, batch_id: str, amount: Decimal
    ) -> Optional[Tuple[Decimal, Decimal]]:
        with self._lock:
            self._roll_over(date_bucket)
            if batch_id in self._recorded:
                return None
            self._recorded[batch_id] = date_bucket
            previous = self._spent.get((user_id, date_bucket), Decimal("0"))
            total = previous + amount
            self._spent[(user_id, date_bucket)] = total
            return previous, total

    def _roll_over(self, date_bucket: str) -> None:
        """Drop every bucket and batch record older than ``date_bucket``."""
        if self._day is not None and date_bucket <= self._day:
            return
        self._day = date_bucket
        self._spent = {key: spent for key, spent in self._spent.items() if key[1] >= date_bucket}
        self._recorded = {batch_id: day for batch_id, day in self._recorded.items() if day >= date_bucket}


@dataclass(frozen=True)
class BudgetCheck:
    """Result of a pre-flight budget check."""
    allowed: bool
    remaining: float
    daily_limit: float
    spent: float
    estimated_cost: float
    code: Optional[ErrorCode] = None
    message: Optional[str] = None


class BudgetGuard:
    """Tracks cumulative daily spend per user against a daily cap."""

    def __init__(
        self,
        daily_limit: float,
        store: Optional[SpendStore] = None,
        per_user_limits: Optional[Dict[str, float]] = None,
        alert_threshold: float = 0.8,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the guard.

        Args:
            daily_limit: Default daily cap per user
            store: Spend store (defaults to in-memory)
            per_user_limits: Caps overriding the default for specific users
            alert_threshold: Fraction of the cap that raises a warning alert
            clock: Source of the current epoch time in seconds
        """
        self.daily_limit = Decimal(str(daily_limit))
        self.store = store or InMemorySpendStore()
        self.alert_threshold = Decimal(str(alert_threshold))
        self.clock = clock
        self._limits = {user_id: Decimal(str(limit)) for user_id, limit in (per_user_limits or {}).items()}
        self._alert_handlers: List[Callable[[SpendAlert], None]] = []

    def date_bucket(self) -> str:
        return datetime.fromtimestamp(self.clock(), tz=timezone.utc).date().isoformat()

    def limit_for(self, user_id: str) -> Decimal:
        return self._limits.get(user_id, self.daily_limit)

    def set_daily_limit(self, user_id: str, limit: float) -> None:
        """Override the daily cap for one user."""
        if limit <= 0:
            raise ValueError("daily limit must be > 0")
        self._limits[user_id] = Decimal(str(limit))

    def on_alert(self, handler: Callable[[SpendAlert], None]) -> None:
        """Register a callback for spend alerts."""
        self._alert_handlers.append(handler)

    def remaining(self, user_id: str) -> float:
        spent = self.store.get_spent(user_id, self.date_bucket())
        return float(max(Decimal("0"), self.limit_for(user_id) - spent))

    def check_budget(self, user_id: str, estimated_cost: float) -> BudgetCheck:
        """Check whether an estimated cost fits in today's remaining budget.

        Args:
            user_id: Submitting user
            estimated_cost: Pre-flight cost estimate

        Returns:
            BudgetCheck with ``code=DAILY_LIMIT_EXCEEDED`` on denial

        Raises:
            StoreUnavailableError: If the spend store cannot be read
        """
        limit = self.limit_for(user_id)
        spent = self.store.get_spent(user_id, self.date_bucket())
        remaining = max(Decimal("0"), limit - spent)
        estimate = Decimal(str(estimated_cost))

        if estimate > remaining:
            message = (
                f"Estimated cost ${estimate:.2f} exceeds remaining daily budget ${remaining:.2f}"
            )
            log_warning(logger=logger, event="Budget denied", user_id=user_id, estimated_cost=estimated_cost,
                        remaining=float(remaining))
            return BudgetCheck(
                allowed=False,
                remaining=float(remaining),
                daily_limit=float(limit),
                spent=float(spent),
                estimated_cost=estimated_cost,
                code=ErrorCode.DAILY_LIMIT_EXCEEDED,
                message=message,
            )

        return BudgetCheck(
            allowed=True,
            remaining=float(remaining),
            daily_limit=float(limit),
            spent=float(spent),
            estimated_cost=estimated_cost,
        )

    def record_spend(self, user_id: str, actual_cost: float, batch_id: str) -> bool:
        """Book a finished batch's actual cost against today's bucket.

        Overage beyond the cap is recorded, not refused; crossing the
        warning threshold or the cap raises a spend alert instead.

        Args:
            user_id: User to charge
            actual_cost: Cost of completed items only
            batch_id: Batch being charged; a second call for it is a no-op

        Returns:
            True if the spend was recorded, False if the batch was already recorded

        Raises:
            StoreUnavailableError: If the spend store cannot be written
        """
        bucket = self.date_bucket()
        outcome = self.store.add_spend(user_id, bucket, batch_id, Decimal(str(actual_cost)))
        if outcome is None:
            log_warning(logger=logger, event="Spend already recorded", user_id=user_id, batch_id=batch_id)
            return False

        previous, total = outcome
        limit = self.limit_for(user_id)
        log_info(
            logger=logger,
            event="Spend recorded",
            user_id=user_id,
            batch_id=batch_id,
            amount=actual_cost,
            total=f"{total:.4f}",
            daily_limit=f"{limit:.2f}",
        )
        for alert in detect_spend_alerts(user_id, bucket, previous, total, limit, self.alert_threshold):
            self._emit(alert)
        return True

    def _emit(self, alert: SpendAlert) -> None:
        log = logger.error if alert.severity == AlertSeverity.CRITICAL else logger.warning
        log(f"Spend alert | user_id={alert.user_id} severity={alert.severity.value} {alert.message}")
        for handler in self._alert_handlers:
            handler(alert)
