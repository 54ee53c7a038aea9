"""
Spend alerting.

Raises out-of-band alerts when a user's cumulative daily spend crosses the
warning threshold or the daily limit itself.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import List


class AlertSeverity(Enum):
    """Severity levels for spend alerts."""
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class SpendAlert:
    """A threshold crossing with details and explanation."""
    user_id: str
    date_bucket: str
    severity: AlertSeverity
    spent: float
    threshold: float
    daily_limit: float
    message: str


def detect_spend_alerts(
    user_id: str,
    date_bucket: str,
    previous: Decimal,
    total: Decimal,
    daily_limit: Decimal,
    alert_ratio: Decimal,
) -> List[SpendAlert]:
    """Detect thresholds crossed by moving spend from ``previous`` to ``total``.

    Rules:
    - WARNING: spend reaches ``alert_ratio * daily_limit``
    - CRITICAL: spend goes beyond ``daily_limit``

    Each threshold fires only on the record that crosses it, so
    repeated spend above a threshold does not re-alert.

    Args:
        user_id: User whose spend changed
        date_bucket: UTC day of the spend
        previous: Spend before this record
        total: Spend after this record
        daily_limit: User's daily limit
        alert_ratio: Fraction of the limit that triggers a warning

    Returns:
        List of alerts (empty if no threshold was crossed)
    """
    alerts = []

    warning_threshold = daily_limit * alert_ratio
    if previous < warning_threshold <= total:
        alerts.append(SpendAlert(
            user_id=user_id,
            date_bucket=date_bucket,
            severity=AlertSeverity.WARNING,
            spent=float(total),
            threshold=float(warning_threshold),
            daily_limit=float(daily_limit),
            message=(
                f"Daily spend ${total:.2f} reached {alert_ratio * 100:.0f}% "
                f"of the ${daily_limit:.2f} limit"
            ),
        ))

    if previous <= daily_limit < total:
        alerts.append(SpendAlert(
            user_id=user_id,
            date_bucket=date_bucket,
            severity=AlertSeverity.CRITICAL,
            spent=float(total),
            threshold=float(daily_limit),
            daily_limit=float(daily_limit),
            message=f"Daily spend ${total:.2f} exceeds the ${daily_limit:.2f} limit",
        ))

    return alerts
