"""
Data models for storage layer.

Defines persisted records for idempotency and cost auditing.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List


@dataclass(frozen=True)
class IdempotencyRecord:
    """First accepted submission of a fingerprint.

    ``result`` holds the admission summary returned to the original
    caller, so a duplicate submission can be answered with it.
    """
    fingerprint: str
    owner_user_id: str
    created_at: float
    expires_at: float
    item_summary: List[Dict[str, Any]] = field(default_factory=list)
    result: Dict[str, Any] = field(default_factory=dict)

    def is_valid(self, now: float) -> bool:
        return now < self.expires_at


@dataclass(frozen=True)
class CostLedgerEntry:
    """Immutable record of generation spend for one completed batch line.

    Append-only entries that create an auditable ledger of image costs.
    Once written, these records must never be modified.
    """
    timestamp: datetime
    user_id: str
    batch_id: str
    scene_id: str
    prompt_summary: str
    image_count: int
    cost: float
    model: str

    @property
    def date_bucket(self) -> str:
        return self.timestamp.astimezone(timezone.utc).date().isoformat()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "user_id": self.user_id,
            "batch_id": self.batch_id,
            "scene_id": self.scene_id,
            "prompt_summary": self.prompt_summary,
            "image_count": self.image_count,
            "cost": self.cost,
            "model": self.model,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CostLedgerEntry":
        return cls(
            timestamp=datetime.fromisoformat(data["timestamp"]),
            user_id=data["user_id"],
            batch_id=data["batch_id"],
            scene_id=data["scene_id"],
            prompt_summary=data["prompt_summary"],
            image_count=int(data["image_count"]),
            cost=float(data["cost"]),
            model=data["model"],
        )
