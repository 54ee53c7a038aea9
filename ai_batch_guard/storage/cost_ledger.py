"""
Append-only cost ledger.

One JSON line per completed batch line, partitioned by UTC calendar day
(``ledger/YYYY-MM-DD.jsonl``). Used for audit and reconciliation only;
admission decisions never read it.
"""

import json
import logging
from typing import List

from ai_batch_guard.logging import log_info

from .models import CostLedgerEntry
from .object_store import ObjectStore

logger = logging.getLogger(__name__)


def ledger_key(date_bucket: str) -> str:
    return f"ledger/{date_bucket}.jsonl"


class CostLedger:
    """Day-partitioned append log of generation spend."""

    def __init__(self, store: ObjectStore):
        self.store = store

    def append(self, entry: CostLedgerEntry) -> None:
        """Append a single entry to its day's log.

        Entries are never rewritten; corrections are new entries.

        Args:
            entry: The spend record to append

        Raises:
            StoreUnavailableError: If the store cannot be written
        """
        self.store.append_line(ledger_key(entry.date_bucket), json.dumps(entry.to_dict(), sort_keys=True))
        log_info(
            logger=logger,
            event="Cost ledger entry appended",
            batch_id=entry.batch_id,
            scene_id=entry.scene_id,
            cost=entry.cost,
        )

    def read_day(self, date_bucket: str) -> List[CostLedgerEntry]:
        """Read all entries for one UTC day, oldest first."""
        return [CostLedgerEntry.from_dict(json.loads(line)) for line in self.store.read_lines(ledger_key(date_bucket))]

    def total_for_day(self, date_bucket: str) -> float:
        return round(sum(entry.cost for entry in self.read_day(date_bucket)), 4)
