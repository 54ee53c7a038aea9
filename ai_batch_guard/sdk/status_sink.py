"""
Row status sinks.

The orchestrator reports each item transition to a sink when the submission
names a sheet. Sinks are best-effort; the orchestrator logs and drops their
failures.
"""

import logging
import time
from typing import Any, Callable, Dict

from ..logging import log_debug
from ..storage.object_store import ObjectStore

logger = logging.getLogger(__name__)


class NullStatusSink:
    """Discards every update."""

    def update_row_status(self, sheet_id: str, scene_id: str, fields: Dict[str, Any]) -> None:
        return None


class ObjectStoreStatusSink:
    """Writes one status document per row to ``sheets/{sheet_id}/{scene_id}.json``."""

    def __init__(self, store: ObjectStore, clock: Callable[[], float] = time.time):
        self.store = store
        self.clock = clock

    def update_row_status(self, sheet_id: str, scene_id: str, fields: Dict[str, Any]) -> None:
        document = {"sheet_id": sheet_id, "scene_id": scene_id, "updated_at": self.clock()}
        document.update(fields)
        self.store.put_json(f"sheets/{sheet_id}/{scene_id}.json", document)
        log_debug(logger=logger, event="Row status written", sheet_id=sheet_id, scene_id=scene_id)

    def get_row_status(self, sheet_id: str, scene_id: str):
        return self.store.get_json(f"sheets/{sheet_id}/{scene_id}.json")
