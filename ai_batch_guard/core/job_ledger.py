"""
Durable per-batch job state.

The orchestrator that owns a batch is the only writer of its JobState; the
progress streamer and status queries read it back from the object store.
Every write replaces ``jobs/{batch_id}/state.json`` and leaves a versioned
snapshot beside it.
"""

import logging
import threading
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from ai_batch_guard.logging import log_debug, log_info, log_warning
from ai_batch_guard.storage.object_store import ObjectStore

from .errors import JobNotFoundError, LedgerStateError

logger = logging.getLogger(__name__)

JOB_STATUSES = ("running", "completed", "failed")
ITEM_STATUSES = ("pending", "running", "completed", "failed")
TERMINAL = ("completed", "failed")

# item status -> statuses it may move to
_ITEM_TRANSITIONS = {
    "pending": ("running", "failed"),
    "running": ("completed", "failed"),
    "completed": (),
    "failed": (),
}


def state_key(batch_id: str) -> str:
    return f"jobs/{batch_id}/state.json"


def snapshot_key(batch_id: str, started_ms: int, version: int) -> str:
    return f"jobs/{batch_id}/state-{started_ms}-{version:06d}.json"


@dataclass(frozen=True)
class ItemState:
    """Progress of one item within a batch."""
    scene_id: str
    status: str = "pending"
    error: Optional[str] = None
    outputs: Tuple[Dict[str, str], ...] = ()

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL

    def to_dict(self) -> Dict[str, Any]:
        data = {"scene_id": self.scene_id, "status": self.status, "outputs": list(self.outputs)}
        if self.error is not None:
            data["error"] = self.error
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ItemState":
        return cls(
            scene_id=data["scene_id"],
            status=data["status"],
            error=data.get("error"),
            outputs=tuple(data.get("outputs") or ()),
        )


@dataclass(frozen=True)
class JobState:
    """Snapshot of one batch: overall status, progress, and per-item status."""
    batch_id: str
    user_id: str
    status: str
    progress: float
    items: Tuple[ItemState, ...]
    started_at: float
    updated_at: float
    mode: str = "live"
    estimated_cost: float = 0.0
    actual_cost: Optional[float] = None
    sheet_id: Optional[str] = None
    error: Optional[str] = None
    version: int = 1

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL

    def item(self, scene_id: str) -> ItemState:
        for item in self.items:
            if item.scene_id == scene_id:
                return item
        raise KeyError(scene_id)

    def counts(self) -> Dict[str, int]:
        counts = {status: 0 for status in ITEM_STATUSES}
        for item in self.items:
            counts[item.status] += 1
        return counts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "user_id": self.user_id,
            "status": self.status,
            "progress": self.progress,
            "items": [item.to_dict() for item in self.items],
            "started_at": self.started_at,
            "updated_at": self.updated_at,
            "mode": self.mode,
            "estimated_cost": self.estimated_cost,
            "actual_cost": self.actual_cost,
            "sheet_id": self.sheet_id,
            "error": self.error,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobState":
        return cls(
            batch_id=data["batch_id"],
            user_id=data["user_id"],
            status=data["status"],
            progress=float(data["progress"]),
            items=tuple(ItemState.from_dict(item) for item in data["items"]),
            started_at=float(data["started_at"]),
            updated_at=float(data["updated_at"]),
            mode=data.get("mode", "live"),
            estimated_cost=float(data.get("estimated_cost", 0.0)),
            actual_cost=data.get("actual_cost"),
            sheet_id=data.get("sheet_id"),
            error=data.get("error"),
            version=int(data.get("version", 1)),
        )


def compute_progress(items: Sequence[ItemState]) -> float:
    """Fraction of items in a terminal status."""
    if not items:
        return 1.0
    return sum(1 for item in items if item.is_terminal) / len(items)


_PATCHABLE = frozenset({"status", "actual_cost", "error", "estimated_cost"})


class JobLedger:
    """Reads and writes JobState documents in an object store.

    States of running jobs created by this instance are cached in memory
    and dropped once the terminal state is persisted. Every mutation is
    validated against the cached state and persisted before the cache is
    updated, so a failed write leaves the cached state unchanged.
    """

    def __init__(self, store: ObjectStore, clock: Callable[[], float] = time.time):
        self.store = store
        self.clock = clock
        self._jobs: Dict[str, JobState] = {}
        self._lock = threading.Lock()

    def create_job(
        self,
        batch_id: str,
        user_id: str,
        scene_ids: Sequence[str],
        mode: str = "live",
        estimated_cost: float = 0.0,
        sheet_id: Optional[str] = None,
    ) -> JobState:
        """Write the initial state of a batch with every item pending.

        Raises:
            LedgerStateError: If this ledger is already running the batch
            StoreUnavailableError: If the state cannot be persisted
        """
        now = self.clock()
        state = JobState(
            batch_id=batch_id,
            user_id=user_id,
            status="running",
            progress=0.0,
            items=tuple(ItemState(scene_id=scene_id) for scene_id in scene_ids),
            started_at=now,
            updated_at=now,
            mode=mode,
            estimated_cost=estimated_cost,
            sheet_id=sheet_id,
        )
        with self._lock:
            existing = self._jobs.get(batch_id)
            if existing is not None and not existing.is_terminal:
                raise LedgerStateError(f"Job {batch_id} is already running")
            self._persist(state)
            self._jobs[batch_id] = state
        log_info(logger=logger, event="Job created", batch_id=batch_id, items=len(scene_ids))
        return state

    def update_item(
        self,
        batch_id: str,
        scene_id: str,
        status: str,
        error: Optional[str] = None,
        outputs: Optional[List[Dict[str, str]]] = None,
    ) -> JobState:
        """Move one item to a new status and recompute progress.

        Raises:
            LedgerStateError: On an unknown job or item, an illegal
                transition, or any update after the job is terminal
        """
        if status not in ITEM_STATUSES:
            raise LedgerStateError(f"Unknown item status: {status}")
        with self._lock:
            current = self._owned(batch_id)
            try:
                item = current.item(scene_id)
            except KeyError:
                raise LedgerStateError(f"Job {batch_id} has no item {scene_id}") from None
            if status not in _ITEM_TRANSITIONS[item.status]:
                raise LedgerStateError(f"Item {scene_id} cannot move from {item.status} to {status}")

            updated_item = replace(
                item,
                status=status,
                error=error,
                outputs=tuple(outputs) if outputs is not None else item.outputs,
            )
            items = tuple(updated_item if i.scene_id == scene_id else i for i in current.items)
            state = self._next(current, items=items, progress=compute_progress(items))
            self._persist(state)
            self._jobs[batch_id] = state
        log_debug(logger=logger, event="Item updated", batch_id=batch_id, scene_id=scene_id, status=status)
        return state

    def fail_open_items(self, batch_id: str, reason: str) -> JobState:
        """Mark every item that has not reached a terminal status as failed."""
        with self._lock:
            current = self._owned(batch_id)
            items = tuple(
                item if item.is_terminal else replace(item, status="failed", error=reason)
                for item in current.items
            )
            state = self._next(current, items=items, progress=compute_progress(items))
            self._persist(state)
            self._jobs[batch_id] = state
        log_warning(logger=logger, event="Open items failed", batch_id=batch_id, reason=reason)
        return state

    def update_job(self, batch_id: str, **patch: Any) -> JobState:
        """Apply a patch of job-level fields.

        Raises:
            LedgerStateError: On unknown fields, an update after the job is
                terminal, or a terminal status while items are still open
        """
        unknown = set(patch) - _PATCHABLE
        if unknown:
            raise LedgerStateError(f"Cannot patch job fields: {sorted(unknown)}")
        with self._lock:
            current = self._owned(batch_id)
            status = patch.get("status", current.status)
            if status not in JOB_STATUSES:
                raise LedgerStateError(f"Unknown job status: {status}")
            if status in TERMINAL and not all(item.is_terminal for item in current.items):
                raise LedgerStateError(f"Job {batch_id} has items that are not terminal")
            state = self._next(current, **patch)
            self._persist(state)
            if state.is_terminal:
                del self._jobs[batch_id]
            else:
                self._jobs[batch_id] = state
        log_debug(logger=logger, event="Job updated", batch_id=batch_id, status=state.status)
        return state

    def finalize(
        self,
        batch_id: str,
        actual_cost: float,
        status: Optional[str] = None,
        error: Optional[str] = None,
    ) -> JobState:
        """Write the terminal state of a batch.

        Without an explicit status the batch is ``completed`` if any item
        completed and ``failed`` if every item failed.
        """
        with self._lock:
            current = self._owned(batch_id)
        if status is None:
            status = "completed" if any(item.status == "completed" for item in current.items) else "failed"
        state = self.update_job(batch_id, status=status, actual_cost=actual_cost, error=error)
        log_info(
            logger=logger,
            event="Job finalized",
            batch_id=batch_id,
            status=status,
            actual_cost=actual_cost,
        )
        return state

    def get_job(self, batch_id: str) -> Optional[JobState]:
        """Read the persisted state of a batch.

        Returns:
            The JobState, or None if the batch is unknown

        Raises:
            StoreUnavailableError: If the store cannot be read
        """
        data = self.store.get_json(state_key(batch_id))
        return JobState.from_dict(data) if data is not None else None

    def require_job(self, batch_id: str) -> JobState:
        """Like ``get_job``, but an unknown batch raises JobNotFoundError."""
        state = self.get_job(batch_id)
        if state is None:
            raise JobNotFoundError(batch_id)
        return state

    def open_items(self, batch_id: str) -> List[str]:
        """Scene ids of a running batch's items that are not yet terminal."""
        with self._lock:
            state = self._jobs.get(batch_id)
        if state is None:
            return []
        return [item.scene_id for item in state.items if not item.is_terminal]

    @property
    def active_jobs(self) -> int:
        return len(self._jobs)

    def _owned(self, batch_id: str) -> JobState:
        state = self._jobs.get(batch_id)
        if state is None:
            persisted = self.get_job(batch_id)
            if persisted is not None and persisted.is_terminal:
                raise LedgerStateError(f"Job {batch_id} is already {persisted.status}")
            raise LedgerStateError(f"Job {batch_id} is not owned by this ledger")
        if state.is_terminal:
            raise LedgerStateError(f"Job {batch_id} is already {state.status}")
        return state

    def _next(self, current: JobState, **changes: Any) -> JobState:
        state = replace(current, updated_at=self.clock(), version=current.version + 1, **changes)
        if state.progress < current.progress:
            raise LedgerStateError(f"Progress of {current.batch_id} cannot decrease")
        return state

    def _persist(self, state: JobState) -> None:
        data = state.to_dict()
        self.store.put_json(state_key(state.batch_id), data)
        self.store.put_json(snapshot_key(state.batch_id, int(state.started_at * 1000), state.version), data)
