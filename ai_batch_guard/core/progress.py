"""
Live progress streaming over the job ledger.

A stream runs two independent timers: a poll timer that re-reads the
ledger and pushes the JobState when it changed, and a heartbeat timer that
pushes keep-alives. Ledger reads run in a worker thread, so a slow store
never holds up heartbeats or other streams. The stream ends after the
terminal snapshot, after a not-found error event, or when the consumer
closes it; both timers are cancelled in every case.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ai_batch_guard.logging import log_debug, log_error, log_info, log_warning

from .errors import ErrorCode, StoreUnavailableError
from .job_ledger import JobState

logger = logging.getLogger(__name__)

SNAPSHOT = "snapshot"
HEARTBEAT = "heartbeat"
ERROR = "error"


@dataclass(frozen=True)
class ProgressEvent:
    """One event pushed to a progress stream consumer."""
    type: str
    data: Dict[str, Any] = field(default_factory=dict)
    terminal: bool = False


def format_sse(event: ProgressEvent) -> str:
    """Render an event as a Server-Sent-Events frame."""
    if event.type == HEARTBEAT:
        return ":hb\n\n"
    return f"event: {event.type}\ndata: {json.dumps(event.data, sort_keys=True)}\n\n"


_DONE = object()


class ProgressStream:
    """Async iterator of ProgressEvents for one batch.

    Use as ``async with streamer.stream(batch_id) as stream: async for event in stream``.
    Iterating without the context manager starts the timers on first use and
    stops them when the stream ends; call ``aclose()`` if you stop early.
    """

    def __init__(
        self,
        batch_id: str,
        reader: Callable[[str], Optional[JobState]],
        poll_interval: float,
        heartbeat_interval: float,
    ):
        self.batch_id = batch_id
        self.reader = reader
        self.poll_interval = poll_interval
        self.heartbeat_interval = heartbeat_interval
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue()
        self._tasks: List["asyncio.Task[None]"] = []
        self._last: Optional[Dict[str, Any]] = None
        self._last_progress = -1.0
        self._finished = False
        self._closed = False

    @property
    def timers_active(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        if self._tasks or self._closed:
            return
        self._tasks = [
            asyncio.ensure_future(self._poll_loop()),
            asyncio.ensure_future(self._heartbeat_loop()),
        ]
        log_debug(logger=logger, event="Progress stream opened", batch_id=self.batch_id)

    async def aclose(self) -> None:
        """Cancel both timers. Safe to call more than once."""
        self._closed = True
        self._finished = True
        tasks, current = self._tasks, asyncio.current_task()
        for task in tasks:
            if task is not current and not task.done():
                task.cancel()
        for task in tasks:
            if task is current:
                continue
            try:
                await task
            except asyncio.CancelledError:
                pass
        log_debug(logger=logger, event="Progress stream closed", batch_id=self.batch_id)

    async def __aenter__(self) -> "ProgressStream":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    def __aiter__(self) -> "ProgressStream":
        return self

    async def __anext__(self) -> ProgressEvent:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        self.start()
        event = await self._queue.get()
        if event is _DONE:
            await self.aclose()
            raise StopAsyncIteration
        return event

    async def _poll_loop(self) -> None:
        while True:
            try:
                state = await asyncio.to_thread(self.reader, self.batch_id)
            except StoreUnavailableError as e:
                log_warning(logger=logger, event="Progress poll failed", batch_id=self.batch_id, error=str(e))
            except Exception as e:
                log_error(logger=logger, event="Progress poll crashed", exc_info=True, batch_id=self.batch_id)
                self._finish(ProgressEvent(
                    type=ERROR,
                    data={"batch_id": self.batch_id, "code": ErrorCode.LEDGER_STATE.value, "message": str(e)},
                    terminal=True,
                ))
                return
            else:
                if state is None:
                    self._finish(ProgressEvent(
                        type=ERROR,
                        data={
                            "batch_id": self.batch_id,
                            "code": ErrorCode.JOB_NOT_FOUND.value,
                            "message": f"Job not found: {self.batch_id}",
                        },
                        terminal=True,
                    ))
                    return
                if self._push_if_changed(state):
                    return
            await asyncio.sleep(self.poll_interval)

    def _push_if_changed(self, state: JobState) -> bool:
        """Queue a snapshot if the state changed. Returns True once terminal."""
        data = state.to_dict()
        if data == self._last or state.progress < self._last_progress:
            return False
        self._last = data
        self._last_progress = state.progress
        if state.is_terminal:
            self._finish(ProgressEvent(type=SNAPSHOT, data=data, terminal=True))
            return True
        self._queue.put_nowait(ProgressEvent(type=SNAPSHOT, data=data))
        return False

    async def _heartbeat_loop(self) -> None:
        while not self._finished:
            await asyncio.sleep(self.heartbeat_interval)
            if self._finished:
                return
            self._queue.put_nowait(ProgressEvent(type=HEARTBEAT))

    def _finish(self, event: ProgressEvent) -> None:
        self._finished = True
        for task in self._tasks[1:]:
            task.cancel()
        self._queue.put_nowait(event)
        self._queue.put_nowait(_DONE)
        log_info(logger=logger, event="Progress stream finished", batch_id=self.batch_id, type=event.type)


class ProgressStreamer:
    """Creates progress streams that read JobStates through ``reader``."""

    def __init__(
        self,
        reader: Callable[[str], Optional[JobState]],
        poll_interval: float = 2.0,
        heartbeat_interval: float = 30.0,
    ):
        self.reader = reader
        self.poll_interval = poll_interval
        self.heartbeat_interval = heartbeat_interval

    def stream(self, batch_id: str) -> ProgressStream:
        return ProgressStream(batch_id, self.reader, self.poll_interval, self.heartbeat_interval)
