"""
Batch orchestration.

A batch moves Admitting -> Running -> Finalizing -> Done, or Admitting ->
Rejected. Admission runs the rate limit, idempotency, and budget checks in
that order without yielding to the event loop, so concurrent submissions in
one process are admitted one at a time. Items then run sequentially, each
through the circuit breaker and the retry executor; an item failure is
recorded on that item and never stops its siblings. Once a batch is
admitted, job ledger, status sink, and finalization I/O run in worker
threads.
"""

import asyncio
import logging
import random
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Union

from ai_batch_guard.logging import log_error, log_info, log_warning
from ai_batch_guard.storage.cost_ledger import CostLedger
from ai_batch_guard.storage.models import CostLedgerEntry, IdempotencyRecord
from ai_batch_guard.storage.repository import IdempotencyRepository

from .budget import BudgetGuard
from .circuit import CircuitBreaker
from .errors import BatchGuardError, ConfigurationError, ErrorCode, StoreUnavailableError
from .fingerprint import generate_batch_id
from .items import BatchItem, ItemRejection, validate_items
from .job_ledger import JobLedger, JobState
from .pricing import estimate_batch_cost, image_cost
from .progress import ProgressStream, ProgressStreamer
from .rate_limit import RateLimitDecision, RateLimiter
from .retry import RetryPolicy, run_with_retry
from .url_refresh import ReferenceUrlRefresher

logger = logging.getLogger(__name__)


class RunMode(Enum):
    DRY_RUN = "dry_run"
    LIVE = "live"


@dataclass(frozen=True)
class GeneratedImage:
    """Where a generated variant and its thumbnail can be fetched."""
    image_location: str
    thumbnail_location: str

    def to_dict(self) -> Dict[str, str]:
        return {"image_location": self.image_location, "thumbnail_location": self.thumbnail_location}


class ImageGenerator(Protocol):
    """Upstream generation call. Raises RetryableError or FatalError on failure."""

    def generate(self, prompt: str, reference_urls: Sequence[str], variant_index: int) -> Awaitable[GeneratedImage]:
        ...


class StatusSink(Protocol):
    """Best-effort per-row status notification (spreadsheet or similar)."""

    def update_row_status(self, sheet_id: str, scene_id: str, fields: Dict[str, Any]) -> None:
        ...


@dataclass
class SubmitResult:
    """Structured outcome of ``submit_batch``. Admission failures never raise."""
    batch_id: Optional[str]
    mode: RunMode
    status: str
    accepted: List[str] = field(default_factory=list)
    rejected: List[ItemRejection] = field(default_factory=list)
    estimated_cost: float = 0.0
    actual_cost: Optional[float] = None
    cached: bool = False
    code: Optional[ErrorCode] = None
    message: Optional[str] = None
    retry_after_seconds: Optional[int] = None
    remaining_budget: Optional[float] = None
    retryable: bool = False

    @property
    def ok(self) -> bool:
        return self.status != "rejected"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "mode": self.mode.value,
            "status": self.status,
            "accepted": list(self.accepted),
            "rejected": [rejection.to_dict() for rejection in self.rejected],
            "estimated_cost": self.estimated_cost,
            "actual_cost": self.actual_cost,
            "cached": self.cached,
            "code": self.code.value if self.code else None,
            "message": self.message,
            "retry_after_seconds": self.retry_after_seconds,
            "remaining_budget": self.remaining_budget,
            "retryable": self.retryable,
        }


@dataclass
class _Admission:
    batch_id: str
    user_id: str
    items: List[BatchItem]
    rejected: List[ItemRejection]
    estimated_cost: float
    reservation: RateLimitDecision
    sheet_id: Optional[str]


def _error_message(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


class BatchOrchestrator:
    """Admits, runs, and finalizes image generation batches."""

    def __init__(
        self,
        *,
        rate_limiter: RateLimiter,
        idempotency: IdempotencyRepository,
        budget: BudgetGuard,
        job_ledger: JobLedger,
        cost_ledger: CostLedger,
        price: Decimal,
        model: str = "gpt-image-1",
        generator: Optional[ImageGenerator] = None,
        refresher: Optional[ReferenceUrlRefresher] = None,
        circuit: Optional[CircuitBreaker] = None,
        retry_policy: Optional[RetryPolicy] = None,
        status_sink: Optional[StatusSink] = None,
        streamer: Optional[ProgressStreamer] = None,
        max_items: int = 10,
        max_variants: int = 3,
        idempotency_ttl: float = 24 * 60 * 60,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ):
        self.rate_limiter = rate_limiter
        self.idempotency = idempotency
        self.budget = budget
        self.job_ledger = job_ledger
        self.cost_ledger = cost_ledger
        self.price = price
        self.model = model
        self.generator = generator
        self.refresher = refresher
        self.circuit = circuit or CircuitBreaker(clock=clock)
        self.retry_policy = retry_policy or RetryPolicy()
        self.status_sink = status_sink
        self.streamer = streamer or ProgressStreamer(job_ledger.get_job)
        self.max_items = max_items
        self.max_variants = max_variants
        self.idempotency_ttl = idempotency_ttl
        self.clock = clock
        self.sleep = sleep
        self.rng = rng
        self._admission_lock = threading.Lock()

    async def submit_batch(
        self,
        user_id: str,
        items: Sequence[Union[BatchItem, Mapping[str, Any]]],
        mode: RunMode = RunMode.LIVE,
        sheet_id: Optional[str] = None,
    ) -> SubmitResult:
        """Admit a batch and, in live mode, run it to completion.

        Args:
            user_id: Submitting user
            items: Batch items or raw item payloads
            mode: ``DRY_RUN`` estimates cost only; ``LIVE`` generates
            sheet_id: Spreadsheet whose rows receive status updates

        Returns:
            SubmitResult; ``status`` is ``rejected``, ``estimated``,
            ``duplicate``, ``completed``, or ``failed``

        Raises:
            ConfigurationError: Live mode without a generator
        """
        if mode == RunMode.LIVE and self.generator is None:
            raise ConfigurationError("Live mode requires an image generator")

        parsed = [item if isinstance(item, BatchItem) else BatchItem.from_dict(item) for item in items]

        if mode == RunMode.DRY_RUN:
            return self._estimate(user_id, parsed)

        with self._admission_lock:
            admission = self._admit(user_id, parsed, sheet_id)
        if isinstance(admission, SubmitResult):
            return admission
        return await self._run(admission)

    def get_batch_status(self, batch_id: str) -> Optional[JobState]:
        """Current JobState of a batch, or None if unknown."""
        return self.job_ledger.get_job(batch_id)

    def stream_progress(self, batch_id: str) -> ProgressStream:
        return self.streamer.stream(batch_id)

    # Admitting

    def _validate(self, parsed: List[BatchItem], mode: RunMode):
        outcome = validate_items(parsed, self.max_items, self.max_variants)
        if outcome.batch_error is not None:
            error = outcome.batch_error
            rejected = [ItemRejection(item.scene_id or "*", error.code, error.reason) for item in parsed] or [error]
            return None, self._rejection(mode, None, [], rejected, error.code, error.reason)
        if not outcome.accepted:
            return None, self._rejection(
                mode, None, [], outcome.rejected, ErrorCode.INVALID_ITEM, "No valid items in batch"
            )
        return outcome, None

    def _estimate(self, user_id: str, parsed: List[BatchItem]) -> SubmitResult:
        """Dry run: the admission checks without reservations, spend, or generation."""
        mode = RunMode.DRY_RUN
        outcome, rejection = self._validate(parsed, mode)
        if rejection is not None:
            return rejection

        batch_id = generate_batch_id(user_id, outcome.accepted)
        estimated = estimate_batch_cost(outcome.accepted, self.price)
        try:
            record = self.idempotency.lookup(batch_id)
            if record is not None and record.owner_user_id == user_id:
                return self._cached(mode, record)
            decision = self.rate_limiter.peek(user_id)
            if not decision.allowed:
                return self._admission_rejection(mode, batch_id, outcome.accepted, outcome.rejected,
                                                 estimated, decision.code, decision.reason,
                                                 retry_after=decision.retry_after_seconds or None)
            check = self.budget.check_budget(user_id, estimated)
        except StoreUnavailableError as e:
            return self._store_unavailable(mode, batch_id, outcome.accepted, outcome.rejected, estimated, e)

        if not check.allowed:
            return self._admission_rejection(mode, batch_id, outcome.accepted, outcome.rejected, estimated,
                                             check.code, check.message, remaining=check.remaining)

        log_info(logger=logger, event="Dry run estimated", user_id=user_id, batch_id=batch_id, cost=estimated)
        return SubmitResult(
            batch_id=batch_id,
            mode=mode,
            status="estimated",
            accepted=[item.scene_id for item in outcome.accepted],
            rejected=outcome.rejected,
            estimated_cost=estimated,
            remaining_budget=check.remaining,
        )

    def _admit(self, user_id: str, parsed: List[BatchItem], sheet_id: Optional[str]):
        mode = RunMode.LIVE
        outcome, rejection = self._validate(parsed, mode)
        if rejection is not None:
            log_warning(logger=logger, event="Batch rejected", user_id=user_id, code=rejection.code.value)
            return rejection

        accepted, rejected = outcome.accepted, outcome.rejected
        batch_id = generate_batch_id(user_id, accepted)
        estimated = estimate_batch_cost(accepted, self.price)

        reservation = self.rate_limiter.check_and_reserve(user_id)
        try:
            if not reservation.allowed:
                # A retried submission inside the cooldown still gets its original batch back.
                record = self.idempotency.lookup(batch_id)
                if record is not None and record.owner_user_id == user_id:
                    return self._cached(mode, record)
                return self._admission_rejection(mode, batch_id, accepted, rejected, estimated,
                                                 reservation.code, reservation.reason,
                                                 retry_after=reservation.retry_after_seconds or None)

            record = self.idempotency.lookup(batch_id)
            if record is not None:
                self.rate_limiter.release(user_id, reservation)
                if record.owner_user_id != user_id:
                    return self._admission_rejection(mode, batch_id, accepted, rejected, estimated,
                                                     ErrorCode.IDEMPOTENCY_CONFLICT,
                                                     "Batch id is owned by another user")
                return self._cached(mode, record)

            check = self.budget.check_budget(user_id, estimated)
            if not check.allowed:
                self.rate_limiter.release(user_id, reservation)
                return self._admission_rejection(mode, batch_id, accepted, rejected, estimated,
                                                 check.code, check.message, remaining=check.remaining)

            summary = {
                "batch_id": batch_id,
                "accepted": [item.scene_id for item in accepted],
                "rejected": [rejection.to_dict() for rejection in rejected],
                "estimated_cost": estimated,
            }
            inserted, record = self.idempotency.store(
                batch_id, user_id, [item.to_dict() for item in accepted], summary, self.idempotency_ttl
            )
            if not inserted:
                self.rate_limiter.release(user_id, reservation)
                return self._cached(mode, record)
        except StoreUnavailableError as e:
            self.rate_limiter.release(user_id, reservation)
            return self._store_unavailable(mode, batch_id, accepted, rejected, estimated, e)

        log_info(
            logger=logger,
            event="Batch admitted",
            user_id=user_id,
            batch_id=batch_id,
            items=len(accepted),
            estimated_cost=estimated,
        )
        return _Admission(batch_id, user_id, accepted, rejected, estimated, reservation, sheet_id)

    def _cached(self, mode: RunMode, record: IdempotencyRecord) -> SubmitResult:
        summary = record.result
        log_info(logger=logger, event="Duplicate batch", user_id=record.owner_user_id, batch_id=record.fingerprint)
        return SubmitResult(
            batch_id=record.fingerprint,
            mode=mode,
            status="duplicate",
            accepted=list(summary.get("accepted", [])),
            rejected=[
                ItemRejection(entry["scene_id"], ErrorCode(entry["code"]), entry["reason"])
                for entry in summary.get("rejected", [])
            ],
            estimated_cost=float(summary.get("estimated_cost", 0.0)),
            cached=True,
            message="Batch already submitted; returning the original batch",
        )

    def _rejection(self, mode, batch_id, accepted, rejected, code, message, **extra) -> SubmitResult:
        return SubmitResult(
            batch_id=batch_id,
            mode=mode,
            status="rejected",
            accepted=accepted,
            rejected=rejected,
            code=code,
            message=message,
            **extra,
        )

    def _admission_rejection(
        self,
        mode: RunMode,
        batch_id: str,
        accepted: List[BatchItem],
        rejected: List[ItemRejection],
        estimated: float,
        code: ErrorCode,
        message: str,
        retry_after: Optional[int] = None,
        remaining: Optional[float] = None,
        retryable: bool = False,
    ) -> SubmitResult:
        log_warning(logger=logger, event="Batch rejected", batch_id=batch_id, code=code.value, reason=message)
        return self._rejection(
            mode,
            batch_id,
            [],
            list(rejected) + [ItemRejection(item.scene_id, code, message) for item in accepted],
            code,
            message,
            estimated_cost=estimated,
            retry_after_seconds=retry_after,
            remaining_budget=remaining,
            retryable=retryable,
        )

    def _store_unavailable(self, mode, batch_id, accepted, rejected, estimated, exc) -> SubmitResult:
        log_error(logger=logger, event="Admission store unavailable", batch_id=batch_id, error=str(exc))
        return self._admission_rejection(
            mode, batch_id, accepted, rejected, estimated,
            ErrorCode.STORE_UNAVAILABLE, f"Cannot confirm admission: {exc}", retryable=True,
        )

    # Running

    async def _run(self, admission: _Admission) -> SubmitResult:
        batch_id = admission.batch_id
        try:
            state = await asyncio.to_thread(
                self.job_ledger.create_job,
                batch_id,
                admission.user_id,
                [item.scene_id for item in admission.items],
                mode=RunMode.LIVE.value,
                estimated_cost=admission.estimated_cost,
                sheet_id=admission.sheet_id,
            )
        except StoreUnavailableError as e:
            self._forget(admission)
            return self._store_unavailable(
                RunMode.LIVE, batch_id, admission.items, admission.rejected, admission.estimated_cost, e
            )

        completed: List[BatchItem] = []
        try:
            for item in admission.items:
                if await self._process_item(admission, item, state.started_at):
                    completed.append(item)
        except asyncio.CancelledError:
            self._abort(admission, "aborted: cancelled")
            self._finalize(admission, completed, status="failed", error="cancelled")
            raise

        if self.job_ledger.open_items(batch_id):
            await asyncio.to_thread(self._abort, admission, "job state not recorded")
        return await asyncio.to_thread(self._finalize, admission, completed)

    async def _process_item(self, admission: _Admission, item: BatchItem, started_at: float) -> bool:
        """Generate every variant of one item. Returns True if the item completed.

        Job state and status sink failures only affect this item; nothing
        raised here stops the batch except cancellation.
        """
        batch_id = admission.batch_id
        try:
            await self._record_item(batch_id, item.scene_id, "running")
        except BatchGuardError as e:
            await self._fail_item(admission, item, f"job state not recorded: {_error_message(e)}", [])
            return False
        await self._notify(admission, item.scene_id, {"status": "running"})

        outputs = []
        try:
            for variant in range(1, item.variants + 1):
                image = await self._generate(item, variant, started_at)
                outputs.append(image.to_dict())
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = _error_message(e)
            log_warning(
                logger=logger,
                event="Item failed",
                batch_id=batch_id,
                scene_id=item.scene_id,
                variant=len(outputs) + 1,
                error=error,
            )
            await self._fail_item(admission, item, error, outputs)
            return False

        try:
            state = await self._record_item(batch_id, item.scene_id, "completed", attempts=2, outputs=outputs)
        except BatchGuardError as e:
            # The images were generated and are charged; the item is closed as failed at finalization.
            log_error(logger=logger, event="Item completion not recorded", batch_id=batch_id,
                      scene_id=item.scene_id, error=str(e))
            return True
        log_info(
            logger=logger,
            event="Item completed",
            batch_id=batch_id,
            scene_id=item.scene_id,
            progress=f"{state.progress:.2f}",
        )
        await self._notify(admission, item.scene_id, {"status": "completed", "outputs": outputs})
        return True

    async def _record_item(self, batch_id: str, scene_id: str, status: str, attempts: int = 1, **changes) -> JobState:
        """Write one item transition off the event loop, retrying store failures up to ``attempts`` times."""
        for attempt in range(1, attempts + 1):
            try:
                return await asyncio.to_thread(self.job_ledger.update_item, batch_id, scene_id, status, **changes)
            except StoreUnavailableError as e:
                log_warning(
                    logger=logger,
                    event="Job state write failed",
                    batch_id=batch_id,
                    scene_id=scene_id,
                    status=status,
                    attempt=attempt,
                    error=str(e),
                )
                if attempt >= attempts:
                    raise

    async def _fail_item(self, admission: _Admission, item: BatchItem, error: str, outputs: List[Dict[str, str]]) -> None:
        try:
            await self._record_item(admission.batch_id, item.scene_id, "failed", attempts=2,
                                    error=error, outputs=outputs)
        except BatchGuardError as e:
            log_error(logger=logger, event="Item failure not recorded", batch_id=admission.batch_id,
                      scene_id=item.scene_id, error=str(e))
        await self._notify(admission, item.scene_id, {"status": "failed", "error": error})

    async def _generate(self, item: BatchItem, variant: int, started_at: float) -> GeneratedImage:
        if self.refresher is not None:
            reference_urls = await asyncio.to_thread(self.refresher.refresh, started_at, item.references)
        else:
            reference_urls = [reference.url for reference in item.references]

        async def attempt() -> GeneratedImage:
            return await self.circuit.call(lambda: self.generator.generate(item.prompt, reference_urls, variant))

        return await run_with_retry(attempt, self.retry_policy, sleep=self.sleep, rng=self.rng)

    def _abort(self, admission: _Admission, reason: str) -> None:
        """Mark every item that has not finished as failed."""
        try:
            self.job_ledger.fail_open_items(admission.batch_id, reason)
        except BatchGuardError as e:
            log_error(logger=logger, event="Abort update failed", batch_id=admission.batch_id, error=str(e))

    def _forget(self, admission: _Admission) -> None:
        """Undo admission for a batch that never started."""
        self.rate_limiter.release(admission.user_id, admission.reservation)
        try:
            self.idempotency.delete(admission.batch_id)
        except StoreUnavailableError as e:
            log_error(logger=logger, event="Idempotency cleanup failed", batch_id=admission.batch_id, error=str(e))

    # Finalizing

    def _finalize(
        self,
        admission: _Admission,
        completed: List[BatchItem],
        status: Optional[str] = None,
        error: Optional[str] = None,
    ) -> SubmitResult:
        """Record spend, append cost ledger lines, and write the terminal job state."""
        batch_id, user_id = admission.batch_id, admission.user_id
        item_costs = [(item, image_cost(item.variants, self.price)) for item in completed]
        actual_cost = round(sum(cost for _, cost in item_costs), 4)
        problems = []

        try:
            self.budget.record_spend(user_id, actual_cost, batch_id)
        except StoreUnavailableError as e:
            log_error(logger=logger, event="Spend not recorded", batch_id=batch_id, cost=actual_cost, error=str(e))
            problems.append(f"spend not recorded: {e}")

        timestamp = datetime.fromtimestamp(self.clock(), tz=timezone.utc)
        for item, cost in item_costs:
            entry = CostLedgerEntry(
                timestamp=timestamp,
                user_id=user_id,
                batch_id=batch_id,
                scene_id=item.scene_id,
                prompt_summary=item.prompt[:100],
                image_count=item.variants,
                cost=cost,
                model=self.model,
            )
            try:
                self.cost_ledger.append(entry)
            except StoreUnavailableError as e:
                log_error(logger=logger, event="Cost ledger append failed", batch_id=batch_id,
                          scene_id=item.scene_id, error=str(e))
                problems.append(f"cost ledger: {e}")

        final_status = status
        try:
            state = self.job_ledger.finalize(batch_id, actual_cost, status=status, error=error)
            final_status = state.status
        except BatchGuardError as e:
            log_error(logger=logger, event="Job state not finalized", batch_id=batch_id, error=str(e))
            problems.append(f"job state: {e}")
            if final_status is None:
                final_status = "completed" if completed else "failed"

        remaining = None
        try:
            remaining = self.budget.remaining(user_id)
        except StoreUnavailableError as e:
            problems.append(f"budget: {e}")

        failed = [item.scene_id for item in admission.items if item not in completed]
        message = error
        if problems:
            message = "; ".join(([error] if error else []) + problems)
        elif failed and not error:
            message = f"{len(failed)} of {len(admission.items)} items failed"

        log_info(
            logger=logger,
            event="Batch finished",
            batch_id=batch_id,
            status=final_status,
            completed=len(completed),
            failed=len(failed),
            actual_cost=actual_cost,
        )
        return SubmitResult(
            batch_id=batch_id,
            mode=RunMode.LIVE,
            status=final_status,
            accepted=[item.scene_id for item in admission.items],
            rejected=admission.rejected,
            estimated_cost=admission.estimated_cost,
            actual_cost=actual_cost,
            code=ErrorCode.GENERATION_FAILED if final_status == "failed" else None,
            message=message,
            remaining_budget=remaining,
        )

    async def _notify(self, admission: _Admission, scene_id: str, fields: Dict[str, Any]) -> None:
        if self.status_sink is None or not admission.sheet_id:
            return
        try:
            await asyncio.to_thread(self.status_sink.update_row_status, admission.sheet_id, scene_id, fields)
        except Exception as e:
            log_warning(
                logger=logger,
                event="Status sink update failed",
                sheet_id=admission.sheet_id,
                scene_id=scene_id,
                error=str(e),
            )
