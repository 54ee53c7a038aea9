"""
Tests for batch admission, execution, and finalization.
"""

import asyncio
import tempfile
from unittest.mock import patch

import pytest

from ai_batch_guard.core.errors import (
    ConfigurationError,
    ErrorCode,
    FatalError,
    RetryableError,
    StoreUnavailableError,
)
from ai_batch_guard.core.fingerprint import generate_batch_id
from ai_batch_guard.core.items import BatchItem
from ai_batch_guard.core.orchestrator import RunMode
from ai_batch_guard.core.progress import SNAPSHOT
from ai_batch_guard.core.url_refresh import ReferenceUrlRefresher

from conftest import FakeClock, FakeGenerator, make_orchestrator


def make_items(count, variants=1):
    return [
        {"scene_id": f"s{n}", "prompt": f"prompt {n}", "variants": variants}
        for n in range(1, count + 1)
    ]


def batch_id_for(user_id, items):
    return generate_batch_id(user_id, [BatchItem.from_dict(item) for item in items])


class RecordingSink:
    def __init__(self, error=None):
        self.updates = []
        self.error = error

    def update_row_status(self, sheet_id, scene_id, fields):
        self.updates.append((sheet_id, scene_id, fields["status"]))
        if self.error is not None:
            raise self.error


class BlockingGenerator:
    """Generator that never returns until cancelled."""

    def __init__(self):
        self.started = asyncio.Event()

    async def generate(self, prompt, reference_urls, variant_index):
        self.started.set()
        await asyncio.Event().wait()


class SlowGenerator(FakeGenerator):
    """Generator that takes ``delay`` seconds per call and may advance a clock."""

    def __init__(self, delay=0.0, clock=None, step=0.0):
        super().__init__()
        self.delay = delay
        self.clock = clock
        self.step = step

    async def generate(self, prompt, reference_urls, variant_index):
        await asyncio.sleep(self.delay)
        image = await super().generate(prompt, reference_urls, variant_index)
        if self.clock is not None:
            self.clock.advance(self.step)
        return image


def failing_updates(ledger, failures):
    """Wrap ``ledger.update_item`` so each (scene_id, status) in ``failures`` raises that many times."""
    update_item = ledger.update_item
    remaining = dict(failures)

    def update(batch_id, scene_id, status, **changes):
        if remaining.get((scene_id, status), 0) > 0:
            remaining[(scene_id, status)] -= 1
            raise StoreUnavailableError("503 transient")
        return update_item(batch_id, scene_id, status, **changes)

    return update


class OrchestratorTestCase:

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.clock = FakeClock()
        self.generator = FakeGenerator()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def orchestrator(self, **kwargs):
        kwargs.setdefault("generator", self.generator)
        return make_orchestrator(self.temp_dir, self.clock, **kwargs)

    def spent(self, orchestrator, user_id="u1"):
        return float(orchestrator.budget.store.get_spent(user_id, orchestrator.budget.date_bucket()))


class TestAdmission(OrchestratorTestCase):
    """Test the rate limit, idempotency, and budget gates."""

    @pytest.mark.anyio
    async def test_concurrent_identical_submissions_run_once(self):
        orchestrator = self.orchestrator()
        items = make_items(2)

        results = await asyncio.gather(*[orchestrator.submit_batch("u1", items) for _ in range(5)])

        executed = [result for result in results if not result.cached]
        assert len(executed) == 1
        assert executed[0].status == "completed"
        assert all(result.batch_id == executed[0].batch_id for result in results)
        assert sum(1 for result in results if result.status == "duplicate") == 4
        assert len(self.generator.calls) == 2
        assert self.spent(orchestrator) == 0.08

    @pytest.mark.anyio
    async def test_resubmit_within_a_second_returns_cached(self):
        orchestrator = self.orchestrator()
        items = make_items(2)

        first = await orchestrator.submit_batch("u1", items)
        self.clock.advance(1)
        second = await orchestrator.submit_batch("u1", items)

        assert first.status == "completed"
        assert second.cached
        assert second.ok
        assert second.batch_id == first.batch_id
        assert second.accepted == ["s1", "s2"]
        assert len(self.generator.calls) == 2
        assert self.spent(orchestrator) == 0.08

    @pytest.mark.anyio
    async def test_resubmit_after_cooldown_is_still_a_duplicate(self):
        orchestrator = self.orchestrator()
        items = make_items(1)
        await orchestrator.submit_batch("u1", items)
        self.clock.advance(601)

        second = await orchestrator.submit_batch("u1", items)

        assert second.status == "duplicate"
        assert len(self.generator.calls) == 1
        # The duplicate gave its rate limit reservation back.
        assert orchestrator.rate_limiter.status("u1").daily_remaining == 99

    @pytest.mark.anyio
    async def test_item_order_does_not_change_fingerprint(self):
        orchestrator = self.orchestrator()
        items = make_items(3)
        first = await orchestrator.submit_batch("u1", items)
        second = await orchestrator.submit_batch("u1", list(reversed(items)))
        assert second.cached
        assert second.batch_id == first.batch_id

    @pytest.mark.anyio
    async def test_cooldown_rejects_a_different_batch(self):
        orchestrator = self.orchestrator()
        await orchestrator.submit_batch("u1", make_items(1))

        result = await orchestrator.submit_batch("u1", make_items(2))

        assert result.status == "rejected"
        assert result.code == ErrorCode.RATE_LIMITED
        assert result.retry_after_seconds == 600
        assert {rejection.scene_id for rejection in result.rejected} == {"s1", "s2"}

    @pytest.mark.anyio
    async def test_users_are_limited_independently(self):
        orchestrator = self.orchestrator()
        await orchestrator.submit_batch("u1", make_items(1))
        result = await orchestrator.submit_batch("u2", make_items(1))
        assert result.status == "completed"
        assert result.batch_id != batch_id_for("u1", make_items(1))

    @pytest.mark.anyio
    async def test_budget_exceeded(self):
        orchestrator = self.orchestrator(daily_limit=1.0, price="0.5")

        result = await orchestrator.submit_batch("u1", make_items(1, variants=3))

        assert result.status == "rejected"
        assert result.code == ErrorCode.DAILY_LIMIT_EXCEEDED
        assert result.estimated_cost == 1.5
        assert result.remaining_budget == 1.0
        assert "exceeds remaining daily budget $1.00" in result.message
        assert self.generator.calls == []
        assert self.spent(orchestrator) == 0.0

    @pytest.mark.anyio
    async def test_budget_rejection_releases_rate_limit(self):
        orchestrator = self.orchestrator(daily_limit=1.0, price="0.5")
        await orchestrator.submit_batch("u1", make_items(1, variants=3))

        result = await orchestrator.submit_batch("u1", make_items(1, variants=2))

        assert result.status == "completed"
        assert result.actual_cost == 1.0

    @pytest.mark.anyio
    async def test_store_unavailable_fails_closed(self):
        orchestrator = self.orchestrator()
        with patch.object(
            orchestrator.idempotency, "lookup", side_effect=StoreUnavailableError("database is locked")
        ):
            result = await orchestrator.submit_batch("u1", make_items(1))

        assert result.status == "rejected"
        assert result.code == ErrorCode.STORE_UNAVAILABLE
        assert result.retryable
        assert self.generator.calls == []

        retried = await orchestrator.submit_batch("u1", make_items(1))
        assert retried.status == "completed"

    @pytest.mark.anyio
    async def test_job_ledger_unavailable_undoes_admission(self):
        orchestrator = self.orchestrator()
        with patch.object(
            orchestrator.job_ledger, "create_job", side_effect=StoreUnavailableError("bucket down")
        ):
            result = await orchestrator.submit_batch("u1", make_items(1))

        assert result.code == ErrorCode.STORE_UNAVAILABLE
        assert orchestrator.idempotency.lookup(batch_id_for("u1", make_items(1))) is None
        assert (await orchestrator.submit_batch("u1", make_items(1))).status == "completed"

    @pytest.mark.anyio
    async def test_live_mode_requires_generator(self):
        orchestrator = self.orchestrator(generator=None)
        with pytest.raises(ConfigurationError):
            await orchestrator.submit_batch("u1", make_items(1))


class TestValidation(OrchestratorTestCase):

    @pytest.mark.anyio
    async def test_empty_batch(self):
        result = await self.orchestrator().submit_batch("u1", [])
        assert result.status == "rejected"
        assert result.code == ErrorCode.EMPTY_BATCH
        assert result.batch_id is None

    @pytest.mark.anyio
    async def test_too_many_items(self):
        result = await self.orchestrator(max_items=3).submit_batch("u1", make_items(4))
        assert result.code == ErrorCode.BATCH_SIZE_EXCEEDED
        assert len(result.rejected) == 4
        assert all(rejection.code == ErrorCode.BATCH_SIZE_EXCEEDED for rejection in result.rejected)

    @pytest.mark.anyio
    async def test_invalid_items_rejected_individually(self):
        items = make_items(2) + [{"scene_id": "s3", "prompt": "  "}, {"scene_id": "s1", "prompt": "again"}]

        result = await self.orchestrator().submit_batch("u1", items)

        assert result.status == "completed"
        assert result.accepted == ["s1", "s2"]
        assert [(r.scene_id, r.code) for r in result.rejected] == [
            ("s3", ErrorCode.INVALID_ITEM),
            ("s1", ErrorCode.DUPLICATE_SCENE),
        ]
        assert result.batch_id == batch_id_for("u1", make_items(2))

    @pytest.mark.anyio
    async def test_no_valid_items(self):
        result = await self.orchestrator().submit_batch("u1", [{"scene_id": "s1", "prompt": "x", "variants": 9}])
        assert result.status == "rejected"
        assert result.code == ErrorCode.INVALID_ITEM
        assert result.message == "No valid items in batch"


class TestDryRun(OrchestratorTestCase):

    @pytest.mark.anyio
    async def test_dry_run_estimates_without_side_effects(self):
        orchestrator = self.orchestrator(generator=None)

        result = await orchestrator.submit_batch("u1", make_items(3, variants=2), mode=RunMode.DRY_RUN)

        assert result.status == "estimated"
        assert result.estimated_cost == 0.24
        assert result.remaining_budget == 10.0
        assert orchestrator.get_batch_status(result.batch_id) is None
        assert orchestrator.idempotency.lookup(result.batch_id) is None
        assert orchestrator.rate_limiter.status("u1").total_requests == 0

    @pytest.mark.anyio
    async def test_dry_run_reports_budget_denial(self):
        orchestrator = self.orchestrator(daily_limit=0.1)
        result = await orchestrator.submit_batch("u1", make_items(3), mode=RunMode.DRY_RUN)
        assert result.code == ErrorCode.DAILY_LIMIT_EXCEEDED

    @pytest.mark.anyio
    async def test_live_run_after_dry_run(self):
        orchestrator = self.orchestrator()
        items = make_items(2)
        estimate = await orchestrator.submit_batch("u1", items, mode=RunMode.DRY_RUN)
        result = await orchestrator.submit_batch("u1", items)
        assert result.status == "completed"
        assert result.batch_id == estimate.batch_id
        assert result.actual_cost == estimate.estimated_cost


class TestExecution(OrchestratorTestCase):
    """Test per-item failure isolation, retries, and finalization."""

    @pytest.mark.anyio
    async def test_item_failure_does_not_stop_siblings(self):
        self.generator = FakeGenerator({"prompt 3": FatalError("content policy violation", status_code=400)})
        orchestrator = self.orchestrator()

        result = await orchestrator.submit_batch("u1", make_items(5))

        assert result.status == "completed"
        assert result.actual_cost == 0.16
        assert result.message == "1 of 5 items failed"
        state = orchestrator.get_batch_status(result.batch_id)
        assert state.status == "completed"
        assert state.progress == 1.0
        assert [item.status for item in state.items] == ["completed", "completed", "failed", "completed", "completed"]
        assert state.item("s3").error == "content policy violation"
        assert [prompt for prompt, _, _ in self.generator.calls].count("prompt 3") == 1

    @pytest.mark.anyio
    async def test_retryable_failure_is_bounded(self):
        self.generator = FakeGenerator({"prompt 1": RetryableError("503 Service Unavailable", status_code=503)})
        orchestrator = self.orchestrator(max_attempts=3)

        result = await orchestrator.submit_batch("u1", make_items(1))

        assert len(self.generator.calls) == 3
        assert orchestrator.sleep.delays == [1.0, 2.0]
        assert result.status == "failed"
        assert result.code == ErrorCode.GENERATION_FAILED
        assert result.actual_cost == 0.0
        assert self.spent(orchestrator) == 0.0

    @pytest.mark.anyio
    async def test_outputs_recorded_per_variant(self):
        orchestrator = self.orchestrator()
        result = await orchestrator.submit_batch("u1", make_items(1, variants=2))
        outputs = orchestrator.get_batch_status(result.batch_id).item("s1").outputs
        assert [output["image_location"] for output in outputs] == [
            "mem://prompt 1/1.png",
            "mem://prompt 1/2.png",
        ]

    @pytest.mark.anyio
    async def test_cost_ledger_has_one_entry_per_completed_item(self):
        self.generator = FakeGenerator({"prompt 2": FatalError("bad")})
        orchestrator = self.orchestrator()

        result = await orchestrator.submit_batch("u1", make_items(3, variants=2))

        entries = orchestrator.cost_ledger.read_day("2023-11-14")
        assert [entry.scene_id for entry in entries] == ["s1", "s3"]
        assert all(entry.batch_id == result.batch_id for entry in entries)
        assert all(entry.cost == 0.08 and entry.image_count == 2 for entry in entries)
        assert orchestrator.cost_ledger.total_for_day("2023-11-14") == result.actual_cost

    @pytest.mark.anyio
    async def test_status_sink_updates(self):
        sink = RecordingSink()
        orchestrator = self.orchestrator(status_sink=sink)
        await orchestrator.submit_batch("u1", make_items(1), sheet_id="sheet-1")
        assert sink.updates == [("sheet-1", "s1", "running"), ("sheet-1", "s1", "completed")]

    @pytest.mark.anyio
    async def test_status_sink_failure_is_ignored(self):
        sink = RecordingSink(error=RuntimeError("sheets quota"))
        orchestrator = self.orchestrator(status_sink=sink)
        result = await orchestrator.submit_batch("u1", make_items(2), sheet_id="sheet-1")
        assert result.status == "completed"
        assert len(sink.updates) == 4

    @pytest.mark.anyio
    async def test_no_sink_updates_without_sheet(self):
        sink = RecordingSink()
        await self.orchestrator(status_sink=sink).submit_batch("u1", make_items(1))
        assert sink.updates == []

    @pytest.mark.anyio
    async def test_cancellation_aborts_open_items(self):
        generator = BlockingGenerator()
        orchestrator = self.orchestrator(generator=generator)
        items = make_items(2)

        task = asyncio.ensure_future(orchestrator.submit_batch("u1", items))
        await generator.started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        state = orchestrator.get_batch_status(batch_id_for("u1", items))
        assert state.status == "failed"
        assert [item.status for item in state.items] == ["failed", "failed"]
        assert state.item("s2").error == "aborted: cancelled"

    @pytest.mark.anyio
    async def test_stream_of_finished_batch(self):
        orchestrator = self.orchestrator()
        result = await orchestrator.submit_batch("u1", make_items(2))

        async with orchestrator.stream_progress(result.batch_id) as stream:
            events = [event async for event in stream]

        assert [event.type for event in events] == [SNAPSHOT]
        assert events[0].terminal
        assert events[0].data["progress"] == 1.0

    @pytest.mark.anyio
    async def test_stream_while_running_never_goes_backwards(self):
        orchestrator = self.orchestrator(generator=SlowGenerator(delay=0.02))
        items = make_items(4)
        batch_id = batch_id_for("u1", items)

        task = asyncio.ensure_future(orchestrator.submit_batch("u1", items))
        while orchestrator.get_batch_status(batch_id) is None:
            await asyncio.sleep(0.005)
        async with orchestrator.stream_progress(batch_id) as stream:
            progress = [event.data["progress"] async for event in stream if event.type == SNAPSHOT]
        result = await task

        assert result.status == "completed"
        assert len(progress) > 1
        assert progress == sorted(progress)
        assert progress[-1] == 1.0

    @pytest.mark.anyio
    async def test_transient_ledger_failure_fails_only_that_item(self):
        orchestrator = self.orchestrator()
        update = failing_updates(orchestrator.job_ledger, {("s2", "running"): 1})

        with patch.object(orchestrator.job_ledger, "update_item", side_effect=update):
            result = await orchestrator.submit_batch("u1", make_items(5))

        assert result.status == "completed"
        assert result.actual_cost == 0.16
        state = orchestrator.get_batch_status(result.batch_id)
        assert [item.status for item in state.items] == ["completed", "failed", "completed", "completed", "completed"]
        assert state.item("s2").error == "job state not recorded: 503 transient"
        assert "prompt 2" not in [prompt for prompt, _, _ in self.generator.calls]

    @pytest.mark.anyio
    async def test_failed_status_write_is_retried(self):
        self.generator = FakeGenerator({"prompt 1": FatalError("content policy violation")})
        orchestrator = self.orchestrator()
        update = failing_updates(orchestrator.job_ledger, {("s1", "failed"): 1})

        with patch.object(orchestrator.job_ledger, "update_item", side_effect=update):
            result = await orchestrator.submit_batch("u1", make_items(2))

        assert result.status == "completed"
        state = orchestrator.get_batch_status(result.batch_id)
        assert state.item("s1").status == "failed"
        assert state.item("s1").error == "content policy violation"
        assert state.item("s2").status == "completed"

    @pytest.mark.anyio
    async def test_unrecorded_completion_is_charged_and_closed(self):
        orchestrator = self.orchestrator()
        update = failing_updates(orchestrator.job_ledger, {("s1", "completed"): 2})

        with patch.object(orchestrator.job_ledger, "update_item", side_effect=update):
            result = await orchestrator.submit_batch("u1", make_items(2))

        assert result.status == "completed"
        assert result.actual_cost == 0.08
        assert self.spent(orchestrator) == 0.08
        state = orchestrator.get_batch_status(result.batch_id)
        assert state.status == "completed"
        assert state.item("s1").status == "failed"
        assert state.item("s1").error == "job state not recorded"
        assert state.item("s2").status == "completed"
        assert orchestrator.job_ledger.active_jobs == 0

    @pytest.mark.anyio
    async def test_long_batch_uses_refreshed_reference_urls(self):
        def sign(locator):
            if "broken" in locator:
                raise StoreUnavailableError("no such object")
            return f"https://cdn/{locator}?sig=new"

        self.generator = SlowGenerator(clock=self.clock, step=400)
        orchestrator = self.orchestrator(
            refresher=ReferenceUrlRefresher(sign, staleness_seconds=300, clock=self.clock)
        )
        reference = {"url": "https://cdn/refs/a.png?sig=old", "locator": "refs/a.png"}
        broken = {"url": "https://cdn/refs/broken.png?sig=old", "locator": "refs/broken.png"}
        items = [
            {"scene_id": "s1", "prompt": "prompt 1", "references": [reference]},
            {"scene_id": "s2", "prompt": "prompt 2", "references": [reference, broken]},
        ]

        result = await orchestrator.submit_batch("u1", items)

        assert self.generator.calls == [
            ("prompt 1", ["https://cdn/refs/a.png?sig=old"], 1),
            ("prompt 2", ["https://cdn/refs/a.png?sig=new"], 1),
        ]
        assert result.status == "completed"
        assert orchestrator.get_batch_status(result.batch_id).item("s2").status == "completed"
