"""
Shared fixtures and fakes for the test suite.
"""

import asyncio
import os
from decimal import Decimal

import pytest

from ai_batch_guard.core.budget import BudgetGuard
from ai_batch_guard.core.circuit import CircuitBreaker
from ai_batch_guard.core.job_ledger import JobLedger
from ai_batch_guard.core.orchestrator import BatchOrchestrator, GeneratedImage
from ai_batch_guard.core.progress import ProgressStreamer
from ai_batch_guard.core.rate_limit import RateLimiter
from ai_batch_guard.core.retry import RetryPolicy
from ai_batch_guard.storage.cost_ledger import CostLedger
from ai_batch_guard.storage.object_store import LocalObjectStore
from ai_batch_guard.storage.repository import IdempotencyRepository

# 2023-11-14 01:00:00 UTC
START = 1_699_920_000.0 + 3600


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, start: float = START):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeGenerator:
    """Generator that succeeds unless a prompt is mapped to an exception."""

    def __init__(self, failures=None):
        self.failures = failures or {}
        self.calls = []

    async def generate(self, prompt, reference_urls, variant_index):
        self.calls.append((prompt, list(reference_urls), variant_index))
        await asyncio.sleep(0)
        error = self.failures.get(prompt)
        if error is not None:
            raise error
        return GeneratedImage(
            image_location=f"mem://{prompt}/{variant_index}.png",
            thumbnail_location=f"mem://{prompt}/{variant_index}_thumb.png",
        )


class RecordingSleep:
    """Awaitable sleep that records delays instead of waiting."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def make_orchestrator(
    temp_dir: str,
    clock: FakeClock,
    generator=None,
    daily_limit: float = 10.0,
    price: str = "0.04",
    cooldown_seconds: float = 600.0,
    max_attempts: int = 3,
    **kwargs,
) -> BatchOrchestrator:
    """Orchestrator over a temp directory with no real waiting."""
    store = LocalObjectStore(os.path.join(temp_dir, "store"), clock=clock)
    job_ledger = JobLedger(store, clock=clock)
    return BatchOrchestrator(
        rate_limiter=RateLimiter(cooldown_seconds, daily_batch_limit=100, clock=clock),
        idempotency=IdempotencyRepository(os.path.join(temp_dir, "guard.db"), clock=clock),
        budget=BudgetGuard(daily_limit, clock=clock),
        job_ledger=job_ledger,
        cost_ledger=CostLedger(store),
        price=Decimal(price),
        generator=generator,
        circuit=CircuitBreaker(0, clock=clock),
        retry_policy=RetryPolicy(max_attempts=max_attempts, base_delay=1.0, max_delay=15.0, jitter=1.0),
        streamer=ProgressStreamer(job_ledger.get_job, poll_interval=0.01, heartbeat_interval=0.05),
        clock=clock,
        sleep=RecordingSleep(),
        rng=lambda: 0.0,
        **kwargs,
    )
