"""
Wiring of configuration into a ready-to-use orchestrator.
"""

import time
from typing import Callable, Optional

from .config.loader import BatchGuardConfig
from .core.budget import BudgetGuard, InMemorySpendStore
from .core.circuit import CircuitBreaker
from .core.job_ledger import JobLedger
from .core.orchestrator import BatchOrchestrator, ImageGenerator, StatusSink
from .core.pricing import unit_price
from .core.progress import ProgressStreamer
from .core.rate_limit import RateLimiter
from .core.retry import RetryPolicy
from .core.url_refresh import ReferenceUrlRefresher
from .storage.cost_ledger import CostLedger
from .storage.object_store import LocalObjectStore, ObjectStore, key_from_locator
from .storage.repository import IdempotencyRepository, SpendRepository


def build_object_store(config: BatchGuardConfig, clock: Callable[[], float] = time.time) -> ObjectStore:
    storage = config.storage
    if storage.backend == "gcs":
        from .storage.gcs_store import GCSObjectStore

        return GCSObjectStore(storage.bucket)
    return LocalObjectStore(storage.root, base_url=storage.base_url, signing_key=storage.signing_key, clock=clock)


def build_budget_guard(config: BatchGuardConfig, clock: Callable[[], float] = time.time) -> BudgetGuard:
    budget = config.budget
    store = SpendRepository(config.storage.db_path) if budget.store == "sqlite" else InMemorySpendStore()
    return BudgetGuard(
        daily_limit=budget.daily_limit,
        store=store,
        per_user_limits=budget.per_user,
        alert_threshold=budget.alert_threshold,
        clock=clock,
    )


def build_generator(config: BatchGuardConfig, store: ObjectStore) -> ImageGenerator:
    """OpenAI-backed generator; needs OPENAI_API_KEY in the environment."""
    from .sdk.openai_client import OpenAIImageGenerator

    return OpenAIImageGenerator(
        store,
        model=config.generation.model,
        size=config.generation.size,
        url_ttl_seconds=config.references.url_ttl_seconds,
    )


def build_orchestrator(
    config: BatchGuardConfig,
    generator: Optional[ImageGenerator] = None,
    store: Optional[ObjectStore] = None,
    status_sink: Optional[StatusSink] = None,
    clock: Callable[[], float] = time.time,
) -> BatchOrchestrator:
    """Assemble an orchestrator and its collaborators from configuration.

    Args:
        config: Loaded configuration
        generator: Generation call; live submissions fail without one
        store: Object store (defaults to the configured backend)
        status_sink: Row status sink for submissions naming a sheet
        clock: Source of the current epoch time in seconds

    Returns:
        BatchOrchestrator

    Raises:
        ValueError: If the configured model has no price and no override
        StoreUnavailableError: If the SQLite database cannot be initialized
    """
    store = store or build_object_store(config, clock=clock)
    job_ledger = JobLedger(store, clock=clock)

    def sign(locator: str) -> str:
        return store.signed_url(key_from_locator(locator), config.references.url_ttl_seconds)

    return BatchOrchestrator(
        rate_limiter=RateLimiter(
            config.rate_limit.cooldown_seconds,
            daily_batch_limit=config.rate_limit.daily_batch_limit,
            clock=clock,
        ),
        idempotency=IdempotencyRepository(config.storage.db_path, clock=clock),
        budget=build_budget_guard(config, clock=clock),
        job_ledger=job_ledger,
        cost_ledger=CostLedger(store),
        price=unit_price(config.generation.model, config.generation.cost_per_image),
        model=config.generation.model,
        generator=generator,
        refresher=ReferenceUrlRefresher(sign, config.references.staleness_seconds, clock=clock),
        circuit=CircuitBreaker(config.circuit.fail_threshold, config.circuit.cooldown_seconds, clock=clock),
        retry_policy=RetryPolicy(
            max_attempts=config.retry.max_attempts,
            base_delay=config.retry.base_delay,
            max_delay=config.retry.max_delay,
            jitter=config.retry.jitter,
        ),
        status_sink=status_sink,
        streamer=ProgressStreamer(
            job_ledger.get_job,
            poll_interval=config.stream.poll_interval,
            heartbeat_interval=config.stream.heartbeat_interval,
        ),
        max_items=config.limits.max_items_per_batch,
        max_variants=config.limits.max_variants_per_item,
        idempotency_ttl=config.idempotency.ttl_seconds,
        clock=clock,
    )
