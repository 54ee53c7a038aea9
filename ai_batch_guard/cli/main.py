"""
CLI interface for AI Batch Guard.

Submits batches, inspects job state, and reads the spend records.
"""

import asyncio
import sys
from datetime import datetime, timezone
from typing import Any, List, Optional

import openai
import typer
import yaml
from rich.console import Console
from rich.table import Table

from ai_batch_guard.config.loader import BatchGuardConfig, default_config, load_config
from ai_batch_guard.core.errors import BatchGuardError, JobNotFoundError
from ai_batch_guard.core.job_ledger import JobLedger, JobState
from ai_batch_guard.core.orchestrator import RunMode, SubmitResult
from ai_batch_guard.core.progress import ERROR, HEARTBEAT, ProgressStreamer
from ai_batch_guard.logging import setup_logging
from ai_batch_guard.sdk.status_sink import ObjectStoreStatusSink
from ai_batch_guard.service import build_budget_guard, build_generator, build_object_store, build_orchestrator
from ai_batch_guard.storage.cost_ledger import CostLedger
from ai_batch_guard.storage.repository import initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_OK = 0
EXIT_CODE_FAIL = 1

CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Path to a YAML configuration file")


def _load(config_path: Optional[str]) -> BatchGuardConfig:
    config = load_config(config_path) if config_path else default_config()
    setup_logging(config.logging.level)
    return config


def _read_items(path: str) -> List[Any]:
    """Read batch items from a YAML or JSON file (a list, or a mapping with ``items``)."""
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if isinstance(data, dict):
        data = data.get("items")
    if not isinstance(data, list):
        raise ValueError(f"{path} must contain a list of items")
    return data


def _format_currency(amount: Optional[float]) -> str:
    return "-" if amount is None else f"${amount:,.4f}"


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """AI Batch Guard CLI."""
    if ctx.invoked_subcommand is None:
        console.print("AI Batch Guard - Use --help to see available commands")


@app.command()
def init(config_path: Optional[str] = CONFIG_OPTION):
    """Initialize the idempotency and spend database."""
    try:
        config = _load(config_path)
        initialize_schema(config.storage.db_path)
        console.print(f"[green]✓[/] Database initialized at {config.storage.db_path}")
        sys.exit(EXIT_CODE_OK)
    except (BatchGuardError, ValueError, OSError, yaml.YAMLError) as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def submit(
    items_file: str = typer.Argument(..., help="YAML or JSON file with the batch items"),
    user: str = typer.Option(..., "--user", "-u", help="Submitting user id"),
    mode: RunMode = typer.Option(RunMode.DRY_RUN, "--mode", "-m", help="dry_run estimates, live generates"),
    sheet_id: Optional[str] = typer.Option(None, "--sheet-id", help="Sheet that receives row status updates"),
    config_path: Optional[str] = CONFIG_OPTION,
):
    """
    Submit a batch of image generation items.

    Dry runs report the estimated cost and admission decision without
    generating anything. Live runs generate every item and record spend.

    Daily spend and duplicate detection persist in the SQLite database.
    The rate limiter lives in process memory, so this command does not
    enforce cooldowns or daily batch counts between invocations.
    """
    try:
        config = _load(config_path)
        items = _read_items(items_file)
        store = build_object_store(config)
        generator = build_generator(config, store) if mode == RunMode.LIVE else None
        orchestrator = build_orchestrator(
            config,
            generator=generator,
            store=store,
            status_sink=ObjectStoreStatusSink(store),
        )
        result = asyncio.run(orchestrator.submit_batch(user, items, mode=mode, sheet_id=sheet_id))
    except (BatchGuardError, ValueError, OSError, yaml.YAMLError, openai.OpenAIError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    _display_submit_result(result)
    sys.exit(EXIT_CODE_OK if result.ok and result.status != "failed" else EXIT_CODE_FAIL)


@app.command()
def status(batch_id: str, config_path: Optional[str] = CONFIG_OPTION):
    """Show the current state of a batch."""
    try:
        config = _load(config_path)
        state = JobLedger(build_object_store(config)).require_job(batch_id)
    except JobNotFoundError:
        console.print(f"[yellow]Batch not found:[/] {batch_id}")
        sys.exit(EXIT_CODE_FAIL)
    except (BatchGuardError, ValueError, OSError, yaml.YAMLError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    _display_job_state(state)
    sys.exit(EXIT_CODE_OK)


@app.command()
def watch(batch_id: str, config_path: Optional[str] = CONFIG_OPTION):
    """Follow a batch's progress until it finishes."""
    try:
        config = _load(config_path)
        ledger = JobLedger(build_object_store(config))
        streamer = ProgressStreamer(
            ledger.get_job,
            poll_interval=config.stream.poll_interval,
            heartbeat_interval=config.stream.heartbeat_interval,
        )
        final = asyncio.run(_follow(streamer, batch_id))
    except (BatchGuardError, ValueError, OSError, yaml.YAMLError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    sys.exit(EXIT_CODE_OK if final == "completed" else EXIT_CODE_FAIL)


async def _follow(streamer: ProgressStreamer, batch_id: str) -> Optional[str]:
    final = None
    async with streamer.stream(batch_id) as stream:
        async for event in stream:
            if event.type == HEARTBEAT:
                continue
            if event.type == ERROR:
                console.print(f"[red]{event.data.get('message')}[/]")
                return None
            state = JobState.from_dict(event.data)
            counts = state.counts()
            console.print(
                f"{state.status:<10} {state.progress:>6.0%}  "
                f"completed={counts['completed']} failed={counts['failed']} pending={counts['pending']}"
            )
            final = state.status
    return final


@app.command()
def ledger(
    date: Optional[str] = typer.Option(None, "--date", "-d", help="UTC day (YYYY-MM-DD), defaults to today"),
    config_path: Optional[str] = CONFIG_OPTION,
):
    """List cost ledger entries for one day."""
    day = date or datetime.now(timezone.utc).date().isoformat()
    try:
        config = _load(config_path)
        entries = CostLedger(build_object_store(config)).read_day(day)
    except (BatchGuardError, ValueError, OSError, yaml.YAMLError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not entries:
        console.print(f"[dim]No ledger entries for {day}[/]")
        sys.exit(EXIT_CODE_OK)

    table = Table(title=f"Cost ledger {day}")
    table.add_column("Time")
    table.add_column("User")
    table.add_column("Batch")
    table.add_column("Scene")
    table.add_column("Images", justify="right")
    table.add_column("Cost", justify="right")
    for entry in entries:
        table.add_row(
            entry.timestamp.strftime("%H:%M:%S"),
            entry.user_id,
            entry.batch_id[:12],
            entry.scene_id,
            str(entry.image_count),
            _format_currency(entry.cost),
        )
    console.print(table)
    console.print(f"[bold]Total:[/bold] {_format_currency(sum(entry.cost for entry in entries))}")
    sys.exit(EXIT_CODE_OK)


@app.command()
def budget(user: str, config_path: Optional[str] = CONFIG_OPTION):
    """Show a user's daily budget and remaining spend."""
    try:
        config = _load(config_path)
        guard = build_budget_guard(config)
        limit = guard.limit_for(user)
        remaining = guard.remaining(user)
    except (BatchGuardError, ValueError, OSError, yaml.YAMLError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[bold]User:[/bold] {user}")
    console.print(f"Daily limit: {_format_currency(float(limit))}")
    console.print(f"Spent today: {_format_currency(float(limit) - remaining)}")
    console.print(f"Remaining: {_format_currency(remaining)}")
    if config.budget.store == "memory":
        console.print("[dim]Spend store is in-memory; set budget.store: sqlite to track spend across runs.[/]")
    sys.exit(EXIT_CODE_OK)


def _display_submit_result(result: SubmitResult):
    """Display a submission outcome."""
    colour = {"rejected": "red", "failed": "red", "duplicate": "yellow"}.get(result.status, "green")
    console.print(f"\n[bold]Batch:[/bold] {result.batch_id or '-'}")
    console.print(f"[bold]Status:[/bold] [{colour}]{result.status}[/]" + (" (cached)" if result.cached else ""))
    console.print(f"Estimated cost: {_format_currency(result.estimated_cost)}")
    if result.actual_cost is not None:
        console.print(f"Actual cost: {_format_currency(result.actual_cost)}")
    if result.remaining_budget is not None:
        console.print(f"Remaining budget: {_format_currency(result.remaining_budget)}")
    if result.retry_after_seconds:
        console.print(f"Retry after: {result.retry_after_seconds}s")
    if result.message:
        console.print(f"[bold]Reason:[/bold] {result.message}")

    if result.accepted:
        console.print(f"Accepted: {', '.join(result.accepted)}")
    if result.rejected:
        table = Table(title="Rejected items")
        table.add_column("Scene")
        table.add_column("Code")
        table.add_column("Reason")
        for rejection in result.rejected:
            table.add_row(rejection.scene_id or "-", rejection.code.value, rejection.reason)
        console.print(table)


def _display_job_state(state: JobState):
    """Display a job state with one row per item."""
    console.print(f"\n[bold]Batch:[/bold] {state.batch_id}")
    console.print(f"Status: {state.status}  Progress: {state.progress:.0%}")
    console.print(f"Estimated cost: {_format_currency(state.estimated_cost)}  "
                  f"Actual cost: {_format_currency(state.actual_cost)}")
    table = Table()
    table.add_column("Scene")
    table.add_column("Status")
    table.add_column("Outputs", justify="right")
    table.add_column("Error")
    for item in state.items:
        table.add_row(item.scene_id, item.status, str(len(item.outputs)), item.error or "")
    console.print(table)


if __name__ == "__main__":
    app()
