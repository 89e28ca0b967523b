"""StoreSync CLI: operator commands for the sync engine.

Usage:
    storesync init-db              Create the database schema
    storesync sync --direction pull
    storesync conflicts list       Show conflicts awaiting a decision
    storesync jobs queue sync --entity product --remote-id 42
    storesync worker               Run webhook, batch and monitoring loops
"""

import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, Optional, TypeVar

import typer
from rich.console import Console

from src.cli.config import StoreSyncConfig, load_config
from src.cli.output import (
    format_conflicts_table,
    format_dashboard,
    format_job_status,
    format_session_result,
    format_webhook_stats,
)
from src.db.models import EntityType, JobType, SyncDirection
from src.errors.domain import DomainError
from src.services.sync_engine import SyncOptions
from src.services.sync_service import StoreSyncService

_log = logging.getLogger(__name__)

T = TypeVar("T")

app = typer.Typer(
    name="storesync",
    help="Bi-directional WooCommerce sync engine",
    no_args_is_help=True,
)
conflicts_app = typer.Typer(help="Inspect and resolve field conflicts")
jobs_app = typer.Typer(help="Manage batch jobs")
webhooks_app = typer.Typer(help="Inspect and replay webhook events")

app.add_typer(conflicts_app, name="conflicts")
app.add_typer(jobs_app, name="jobs")
app.add_typer(webhooks_app, name="webhooks")

console = Console()

# --- Global state ---
_config_path: str | None = None


@app.callback()
def main(
    config: Optional[str] = typer.Option(
        None, "--config", help="Path to storesync.yaml config file"
    ),
):
    """StoreSync CLI."""
    global _config_path
    _config_path = config


def _load() -> StoreSyncConfig:
    try:
        cfg = load_config(config_path=_config_path)
    except FileNotFoundError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    # stderr keeps --json output on stdout parseable
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if cfg.logging.file:
        handlers.append(logging.FileHandler(cfg.logging.file))
    logging.basicConfig(
        level=getattr(logging, cfg.logging.level.upper(), logging.INFO),
        format="%(levelname)s:%(name)s:%(message)s",
        handlers=handlers,
    )
    return cfg


def _run_with_service(action: Callable[[StoreSyncService], Awaitable[T]]) -> T:
    """Build a service, run one action against it and always close it.

    Domain errors are printed and turned into exit code 1.
    """
    cfg = _load()

    async def _run() -> T:
        service = StoreSyncService.from_config(cfg)
        try:
            return await action(service)
        finally:
            await service.close()

    try:
        return asyncio.run(_run())
    except DomainError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)


# --- Schema ---


@app.command("init-db")
def init_db():
    """Create all StoreSync tables."""

    async def _action(service: StoreSyncService) -> None:
        await service.init_db()

    _run_with_service(_action)
    console.print("[green]Database schema ready.[/green]")


# --- Sync ---


@app.command()
def sync(
    direction: SyncDirection = typer.Option(
        SyncDirection.both, "--direction", "-d", help="pull, push or both"
    ),
    entity: Optional[list[EntityType]] = typer.Option(
        None, "--entity", "-e", help="Entity type to sync (repeatable)"
    ),
    force: bool = typer.Option(False, "--force", help="Overwrite local edits without conflict checks"),
    batch_size: int = typer.Option(100, "--batch-size", min=1, max=100),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Run a full sync session and print its results."""
    options: dict[str, Any] = {
        "direction": direction,
        "force": force,
        "batch_size": batch_size,
    }
    if entity:
        options["entity_types"] = entity

    async def _action(service: StoreSyncService):
        return await service.run_full_sync(SyncOptions(**options))

    result = _run_with_service(_action)
    console.print(format_session_result(result, as_json=json_output))
    if result.status.value == "failed":
        raise typer.Exit(1)


@app.command()
def session(
    sync_id: str = typer.Argument(help="Sync session ID"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Show a stored sync session."""

    async def _action(service: StoreSyncService):
        return await service.get_sync_session_result(sync_id)

    console.print(format_session_result(_run_with_service(_action), as_json=json_output))


# --- Conflicts ---


@conflicts_app.command("list")
def conflicts_list(
    limit: int = typer.Option(50, "--limit", "-n"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """List pending conflicts, oldest first."""

    async def _action(service: StoreSyncService):
        return await service.get_pending_conflicts(limit)

    console.print(format_conflicts_table(_run_with_service(_action), as_json=json_output))


@conflicts_app.command("resolve")
def conflicts_resolve(
    conflict_id: str = typer.Argument(help="Conflict ID"),
    value: str = typer.Argument(help="Resolved value (JSON, or a plain string)"),
    resolved_by: str = typer.Option("cli", "--by", help="Who made the decision"),
):
    """Apply a manual decision to a pending conflict."""
    try:
        parsed: Any = json.loads(value)
    except json.JSONDecodeError:
        parsed = value

    async def _action(service: StoreSyncService):
        return await service.resolve_conflict_manually(conflict_id, parsed, resolved_by)

    conflict = _run_with_service(_action)
    console.print(
        f"[green]Conflict {conflict.id} resolved:[/green] "
        f"{conflict.entity_type}.{conflict.field_name} = {conflict.resolved_value_json}"
    )


# --- Batch jobs ---


@jobs_app.command("queue")
def jobs_queue(
    job_type: JobType = typer.Argument(help="sync, webhook or cleanup"),
    entity: Optional[EntityType] = typer.Option(None, "--entity", help="Entity for sync jobs"),
    remote_ids: Optional[list[str]] = typer.Option(None, "--remote-id", help="Remote record ID"),
    product_ids: Optional[list[str]] = typer.Option(
        None, "--product-id", help="Local product ID whose stock to push"
    ),
    event_ids: Optional[list[str]] = typer.Option(None, "--event-id", help="Webhook event ID"),
    retention_days: Optional[int] = typer.Option(None, "--retention-days"),
    priority: Optional[int] = typer.Option(None, "--priority", help="Higher runs first"),
    scheduled_at: Optional[datetime] = typer.Option(None, "--at", help="Run no earlier than"),
    raw_payload: Optional[str] = typer.Option(
        None, "--payload", help="Job payload as JSON; other options are merged in"
    ),
):
    """Queue a batch job."""
    payload: dict[str, Any] = {}
    if raw_payload:
        try:
            payload = json.loads(raw_payload)
        except json.JSONDecodeError as e:
            console.print(f"[red]Invalid --payload JSON: {e}[/red]")
            raise typer.Exit(1)
        if not isinstance(payload, dict):
            console.print("[red]--payload must be a JSON object[/red]")
            raise typer.Exit(1)
    if entity is not None:
        payload["entity_type"] = entity.value
        payload["remote_ids"] = remote_ids or []
    if product_ids:
        payload["product_ids"] = product_ids
    if event_ids:
        payload["event_ids"] = event_ids
    if retention_days is not None:
        payload["retention_days"] = retention_days
    options = {"priority": priority, "scheduled_at": scheduled_at}

    async def _action(service: StoreSyncService):
        return await service.queue_batch_job(job_type, payload, options)

    job_id = _run_with_service(_action)
    console.print(f"[green]Queued {job_type.value} job {job_id}[/green]")


@jobs_app.command("status")
def jobs_status(
    job_id: str = typer.Argument(help="Batch job ID"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Show a batch job's progress."""

    async def _action(service: StoreSyncService):
        return await service.get_job_status(job_id)

    console.print(format_job_status(_run_with_service(_action), as_json=json_output))


@jobs_app.command("run")
def jobs_run():
    """Run one scheduler cycle (activate, run pending, retry, clean up)."""

    async def _action(service: StoreSyncService):
        return await service.scheduler.run_cycle()

    summary = _run_with_service(_action)
    console.print_json(data=summary, default=str)


# --- Webhooks ---


@webhooks_app.command("stats")
def webhooks_stats(
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Show webhook queue counts."""

    async def _action(service: StoreSyncService):
        return await service.webhooks.get_webhook_stats()

    console.print(format_webhook_stats(_run_with_service(_action), as_json=json_output))


@webhooks_app.command("retry-failed")
def webhooks_retry_failed(
    limit: int = typer.Option(100, "--limit", "-n"),
):
    """Requeue failed webhook events that are within the replay budget."""

    async def _action(service: StoreSyncService):
        return await service.webhooks.retry_failed_events(limit)

    count = _run_with_service(_action)
    console.print(f"[green]Requeued {count} event(s).[/green]")


# --- Monitoring ---


@app.command()
def dashboard(
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Show metrics, active alerts and breaker states."""

    async def _action(service: StoreSyncService):
        await service.monitor.check_thresholds()
        return await service.get_dashboard()

    console.print(format_dashboard(_run_with_service(_action), as_json=json_output))


@app.command()
def worker():
    """Run the webhook drain, batch scheduler and monitoring loops until interrupted."""

    async def _action(service: StoreSyncService) -> None:
        await service.start()
        console.print("[green]StoreSync worker running. Press Ctrl+C to stop.[/green]")
        await asyncio.Event().wait()

    try:
        _run_with_service(_action)
    except KeyboardInterrupt:
        _log.info("Worker interrupted")
        console.print("Worker stopped.")


if __name__ == "__main__":
    app()
