"""CLI output formatters for Rich tables and JSON.

Provides human-readable Rich output (default) and machine-parseable
JSON output (--json flag). All formatting goes through these functions
so the CLI commands stay clean.
"""

import json
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from src.db.models import SyncConflict
from src.services.sync_engine import SyncSessionResult

console = Console()

# Status color map shared by sessions, jobs, webhooks and conflicts
STATUS_COLORS = {
    "pending": "yellow",
    "scheduled": "yellow",
    "running": "blue",
    "completed": "green",
    "processed": "green",
    "resolved": "green",
    "failed": "red",
    "active": "red",
}


def _colored(status: str) -> str:
    color = STATUS_COLORS.get(status, "white")
    return f"[{color}]{status}[/{color}]"


def _ts(value: str | None) -> str:
    return value[:19] if value else "—"


def _render(renderable: Any) -> str:
    with console.capture() as capture:
        console.print(renderable)
    return capture.get()


def format_session_result(result: SyncSessionResult, as_json: bool = False) -> str:
    """Format a sync session with per-entity counters.

    Args:
        result: Session view returned by the sync engine.
        as_json: If True, return JSON string instead of a Rich table.

    Returns:
        Formatted string output.
    """
    if as_json:
        return result.model_dump_json(indent=2)

    table = Table(
        title=f"Sync {result.sync_id} ({_colored(result.status.value)})",
        show_lines=True,
    )
    table.add_column("Entity", style="cyan")
    for column in ("Pulled", "Pushed", "Unchanged", "Conflicts", "Errors"):
        table.add_column(column, justify="right")

    for name, counts in result.results.entities.items():
        table.add_row(
            name,
            str(counts.pulled),
            str(counts.pushed),
            str(counts.unchanged),
            str(counts.conflicts),
            f"[red]{len(counts.errors)}[/red]" if counts.errors else "0",
        )

    output = _render(table)
    footer = f"Started: {_ts(result.started_at)}  Completed: {_ts(result.completed_at)}"
    if result.error_details:
        footer += f"\nError: {result.error_details}"
    return output + footer


def format_conflicts_table(conflicts: list[SyncConflict], as_json: bool = False) -> str:
    """Format pending conflicts awaiting a manual decision."""
    rows = [
        {
            "id": c.id,
            "entity_type": c.entity_type,
            "entity_id": c.entity_id,
            "field_name": c.field_name,
            "conflict_type": c.conflict_type,
            "local_value": c.local_value_json,
            "remote_value": c.remote_value_json,
            "created_at": c.created_at,
        }
        for c in conflicts
    ]
    if as_json:
        return json.dumps(rows, indent=2)

    if not rows:
        return "No pending conflicts."

    table = Table(title="Pending Conflicts", show_lines=True)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Entity")
    table.add_column("Field")
    table.add_column("Type")
    table.add_column("Local")
    table.add_column("Remote")
    table.add_column("Created")
    for row in rows:
        table.add_row(
            row["id"][:12],
            f"{row['entity_type']} {row['entity_id'][:12]}",
            row["field_name"],
            row["conflict_type"],
            row["local_value"] or "—",
            row["remote_value"] or "—",
            _ts(row["created_at"]),
        )
    return _render(table)


def format_job_status(status: dict[str, Any], as_json: bool = False) -> str:
    """Format one batch job's status as a Rich panel or JSON."""
    if as_json:
        return json.dumps(status, indent=2, default=str)

    counts = ", ".join(f"{k}={v}" for k, v in sorted(status["item_counts"].items())) or "none"
    lines = [
        f"[bold]Job ID:[/bold]    {status['id']}",
        f"[bold]Type:[/bold]      {status['job_type']}",
        f"[bold]Status:[/bold]    {_colored(status['status'])}",
        f"[bold]Priority:[/bold]  {status['priority']}",
        "",
        f"[bold]Items:[/bold]     {status['processed_items']}/{status['total_items']} processed",
        f"[bold]Failed:[/bold]    [red]{status['failed_items']}[/red]",
        f"[bold]By status:[/bold] {counts}",
        f"[bold]Retries:[/bold]   {status['retry_count']}/{status['max_retries']}",
        "",
        f"[bold]Created:[/bold]   {_ts(status['created_at'])}",
        f"[bold]Started:[/bold]   {_ts(status['started_at'])}",
        f"[bold]Completed:[/bold] {_ts(status['completed_at'])}",
    ]
    if status.get("next_retry"):
        lines.append(f"[bold]Next retry:[/bold] {_ts(status['next_retry'])}")
    if status.get("progress"):
        progress = status["progress"]
        lines.append("")
        lines.append(
            f"[bold]Progress:[/bold]  {progress['percent']:.0f}% {progress['message'] or ''}"
        )
    if status.get("error_message"):
        lines.append("")
        lines.append(f"[bold red]Error:[/bold red] {status['error_message']}")

    return _render(Panel("\n".join(lines), title="Batch Job", border_style="cyan"))


def format_webhook_stats(stats: dict[str, Any], as_json: bool = False) -> str:
    """Format webhook queue counts."""
    if as_json:
        return json.dumps(stats, indent=2, default=str)

    table = Table(title="Webhook Events")
    table.add_column("Event type", style="cyan")
    table.add_column("Count", justify="right")
    for event_type, count in sorted(stats["by_event_type"].items()):
        table.add_row(event_type, str(count))

    summary = (
        f"Total: {stats['total']}  Pending: {stats['pending']}  "
        f"Processed: {stats['processed']}  Failed: {stats['failed']}  "
        f"Oldest pending: {_ts(stats['oldest_pending_at'])}"
    )
    return _render(table) + summary


def format_dashboard(data: dict[str, Any], as_json: bool = False) -> str:
    """Format the monitoring dashboard snapshot."""
    if as_json:
        return json.dumps(data, indent=2, default=str)

    metrics = data["metrics"]
    sync = metrics["sync"]
    api = metrics["api"]
    lines = [
        f"[bold]Syncs:[/bold]      {sync['successful']}/{sync['total']} successful, "
        f"avg {sync['avg_duration_ms']:.0f} ms",
        f"[bold]API calls:[/bold]  {api['calls']} ({api['failures']} failed), "
        f"avg {api['avg_response_ms']:.0f} ms, {api['rate_limit_hits']} rate limited",
        f"[bold]Webhooks:[/bold]   {data['webhooks'] or 'none'}",
        f"[bold]Jobs:[/bold]       {data['jobs'] or 'none'}",
        f"[bold]Conflicts:[/bold]  {data['pending_conflicts']} pending",
    ]
    if data["circuit_breakers"]:
        lines.append("")
        lines.append("[bold]Circuit breakers:[/bold]")
        for key, state in sorted(data["circuit_breakers"].items()):
            lines.append(f"  {key}: {state}")

    output = _render(Panel("\n".join(lines), title="StoreSync", border_style="cyan"))

    if data["alerts"]:
        table = Table(title="Active Alerts")
        table.add_column("Type", style="cyan")
        table.add_column("Severity")
        table.add_column("Message")
        table.add_column("Created")
        for alert in data["alerts"]:
            table.add_row(
                alert["alert_type"], alert["severity"], alert["message"], _ts(alert["created_at"])
            )
        output += _render(table)
    return output
