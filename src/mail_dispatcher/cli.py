# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Command-line interface for mail-dispatcher.

Runs the worker and lets operators inspect the delivery log without writing
code.

Usage:
    mail-dispatcher worker
    mail-dispatcher logs list --status failed
    mail-dispatcher logs show <log-id>
    mail-dispatcher stats --user-id u-42
    mail-dispatcher enqueue job.json
    mail-dispatcher schedules cancel digest-u-42
    mail-dispatcher preferences set ada@example.com --quiet-hours 22:00-08:00
    mail-dispatcher signal delivered <provider-message-id>
    mail-dispatcher purge --days 90

Example:
    $ MDS_SMTP_HOST=smtp.example.com mail-dispatcher --db-path ./dispatcher.db worker --metrics-port 9102
"""

from __future__ import annotations

import asyncio
import json
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import click
from prometheus_client import start_http_server
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .config import DispatcherConfig, load_settings
from .core import MailDispatcher
from .logger import configure_logging, get_logger
from .models import DeliveryLog, ScheduledJob, parse_job
from .persistence import Persistence
from .queue import SqliteJobQueue
from .transport import HttpApiTransport, SmtpTransport, TransportClient

console = Console()
err_console = Console(stderr=True)

STATUS_STYLES = {
    "pending": "blue",
    "sent": "green",
    "delivered": "green",
    "failed": "red",
}


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    console.print_json(json.dumps(data, indent=2, default=str))


def _log_to_dict(log: DeliveryLog) -> dict[str, Any]:
    return log.model_dump(mode="json")


def _fmt_dt(value: Optional[datetime]) -> str:
    if value is None:
        return "-"
    return value.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def _fmt_ts(value: Optional[int]) -> str:
    if not value:
        return "-"
    return datetime.fromtimestamp(value, timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def _persistence(ctx: click.Context) -> Persistence:
    return Persistence(ctx.obj["config"].db_path)


def build_transport(config: DispatcherConfig) -> TransportClient:
    """Pick the transport from configuration: the HTTP API when a URL is set, SMTP otherwise."""
    if config.http.url:
        return HttpApiTransport.from_config(config.http, timeout=config.timing.send_timeout)
    return SmtpTransport.from_config(config.smtp)


@click.group()
@click.version_option(package_name="mail-dispatcher")
@click.option("--config", "config_path", type=click.Path(dir_okay=False), help="Path to config.ini.")
@click.option("--db-path", help="SQLite database path (overrides configuration).")
@click.pass_context
def main(ctx: click.Context, config_path: Optional[str], db_path: Optional[str]) -> None:
    """mail-dispatcher: transactional and scheduled email delivery."""
    config = load_settings(config_path)
    if db_path:
        config.db_path = db_path
    ctx.ensure_object(dict)
    ctx.obj["config"] = config


# ============================================================================
# Worker
# ============================================================================


@main.command("worker")
@click.option("--metrics-port", type=int, default=None, help="Expose Prometheus metrics on this port.")
@click.option("--once", is_flag=True, help="Process the ready jobs once and exit.")
@click.pass_context
def worker(ctx: click.Context, metrics_port: Optional[int], once: bool) -> None:
    """Run the consume loop until interrupted."""
    config: DispatcherConfig = ctx.obj["config"]
    configure_logging(config.log_level)
    logger = get_logger("MailDispatcher")

    try:
        transport = build_transport(config)
    except ValueError as exc:
        print_error(str(exc))
        sys.exit(1)

    dispatcher = MailDispatcher(config=config, transport=transport, test_mode=once)
    if metrics_port:
        start_http_server(metrics_port, registry=dispatcher.metrics.registry)
        logger.info("Metrics exposed on port %d", metrics_port)

    async def _run_once() -> int:
        await dispatcher.init()
        try:
            return await dispatcher.run_once()
        finally:
            await dispatcher.stop()

    async def _run_forever() -> None:
        await dispatcher.start()
        try:
            await asyncio.Event().wait()
        finally:
            await dispatcher.stop()

    if once:
        processed = run_async(_run_once())
        print_success(f"Processed {processed} job(s)")
        return

    logger.info("Worker started (db=%s)", config.db_path)
    try:
        run_async(_run_forever())
    except KeyboardInterrupt:
        logger.info("Worker stopped")


# ============================================================================
# Jobs
# ============================================================================


@main.command("enqueue")
@click.argument("job_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--delay-ms", type=int, default=None, help="Delay before the job becomes visible.")
@click.pass_context
def enqueue(ctx: click.Context, job_file: Path, delay_ms: Optional[int]) -> None:
    """Push a JSON job (immediate, scheduled or retry) onto the queue."""
    config: DispatcherConfig = ctx.obj["config"]
    try:
        data = json.loads(job_file.read_text())
    except json.JSONDecodeError as exc:
        print_error(f"Invalid JSON: {escape(str(exc))}")
        sys.exit(1)
    if isinstance(data, dict) and data.get("kind") in (None, "immediate", "scheduled"):
        data.setdefault("max_retries", config.retry.default_max_retries)
    try:
        job = parse_job(data)
    except ValidationError as exc:
        print_error(f"Invalid job: {escape(str(exc))}")
        sys.exit(1)

    if delay_ms is None and isinstance(job, ScheduledJob):
        delay_ms = max(0, int((job.scheduled_at.timestamp() - time.time()) * 1000))

    async def _enqueue() -> str:
        persistence = Persistence(config.db_path)
        queue = SqliteJobQueue(config.db_path)
        await persistence.init_db()
        await queue.init_db()
        if isinstance(job, ScheduledJob):
            await persistence.ensure_schedule(job.schedule_id, job.recipient)
        return await queue.enqueue(job, delay_ms=delay_ms)

    entry_id = run_async(_enqueue())
    print_success(f"Enqueued {job.kind} job {job.job_id} (entry {entry_id})")


# ============================================================================
# Delivery log
# ============================================================================


@main.group("logs")
def logs() -> None:
    """Inspect the delivery log."""


@logs.command("list")
@click.option("--status", type=click.Choice(["pending", "sent", "delivered", "failed"]), help="Filter by status.")
@click.option("--user-id", help="Filter by user id.")
@click.option("--recipient", help="Filter by recipient address.")
@click.option("--schedule-id", help="Filter by schedule id.")
@click.option("--limit", "-l", type=int, default=50, help="Maximum rows to show.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def logs_list(
    ctx: click.Context,
    status: Optional[str],
    user_id: Optional[str],
    recipient: Optional[str],
    schedule_id: Optional[str],
    limit: int,
    as_json: bool,
) -> None:
    """List recent delivery logs, newest first."""
    persistence = _persistence(ctx)

    async def _list() -> list[DeliveryLog]:
        await persistence.init_db()
        return await persistence.list_delivery_logs(
            status=status,
            user_id=user_id,
            recipient_email=recipient,
            schedule_id=schedule_id,
            limit=limit,
        )

    entries = run_async(_list())

    if as_json:
        print_json([_log_to_dict(log) for log in entries])
        return

    if not entries:
        console.print("[dim]No delivery logs found.[/dim]")
        return

    table = Table(title=f"Delivery logs (showing up to {limit})")
    table.add_column("ID", style="cyan")
    table.add_column("Recipient")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Retries", justify="right")
    table.add_column("Subject", max_width=30)
    table.add_column("Created")

    for log in entries:
        style = STATUS_STYLES.get(log.status.value, "white")
        table.add_row(
            log.id,
            log.recipient_email,
            log.email_type,
            f"[{style}]{log.status.value}[/{style}]",
            f"{log.retry_count}/{log.max_retries}",
            (log.subject or "-")[:30],
            _fmt_dt(log.created_at),
        )

    console.print(table)


@logs.command("show")
@click.argument("log_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def logs_show(ctx: click.Context, log_id: str, as_json: bool) -> None:
    """Show one delivery log."""
    persistence = _persistence(ctx)

    async def _show() -> Optional[DeliveryLog]:
        await persistence.init_db()
        return await persistence.get_delivery_log(log_id)

    log = run_async(_show())
    if log is None:
        print_error(f"Delivery log '{log_id}' not found.")
        sys.exit(1)

    if as_json:
        print_json(_log_to_dict(log))
        return

    style = STATUS_STYLES.get(log.status.value, "white")
    console.print(f"\n[bold cyan]Delivery log: {log.id}[/bold cyan]\n")
    console.print(f"  Recipient:     {log.recipient_email}")
    console.print(f"  User:          {log.user_id or '-'}")
    console.print(f"  Schedule:      {log.schedule_id or '-'}")
    console.print(f"  Type:          {log.email_type}")
    console.print(f"  Template:      {log.template_used or '-'}")
    console.print(f"  Subject:       {log.subject or '-'}")
    console.print(f"  Status:        [{style}]{log.status.value}[/{style}]")
    console.print(f"  Retries:       {log.retry_count}/{log.max_retries}")
    console.print(f"  Provider id:   {log.provider_message_id or '-'}")
    console.print(f"  Error:         {log.error_message or '-'}")
    console.print(f"  Next retry:    {_fmt_dt(log.next_retry_at)}")
    console.print(f"  Sent:          {_fmt_dt(log.sent_at)}")
    console.print(f"  Delivered:     {_fmt_dt(log.delivered_at)}")
    console.print(f"  Opened:        {_fmt_dt(log.opened_at)}")
    console.print(f"  Failed:        {_fmt_dt(log.failed_at)}")
    console.print(f"  Created:       {_fmt_dt(log.created_at)}")
    console.print()


@main.command("stats")
@click.option("--user-id", help="Restrict to one user.")
@click.option("--days", type=int, default=None, help="Only logs created in the last N days.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def stats(ctx: click.Context, user_id: Optional[str], days: Optional[int], as_json: bool) -> None:
    """Show delivery statistics."""
    persistence = _persistence(ctx)
    since_ts = int(time.time()) - days * 86400 if days else None

    async def _stats() -> dict[str, Any]:
        await persistence.init_db()
        data = await persistence.delivery_stats(user_id=user_id, since_ts=since_ts)
        data["queued_jobs"] = await _queue_count(ctx)
        return data

    data = run_async(_stats())

    if as_json:
        print_json(data)
        return

    scope = f"user {user_id}" if user_id else "all users"
    console.print(f"\n[bold]Delivery stats ({scope})[/bold]\n")
    console.print(f"  Total:          {data['total']}")
    console.print(f"    Pending:      {data['pending']}")
    console.print(f"    Sent:         {data['sent']}")
    console.print(f"    Delivered:    {data['delivered']}")
    console.print(f"    Failed:       {data['failed']}")
    console.print(f"  Opened:         {data['opened']}")
    console.print(f"  Delivery rate:  {data['delivery_rate']}%")
    console.print(f"  Open rate:      {data['open_rate']}%")
    console.print(f"  Queued jobs:    {data['queued_jobs']}")
    console.print()


async def _queue_count(ctx: click.Context) -> int:
    queue = SqliteJobQueue(ctx.obj["config"].db_path)
    await queue.init_db()
    return await queue.count()


@main.command("purge")
@click.option("--days", type=int, default=None, help="Age threshold (default: configured retention).")
@click.option("--force", "-f", is_flag=True, help="Skip confirmation prompt.")
@click.pass_context
def purge(ctx: click.Context, days: Optional[int], force: bool) -> None:
    """Delete terminal delivery logs older than the retention period."""
    config: DispatcherConfig = ctx.obj["config"]
    days = config.timing.log_retention_days if days is None else days
    if days <= 0:
        print_error("--days must be positive.")
        sys.exit(1)
    if not force and not click.confirm(f"Delete sent/delivered/failed logs older than {days} days?"):
        console.print("[dim]Aborted.[/dim]")
        return

    persistence = Persistence(config.db_path)

    async def _purge() -> int:
        await persistence.init_db()
        return await persistence.purge_delivery_logs_before(int(time.time()) - days * 86400)

    removed = run_async(_purge())
    print_success(f"Purged {removed} delivery log(s)")


# ============================================================================
# Schedules
# ============================================================================


@main.group("schedules")
def schedules() -> None:
    """Manage scheduled sends."""


@schedules.command("list")
@click.option("--active-only", "-a", is_flag=True, help="Hide cancelled schedules.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def schedules_list(ctx: click.Context, active_only: bool, as_json: bool) -> None:
    """List known schedules."""
    persistence = _persistence(ctx)

    async def _list() -> list[dict[str, Any]]:
        await persistence.init_db()
        return await persistence.list_schedules(include_cancelled=not active_only)

    rows = run_async(_list())

    if as_json:
        print_json(rows)
        return

    if not rows:
        console.print("[dim]No schedules found.[/dim]")
        return

    table = Table(title="Schedules")
    table.add_column("Schedule", style="cyan")
    table.add_column("Recipient")
    table.add_column("Sent", justify="right")
    table.add_column("Next occurrence")
    table.add_column("Status")

    for row in rows:
        status = f"[red]cancelled ({row.get('cancel_reason') or '-'})[/red]" if row["cancelled"] else "[green]active[/green]"
        table.add_row(
            row["schedule_id"],
            row.get("recipient_email") or "-",
            str(row.get("occurrences") or 0),
            _fmt_ts(row.get("next_occurrence_ts")),
            status,
        )

    console.print(table)


@schedules.command("cancel")
@click.argument("schedule_id")
@click.option("--reason", default="cancelled", help="Reason stored with the cancellation.")
@click.pass_context
def schedules_cancel(ctx: click.Context, schedule_id: str, reason: str) -> None:
    """Cancel a schedule; occurrences already queued become no-ops."""
    persistence = _persistence(ctx)

    async def _cancel() -> bool:
        await persistence.init_db()
        return await persistence.cancel_schedule(schedule_id, reason)

    if run_async(_cancel()):
        print_success(f"Schedule '{schedule_id}' cancelled")
    else:
        console.print(f"[yellow]Schedule '{schedule_id}' was already cancelled.[/yellow]")


# ============================================================================
# Preferences
# ============================================================================


@main.group("preferences")
def preferences() -> None:
    """Manage recipient preferences."""


@preferences.command("show")
@click.argument("email")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def preferences_show(ctx: click.Context, email: str, as_json: bool) -> None:
    persistence = _persistence(ctx)

    async def _show() -> Optional[dict[str, Any]]:
        await persistence.init_db()
        return await persistence.get_preferences(email)

    prefs = run_async(_show())
    if prefs is None:
        print_error(f"No preferences stored for '{email}'.")
        sys.exit(1)

    if as_json:
        print_json(prefs)
        return

    quiet = (
        f"{prefs['quiet_hours_start']}-{prefs['quiet_hours_end']} ({prefs['quiet_hours_timezone']})"
        if prefs["quiet_hours_enabled"]
        else "off"
    )
    console.print(f"\n[bold cyan]Preferences: {prefs['email']}[/bold cyan]\n")
    console.print(f"  Email enabled:       {'Yes' if prefs['email_enabled'] else 'No'}")
    console.print(f"  Disabled categories: {', '.join(prefs['disabled_categories']) or '-'}")
    console.print(f"  Quiet hours:         {quiet}")
    console.print()


@preferences.command("set")
@click.argument("email")
@click.option("--unsubscribe/--subscribe", default=False, help="Disable or enable all email.")
@click.option("--disable-category", "disabled", multiple=True, help="Category to block (repeatable).")
@click.option("--quiet-hours", help="Quiet window as HH:MM-HH:MM in the recipient timezone.")
@click.option("--timezone", "tz_name", default="UTC", help="IANA timezone of the quiet window.")
@click.pass_context
def preferences_set(
    ctx: click.Context,
    email: str,
    unsubscribe: bool,
    disabled: tuple[str, ...],
    quiet_hours: Optional[str],
    tz_name: str,
) -> None:
    """Replace the preferences of a recipient."""
    prefs: dict[str, Any] = {
        "email_enabled": not unsubscribe,
        "disabled_categories": list(disabled),
        "quiet_hours_enabled": bool(quiet_hours),
        "quiet_hours_timezone": tz_name,
    }
    if quiet_hours:
        start, sep, end = quiet_hours.partition("-")
        if not sep or not start.strip() or not end.strip():
            print_error("--quiet-hours must look like 22:00-08:00")
            sys.exit(1)
        prefs["quiet_hours_start"] = start.strip()
        prefs["quiet_hours_end"] = end.strip()

    persistence = _persistence(ctx)

    async def _set() -> None:
        await persistence.init_db()
        await persistence.set_preferences(email, prefs)

    run_async(_set())
    print_success(f"Preferences saved for {email}")


# ============================================================================
# Provider signals
# ============================================================================


@main.group("signal")
def signal() -> None:
    """Record provider delivery and open notifications."""


@signal.command("delivered")
@click.argument("provider_message_id")
@click.pass_context
def signal_delivered(ctx: click.Context, provider_message_id: str) -> None:
    persistence = _persistence(ctx)

    async def _mark() -> bool:
        await persistence.init_db()
        return await persistence.mark_delivered(provider_message_id)

    if run_async(_mark()):
        print_success(f"Marked {provider_message_id} as delivered")
    else:
        print_error(f"No sent delivery log with provider id '{provider_message_id}'.")
        sys.exit(1)


@signal.command("opened")
@click.argument("provider_message_id")
@click.pass_context
def signal_opened(ctx: click.Context, provider_message_id: str) -> None:
    persistence = _persistence(ctx)

    async def _mark() -> bool:
        await persistence.init_db()
        return await persistence.mark_opened(provider_message_id)

    if run_async(_mark()):
        print_success(f"Marked {provider_message_id} as opened")
    else:
        print_error(f"No unopened sent delivery log with provider id '{provider_message_id}'.")
        sys.exit(1)


if __name__ == "__main__":
    main()
