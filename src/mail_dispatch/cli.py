# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Command-line interface for the mail dispatcher.

The CLI works directly on the database (and ledger) named in the
configuration, without going through the HTTP API.

Usage:
    mail-dispatch serve --port 8000
    mail-dispatch schedule campaign.json
    mail-dispatch jobs u1
    mail-dispatch show <email-id>
    mail-dispatch stats
    mail-dispatch reconcile --older-than 600
    mail-dispatch cancel <email-id>
    mail-dispatch run

Example:
    $ mail-dispatch --db ./dispatch.db schedule campaign.json
    $ mail-dispatch --db ./dispatch.db run
"""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import build_core, load_settings
from .core import MailDispatchCore
from .models import ms_to_iso

console = Console()
err_console = Console(stderr=True)


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    console.print_json(json.dumps(data, indent=2, default=str))


def _with_core(ctx: click.Context, action: Callable[[MailDispatchCore], Awaitable[Any]]) -> Any:
    """Build a core from the CLI settings, run ``action`` on it and release it."""
    core = build_core(ctx.obj["settings"])

    async def _run():
        await core.init()
        try:
            return await action(core)
        finally:
            await core.stop()

    return run_async(_run())


@click.group()
@click.version_option(version=__version__, prog_name="mail-dispatch")
@click.option("--config", "config_path", type=click.Path(dir_okay=False), help="INI configuration file.")
@click.option("--db", "db_path", type=click.Path(dir_okay=False), help="SQLite database path.")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, db_path: str | None) -> None:
    """Schedule and dispatch bulk email campaigns."""
    settings = load_settings(config_path)
    if db_path:
        settings["db_path"] = str(Path(db_path).expanduser())
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


@main.command("serve")
@click.option("--host", "-h", default=None, help="Host to bind to.")
@click.option("--port", "-p", type=int, default=None, help="Port to listen on.")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None) -> None:
    """Run the HTTP API together with the dispatch workers."""
    import uvicorn

    from .logger import configure_logging
    from .server import build_app

    settings = ctx.obj["settings"]
    configure_logging()
    app = build_app(settings)
    uvicorn.run(app, host=host or str(settings["http_host"]), port=port or int(settings["http_port"]))


@main.command("schedule")
@click.argument("file", type=click.File("r"))
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def schedule(ctx: click.Context, file, as_json: bool) -> None:
    """Schedule the batch described in a JSON FILE ('-' for stdin).

    The file holds ``{"sender_id", "emails": [{"recipient", "subject",
    "body"}], "scheduled_at", "min_delay_ms", "hourly_limit"}``.
    """
    try:
        payload = json.load(file)
    except json.JSONDecodeError as exc:
        print_error(f"Invalid JSON: {exc}")
        sys.exit(1)

    result = _with_core(ctx, lambda core: core.handle_command("schedule", payload))
    if as_json:
        print_json(result)
    if not result.get("ok"):
        if not as_json:
            print_error(result.get("error") or "schedule failed")
        sys.exit(1)
    if not as_json:
        print_success(f"Scheduled {result['count']} emails")


@main.command("jobs")
@click.argument("sender_id")
@click.option("--limit", "-n", type=int, default=100, show_default=True, help="Maximum rows.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def jobs(ctx: click.Context, sender_id: str, limit: int, as_json: bool) -> None:
    """List the latest jobs of SENDER_ID, newest first."""
    result = _with_core(ctx, lambda core: core.handle_command("listJobs", {"sender_id": sender_id, "limit": limit}))
    job_list = result.get("jobs", [])
    if as_json:
        print_json(job_list)
        return
    if not job_list:
        console.print(f"[dim]No jobs for sender {sender_id}.[/dim]")
        return

    table = Table(title=f"Jobs (sender: {sender_id})")
    table.add_column("ID", style="cyan")
    table.add_column("Recipient")
    table.add_column("Status")
    table.add_column("Job")
    table.add_column("Scheduled")
    table.add_column("Sent")
    for job in job_list:
        table.add_row(
            job["id"],
            job["recipient"],
            job["status"],
            job.get("job_status") or "-",
            ms_to_iso(job.get("scheduled_at_ms")) or "-",
            ms_to_iso(job.get("sent_at_ms")) or "-",
        )
    console.print(table)


@main.command("show")
@click.argument("email_id")
@click.pass_context
def show(ctx: click.Context, email_id: str) -> None:
    """Show one job and its queue entry."""
    result = _with_core(ctx, lambda core: core.handle_command("getJob", {"id": email_id}))
    if not result.get("ok"):
        print_error(f"Job '{email_id}' not found.")
        sys.exit(1)
    print_json({"job": result["job"], "queue": result.get("queue")})


@main.command("stats")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def stats(ctx: click.Context, as_json: bool) -> None:
    """Show email, job and queue counts."""
    result = _with_core(ctx, lambda core: core.handle_command("stats", {}))
    result.pop("ok", None)
    if as_json:
        print_json(result)
        return

    table = Table(title="Dispatch statistics")
    table.add_column("Group", style="cyan")
    table.add_column("State")
    table.add_column("Count", justify="right")
    for group in ("emails", "jobs", "queue"):
        for state, count in sorted(result.get(group, {}).items()):
            table.add_row(group, state, str(count))
    console.print(table)


@main.command("reconcile")
@click.option("--older-than", "older_than", type=int, default=None, help="Age threshold in seconds.")
@click.pass_context
def reconcile(ctx: click.Context, older_than: int | None) -> None:
    """Queue again persisted jobs that never reached the queue."""
    result = _with_core(
        ctx, lambda core: core.handle_command("reconcile", {"older_than_seconds": older_than})
    )
    print_success(f"Resubmitted {len(result.get('resubmitted', []))} jobs")


@main.command("cancel")
@click.argument("email_id")
@click.pass_context
def cancel(ctx: click.Context, email_id: str) -> None:
    """Cancel a job that has not started yet."""
    result = _with_core(ctx, lambda core: core.handle_command("cancel", {"id": email_id}))
    if not result.get("ok"):
        print_error(result.get("error") or "cancel failed")
        sys.exit(1)
    print_success(f"Job {email_id} cancelled")


@main.command("run")
@click.option("--limit", type=int, default=1000, show_default=True, help="Maximum jobs to process.")
@click.pass_context
def run(ctx: click.Context, limit: int) -> None:
    """Process every job due now, once, and exit."""
    summary = _with_core(ctx, lambda core: core.drain(limit))
    parts = ", ".join(f"{outcome}={count}" for outcome, count in summary.items())
    print_success(f"Processed due jobs: {parts}")


if __name__ == "__main__":
    main()
