"""Command line interface for operating the mailbox relay."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Optional

import httpx
import typer
import uvicorn
from rich.console import Console
from rich.table import Table

from .config import get_settings
from .crypto import generate_keypair
from .db import reset_database_state
from .http import _configure_logging, build_http_app
from .mailboxes import list_agents
from .poller import PollReport, build_poller
from .quota import effective_count, utc_today

console = Console()


def _run_async(coro: Any) -> Any:
    """Run an async coroutine and dispose of the engine before returning.

    aiosqlite worker threads otherwise outlive the temporary event loop.
    """
    try:
        return asyncio.run(coro)
    finally:
        reset_database_state()


app = typer.Typer(help="Operator utilities for the mailbox relay service.", invoke_without_command=True)


@app.callback()
def _app_callback(ctx: typer.Context) -> None:
    """Default to ``serve-http`` when no subcommand is given."""
    if ctx.invoked_subcommand is None:
        serve_http(host=None, port=None)


@app.command("serve-http")
def serve_http(
    host: Optional[str] = typer.Option(None, help="Host interface. Defaults to HTTP_HOST setting."),
    port: Optional[int] = typer.Option(None, help="Port. Defaults to HTTP_PORT setting."),
) -> None:
    """Run the HTTP API together with the background ingestion poller."""
    settings = get_settings()
    resolved_host = host or settings.http.host
    resolved_port = port or settings.http.port
    console.print(
        f"[bold]mailbox-relay[/] on http://{resolved_host}:{resolved_port} "
        f"(poller {'on' if settings.poller.enabled else 'off'}, every {settings.poller.interval_seconds}s)"
    )
    uvicorn.run(build_http_app(settings), host=resolved_host, port=resolved_port, log_level="info")


@app.command("poll-once")
def poll_once(
    json_output: bool = typer.Option(False, "--json", help="Print the cycle report as JSON."),
) -> None:
    """Run a single ingestion cycle against the shared inbox and exit."""
    settings = get_settings()
    _configure_logging(settings)

    async def _poll() -> PollReport:
        async with httpx.AsyncClient() as client:
            return await build_poller(settings, client).poll_once()

    report = _run_async(_poll())
    if json_output:
        console.print_json(json.dumps(report.to_dict()))
    else:
        table = Table(title="Poll cycle", show_lines=False)
        table.add_column("Agents")
        table.add_column("Dispatched")
        table.add_column("Failed")
        table.add_column("Fetch")
        table.add_row(
            str(report.agents_polled),
            str(report.messages_dispatched),
            str(report.deliveries_failed),
            "[red]failed[/]" if report.fetch_failed else "ok",
        )
        console.print(table)
        for error in report.errors:
            console.print(f"[yellow]{error}[/]")
    if report.fetch_failed:
        raise typer.Exit(code=1)


@app.command("keygen")
def keygen(
    json_output: bool = typer.Option(False, "--json", help="Print the keypair as JSON."),
) -> None:
    """Generate an X25519 keypair for an agent that wants encrypted delivery."""
    keypair = generate_keypair()
    if json_output:
        console.print_json(json.dumps(keypair))
        return
    table = Table(title="X25519 keypair", show_lines=False)
    table.add_column("Field")
    table.add_column("Value")
    for field_name in ("algorithm", "public_key", "secret_key"):
        table.add_row(field_name, keypair[field_name])
    console.print(table)
    console.print("[yellow]Keep the secret key private. Register only the public key with the relay.[/]")


@app.command("agents")
def agents() -> None:
    """List mailboxes with their webhook, encryption and quota state."""
    settings = get_settings()
    rows = _run_async(list_agents())
    if not rows:
        console.print("[dim]No mailboxes yet.[/]")
        return
    today = utc_today()
    table = Table(title="Mailboxes", show_lines=False)
    table.add_column("Mailbox", no_wrap=True)
    table.add_column("Email")
    table.add_column("Owner", no_wrap=True)
    table.add_column("Webhook")
    table.add_column("Encrypted")
    table.add_column("Sends today")
    table.add_column("Paid")
    for agent in rows:
        table.add_row(
            agent.mailbox_id,
            agent.email,
            agent.owner_name,
            agent.webhook_url or "-",
            "yes" if agent.public_key else "no",
            f"{effective_count(agent, today)}/{settings.quota.daily_send_limit}",
            "yes" if agent.paid else "no",
        )
    console.print(table)


if __name__ == "__main__":  # pragma: no cover
    app()
