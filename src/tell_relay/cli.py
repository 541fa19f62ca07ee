# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Command-line interface for tell-relay.

Usage:
    tell-relay serve
    tell-relay routes list
    tell-relay routes add helper-bot --consumer helper --no-forward
    tell-relay routes remove helper-bot
    tell-relay queue list
    tell-relay queue dead-letter
    tell-relay send tell/bob "Hello" --subject Hi
    tell-relay status --check

The configuration file is taken from ``--config``, the ``TELL_RELAY_CONFIG``
environment variable, or ``config.ini`` in the working directory. Route
changes are written back to that file (the previous version is kept as
``<config>.bak``) and take effect after a restart.
"""

from __future__ import annotations

import asyncio
import json
import signal
import sys
from typing import Any, List, Optional

import click
import uvicorn
from rich.console import Console
from rich.table import Table

from .api import create_app
from .broker import BrokerClient
from .config_loader import (
    DEFAULT_CONFIG_PATH,
    ENV_PREFIX,
    IDENTITY_RE,
    AccountConfig,
    RelayConfig,
    load_relay_config,
    remove_route,
    set_route,
)
from .errors import BrokerError, ConfigError
from .logger import configure_logging, get_logger
from .models import DEFAULT_ROUTE_KEY, QueuedMessage, RouteEntry
from .outbound import send_message
from .retry_queue import RetryQueue
from .service import RelayService

console = Console()
err_console = Console(stderr=True)
logger = get_logger(__name__)


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    console.print(f"[green]✓[/green] {message}")


def print_restart_notice() -> None:
    console.print("\n[yellow]Restart tell-relay for route changes to take effect.[/yellow]")


def _load(ctx: click.Context) -> RelayConfig:
    try:
        return load_relay_config(ctx.obj["config_path"], required=True)
    except ConfigError as exc:
        print_error(str(exc))
        sys.exit(1)


def _pick_account(config: RelayConfig, account_id: Optional[str]) -> AccountConfig:
    """Resolve ``--account``; optional when exactly one account is configured."""
    if account_id:
        try:
            return config.get_account(account_id)
        except ConfigError as exc:
            print_error(str(exc))
            sys.exit(1)
    if len(config.accounts) == 1:
        return config.accounts[0]
    if not config.accounts:
        print_error("No accounts configured")
    else:
        ids = ", ".join(account.account_id for account in config.accounts)
        print_error(f"Several accounts configured ({ids}); choose one with --account")
    sys.exit(1)


@click.group()
@click.version_option(package_name="tell-relay")
@click.option(
    "--config",
    "config_path",
    envvar=f"{ENV_PREFIX}CONFIG",
    default=DEFAULT_CONFIG_PATH,
    show_default=True,
    type=click.Path(dir_okay=False),
    help="INI configuration file.",
)
@click.option("--log-level", default=None, help="Log level (default: TELL_RELAY_LOG_LEVEL or INFO).")
@click.pass_context
def main(ctx: click.Context, config_path: str, log_level: Optional[str]) -> None:
    """tell-relay: deliver broker messages to local consumers."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    configure_logging(log_level)


# ---------------------------------------------------------------------- serve
async def _serve(config: RelayConfig, with_api: bool) -> None:
    service = RelayService(config)
    if not config.gateway_url:
        logger.warning("No gateway_url configured: consumers must be registered in-process")
    stop = asyncio.Event()
    jobs = [service.run(stop)]
    if with_api:
        app = create_app(service, api_token=config.api_token)
        server = uvicorn.Server(uvicorn.Config(app, host=config.api_host, port=config.api_port, log_level="info"))

        async def serve_api() -> None:
            try:
                await server.serve()
            finally:
                stop.set()

        jobs.append(serve_api())
    else:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)
    await asyncio.gather(*jobs)


@main.command("serve")
@click.option("--no-api", is_flag=True, help="Do not start the status API.")
@click.pass_context
def serve(ctx: click.Context, no_api: bool) -> None:
    """Run the delivery engines (and the status API) until interrupted."""
    config = _load(ctx)
    accounts = config.enabled_accounts()
    console.print(f"[bold cyan]Starting tell-relay[/bold cyan] ({len(accounts)} account(s))")
    for account in accounts:
        console.print(f"  {account.account_id}: {account.mode.value} ({len(account.routes)} route(s))")
    if not no_api:
        console.print(f"  API: http://{config.api_host}:{config.api_port}")
    run_async(_serve(config, with_api=not no_api))


# --------------------------------------------------------------------- routes
@main.group()
def routes() -> None:
    """Inspect and edit per-identity routes."""


@routes.command("list")
@click.option("--account", "account_id", default=None, help="Account id (default: the only account).")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def list_routes(ctx: click.Context, account_id: Optional[str], as_json: bool) -> None:
    """List the routes of an account."""
    config = _load(ctx)
    account = _pick_account(config, account_id)
    if as_json:
        data = {name: entry.model_dump(exclude_none=True, exclude={"api_key"}) for name, entry in account.routes.items()}
        console.print_json(json.dumps(data))
        return
    if not account.routes:
        console.print(f"[dim]No routes configured; everything goes to '{config.default_consumer}'.[/dim]")
        return
    table = Table(title=f"Routes ({account.account_id})")
    table.add_column("Identity", style="cyan")
    table.add_column("Consumer")
    table.add_column("Forward")
    table.add_column("Reply key")
    table.add_column("Forward target")
    for name, entry in sorted(account.routes.items()):
        target = f"{entry.forward_channel}:{entry.forward_to}" if entry.forward_channel and entry.forward_to else "-"
        table.add_row(
            name,
            entry.consumer,
            "[green]yes[/green]" if entry.forward else "[dim]no[/dim]",
            "own" if entry.api_key else "account",
            target,
        )
    console.print(table)


@routes.command("add")
@click.argument("name")
@click.option("--consumer", required=True, help="Consumer that receives messages for NAME.")
@click.option("--account", "account_id", default=None, help="Account id (default: the only account).")
@click.option("--forward/--no-forward", default=True, show_default=True, help="Forward to the human channel.")
@click.option("--api-key", default=None, help="Credential used for replies sent as NAME.")
@click.option("--forward-channel", default=None, help="Explicit forward channel (e.g. telegram).")
@click.option("--forward-to", default=None, help="Address on the forward channel.")
@click.option("--forward-account", default=None, help="Provider account on the forward channel.")
@click.pass_context
def add_route(
    ctx: click.Context,
    name: str,
    consumer: str,
    account_id: Optional[str],
    forward: bool,
    api_key: Optional[str],
    forward_channel: Optional[str],
    forward_to: Optional[str],
    forward_account: Optional[str],
) -> None:
    """Add or replace the route for identity NAME."""
    name = name.strip().lower()
    if name.startswith("tell/"):
        name = name[len("tell/"):]
    if name != DEFAULT_ROUTE_KEY and not IDENTITY_RE.match(name):
        print_error(f"Invalid name '{name}': use lowercase letters, digits and hyphens")
        sys.exit(1)
    config = _load(ctx)
    known = config.known_consumers()
    if consumer not in known:
        print_error(f"Unknown consumer '{consumer}'. Available: {', '.join(known)}")
        sys.exit(1)
    account = _pick_account(config, account_id)
    entry = RouteEntry(
        consumer=consumer,
        forward=forward,
        api_key=api_key,
        forward_channel=forward_channel,
        forward_to=forward_to,
        forward_account=forward_account,
    )
    try:
        replaced = set_route(ctx.obj["config_path"], account.account_id, name, entry)
    except ConfigError as exc:
        print_error(str(exc))
        sys.exit(1)
    verb = "Updated" if replaced else "Added"
    print_success(f"{verb} route tell/{name} → {consumer} (forward: {'yes' if forward else 'no'})")
    print_restart_notice()


@routes.command("remove")
@click.argument("name")
@click.option("--account", "account_id", default=None, help="Account id (default: the only account).")
@click.pass_context
def remove_route_cmd(ctx: click.Context, name: str, account_id: Optional[str]) -> None:
    """Remove the route for identity NAME."""
    config = _load(ctx)
    account = _pick_account(config, account_id)
    try:
        removed = remove_route(ctx.obj["config_path"], account.account_id, name)
    except ConfigError as exc:
        print_error(str(exc))
        sys.exit(1)
    if not removed:
        print_error(f"No route for '{name}' in account {account.account_id}")
        sys.exit(1)
    print_success(f"Removed route {name}")
    print_restart_notice()


# ------------------------------------------------------------ send and status
@main.command("send")
@click.argument("to")
@click.argument("text", required=False)
@click.option("--account", "account_id", default=None, help="Account id (default: the only account).")
@click.option("--subject", default=None, help="Message subject.")
@click.option("--reply-to", "reply_to_id", default=None, help="Id of the message being answered.")
@click.option("--media-url", default=None, help="Media URL appended below TEXT.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def send(
    ctx: click.Context,
    to: str,
    text: Optional[str],
    account_id: Optional[str],
    subject: Optional[str],
    reply_to_id: Optional[str],
    media_url: Optional[str],
    as_json: bool,
) -> None:
    """Send TEXT to TO (tell/<name> or <name>) as the account."""
    config = _load(ctx)
    account = _pick_account(config, account_id)
    broker = BrokerClient(config.broker_url)
    try:
        result = run_async(
            send_message(broker, account, to, text, subject=subject, reply_to_id=reply_to_id, media_url=media_url)
        )
    except ValueError as exc:
        print_error(f"{exc} (usage: tell-relay send <tell/name or name> TEXT)")
        sys.exit(1)
    except BrokerError as exc:
        print_error(str(exc))
        sys.exit(1)
    if as_json:
        console.print_json(json.dumps(result.as_dict()))
        return
    suffix = f" (id {result.message_id})" if result.message_id else ""
    print_success(f"Sent to tell/{result.to} from {account.account_id}{suffix}")


@main.command("status")
@click.option("--check", is_flag=True, help="Also verify each account credential against the broker.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def status(ctx: click.Context, check: bool, as_json: bool) -> None:
    """Show configuration issues and queue depths of every enabled account."""
    config = _load(ctx)
    snapshots = run_async(RelayService(config).status(check=check))
    if as_json:
        console.print_json(json.dumps(snapshots))
        return
    if not snapshots:
        console.print("[dim]No enabled accounts configured.[/dim]")
        return
    table = Table(title="Accounts")
    table.add_column("Account", style="cyan")
    table.add_column("Mode")
    table.add_column("Name")
    table.add_column("Configured")
    table.add_column("Broker")
    table.add_column("Pending", justify="right")
    table.add_column("Dead letter", justify="right")
    for item in snapshots:
        connectivity = item["connectivity"]
        if connectivity is None:
            broker_state = "[dim]not checked[/dim]"
        elif connectivity["ok"]:
            broker_state = f"[green]ok[/green] ({connectivity['elapsed_ms']} ms)"
        else:
            broker_state = "[red]unreachable[/red]"
        table.add_row(
            item["account_id"],
            item["mode"],
            item["name"] or "-",
            "[green]yes[/green]" if item["configured"] else "[red]no[/red]",
            broker_state,
            str(item["pending"]),
            str(item["dead_letter"]),
        )
    console.print(table)
    issues = [(item["account_id"], issue) for item in snapshots for issue in item["issues"]]
    for account_id, issue in issues:
        console.print(f"[yellow]{account_id}:[/yellow] {issue}")
    if issues:
        sys.exit(1)


# ---------------------------------------------------------------------- queue
@main.group()
def queue() -> None:
    """Inspect the local retry queue."""


def _print_entries(entries: List[QueuedMessage], title: str, as_json: bool) -> None:
    if as_json:
        data: List[Any] = [
            entry.model_dump(by_alias=True, mode="json", exclude={"api_key", "reply_api_key"}) for entry in entries
        ]
        console.print_json(json.dumps(data))
        return
    if not entries:
        console.print(f"[dim]{title}: empty.[/dim]")
        return
    table = Table(title=title)
    table.add_column("ID", style="cyan")
    table.add_column("From")
    table.add_column("To")
    table.add_column("Consumer")
    table.add_column("Attempts", justify="right")
    table.add_column("Queued at")
    table.add_column("Last error")
    for entry in entries:
        table.add_row(
            entry.id,
            entry.sender,
            entry.to_name,
            entry.consumer,
            str(entry.attempts),
            entry.queued_at,
            (entry.last_error or "-")[:60],
        )
    console.print(table)


@queue.command("list")
@click.option("--account", "account_id", default=None, help="Account id (default: the only account).")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def list_queue(ctx: click.Context, account_id: Optional[str], as_json: bool) -> None:
    """List messages waiting for retry."""
    config = _load(ctx)
    account = _pick_account(config, account_id)
    entries = run_async(RetryQueue(config.queue_path(account.account_id)).list_pending())
    _print_entries(entries, f"Pending ({account.account_id})", as_json)


@queue.command("dead-letter")
@click.option("--account", "account_id", default=None, help="Account id (default: the only account).")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def list_dead_letter(ctx: click.Context, account_id: Optional[str], as_json: bool) -> None:
    """List messages that exhausted their retries."""
    config = _load(ctx)
    account = _pick_account(config, account_id)
    entries = run_async(RetryQueue(config.queue_path(account.account_id)).list_dead_letter())
    _print_entries(entries, f"Dead letter ({account.account_id})", as_json)


if __name__ == "__main__":
    main()
