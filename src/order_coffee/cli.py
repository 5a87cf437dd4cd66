#!/usr/bin/env python3
"""order-coffee command line.

Usage:
    order-coffee serve --port 20553 --timer 10
    order-coffee status
    order-coffee on coffee
    order-coffee off ollama
"""

from pathlib import Path

import click
import requests
from dotenv import load_dotenv
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .config import DEFAULT_PORT, ENV_FILE, Config

console = Console()

DEFAULT_URL = f"http://127.0.0.1:{DEFAULT_PORT}"


def _load_config(**overrides) -> Config:
    # Real environment variables win over the .env file
    load_dotenv(ENV_FILE)
    try:
        return Config.from_env().with_overrides(**overrides).validate()
    except ValueError as e:
        raise click.BadParameter(str(e))


@click.group()
@click.version_option(__version__, prog_name="order-coffee")
def main():
    """Order Coffee - control when this machine is allowed to suspend."""


@main.command()
@click.option("--port", "-p", type=int, default=None, help=f"Port to bind (default {DEFAULT_PORT})")
@click.option("--host", default=None, help="Host address to bind (default 0.0.0.0)")
@click.option("--timer", "-t", type=float, default=None, help="Suspension timer duration in minutes")
@click.option("--db", type=click.Path(dir_okay=False, path_type=Path), default=None,
              help="Event database path")
@click.option("--verbose", "-v", is_flag=True, default=None, help="Enable verbose logging")
def serve(port, host, timer, db, verbose):
    """Run the HTTP server."""
    import uvicorn

    from .api import create_app
    from .logs import configure_logging, install_crash_handlers

    config = _load_config(port=port, host=host, timer_minutes=timer, db_path=db, verbose=verbose or None)
    configure_logging(config.verbose)
    install_crash_handlers(config.crash_log_path)
    uvicorn.run(create_app(config), host=config.host, port=config.port, log_level=config.log_level)


def _request(method: str, url: str) -> dict:
    try:
        resp = requests.request(method, url, timeout=120)
    except requests.RequestException as e:
        raise click.ClickException(f"Cannot reach server: {e}")
    try:
        data = resp.json()
    except ValueError:
        raise click.ClickException(f"HTTP {resp.status_code}: {resp.text.strip()}")
    # 503 carries a full ApiResponse body; other errors only a detail
    if resp.status_code >= 400 and "detail" in data:
        raise click.ClickException(str(data["detail"]))
    return data


def _print_states(states: dict) -> None:
    table = Table(show_header=True, header_style="bold cyan", box=None)
    table.add_column("Activity")
    table.add_column("State")
    for name, held in states.get("flags", {}).items():
        table.add_row(name, "[green]held[/green]" if held else "[dim]clear[/dim]")
    console.print(table)
    for error in states.get("errors", []):
        console.print(f"[red]Error: {escape(error)}[/red]")


@main.command()
@click.option("--url", envvar="ORDER_COFFEE_URL", default=DEFAULT_URL, show_default=True)
def status(url):
    """Show flags, countdown and errors of a running server."""
    data = _request("GET", f"{url}/status")
    _print_states(data["states"])
    if data["timer_active"]:
        minutes, seconds = divmod(data["timer_remaining_seconds"] or 0, 60)
        console.print(f"\n[yellow]Suspending in {minutes}m {seconds:02d}s[/yellow]")
    else:
        console.print("\n[dim]No suspension countdown[/dim]")
    if data.get("last_action"):
        console.print(f"[dim]Last action: {data['last_action']} at {data['last_action_time']}[/dim]")
    console.print(f"[dim]Uptime: {data['uptime']}[/dim]")


def _toggle(url: str, name: str, switch: str) -> None:
    data = _request("POST", f"{url}/api/activities/{name}/{switch}")
    style = "red" if data["status"] == "error" else "green"
    console.print(f"[{style}]{escape(data['message'])}[/{style}]")
    _print_states(data["states"])
    if data["status"] == "error":
        raise SystemExit(1)


@main.command()
@click.argument("name")
@click.option("--url", envvar="ORDER_COFFEE_URL", default=DEFAULT_URL, show_default=True)
def on(name, url):
    """Hold activity NAME (keeps the machine awake)."""
    _toggle(url, name, "on")


@main.command()
@click.argument("name")
@click.option("--url", envvar="ORDER_COFFEE_URL", default=DEFAULT_URL, show_default=True)
def off(name, url):
    """Release activity NAME."""
    _toggle(url, name, "off")


if __name__ == "__main__":
    main()
