"""
pulse-relay CLI: `pulse-relay` command.

Commands:
  pulse-relay serve          Run the WebSocket relay
  pulse-relay listen         Connect as a user and print incoming envelopes
  pulse-relay config         Show the effective settings
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional

try:
    import click
    from rich.console import Console
    from rich.logging import RichHandler
except ImportError:
    raise SystemExit("CLI requires extras: pip install pulse-relay[cli]")

from pulse_relay.config import RelaySettings, load_settings
from pulse_relay.errors import RelayError

console = Console()


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def _settings(config_path: Optional[str], **overrides) -> RelaySettings:
    try:
        return load_settings(Path(config_path) if config_path else None, **overrides)
    except RelayError as e:
        console.print(f"[red]{e}[/red]")
        raise SystemExit(1)


def _run(coro):
    try:
        return asyncio.run(coro)
    except KeyboardInterrupt:
        console.print("[dim]Interrupted.[/dim]")


@click.group()
@click.version_option("0.1.0")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
def main(verbose: bool):
    """pulse-relay: real-time messaging relay."""
    _configure_logging(verbose)


@main.command("config")
@click.option("--config", "config_path", default=None, help="Path to a JSON config file")
def config_cmd(config_path: Optional[str]):
    """Show the effective settings."""
    settings = _settings(config_path)
    for name, value in settings.model_dump().items():
        if name == "service_token" and value:
            value = "********"
        console.print(f"[cyan]{name}[/cyan] = {value}")


# Register subcommands from separate modules
from pulse_relay.cli.serve import serve_cmd
from pulse_relay.cli.listen import listen_cmd

main.add_command(serve_cmd)
main.add_command(listen_cmd)


if __name__ == "__main__":
    main()
