"""CLI: pulse-relay serve"""

from typing import Optional

import click
from rich.console import Console

from pulse_relay.server import create_server

console = Console()


def _settings(config_path, **overrides):
    from pulse_relay.cli.main import _settings
    return _settings(config_path, **overrides)


def _run(coro):
    from pulse_relay.cli.main import _run
    return _run(coro)


@click.command("serve")
@click.option("--host", default=None, help="Bind address")
@click.option("--port", type=int, default=None, help="Bind port")
@click.option("--api-url", default=None, help="News-site REST API base URL")
@click.option("--service-token", envvar="PULSE_SERVICE_TOKEN", default=None, help="Token for conversation lookups")
@click.option("--echo-to-sender/--no-echo-to-sender", default=None, help="Echo typing/read envelopes to the sender")
@click.option("--config", "config_path", default=None, help="Path to a JSON config file")
def serve_cmd(
    host: Optional[str],
    port: Optional[int],
    api_url: Optional[str],
    service_token: Optional[str],
    echo_to_sender: Optional[bool],
    config_path: Optional[str],
):
    """Run the WebSocket relay."""
    settings = _settings(
        config_path,
        host=host,
        port=port,
        api_url=api_url,
        service_token=service_token,
        echo_to_sender=echo_to_sender,
    )
    if not settings.service_token:
        console.print("[yellow]No service token set; conversation lookups will be unauthenticated.[/yellow]")
    console.print(f"[green]Relay on ws://{settings.host}:{settings.port}/ws[/green] [dim](API {settings.api_url})[/dim]")
    _run(create_server(settings).serve_forever())
