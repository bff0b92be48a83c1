"""CLI: pulse-relay listen"""

import asyncio
import json
from typing import Optional

import click
from rich.console import Console
from rich.markup import escape

from pulse_relay.client import ALL, RelayClient
from pulse_relay.models.envelope import Envelope, EnvelopeType
from pulse_relay.reconnect import ConnectionState

console = Console()

STATE_STYLE = {
    ConnectionState.CONNECTED: "green",
    ConnectionState.CONNECTING: "yellow",
    ConnectionState.BACKOFF: "yellow",
    ConnectionState.DISCONNECTED: "red",
}


def _settings(config_path, **overrides):
    from pulse_relay.cli.main import _settings
    return _settings(config_path, **overrides)


def _run(coro):
    from pulse_relay.cli.main import _run
    return _run(coro)


def _print_envelope(envelope: Envelope, json_output: bool) -> None:
    if json_output:
        click.echo(envelope.model_dump_json(exclude_none=True))
        return
    who = envelope.user_id or "-"
    if envelope.type is EnvelopeType.NEW_MESSAGE:
        body = json.dumps(envelope.message or {}, ensure_ascii=False)
        console.print(f"[green]{envelope.conversation_id}[/green] new message: {escape(body)}")
    elif envelope.type is EnvelopeType.TYPING:
        console.print(f"[dim]{envelope.conversation_id}: {who} is typing...[/dim]")
    elif envelope.type is EnvelopeType.STOP_TYPING:
        console.print(f"[dim]{envelope.conversation_id}: {who} stopped typing[/dim]")
    else:
        console.print(f"[cyan]{envelope.conversation_id}[/cyan] read by {who}")


@click.command("listen")
@click.option("--token", envvar="PULSE_TOKEN", required=True, help="User access token")
@click.option("--api-url", default=None, help="News-site REST API base URL")
@click.option("--read", "read_conversation", default=None, help="Mark this conversation read once connected")
@click.option("--json-output", "--json", is_flag=True)
@click.option("--config", "config_path", default=None, help="Path to a JSON config file")
def listen_cmd(
    token: str,
    api_url: Optional[str],
    read_conversation: Optional[str],
    json_output: bool,
    config_path: Optional[str],
):
    """Connect as a user and print incoming envelopes (Ctrl+C to exit)."""
    settings = _settings(config_path, api_url=api_url)

    async def _listen():
        client = RelayClient(
            api_url=settings.api_url,
            token=token,
            reconnect_floor=settings.reconnect_floor,
            reconnect_ceiling=settings.reconnect_ceiling,
            max_reconnect_attempts=settings.max_reconnect_attempts,
            typing_idle=settings.typing_timeout,
        )
        done = asyncio.Event()

        def on_state(old: ConnectionState, new: ConnectionState) -> None:
            if not json_output:
                console.print(f"[{STATE_STYLE[new]}]{new.value}[/{STATE_STYLE[new]}]")
            if new is ConnectionState.DISCONNECTED:
                done.set()

        client.controller.add_listener(on_state)
        client.on(ALL, lambda envelope: _print_envelope(envelope, json_output))
        client.start()
        try:
            if read_conversation:
                await client.wait_connected(timeout=settings.reconnect_ceiling)
                await client.send_message_read(read_conversation)
            await done.wait()
        finally:
            await client.stop()
        if client.controller.exhausted:
            console.print("[red]Offline: reconnect attempts exhausted.[/red]")

    _run(_listen())
