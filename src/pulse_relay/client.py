"""
RelayClient: one logical relay connection for a signed-in user.

Connection: ws(s)://{host}/ws?token={access token}, derived from the API
base URL. Reconnects follow ReconnectController; envelopes sent while
offline are not queued.
"""

import asyncio
import logging
from typing import Any, Callable, Optional, Union
from urllib.parse import quote

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, ConnectionClosedError, InvalidStatus, WebSocketException

from pulse_relay.errors import AuthError, EnvelopeError
from pulse_relay.models.envelope import Envelope, EnvelopeType
from pulse_relay.reconnect import (
    DEFAULT_CEILING_S,
    DEFAULT_FLOOR_S,
    DEFAULT_MAX_ATTEMPTS,
    NORMAL_CLOSURE,
    ConnectionState,
    ReconnectController,
    Scheduler,
)
from pulse_relay.transport.envelope import build_envelope, encode_envelope, parse_envelope
from pulse_relay.transport.http import DEFAULT_API_URL

logger = logging.getLogger(__name__)

ALL = "all"
DEFAULT_TYPING_IDLE_S = 3.0

EnvelopeHandler = Callable[[Envelope], None]


def ws_url(api_url: str, token: str) -> str:
    """http://host/api -> ws://host/ws?token=..."""
    base = api_url.rstrip("/")
    if base.startswith("https"):
        base = "wss" + base[len("https"):]
    elif base.startswith("http"):
        base = "ws" + base[len("http"):]
    if base.endswith("/api"):
        base = base[: -len("/api")]
    return f"{base}/ws?token={quote(token, safe='')}"


class RelayClient:
    def __init__(
        self,
        api_url: str = DEFAULT_API_URL,
        token: Optional[str] = None,
        reconnect_floor: float = DEFAULT_FLOOR_S,
        reconnect_ceiling: float = DEFAULT_CEILING_S,
        max_reconnect_attempts: int = DEFAULT_MAX_ATTEMPTS,
        typing_idle: float = DEFAULT_TYPING_IDLE_S,
        open_timeout: float = 10.0,
        schedule: Optional[Scheduler] = None,
    ):
        self._api_url = api_url
        self._token = token
        self._typing_idle = typing_idle
        self._open_timeout = open_timeout
        controller_kwargs: dict[str, Any] = {}
        if schedule is not None:
            controller_kwargs["schedule"] = schedule
        self._controller = ReconnectController(
            open_connection=self._open,
            close_connection=self._close,
            floor=reconnect_floor,
            ceiling=reconnect_ceiling,
            max_attempts=max_reconnect_attempts,
            **controller_kwargs,
        )
        self._ws: Optional[ClientConnection] = None
        self._task: Optional[asyncio.Task[None]] = None
        self._connected_event = asyncio.Event()
        self._handlers: dict[str, list[EnvelopeHandler]] = {}
        self._typing_users: dict[str, set[str]] = {}
        self._typing_timers: dict[str, asyncio.TimerHandle] = {}
        self._background: set[asyncio.Task[Any]] = set()
        self._controller.add_listener(self._on_state_change)

    @property
    def controller(self) -> ReconnectController:
        return self._controller

    @property
    def state(self) -> ConnectionState:
        return self._controller.state

    @property
    def connected(self) -> bool:
        return self._controller.state is ConnectionState.CONNECTED and self._ws is not None

    @property
    def connecting(self) -> bool:
        return self._controller.state in (ConnectionState.CONNECTING, ConnectionState.BACKOFF)

    @property
    def url(self) -> str:
        if not self._token:
            raise AuthError("No access token. Log in first.", code="missing_token")
        return ws_url(self._api_url, self._token)

    def set_token(self, token: Optional[str]) -> None:
        self._token = token

    def start(self) -> None:
        """Authenticated trigger: connect (no-op when already connecting or connected)."""
        if not self._token:
            raise AuthError("No access token. Log in first.", code="missing_token")
        self._controller.authenticated()

    async def stop(self) -> None:
        """Log out: close with 1000 and never reconnect until start() is called again."""
        for timer in self._typing_timers.values():
            timer.cancel()
        self._typing_timers.clear()
        self._controller.logout()
        task = self._task
        if task is not None and task is not asyncio.current_task():
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def wait_connected(self, timeout: float = 10.0) -> None:
        await asyncio.wait_for(self._connected_event.wait(), timeout=timeout)

    def on(self, envelope_type: Union[EnvelopeType, str], handler: EnvelopeHandler) -> Callable[[], None]:
        """Register a handler for one envelope type or "all". Returns a cleanup function."""
        key = envelope_type.value if isinstance(envelope_type, EnvelopeType) else envelope_type
        if key != ALL:
            key = EnvelopeType(key).value
        self._handlers.setdefault(key, []).append(handler)

        def remove() -> None:
            try:
                self._handlers.get(key, []).remove(handler)
            except ValueError:
                pass

        return remove

    async def send(self, envelope: Union[Envelope, dict[str, Any]]) -> bool:
        """Send one envelope. Returns False when not connected; nothing is queued."""
        if isinstance(envelope, dict):
            envelope = Envelope.model_validate(envelope)
        ws = self._ws
        if ws is None or not self.connected:
            logger.warning("Relay is not connected; dropping %s", envelope.type.value)
            return False
        try:
            await ws.send(encode_envelope(envelope))
            return True
        except ConnectionClosed as e:
            logger.error("Failed to send %s: %s", envelope.type.value, e)
            return False

    async def send_typing(self, conversation_id: str) -> bool:
        return await self.send(build_envelope(EnvelopeType.TYPING, conversation_id))

    async def send_stop_typing(self, conversation_id: str) -> bool:
        return await self.send(build_envelope(EnvelopeType.STOP_TYPING, conversation_id))

    async def send_message_read(self, conversation_id: str) -> bool:
        return await self.send(build_envelope(EnvelopeType.MESSAGE_READ, conversation_id))

    async def start_typing(self, conversation_id: str) -> bool:
        """Send typing now and stop_typing after `typing_idle` seconds without another call."""
        sent = await self.send_typing(conversation_id)
        old_timer = self._typing_timers.pop(conversation_id, None)
        if old_timer:
            old_timer.cancel()
        loop = asyncio.get_running_loop()
        self._typing_timers[conversation_id] = loop.call_later(
            self._typing_idle, self._typing_idle_elapsed, conversation_id
        )
        return sent

    def typing_users(self, conversation_id: str) -> set[str]:
        return set(self._typing_users.get(conversation_id, ()))

    def _typing_idle_elapsed(self, conversation_id: str) -> None:
        self._typing_timers.pop(conversation_id, None)
        self._spawn(self.send_stop_typing(conversation_id))

    def _open(self) -> None:
        self._task = asyncio.get_running_loop().create_task(self._run())

    def _close(self) -> None:
        ws = self._ws
        if ws is not None:
            self._spawn(ws.close(NORMAL_CLOSURE, "User disconnected"))
        elif self._task is not None and not self._task.done():
            self._task.cancel()

    async def _run(self) -> None:
        try:
            ws = await connect(self.url, open_timeout=self._open_timeout)
        except InvalidStatus as e:
            status = e.response.status_code
            logger.error("Relay refused the connection: HTTP %d", status)
            if status in (401, 403):
                self._controller.auth_rejected()
            else:
                self._controller.failed()
            return
        except (OSError, WebSocketException, asyncio.TimeoutError) as e:
            logger.error("Relay connection error: %s", e)
            self._controller.failed()
            return

        if self._controller.state is not ConnectionState.CONNECTING:
            await ws.close(NORMAL_CLOSURE, "User disconnected")
            return

        self._ws = ws
        self._controller.opened()
        logger.info("Relay connected")
        try:
            async for raw in ws:
                self._dispatch(raw)
        except ConnectionClosedError as e:
            logger.warning("Relay connection lost: %s", e)
        finally:
            self._ws = None
            # stop_typing sent while offline never arrives
            self._typing_users.clear()
        logger.info("Relay closed: %s %s", ws.close_code, ws.close_reason)
        self._controller.closed(ws.close_code)

    def _dispatch(self, raw: Union[str, bytes]) -> None:
        try:
            envelope = parse_envelope(raw)
        except EnvelopeError as e:
            logger.error("Failed to parse relay envelope: %s", e)
            return

        if envelope.conversation_id and envelope.user_id:
            users = self._typing_users.setdefault(envelope.conversation_id, set())
            if envelope.type is EnvelopeType.TYPING:
                users.add(envelope.user_id)
            elif envelope.type is EnvelopeType.STOP_TYPING:
                users.discard(envelope.user_id)

        for key in (envelope.type.value, ALL):
            for handler in list(self._handlers.get(key, ())):
                try:
                    handler(envelope)
                except Exception:
                    logger.exception("Envelope handler failed for %s", envelope.type.value)

    def _on_state_change(self, old: ConnectionState, new: ConnectionState) -> None:
        logger.debug("Relay state %s -> %s", old.value, new.value)
        if new is ConnectionState.CONNECTED:
            self._connected_event.set()
        else:
            self._connected_event.clear()

    def _spawn(self, coro: Any) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
