"""
Reconnect controller: keeps one logical connection over repeated physical
connection attempts.

    DISCONNECTED -> CONNECTING -> CONNECTED -> BACKOFF -> CONNECTING -> ...

Reconnects are scheduled callbacks (loop.call_later by default), never
sleeping loops, so logout() can always cancel a pending attempt. Nothing
sent while disconnected is buffered; callers refetch over REST after a
reconnect.
"""

import asyncio
import logging
from enum import Enum
from typing import Callable, Optional, Protocol

logger = logging.getLogger(__name__)

NORMAL_CLOSURE = 1000
DEFAULT_FLOOR_S = 1.0
DEFAULT_CEILING_S = 30.0
DEFAULT_MAX_ATTEMPTS = 6


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    BACKOFF = "backoff"


class Trigger(str, Enum):
    AUTHENTICATED = "authenticated"
    OPENED = "opened"
    CLOSED_NORMAL = "closed_normal"
    FAILED = "failed"
    RETRY = "retry"
    EXHAUSTED = "exhausted"
    LOGOUT = "logout"


TRANSITIONS: dict[tuple[ConnectionState, Trigger], ConnectionState] = {
    (ConnectionState.DISCONNECTED, Trigger.AUTHENTICATED): ConnectionState.CONNECTING,
    (ConnectionState.CONNECTING, Trigger.OPENED): ConnectionState.CONNECTED,
    (ConnectionState.CONNECTING, Trigger.FAILED): ConnectionState.BACKOFF,
    (ConnectionState.CONNECTING, Trigger.EXHAUSTED): ConnectionState.DISCONNECTED,
    (ConnectionState.CONNECTED, Trigger.FAILED): ConnectionState.BACKOFF,
    (ConnectionState.CONNECTED, Trigger.EXHAUSTED): ConnectionState.DISCONNECTED,
    (ConnectionState.CONNECTED, Trigger.CLOSED_NORMAL): ConnectionState.DISCONNECTED,
    (ConnectionState.BACKOFF, Trigger.RETRY): ConnectionState.CONNECTING,
    (ConnectionState.CONNECTING, Trigger.LOGOUT): ConnectionState.DISCONNECTED,
    (ConnectionState.CONNECTED, Trigger.LOGOUT): ConnectionState.DISCONNECTED,
    (ConnectionState.BACKOFF, Trigger.LOGOUT): ConnectionState.DISCONNECTED,
}


class Cancellable(Protocol):
    def cancel(self) -> None: ...


Scheduler = Callable[[float, Callable[[], None]], Cancellable]
Listener = Callable[[ConnectionState, ConnectionState], None]


def _call_later(delay: float, callback: Callable[[], None]) -> Cancellable:
    return asyncio.get_running_loop().call_later(delay, callback)


def backoff_delay(attempt: int, floor: float = DEFAULT_FLOOR_S, ceiling: float = DEFAULT_CEILING_S) -> float:
    """Delay before reconnect attempt `attempt` (1-based): floor doubled per attempt, capped at ceiling."""
    if attempt < 1:
        raise ValueError("attempt is 1-based")
    return min(floor * 2 ** (attempt - 1), ceiling)


class ReconnectController:
    def __init__(
        self,
        open_connection: Callable[[], None],
        close_connection: Optional[Callable[[], None]] = None,
        floor: float = DEFAULT_FLOOR_S,
        ceiling: float = DEFAULT_CEILING_S,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        schedule: Scheduler = _call_later,
    ):
        if floor <= 0 or ceiling < floor:
            raise ValueError("backoff needs 0 < floor <= ceiling")
        self._open_connection = open_connection
        self._close_connection = close_connection
        self._floor = floor
        self._ceiling = ceiling
        self._max_attempts = max_attempts
        self._schedule = schedule
        self._state = ConnectionState.DISCONNECTED
        self._attempts = 0
        self._timer: Optional[Cancellable] = None
        self._pending_delay: Optional[float] = None
        self._exhausted = False
        self._listeners: list[Listener] = []

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def pending_delay(self) -> Optional[float]:
        """Delay of the scheduled reconnect, None when nothing is scheduled."""
        return self._pending_delay

    @property
    def exhausted(self) -> bool:
        return self._exhausted

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return remove

    def authenticated(self) -> None:
        """An authenticated session exists; start connecting if idle."""
        if self._state is not ConnectionState.DISCONNECTED:
            return
        self._attempts = 0
        self._exhausted = False
        self._fire(Trigger.AUTHENTICATED)
        self._open_connection()

    def opened(self) -> None:
        if self._state is not ConnectionState.CONNECTING:
            return
        self._attempts = 0
        self._fire(Trigger.OPENED)

    def closed(self, code: Optional[int]) -> None:
        """The transport closed with `code` (None when no close frame arrived)."""
        if self._state not in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            return
        if code == NORMAL_CLOSURE and self._state is ConnectionState.CONNECTED:
            self._fire(Trigger.CLOSED_NORMAL)
            return
        self._retry_or_give_up()

    def failed(self) -> None:
        """Transport error or failed handshake."""
        if self._state not in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            return
        self._retry_or_give_up()

    def logout(self) -> None:
        """Intentional shutdown: cancel any pending reconnect and close normally."""
        self._cancel_timer()
        if self._state is ConnectionState.DISCONNECTED:
            return
        was_live = self._state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED)
        self._fire(Trigger.LOGOUT)
        if was_live and self._close_connection is not None:
            self._close_connection()

    def auth_rejected(self) -> None:
        """The handshake was refused for bad credentials; wait for a new authenticated()."""
        self._cancel_timer()
        if self._state is not ConnectionState.DISCONNECTED:
            logger.warning("Relay rejected the session token")
            self._fire(Trigger.LOGOUT)

    def _retry_or_give_up(self) -> None:
        if self._attempts >= self._max_attempts:
            self._exhausted = True
            logger.warning("Giving up after %d reconnect attempts", self._attempts)
            self._fire(Trigger.EXHAUSTED)
            return
        self._attempts += 1
        delay = backoff_delay(self._attempts, self._floor, self._ceiling)
        self._fire(Trigger.FAILED)
        self._pending_delay = delay
        self._timer = self._schedule(delay, self._retry)
        logger.info("Reconnect attempt %d in %.1fs", self._attempts, delay)

    def _retry(self) -> None:
        self._timer = None
        self._pending_delay = None
        if self._state is not ConnectionState.BACKOFF:
            return
        self._fire(Trigger.RETRY)
        self._open_connection()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._pending_delay = None

    def _fire(self, trigger: Trigger) -> None:
        old = self._state
        new = TRANSITIONS[(old, trigger)]
        self._state = new
        for listener in list(self._listeners):
            listener(old, new)
