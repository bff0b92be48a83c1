"""
One live duplex channel belonging to a single principal.

Writes are serialized: the lock is FIFO, so envelopes reach the transport in
the order fan-out calls were issued against this connection, and a slow
write never interleaves with the next one. Each write is bounded by a
deadline; a connection whose write fails or times out is marked closed.
"""

import asyncio
import logging
import uuid
from typing import Optional, Protocol

from pulse_relay.errors import ConnectionError
from pulse_relay.models.envelope import Envelope
from pulse_relay.models.principal import Principal
from pulse_relay.transport.envelope import encode_envelope

logger = logging.getLogger(__name__)

NORMAL_CLOSURE = 1000
DEFAULT_WRITE_TIMEOUT = 10.0


class Transport(Protocol):
    async def send(self, message: str) -> None: ...

    async def close(self, code: int = NORMAL_CLOSURE, reason: str = "") -> None: ...


class Connection:
    def __init__(
        self,
        transport: Transport,
        principal: Principal,
        write_timeout: float = DEFAULT_WRITE_TIMEOUT,
        connection_id: Optional[str] = None,
    ):
        self.id = connection_id or str(uuid.uuid4())
        self.principal = principal
        self._transport = transport
        self._write_timeout = write_timeout
        self._lock = asyncio.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, envelope: Envelope) -> None:
        await self.send_text(encode_envelope(envelope))

    async def send_text(self, text: str) -> None:
        if self._closed:
            raise ConnectionError(f"Connection {self.id} is closed")
        async with self._lock:
            try:
                await asyncio.wait_for(self._transport.send(text), timeout=self._write_timeout)
            except asyncio.TimeoutError:
                self._closed = True
                raise ConnectionError(f"Write deadline of {self._write_timeout}s exceeded on {self.id}")
            except Exception as e:
                self._closed = True
                raise ConnectionError(f"Write failed on {self.id}: {e}") from e

    async def close(self, code: int = NORMAL_CLOSURE, reason: str = "") -> None:
        self._closed = True
        try:
            await self._transport.close(code, reason)
        except Exception as e:
            logger.debug("Close on %s failed: %s", self.id, e)

    def __repr__(self) -> str:
        return f"Connection(id={self.id!r}, principal={self.principal.id!r})"
