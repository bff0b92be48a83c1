"""
Message relay: validates inbound envelopes and fans envelopes out to the
connections of conversation members.

Clients only originate `typing`, `stop_typing` and `message_read`.
`new_message` is emitted exclusively through `publish()`, called by the
REST layer after the message has been persisted.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

from pulse_relay.collaborators import MembershipResolver, ReadReceiptRecorder
from pulse_relay.connection import Connection
from pulse_relay.errors import EnvelopeError, HandlerRegistrationError, RelayError, UnknownEnvelopeType
from pulse_relay.models.envelope import INBOUND_TYPES, Envelope, EnvelopeType
from pulse_relay.presence import DEFAULT_SWEEP_INTERVAL_S, DEFAULT_TYPING_WINDOW_S, TypingTracker
from pulse_relay.registry import ConnectionRegistry
from pulse_relay.transport.envelope import build_envelope, encode_envelope, parse_envelope

logger = logging.getLogger(__name__)

# Close code sent to a connection dropped after a failed write.
INTERNAL_ERROR_CLOSURE = 1011

InboundHandler = Callable[[Connection, Envelope], Awaitable[None]]


class MessageRelay:
    def __init__(
        self,
        registry: ConnectionRegistry,
        members: MembershipResolver,
        reads: ReadReceiptRecorder,
        echo_to_sender: bool = False,
        typing_window: float = DEFAULT_TYPING_WINDOW_S,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL_S,
        clock: Optional[Callable[[], float]] = None,
    ):
        self._registry = registry
        self._members = members
        self._reads = reads
        self.echo_to_sender = echo_to_sender
        tracker_kwargs: dict[str, Any] = {"window": typing_window, "sweep_interval": sweep_interval}
        if clock is not None:
            tracker_kwargs["clock"] = clock
        self.typing = TypingTracker(self.fan_out, **tracker_kwargs)
        self._handlers: dict[EnvelopeType, InboundHandler] = {}
        self._closing: set[asyncio.Task[None]] = set()

        self.register_handler(EnvelopeType.TYPING, self._on_typing)
        self.register_handler(EnvelopeType.STOP_TYPING, self._on_stop_typing)
        self.register_handler(EnvelopeType.MESSAGE_READ, self._on_message_read)

    @property
    def registry(self) -> ConnectionRegistry:
        return self._registry

    def register_handler(self, envelope_type: Union[EnvelopeType, str], handler: InboundHandler) -> None:
        """Bind a handler to a client-originated envelope type (replaces any existing one)."""
        try:
            key = EnvelopeType(envelope_type)
        except ValueError:
            raise HandlerRegistrationError(f"Unknown envelope type: {envelope_type!r}")
        if key not in INBOUND_TYPES:
            raise HandlerRegistrationError(f"{key.value} is not a client-originated envelope type")
        self._handlers[key] = handler

    async def handle_inbound(self, connection: Connection, raw: Union[str, bytes]) -> None:
        """Process one frame from a client. Never closes the connection."""
        try:
            envelope = parse_envelope(raw)
        except UnknownEnvelopeType as e:
            logger.warning("Dropping envelope of unknown type %r from %s", (e.details or {}).get("type"), connection.id)
            return
        except EnvelopeError as e:
            logger.warning("Dropping malformed envelope from %s: %s", connection.id, e)
            return

        handler = self._handlers.get(envelope.type)
        if handler is None:
            logger.warning("Dropping client-originated %s from %s", envelope.type.value, connection.id)
            return
        if not envelope.conversation_id:
            logger.warning("Dropping %s without conversation_id from %s", envelope.type.value, connection.id)
            return

        try:
            await handler(connection, envelope)
        except RelayError as e:
            logger.error("Handling %s from %s failed: %s", envelope.type.value, connection.id, e)

    async def publish(self, conversation_id: str, envelope: Union[Envelope, dict[str, Any]]) -> int:
        """Server-initiated fan-out to every member of a conversation, sender included."""
        if isinstance(envelope, dict):
            envelope = Envelope.model_validate(envelope)
        if envelope.conversation_id != conversation_id:
            envelope = envelope.model_copy(update={"conversation_id": conversation_id})
        return await self.fan_out(envelope)

    async def publish_message(self, conversation_id: str, message: dict[str, Any]) -> int:
        """Announce a freshly persisted message."""
        return await self.publish(conversation_id, build_envelope(EnvelopeType.NEW_MESSAGE, conversation_id, message=message))

    async def send_to_principal(self, principal_id: str, envelope: Envelope) -> int:
        return await self._deliver(self._registry.connections_for(principal_id), envelope)

    async def fan_out(self, envelope: Envelope, origin: Optional[str] = None) -> int:
        """Deliver to the connections of every conversation member.

        `origin` is the principal whose action produced the envelope; unless
        echo_to_sender is set, none of its connections receive it.
        Returns the number of connections the envelope was written to.
        """
        if not envelope.conversation_id:
            logger.warning("Cannot fan out %s without conversation_id", envelope.type.value)
            return 0
        try:
            members = await self._members.conversation_members(envelope.conversation_id)
        except RelayError as e:
            logger.error("Membership lookup for %s failed: %s", envelope.conversation_id, e)
            return 0

        targets: list[Connection] = []
        for member in members:
            if origin is not None and member == origin and not self.echo_to_sender:
                continue
            targets.extend(self._registry.connections_for(member))
        return await self._deliver(targets, envelope)

    async def _deliver(self, targets: Iterable[Connection], envelope: Envelope) -> int:
        targets = list(targets)
        if not targets:
            return 0
        text = encode_envelope(envelope)
        results = await asyncio.gather(*(c.send_text(text) for c in targets), return_exceptions=True)
        delivered = 0
        for connection, result in zip(targets, results):
            if isinstance(result, BaseException):
                logger.warning("Dropping %s after failed write: %s", connection, result)
                self._drop(connection)
            else:
                delivered += 1
        return delivered

    def _drop(self, connection: Connection) -> None:
        if not self._registry.unregister(connection.principal, connection):
            return
        task = asyncio.get_running_loop().create_task(
            connection.close(INTERNAL_ERROR_CLOSURE, "write failed")
        )
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    async def _on_typing(self, connection: Connection, envelope: Envelope) -> None:
        await self.typing.mark_typing(envelope.conversation_id, connection.principal.id)  # type: ignore[arg-type]

    async def _on_stop_typing(self, connection: Connection, envelope: Envelope) -> None:
        await self.typing.mark_stopped(envelope.conversation_id, connection.principal.id)  # type: ignore[arg-type]

    async def _on_message_read(self, connection: Connection, envelope: Envelope) -> None:
        conversation_id = envelope.conversation_id
        principal = connection.principal
        await self._reads.record_message_read(conversation_id, principal)  # type: ignore[arg-type]
        await self.fan_out(
            build_envelope(EnvelopeType.MESSAGE_READ, conversation_id, user_id=principal.id),
            origin=principal.id,
        )
