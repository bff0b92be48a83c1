"""
pulse-relay: real-time messaging relay for the Pulpulitiko news site.

WebSocket fan-out of conversation envelopes (new messages, typing
indicators, read receipts) plus a reconnecting client.
"""

from pulse_relay.client import RelayClient
from pulse_relay.config import RelaySettings, load_settings
from pulse_relay.errors import (
    AuthError,
    CollaboratorError,
    ConnectionError,
    EnvelopeError,
    HandlerRegistrationError,
    RelayError,
    UnknownEnvelopeType,
)
from pulse_relay.models.envelope import Envelope, EnvelopeType
from pulse_relay.models.principal import Principal
from pulse_relay.reconnect import ConnectionState, ReconnectController
from pulse_relay.registry import ConnectionRegistry
from pulse_relay.relay import MessageRelay
from pulse_relay.server import RelayServer, create_server

__version__ = "0.1.0"
__all__ = [
    "RelayClient",
    "RelayServer",
    "create_server",
    "MessageRelay",
    "ConnectionRegistry",
    "ReconnectController",
    "ConnectionState",
    "RelaySettings",
    "load_settings",
    "Envelope",
    "EnvelopeType",
    "Principal",
    "RelayError",
    "AuthError",
    "EnvelopeError",
    "UnknownEnvelopeType",
    "CollaboratorError",
    "HandlerRegistrationError",
    "ConnectionError",
]
