"""
WebSocket endpoint for the relay.

Clients connect to /ws?token=<access token>. The token is checked during
the HTTP handshake, so a rejected client never becomes a Connection.
/healthz answers plain HTTP for load balancers.
"""

import asyncio
import concurrent.futures
import logging
import weakref
from http import HTTPStatus
from typing import Any, Optional, Union
from urllib.parse import parse_qs, urlsplit

from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosedError
from websockets.http11 import Request, Response

from pulse_relay.collaborators import Authenticator, HttpCollaborators, SupportInboxMembership
from pulse_relay.config import RelaySettings
from pulse_relay.connection import Connection
from pulse_relay.errors import AuthError, CollaboratorError
from pulse_relay.models.envelope import Envelope
from pulse_relay.models.principal import Principal
from pulse_relay.registry import ConnectionRegistry
from pulse_relay.relay import MessageRelay
from pulse_relay.transport.http import HttpClient

logger = logging.getLogger(__name__)

WS_PATH = "/ws"
HEALTH_PATH = "/healthz"
POLICY_VIOLATION = 1008


class RelayServer:
    def __init__(
        self,
        relay: MessageRelay,
        authenticator: Authenticator,
        settings: Optional[RelaySettings] = None,
        http: Optional[HttpClient] = None,
    ):
        self._relay = relay
        self._authenticator = authenticator
        self._settings = settings or RelaySettings()
        self._http = http
        # Principals authenticated in process_request, waiting for the handler.
        self._principals: "weakref.WeakKeyDictionary[ServerConnection, Principal]" = weakref.WeakKeyDictionary()
        self._server: Optional[Server] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def relay(self) -> MessageRelay:
        return self._relay

    @property
    def port(self) -> int:
        if self._server is None:
            raise RuntimeError("Relay server not started")
        return next(iter(self._server.sockets)).getsockname()[1]

    async def start(self) -> None:
        s = self._settings
        self._loop = asyncio.get_running_loop()
        self._server = await serve(
            self._handle,
            s.host,
            s.port,
            process_request=self._process_request,
            ping_interval=s.ping_interval,
            ping_timeout=s.ping_timeout,
            max_size=s.max_message_size,
        )
        self._relay.typing.start()
        logger.info("Relay listening on ws://%s:%d%s", s.host, self.port, WS_PATH)

    async def serve_forever(self) -> None:
        await self.start()
        try:
            await self._server.wait_closed()  # type: ignore[union-attr]
        finally:
            await self.stop()

    async def stop(self) -> None:
        await self._relay.typing.stop()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        if self._http is not None:
            await self._http.close()
            self._http = None

    def publish_threadsafe(
        self, conversation_id: str, envelope: Union[Envelope, dict[str, Any]]
    ) -> "concurrent.futures.Future[int]":
        """Schedule publish() from a thread outside the relay's event loop."""
        if self._loop is None:
            raise RuntimeError("Relay server not started")
        return asyncio.run_coroutine_threadsafe(self._relay.publish(conversation_id, envelope), self._loop)

    async def _process_request(self, connection: ServerConnection, request: Request) -> Optional[Response]:
        url = urlsplit(request.path)
        if url.path == HEALTH_PATH:
            return connection.respond(HTTPStatus.OK, "ok\n")
        if url.path != WS_PATH:
            return connection.respond(HTTPStatus.NOT_FOUND, "Not found\n")

        token = parse_qs(url.query).get("token", [""])[0]
        if not token:
            return connection.respond(HTTPStatus.UNAUTHORIZED, "Missing token\n")
        try:
            principal = await self._authenticator.authenticate(token)
        except AuthError as e:
            logger.info("Rejected handshake from %s: %s", connection.remote_address, e)
            return connection.respond(HTTPStatus.UNAUTHORIZED, "Invalid token\n")
        except CollaboratorError as e:
            logger.error("Auth service unavailable: %s", e)
            return connection.respond(HTTPStatus.SERVICE_UNAVAILABLE, "Authentication unavailable\n")

        self._principals[connection] = principal
        return None

    async def _handle(self, websocket: ServerConnection) -> None:
        principal = self._principals.pop(websocket, None)
        if principal is None:
            await websocket.close(POLICY_VIOLATION, "Unauthenticated")
            return

        registry = self._relay.registry
        connection = Connection(websocket, principal, write_timeout=self._settings.write_timeout)
        registry.register(principal, connection)
        try:
            async for raw in websocket:
                try:
                    await self._relay.handle_inbound(connection, raw)
                except Exception:
                    logger.exception("Inbound frame from %s failed", connection.id)
        except ConnectionClosedError as e:
            logger.info("Connection %s closed abnormally: %s", connection.id, e)
        finally:
            registry.unregister(principal, connection)
            if not registry.is_online(principal.id):
                await self._relay.typing.forget_principal(principal.id)


def create_server(settings: RelaySettings) -> RelayServer:
    """Wire the relay against the news-site REST API."""
    http = HttpClient(base_url=settings.api_url, token=settings.service_token)
    api = HttpCollaborators(http, service_token=settings.service_token)
    registry = ConnectionRegistry()
    relay = MessageRelay(
        registry,
        members=SupportInboxMembership(api, registry),
        reads=api,
        echo_to_sender=settings.echo_to_sender,
        typing_window=settings.typing_timeout,
        sweep_interval=settings.sweep_interval,
    )
    return RelayServer(relay, authenticator=api, settings=settings, http=http)
