"""
Collaborators the relay consumes: principal authentication, conversation
membership and read receipts. The relay owns none of this data; the
news-site REST API does.
"""

from typing import Optional, Protocol

from pydantic import ValidationError

from pulse_relay.errors import AuthError, CollaboratorError
from pulse_relay.models.principal import Conversation, Principal
from pulse_relay.registry import ConnectionRegistry
from pulse_relay.transport.http import HttpClient


class Authenticator(Protocol):
    async def authenticate(self, token: str) -> Principal: ...


class MembershipResolver(Protocol):
    async def conversation_members(self, conversation_id: str) -> set[str]: ...


class ReadReceiptRecorder(Protocol):
    async def record_message_read(self, conversation_id: str, principal: Principal) -> None: ...


class HttpCollaborators:
    """All three collaborators backed by the REST API.

    `service_token` authorizes the admin conversation lookups done on the
    relay's own behalf; read receipts are recorded with the principal's token.
    """

    def __init__(self, http: HttpClient, service_token: Optional[str] = None):
        self._http = http
        self._service_token = service_token

    async def authenticate(self, token: str) -> Principal:
        if not token:
            raise AuthError("Missing token", code="missing_token")
        try:
            user = await self._http.get("/auth/me", token=token)
        except CollaboratorError as e:
            status = (e.details or {}).get("status")
            if status in (401, 403):
                raise AuthError(f"Invalid token: {e}", code="invalid_token")
            raise
        if not isinstance(user, dict) or not user.get("id"):
            raise AuthError("Auth service returned no user", code="invalid_token")
        try:
            return Principal(
                id=str(user["id"]),
                role=user.get("role") or "",
                name=user.get("name") or "",
                token=token,
            )
        except ValidationError as e:
            raise CollaboratorError("Malformed user from auth service", code="malformed_response", details={"errors": str(e)})

    async def get_conversation(self, conversation_id: str) -> Conversation:
        data = await self._http.get(f"/admin/messages/conversations/{conversation_id}", token=self._service_token)
        try:
            return Conversation.model_validate(data)
        except ValidationError as e:
            raise CollaboratorError(
                f"Malformed conversation {conversation_id}",
                code="malformed_response",
                details={"errors": str(e)},
            )

    async def conversation_members(self, conversation_id: str) -> set[str]:
        conversation = await self.get_conversation(conversation_id)
        return {conversation.user_id}

    async def record_message_read(self, conversation_id: str, principal: Principal) -> None:
        await self._http.post(f"/messages/conversations/{conversation_id}/read", token=principal.token)


class SupportInboxMembership:
    """Members are the conversation owner plus every admin currently online.

    Conversations on the site are between one reader and the editorial
    team, so any connected admin is a participant.
    """

    def __init__(self, owners: MembershipResolver, registry: ConnectionRegistry):
        self._owners = owners
        self._registry = registry

    async def conversation_members(self, conversation_id: str) -> set[str]:
        members = await self._owners.conversation_members(conversation_id)
        return set(members) | self._registry.admins()
