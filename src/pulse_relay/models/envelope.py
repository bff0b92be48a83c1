"""
Wire envelope exchanged over a relay connection.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class EnvelopeType(str, Enum):
    NEW_MESSAGE = "new_message"
    TYPING = "typing"
    STOP_TYPING = "stop_typing"
    MESSAGE_READ = "message_read"


# Types a client may originate. new_message is only ever emitted by publish().
INBOUND_TYPES = frozenset({EnvelopeType.TYPING, EnvelopeType.STOP_TYPING, EnvelopeType.MESSAGE_READ})


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Envelope(BaseModel):
    type: EnvelopeType
    conversation_id: Optional[str] = None
    message: Optional[dict[str, Any]] = None  # opaque, owned by the conversation store
    user_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)
