"""
Envelope construction and parsing for the JSON wire format.
"""

import json
from typing import Any, Optional, Union

from pydantic import ValidationError

from pulse_relay.errors import EnvelopeError, UnknownEnvelopeType
from pulse_relay.models.envelope import Envelope, EnvelopeType

_KNOWN_TYPES = {t.value for t in EnvelopeType}


def build_envelope(
    envelope_type: Union[EnvelopeType, str],
    conversation_id: Optional[str] = None,
    message: Optional[dict[str, Any]] = None,
    user_id: Optional[str] = None,
) -> Envelope:
    """Build an envelope stamped with the current time."""
    if isinstance(envelope_type, str) and envelope_type not in _KNOWN_TYPES:
        raise UnknownEnvelopeType(envelope_type)
    return Envelope(
        type=EnvelopeType(envelope_type),
        conversation_id=conversation_id,
        message=message,
        user_id=user_id,
    )


def encode_envelope(envelope: Envelope) -> str:
    """Serialize to the JSON text frame, omitting absent optional fields."""
    return envelope.model_dump_json(exclude_none=True)


def parse_envelope(raw: Union[str, bytes, bytearray]) -> Envelope:
    """Parse one inbound frame.

    Raises UnknownEnvelopeType when `type` is outside the closed enumeration
    and EnvelopeError for anything else that is not a valid envelope.
    """
    try:
        data = json.loads(raw)
    except (ValueError, TypeError) as e:
        raise EnvelopeError(f"Envelope is not valid JSON: {e}")
    if not isinstance(data, dict):
        raise EnvelopeError("Envelope must be a JSON object")
    if "type" not in data:
        raise EnvelopeError("Envelope has no type")
    if not isinstance(data["type"], str) or data["type"] not in _KNOWN_TYPES:
        raise UnknownEnvelopeType(data["type"])
    try:
        return Envelope.model_validate(data)
    except ValidationError as e:
        raise EnvelopeError(
            "Envelope failed validation",
            details={"errors": str(e)},
        )
