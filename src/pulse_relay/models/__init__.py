from pulse_relay.models.envelope import Envelope, EnvelopeType, INBOUND_TYPES
from pulse_relay.models.principal import Conversation, Principal

__all__ = ["Envelope", "EnvelopeType", "INBOUND_TYPES", "Conversation", "Principal"]
