"""
Relay error types.
"""

from typing import Any, Optional


class RelayError(Exception):
    def __init__(self, code: str, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.details = details


class AuthError(RelayError):
    def __init__(self, message: str, code: str = "auth_error"):
        super().__init__(code, message)


class EnvelopeError(RelayError):
    def __init__(self, message: str, code: str = "malformed_envelope", details: Optional[dict[str, Any]] = None):
        super().__init__(code, message, details)


class UnknownEnvelopeType(EnvelopeError):
    def __init__(self, envelope_type: Any):
        super().__init__(
            f"Unknown envelope type: {envelope_type!r}",
            code="unknown_envelope_type",
            details={"type": envelope_type},
        )


class CollaboratorError(RelayError):
    def __init__(self, message: str, code: str = "collaborator_error", details: Optional[dict[str, Any]] = None):
        super().__init__(code, message, details)


class HandlerRegistrationError(RelayError):
    def __init__(self, message: str):
        super().__init__("handler_registration_error", message)


class ConnectionError(RelayError):
    def __init__(self, message: str):
        super().__init__("connection_error", message)
