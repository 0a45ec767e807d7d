"""
pairchat error types.

Codes carried by these exceptions are the machine-readable strings sent in
ERROR envelopes or mapped onto websocket close codes.
"""

from typing import Optional


class PairchatError(Exception):
    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


class AuthError(PairchatError):
    """Credential rejected at connect time (AUTH_REQUIRED / INVALID_AUTH)."""

    def __init__(self, code: str, message: Optional[str] = None):
        super().__init__(code, message or code)


class EnvelopeError(PairchatError):
    """Inbound frame could not be turned into a known envelope."""

    def __init__(self, message: str, code: str = "INVALID_MESSAGE"):
        super().__init__(code, message)


class HandlerError(PairchatError):
    """Handler refused a payload before any side effect happened."""

    def __init__(self, message: str, code: str = "VALIDATION"):
        super().__init__(code, message)


class NotConnectedError(PairchatError):
    def __init__(self, message: str = "Cannot send message: connection is not open"):
        super().__init__("NOT_CONNECTED", message)
