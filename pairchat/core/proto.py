from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Dict

from pydantic import BaseModel, ValidationError, field_validator

from pairchat.core.errors import EnvelopeError
from pairchat.utils import canonical


# ---------------------------------------------------------------------------
# Envelope kinds & close codes
# ---------------------------------------------------------------------------

class EnvelopeType(str, Enum):
    CHAT = "chat"
    JOIN = "join"
    TYPING = "typing"
    ONLINE = "online"
    CONNECTION = "connection"
    ERROR = "error"


# Kinds a client may send; CONNECTION and ERROR only travel server -> client.
INBOUND_TYPES = frozenset({EnvelopeType.CHAT, EnvelopeType.JOIN, EnvelopeType.TYPING, EnvelopeType.ONLINE})


class CloseCode(IntEnum):
    NORMAL = 1000
    AUTH_REQUIRED = 4001
    INVALID_AUTH = 4002
    INVALID_MESSAGE = 4003
    SUPERSEDED = 4004
    INTERNAL_ERROR = 4500


CLOSE_REASONS = {
    CloseCode.NORMAL: "Normal closure",
    CloseCode.AUTH_REQUIRED: "Authentication required",
    CloseCode.INVALID_AUTH: "Invalid authentication",
    CloseCode.INVALID_MESSAGE: "Invalid message",
    CloseCode.SUPERSEDED: "Superseded by a newer connection",
    CloseCode.INTERNAL_ERROR: "Internal server error",
}


ERROR_CODES = {
    "INVALID_MESSAGE",
    "UNSUPPORTED_TYPE",
    "VALIDATION",
    "NOT_FOUND",
    "INTERNAL",
}


# ---------------------------------------------------------------------------
# Envelope model
# ---------------------------------------------------------------------------

class Envelope(BaseModel):
    """`{type, payload}` unit exchanged over a live connection."""

    type: EnvelopeType
    payload: Dict[str, Any] = {}

    @field_validator("type", mode="before")
    @classmethod
    def _normalise_type(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.lower()
        return value


# ---------------------------------------------------------------------------
# Utility helpers
# ---------------------------------------------------------------------------

def utc_iso(ts: float | None = None) -> str:
    moment = datetime.now(timezone.utc) if ts is None else datetime.fromtimestamp(ts, timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


# ---------------------------------------------------------------------------
# Frame construction
# ---------------------------------------------------------------------------

def build_frame(type: EnvelopeType | str, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Create an outbound envelope dict."""

    kind = type.value if isinstance(type, EnvelopeType) else str(type).lower()
    return {"type": kind, "payload": payload}


def error_frame(message: str, code: str = "INTERNAL") -> Dict[str, Any]:
    if code not in ERROR_CODES:
        raise ValueError(f"unknown error code: {code}")
    return build_frame(EnvelopeType.ERROR, {"message": message, "code": code})


def connection_frame(user_id: str, status: str = "connected") -> Dict[str, Any]:
    return build_frame(EnvelopeType.CONNECTION, {"status": status, "userId": user_id})


def encode(frame: Dict[str, Any]) -> str:
    return canonical.dumps(frame)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def parse_envelope(raw: str | bytes) -> Envelope:
    """Parse an inbound frame.

    Raises EnvelopeError("Invalid message format") when the frame is not a
    JSON object of the right shape, and EnvelopeError("Unsupported message
    type") when the shape is fine but the kind is not one a client may send.
    """

    try:
        obj = canonical.loads(raw)
    except ValueError as exc:
        raise EnvelopeError("Invalid message format") from exc
    if not isinstance(obj, dict) or "type" not in obj:
        raise EnvelopeError("Invalid message format")
    if not isinstance(obj["type"], str):
        raise EnvelopeError("Invalid message format")

    payload = obj.get("payload", {})
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise EnvelopeError("Invalid message format")

    try:
        env = Envelope(type=obj["type"], payload=payload)
    except ValidationError as exc:
        raise EnvelopeError("Unsupported message type", code="UNSUPPORTED_TYPE") from exc

    if env.type not in INBOUND_TYPES:
        raise EnvelopeError("Unsupported message type", code="UNSUPPORTED_TYPE")
    return env


__all__ = [
    "EnvelopeType",
    "INBOUND_TYPES",
    "CloseCode",
    "CLOSE_REASONS",
    "ERROR_CODES",
    "Envelope",
    "utc_iso",
    "build_frame",
    "error_frame",
    "connection_frame",
    "encode",
    "parse_envelope",
]
