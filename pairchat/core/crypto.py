from __future__ import annotations

import base64
import time
from typing import Any, Dict

import orjson
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac

_B64_PAD = {0: "", 2: "==", 3: "="}

_HEADER = {"alg": "HS256", "typ": "JWT"}


class TokenError(ValueError):
    """Credential failed signature, structure or expiry checks."""


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(value: str) -> bytes:
    pad = _B64_PAD.get(len(value) % 4)
    if pad is None:
        raise TokenError("invalid base64url length")
    return base64.urlsafe_b64decode(value + pad)


def sign_hs256(secret: bytes, message: bytes) -> bytes:
    mac = hmac.HMAC(secret, hashes.SHA256())
    mac.update(message)
    return mac.finalize()


def verify_hs256(secret: bytes, message: bytes, signature: bytes) -> bool:
    mac = hmac.HMAC(secret, hashes.SHA256())
    mac.update(message)
    try:
        mac.verify(signature)
        return True
    except InvalidSignature:
        return False


def _secret_bytes(secret: str | bytes) -> bytes:
    return secret.encode("utf-8") if isinstance(secret, str) else secret


def issue_token(subject: str, secret: str | bytes, *, ttl_secs: int = 3600, now: float | None = None) -> str:
    """Issue a compact HS256 bearer credential for `subject`.

    The claims mirror what the login flow hands out: `id` and `sub` carry the
    user id, `iat`/`exp` bound its lifetime.
    """

    issued = int(time.time() if now is None else now)
    claims = {"id": subject, "sub": subject, "iat": issued, "exp": issued + int(ttl_secs)}
    signing_input = f"{b64url(orjson.dumps(_HEADER))}.{b64url(orjson.dumps(claims))}"
    sig = sign_hs256(_secret_bytes(secret), signing_input.encode("ascii"))
    return f"{signing_input}.{b64url(sig)}"


def decode_token(token: str, secret: str | bytes, *, now: float | None = None, leeway: int = 0) -> Dict[str, Any]:
    """Verify signature and expiry, return the claims. Raises TokenError."""

    parts = token.split(".")
    if len(parts) != 3:
        raise TokenError("malformed token")
    header_b64, claims_b64, sig_b64 = parts
    try:
        header = orjson.loads(b64url_decode(header_b64))
        claims = orjson.loads(b64url_decode(claims_b64))
        signature = b64url_decode(sig_b64)
    except (ValueError, TypeError) as exc:
        raise TokenError("malformed token") from exc

    if not isinstance(header, dict) or header.get("alg") != "HS256":
        raise TokenError("unsupported algorithm")
    if not isinstance(claims, dict):
        raise TokenError("malformed claims")

    signing_input = f"{header_b64}.{claims_b64}".encode("ascii")
    if not verify_hs256(_secret_bytes(secret), signing_input, signature):
        raise TokenError("signature mismatch")

    exp = claims.get("exp")
    current = time.time() if now is None else now
    if exp is not None:
        if not isinstance(exp, (int, float)):
            raise TokenError("malformed exp claim")
        if current > exp + leeway:
            raise TokenError("token expired")
    return claims


def token_subject(claims: Dict[str, Any]) -> str:
    subject = claims.get("id") or claims.get("sub")
    if not isinstance(subject, str) or not subject:
        raise TokenError("token has no subject")
    return subject


__all__ = [
    "TokenError",
    "b64url",
    "b64url_decode",
    "sign_hs256",
    "verify_hs256",
    "issue_token",
    "decode_token",
    "token_subject",
]
