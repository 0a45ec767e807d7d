from __future__ import annotations

import logging
from typing import Optional

from pydantic import ValidationError

from pairchat.core import crypto
from pairchat.core.cache import Cache, user_key
from pairchat.core.errors import AuthError
from pairchat.core.models import Principal
from pairchat.core.proto import CloseCode
from pairchat.core.store import DurableStore

log = logging.getLogger("pairchat.core.auth")

AUTH_REQUIRED = "AUTH_REQUIRED"
INVALID_AUTH = "INVALID_AUTH"

CLOSE_CODE_FOR = {
    AUTH_REQUIRED: CloseCode.AUTH_REQUIRED,
    INVALID_AUTH: CloseCode.INVALID_AUTH,
}


class CredentialGate:
    """Turns a bearer credential into a Principal.

    Lookup order is cache (`user:<id>`) then durable store; a store hit is
    written back to the cache with `cache_ttl_secs` expiry. Cache failures
    are logged and fall through to the store.
    """

    def __init__(
        self,
        store: DurableStore,
        cache: Cache,
        secret: str | bytes,
        *,
        cache_ttl_secs: int = 3600,
    ) -> None:
        self.store = store
        self.cache = cache
        self.secret = secret
        self.cache_ttl_secs = cache_ttl_secs

    async def authenticate(self, token: Optional[str]) -> Principal:
        if not token:
            raise AuthError(AUTH_REQUIRED, "Authentication required")

        try:
            claims = crypto.decode_token(token, self.secret)
            subject = crypto.token_subject(claims)
        except crypto.TokenError as exc:
            log.info("Rejected credential: %s", exc)
            raise AuthError(INVALID_AUTH, "Invalid authentication") from exc

        cached = await self._cache_get(subject)
        if cached is not None:
            return cached

        user = await self.store.find_user_by_credential_subject(subject)
        if user is None:
            log.info("Credential subject %s no longer exists", subject)
            raise AuthError(INVALID_AUTH, "User no longer exists")

        await self._cache_put(user)
        return user

    async def _cache_get(self, subject: str) -> Optional[Principal]:
        try:
            raw = await self.cache.get(user_key(subject))
        except Exception:
            log.exception("User cache read failed for %s", subject)
            return None
        if raw is None:
            return None
        try:
            return Principal.model_validate_json(raw)
        except ValidationError:
            log.warning("Discarding malformed cached user %s", subject)
            return None

    async def _cache_put(self, user: Principal) -> None:
        try:
            await self.cache.set(user_key(user.id), user.model_dump_json(), ex=self.cache_ttl_secs)
        except Exception:
            log.exception("User cache write failed for %s", user.id)


__all__ = ["CredentialGate", "AUTH_REQUIRED", "INVALID_AUTH", "CLOSE_CODE_FOR"]
