# Token Issuer — signed access tokens (JWT, HS256) and opaque refresh tokens.
# Created: 2026-10-08

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable

import jwt

from markgate.oauth2.errors import InvalidGrant, InvalidToken, SigningKeyMissing
from markgate.oauth2.models import AccessTokenClaims, RefreshToken
from markgate.oauth2.storage import CredentialStore

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
ACCESS_TOKEN_TTL = 3600
REFRESH_TOKEN_TTL = 30 * 24 * 3600
_REQUIRED_CLAIMS = ["iss", "sub", "aud", "exp", "iat", "client_id", "scope"]


class TokenIssuer:
    """Mints and verifies access tokens; issues and redeems refresh tokens.

    The signing key is optional at construction. Issuing or verifying without
    one raises :class:`SigningKeyMissing`.
    """

    def __init__(
        self,
        storage: CredentialStore,
        signing_key: str | None,
        issuer: str,
        audience: str,
        access_ttl: int = ACCESS_TOKEN_TTL,
        refresh_ttl: int = REFRESH_TOKEN_TTL,
        clock: Callable[[], float] = time.time,
    ):
        self.storage = storage
        self._signing_key = signing_key
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self._clock = clock

    def _key(self) -> str:
        if not self._signing_key:
            logger.error("Access token requested but no signing key is configured")
            raise SigningKeyMissing()
        return self._signing_key

    def ensure_ready(self) -> None:
        """Raise :class:`SigningKeyMissing` unless tokens can be signed."""
        self._key()

    # -- access tokens ---------------------------------------------------

    def issue_access_token(self, user_id: str, client_id: str, scope: str) -> str:
        key = self._key()
        now = int(self._clock())
        payload = {
            "iss": self.issuer,
            "sub": user_id,
            "aud": self.audience,
            "exp": now + self.access_ttl,
            "iat": now,
            "client_id": client_id,
            "scope": scope,
            "upstream_user_id": user_id,
        }
        return jwt.encode(payload, key, algorithm=ALGORITHM)

    def verify_access_token(self, token: str) -> AccessTokenClaims:
        """Verify signature, issuer, audience and expiry.

        Any failure raises the same :class:`InvalidToken`.
        """
        key = self._key()
        try:
            payload = jwt.decode(
                token,
                key,
                algorithms=[ALGORITHM],
                audience=self.audience,
                issuer=self.issuer,
                options={"require": _REQUIRED_CLAIMS},
            )
            return AccessTokenClaims.from_payload(payload)
        except (jwt.InvalidTokenError, KeyError, TypeError, ValueError) as exc:
            logger.debug("Access token rejected: %s", exc)
            raise InvalidToken() from None

    # -- refresh tokens --------------------------------------------------

    async def issue_refresh_token(self, user_id: str, client_id: str, scope: str) -> str:
        now = self._clock()
        record = RefreshToken(
            token=str(uuid.uuid4()),
            client_id=client_id,
            user_id=user_id,
            scope=scope,
            expires_at=now + self.refresh_ttl,
            created_at=now,
        )
        await self.storage.save_refresh_token(record, ttl=self.refresh_ttl)
        return record.token

    async def refresh(self, refresh_token: str, client_id: str) -> tuple[str, RefreshToken]:
        """Mint a new access token from *refresh_token*.

        The refresh token itself is neither deleted nor rotated.
        """
        record = await self.storage.get_refresh_token(refresh_token)
        if record is None:
            raise InvalidGrant("Invalid or expired refresh token")

        if record.client_id != client_id:
            logger.warning("Refresh token presented by wrong client %s", client_id)
            raise InvalidGrant("Client ID mismatch")

        if record.is_expired(self._clock()):
            await self.storage.delete_refresh_token(refresh_token)
            raise InvalidGrant("Refresh token expired")

        access_token = self.issue_access_token(record.user_id, client_id, record.scope)
        logger.info("Refreshed access token for client %s, user %s", client_id, record.user_id)
        return access_token, record
