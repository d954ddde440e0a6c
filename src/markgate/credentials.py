"""Bearer credential resolution for the tool layer.

The tool-dispatch layer hands over whatever the caller sent in
``Authorization: Bearer ...`` and gets back the upstream access token to call
the bookmark API with. Two bearer kinds are accepted:

* a signed access token minted by our token endpoint, and
* a legacy opaque upstream session id (from the ``/auth/*`` cookie flow).

:func:`parse_bearer` decides the kind exactly once and returns a tagged value;
everything downstream switches on the type, never on the string.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal, Union

import jwt

from markgate.oauth2.errors import InvalidToken, SessionNotFound, UpstreamError
from markgate.oauth2.tokens import TokenIssuer
from markgate.oauth2.models import UpstreamSession
from markgate.upstream.oauth import UpstreamOAuthBridge

__all__ = [
    "BearerCredential",
    "BearerResolver",
    "CredentialError",
    "CredentialRejected",
    "MissingCredential",
    "ResolvedCredential",
    "SessionReference",
    "SignedAccessToken",
    "parse_bearer",
]

logger = logging.getLogger(__name__)


class CredentialError(Exception):
    """Bearer credential could not be resolved."""


class MissingCredential(CredentialError):
    pass


class CredentialRejected(CredentialError):
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


@dataclass(frozen=True)
class SignedAccessToken:
    token: str
    kind: Literal["access_token"] = "access_token"


@dataclass(frozen=True)
class SessionReference:
    session_id: str
    kind: Literal["session"] = "session"


BearerCredential = Union[SignedAccessToken, SessionReference]


@dataclass(frozen=True)
class ResolvedCredential:
    """What the tool layer needs to call the upstream API."""

    upstream_token: str
    user_id: str
    scope: str
    client_id: str | None
    session_id: str
    kind: str


def parse_bearer(raw: str | None) -> BearerCredential:
    """Classify a bearer string. Accepts it with or without the ``Bearer`` prefix."""
    value = (raw or "").strip()
    scheme, _, rest = value.partition(" ")
    if scheme.lower() == "bearer":
        value = rest.strip()
    if not value:
        raise MissingCredential("No bearer credential supplied")

    if value.count(".") == 2:
        try:
            jwt.get_unverified_header(value)
        except jwt.InvalidTokenError:
            pass
        else:
            return SignedAccessToken(value)
    return SessionReference(value)


class BearerResolver:
    """Maps a bearer credential onto a fresh upstream access token."""

    def __init__(self, tokens: TokenIssuer, upstream: UpstreamOAuthBridge, default_scope: str):
        self.tokens = tokens
        self.upstream = upstream
        self.default_scope = default_scope

    async def resolve(self, raw: str | None) -> ResolvedCredential:
        credential = parse_bearer(raw)
        if isinstance(credential, SignedAccessToken):
            return await self._resolve_access_token(credential)
        return await self._resolve_session(credential)

    async def _resolve_access_token(self, credential: SignedAccessToken) -> ResolvedCredential:
        try:
            claims = self.tokens.verify_access_token(credential.token)
        except InvalidToken:
            raise CredentialRejected("invalid access token") from None

        user_id = claims.upstream_user_id or claims.sub
        session_id = await self.upstream.storage.get_session_id_for_user(user_id)
        if not session_id:
            logger.info("No upstream session for user %s", user_id)
            raise CredentialRejected("no upstream session for user")

        session = await self._fresh_session(session_id)
        return ResolvedCredential(
            upstream_token=session.access_token,
            user_id=user_id,
            scope=claims.scope,
            client_id=claims.client_id,
            session_id=session_id,
            kind=credential.kind,
        )

    async def _resolve_session(self, credential: SessionReference) -> ResolvedCredential:
        session = await self._fresh_session(credential.session_id)
        return ResolvedCredential(
            upstream_token=session.access_token,
            user_id=session.user_id,
            scope=self.default_scope,
            client_id=None,
            session_id=credential.session_id,
            kind=credential.kind,
        )

    async def _fresh_session(self, session_id: str) -> UpstreamSession:
        try:
            return await self.upstream.ensure_valid_session(session_id)
        except (SessionNotFound, UpstreamError) as exc:
            logger.info("Upstream session %s... unusable: %s", session_id[:8], exc.description)
            raise CredentialRejected(exc.error) from exc
