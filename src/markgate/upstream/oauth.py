# Upstream OAuth Bridge — PKCE login against the upstream provider + refresh.
# Created: 2026-10-09
#
# markgate is an OAuth *client* of exactly one upstream provider (Raindrop.io
# by default). Upstream calls use a bounded timeout and are never retried:
# a code exchange cannot be retried anyway once the code is consumed.

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

import httpx

from markgate.config import (
    RAINDROP_AUTHORIZATION_ENDPOINT,
    RAINDROP_TOKEN_ENDPOINT,
    RAINDROP_USER_ENDPOINT,
    Settings,
)
from markgate.oauth2.errors import (
    InvalidState,
    SessionNotFound,
    UpstreamRefreshFailed,
    UpstreamTokenError,
    UpstreamUserInfoError,
)
from markgate.oauth2.models import CODE_CHALLENGE_METHOD, PKCEState, UpstreamSession
from markgate.oauth2.storage import STATE_TTL, CredentialStore
from markgate.security.crypto import generate_pkce_pair

logger = logging.getLogger(__name__)

# Refresh proactively when the upstream token has less than this left.
REFRESH_THRESHOLD = 3600
DEFAULT_EXPIRES_IN = 3600


@dataclass
class UpstreamConfig:
    """Upstream provider client registration and endpoints."""

    client_id: str
    client_secret: str
    redirect_uri: str
    authorization_endpoint: str = RAINDROP_AUTHORIZATION_ENDPOINT
    token_endpoint: str = RAINDROP_TOKEN_ENDPOINT
    user_endpoint: str = RAINDROP_USER_ENDPOINT
    timeout: float = 15.0

    @classmethod
    def from_settings(cls, settings: Settings) -> UpstreamConfig:
        return cls(
            client_id=settings.upstream_client_id,
            client_secret=settings.upstream_client_secret,
            redirect_uri=settings.upstream_redirect_uri,
            authorization_endpoint=settings.upstream_authorization_endpoint,
            token_endpoint=settings.upstream_token_endpoint,
            user_endpoint=settings.upstream_user_endpoint,
            timeout=settings.upstream_timeout,
        )


def _extract_user_id(data: dict[str, Any]) -> str:
    """Pull the user id out of an identity response (``{"user": {"_id": ...}}``)."""
    user = data.get("user", data)
    for key in ("_id", "id", "sub"):
        if isinstance(user, dict) and user.get(key) is not None:
            return str(user[key])
    raise UpstreamUserInfoError("Upstream identity response has no user id")


class UpstreamOAuthBridge:
    """Drives the upstream authorization-code + PKCE flow.

    Supports:
    - Authorization URL generation with PKCE + CSRF state
    - Callback handling (code exchange, identity lookup, session creation)
    - Transparent refresh of upstream tokens close to expiry
    """

    def __init__(
        self,
        config: UpstreamConfig,
        storage: CredentialStore,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.storage = storage
        self._transport = transport
        self._clock = clock

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.config.timeout, transport=self._transport)

    # -- login flow ------------------------------------------------------

    async def init_flow(self, post_login_redirect: str) -> tuple[str, str]:
        """Start an upstream login. Returns ``(authorization_url, state)``."""
        state = str(uuid.uuid4())
        code_verifier, code_challenge = generate_pkce_pair()
        await self.storage.save_oauth_state(
            PKCEState(
                state=state,
                code_verifier=code_verifier,
                redirect_uri=post_login_redirect,
                expires_at=self._clock() + STATE_TTL,
                created_at=self._clock(),
            )
        )

        params = {
            "client_id": self.config.client_id,
            "redirect_uri": self.config.redirect_uri,
            "response_type": "code",
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": CODE_CHALLENGE_METHOD,
        }
        logger.info("Upstream OAuth flow initiated (state=%s...)", state[:8])
        return f"{self.config.authorization_endpoint}?{urlencode(params)}", state

    async def pending_redirect(self, state: str) -> str | None:
        """Post-login redirect recorded for *state*, without consuming it."""
        pending = await self.storage.peek_oauth_state(state)
        return pending.redirect_uri if pending else None

    async def handle_callback(self, code: str, state: str) -> UpstreamSession:
        """Finish the upstream login and persist a new session.

        The stored state is consumed first; an unknown or replayed state
        raises :class:`InvalidState`.
        """
        pending = await self.storage.take_oauth_state(state)
        if pending is None or pending.expires_at < self._clock():
            logger.warning("Upstream callback with unknown or expired state")
            raise InvalidState()

        tokens = await self._exchange_code(code, pending.code_verifier)
        user_id = await self._fetch_user_id(tokens["access_token"])

        now = self._clock()
        session = UpstreamSession(
            session_id=str(uuid.uuid4()),
            user_id=user_id,
            access_token=tokens["access_token"],
            refresh_token=tokens.get("refresh_token"),
            expires_at=now + tokens["expires_in"],
            created_at=now,
            last_used_at=now,
        )
        await self.storage.save_session(session)
        logger.info("Upstream login completed for user %s", user_id)
        return session

    # -- token upkeep ----------------------------------------------------

    async def ensure_valid_token(self, session_id: str) -> str:
        """Upstream access token for *session_id*, refreshed if it expires within an hour."""
        session = await self.ensure_valid_session(session_id)
        return session.access_token

    async def ensure_valid_session(self, session_id: str) -> UpstreamSession:
        session = await self.storage.get_session(session_id)
        if session is None:
            raise SessionNotFound()

        if session.expires_at - self._clock() < REFRESH_THRESHOLD:
            return await self.refresh_session(session)

        return session

    async def refresh_session(self, session: UpstreamSession) -> UpstreamSession:
        """Refresh *session* against the token endpoint and store the result."""
        if not session.refresh_token:
            logger.warning("Session for user %s has no upstream refresh token", session.user_id)
            raise UpstreamRefreshFailed("No upstream refresh token available")

        try:
            data = await self._token_request(
                {
                    "grant_type": "refresh_token",
                    "refresh_token": session.refresh_token,
                    "client_id": self.config.client_id,
                    "client_secret": self.config.client_secret,
                }
            )
        except (httpx.HTTPError, ValueError, KeyError) as exc:
            logger.warning("Upstream token refresh failed for user %s: %s", session.user_id, exc)
            raise UpstreamRefreshFailed() from exc

        now = self._clock()
        updated = UpstreamSession(
            session_id=session.session_id,
            user_id=session.user_id,
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or session.refresh_token,
            expires_at=now + data["expires_in"],
            created_at=session.created_at,
            last_used_at=now,
        )
        await self.storage.save_session(updated)
        logger.info("Refreshed upstream token for user %s", session.user_id)
        return updated

    async def logout(self, session_id: str) -> bool:
        return await self.storage.delete_session(session_id)

    # -- HTTP ------------------------------------------------------------

    async def _token_request(self, form: dict[str, str]) -> dict[str, Any]:
        async with self._client() as client:
            resp = await client.post(
                self.config.token_endpoint,
                data=form,
                headers={"Accept": "application/json"},
            )
            if resp.status_code != 200:
                logger.error(
                    "Upstream token endpoint returned %s: %s", resp.status_code, resp.text[:200]
                )
            resp.raise_for_status()
            data = resp.json()
        if not isinstance(data, dict) or not data.get("access_token"):
            raise ValueError("Token response did not include access_token")
        try:
            data["expires_in"] = int(data.get("expires_in") or DEFAULT_EXPIRES_IN)
        except (TypeError, ValueError):
            raise ValueError(
                f"Token response has invalid expires_in: {data['expires_in']!r}"
            ) from None
        return data

    async def _exchange_code(self, code: str, code_verifier: str) -> dict[str, Any]:
        try:
            return await self._token_request(
                {
                    "grant_type": "authorization_code",
                    "code": code,
                    "client_id": self.config.client_id,
                    "client_secret": self.config.client_secret,
                    "redirect_uri": self.config.redirect_uri,
                    "code_verifier": code_verifier,
                }
            )
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Upstream token exchange failed: %s", exc)
            raise UpstreamTokenError() from exc

    async def _fetch_user_id(self, access_token: str) -> str:
        try:
            async with self._client() as client:
                resp = await client.get(
                    self.config.user_endpoint,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Failed to get upstream user info: %s", exc)
            raise UpstreamUserInfoError() from exc
        if not isinstance(data, dict):
            raise UpstreamUserInfoError("Unexpected upstream identity response")
        return _extract_user_id(data)
