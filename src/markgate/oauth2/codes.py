# Authorization Code Manager — issue and redeem single-use PKCE codes.
# Created: 2026-10-07
#
# issued -> redeemed   (terminal, record deleted)
# issued -> expired    (terminal, rejected and deleted when next presented)
#
# Redemption takes the record with an atomic pop before any check runs, so
# a concurrent second attempt sees "not found" and a failed attempt burns
# the code.

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable

from markgate.oauth2.errors import (
    CodeClientMismatch,
    CodeExpired,
    CodeNotFound,
    CodeRedirectMismatch,
    PKCEVerificationFailed,
)
from markgate.oauth2.models import AuthorizationCode
from markgate.oauth2.storage import CODE_TTL, CredentialStore
from markgate.security.crypto import verify_pkce

logger = logging.getLogger(__name__)


class AuthorizationCodeManager:
    def __init__(
        self,
        storage: CredentialStore,
        ttl: int = CODE_TTL,
        clock: Callable[[], float] = time.time,
    ):
        self.storage = storage
        self.ttl = ttl
        self._clock = clock

    async def issue(
        self,
        client_id: str,
        user_id: str,
        redirect_uri: str,
        scope: str,
        code_challenge: str,
    ) -> str:
        """Store a new code for *user_id* and return it."""
        now = self._clock()
        auth_code = AuthorizationCode(
            code=str(uuid.uuid4()),
            client_id=client_id,
            user_id=user_id,
            redirect_uri=redirect_uri,
            scope=scope,
            code_challenge=code_challenge,
            expires_at=now + self.ttl,
            created_at=now,
        )
        await self.storage.save_auth_code(auth_code)
        logger.info("Issued authorization code for client %s, user %s", client_id, user_id)
        return auth_code.code

    async def redeem(
        self,
        code: str,
        client_id: str,
        code_verifier: str,
        redirect_uri: str,
    ) -> tuple[str, str]:
        """Redeem *code*. Returns ``(user_id, scope)``.

        Checks run in order and fail fast: exists, client, redirect URI,
        expiry, PKCE. Each failure is a distinct ``InvalidGrant`` subclass.
        """
        auth_code = await self.storage.take_auth_code(code)
        if auth_code is None:
            logger.warning("Authorization code not found or already used: %s...", code[:8])
            raise CodeNotFound()

        if auth_code.client_id != client_id:
            logger.warning("Authorization code client mismatch for %s", client_id)
            raise CodeClientMismatch()

        if auth_code.redirect_uri != redirect_uri:
            logger.warning("Authorization code redirect_uri mismatch for %s", client_id)
            raise CodeRedirectMismatch()

        if auth_code.is_expired(self._clock()):
            logger.info("Authorization code expired for %s", client_id)
            raise CodeExpired()

        if not verify_pkce(code_verifier, auth_code.code_challenge):
            logger.warning("PKCE verification failed for %s", client_id)
            raise PKCEVerificationFailed()

        logger.info("Redeemed authorization code for client %s", client_id)
        return auth_code.user_id, auth_code.scope
