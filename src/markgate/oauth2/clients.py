# Client Registry — dynamic client registration (RFC 7591) and client auth.
# Created: 2026-10-07

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from functools import lru_cache
from typing import Any
from urllib.parse import urlsplit

from markgate.oauth2.errors import InvalidClient, InvalidClientMetadata, InvalidRedirectURI
from markgate.oauth2.models import (
    AUTH_METHOD_NONE,
    SUPPORTED_AUTH_METHODS,
    SUPPORTED_GRANT_TYPES,
    ClientRegistrationResult,
    OAuthClient,
)
from markgate.oauth2.storage import CredentialStore
from markgate.security.crypto import generate_token, hash_secret, verify_secret

logger = logging.getLogger(__name__)

LOOPBACK_HOSTS = frozenset({"localhost", "127.0.0.1", "::1"})


@lru_cache(maxsize=1)
def _dummy_hash() -> str:
    """Hash checked when the client is unknown, so timing does not reveal it."""
    return hash_secret("markgate-dummy-secret")


def _verify_against_dummy(secret: str) -> bool:
    return verify_secret(secret, _dummy_hash())


def validate_redirect_uri(uri: str) -> None:
    """Absolute HTTPS URL, or plain HTTP on a loopback host."""
    if not isinstance(uri, str) or not uri:
        raise InvalidRedirectURI(f"Invalid URI format: {uri!r}")
    try:
        parts = urlsplit(uri)
        host = parts.hostname
    except ValueError:
        raise InvalidRedirectURI(f"Invalid URI format: {uri}") from None
    if not parts.scheme or not host:
        raise InvalidRedirectURI(f"Redirect URI must be absolute: {uri}")
    if parts.fragment:
        raise InvalidRedirectURI(f"Redirect URI must not contain a fragment: {uri}")
    if parts.scheme == "https":
        return
    if parts.scheme == "http" and host in LOOPBACK_HOSTS:
        return
    raise InvalidRedirectURI(f"Redirect URI must use HTTPS (except localhost): {uri}")


class ClientRegistry:
    """Registers downstream clients and authenticates them at /token."""

    def __init__(self, storage: CredentialStore, issuer: str, default_scope: str):
        self.storage = storage
        self.issuer = issuer
        self.default_scope = default_scope

    async def register(self, metadata: dict[str, Any]) -> ClientRegistrationResult:
        """Validate *metadata* and persist a new client.

        Confidential clients (``token_endpoint_auth_method != "none"``) get a
        secret that appears only in the returned result; the store keeps its
        bcrypt hash.
        """
        client_name = metadata.get("client_name")
        if not client_name or not isinstance(client_name, str):
            raise InvalidClientMetadata("Missing client_name")

        redirect_uris = metadata.get("redirect_uris")
        if not redirect_uris or not isinstance(redirect_uris, list):
            raise InvalidRedirectURI("At least one redirect_uri is required")
        for uri in redirect_uris:
            validate_redirect_uri(uri)

        auth_method = metadata.get("token_endpoint_auth_method") or AUTH_METHOD_NONE
        if auth_method not in SUPPORTED_AUTH_METHODS:
            raise InvalidClientMetadata(
                f"Unsupported token_endpoint_auth_method: {auth_method}"
            )

        grant_types = metadata.get("grant_types") or list(SUPPORTED_GRANT_TYPES)
        unsupported = [g for g in grant_types if g not in SUPPORTED_GRANT_TYPES]
        if unsupported:
            raise InvalidClientMetadata(f"Unsupported grant_types: {', '.join(unsupported)}")

        client_secret = None
        secret_hash = None
        if auth_method != AUTH_METHOD_NONE:
            client_secret = generate_token(32)
            secret_hash = await asyncio.to_thread(hash_secret, client_secret)

        client = OAuthClient(
            client_id=str(uuid.uuid4()),
            client_name=client_name,
            redirect_uris=list(redirect_uris),
            grant_types=list(grant_types),
            token_endpoint_auth_method=auth_method,
            scope=metadata.get("scope") or self.default_scope,
            client_secret_hash=secret_hash,
            registration_access_token=generate_token(32),
            created_at=time.time(),
        )
        await self.storage.save_client(client)
        logger.info(
            "Registered %s client %s (%s)",
            "public" if client.is_public else "confidential",
            client.client_id,
            client_name,
        )
        return ClientRegistrationResult(
            client=client,
            client_secret=client_secret,
            registration_client_uri=f"{self.issuer}/register/{client.client_id}",
        )

    async def get(self, client_id: str) -> OAuthClient | None:
        return await self.storage.get_client(client_id)

    async def validate(self, client_id: str, client_secret: str | None = None) -> bool:
        """True if the client exists and its credentials check out.

        Unknown client and wrong secret are indistinguishable to the caller.
        """
        client = await self.storage.get_client(client_id) if client_id else None
        if client is None:
            await asyncio.to_thread(_verify_against_dummy, client_secret or "")
            return False
        if client.is_public:
            return True
        if not client_secret:
            return False
        return await asyncio.to_thread(
            verify_secret, client_secret, client.client_secret_hash or ""
        )

    async def authenticate(self, client_id: str, client_secret: str | None = None) -> OAuthClient:
        if not await self.validate(client_id, client_secret):
            logger.warning("Client authentication failed for %s", client_id)
            raise InvalidClient()
        client = await self.storage.get_client(client_id)
        if client is None:
            raise InvalidClient()
        return client
