# Service wiring and FastAPI dependencies.
# Created: 2026-10-10
#
# Every service is built once per application by build_services() and kept on
# app.state.services. Route handlers reach it through get_services().

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx
from fastapi import Depends, HTTPException, Request

from markgate.config import Settings
from markgate.credentials import BearerResolver, CredentialError, ResolvedCredential
from markgate.oauth2.clients import ClientRegistry
from markgate.oauth2.codes import AuthorizationCodeManager
from markgate.oauth2.server import AuthorizationServer
from markgate.oauth2.storage import CredentialStore, KeyValueStore, create_key_value_store
from markgate.oauth2.tokens import TokenIssuer
from markgate.upstream.oauth import UpstreamConfig, UpstreamOAuthBridge

logger = logging.getLogger(__name__)

SESSION_COOKIE = "markgate_session"
STATE_COOKIE = "oauth_state"


@dataclass
class Services:
    settings: Settings
    store: CredentialStore
    clients: ClientRegistry
    codes: AuthorizationCodeManager
    tokens: TokenIssuer
    server: AuthorizationServer
    upstream: UpstreamOAuthBridge
    resolver: BearerResolver

    async def close(self) -> None:
        await self.store.kv.close()


def build_services(
    settings: Settings,
    kv: KeyValueStore | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> Services:
    """Construct the service graph from *settings*.

    *kv* and *transport* replace the storage backend and the upstream HTTP
    transport (tests pass an in-memory store and an ``httpx.MockTransport``).
    """
    if kv is None:
        kv = create_key_value_store(settings.redis_url, timeout=settings.storage_timeout)

    store = CredentialStore(kv, settings.encryption_key, session_ttl=settings.session_ttl)
    clients = ClientRegistry(store, settings.issuer, settings.default_scope)
    codes = AuthorizationCodeManager(store)
    tokens = TokenIssuer(
        store,
        settings.jwt_signing_key,
        issuer=settings.issuer,
        audience=settings.audience,
        access_ttl=settings.access_token_ttl,
        refresh_ttl=settings.refresh_token_ttl,
    )
    server = AuthorizationServer(
        clients,
        codes,
        tokens,
        scopes_supported=settings.scopes_supported,
        default_scope=settings.default_scope,
    )
    upstream = UpstreamOAuthBridge(UpstreamConfig.from_settings(settings), store, transport)
    resolver = BearerResolver(tokens, upstream, settings.default_scope)

    if not settings.jwt_signing_key:
        logger.warning("MARKGATE_JWT_SIGNING_KEY not set; /token will fail until it is")
    if not settings.encryption_key:
        logger.warning("MARKGATE_ENCRYPTION_KEY not set; upstream login will fail until it is")

    return Services(
        settings=settings,
        store=store,
        clients=clients,
        codes=codes,
        tokens=tokens,
        server=server,
        upstream=upstream,
        resolver=resolver,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def session_id_from(request: Request) -> str | None:
    """Upstream session id from the session cookie or an ``Authorization`` header."""
    session_id = request.cookies.get(SESSION_COOKIE)
    if session_id:
        return session_id
    auth = request.headers.get("authorization", "")
    if auth[:7].lower() == "bearer ":
        return auth[7:].strip() or None
    return None


def bearer_challenge(settings: Settings) -> dict[str, str]:
    """``WWW-Authenticate`` header pointing at the protected resource metadata."""
    metadata_url = f"{settings.issuer}/.well-known/oauth-protected-resource"
    return {"WWW-Authenticate": f'Bearer resource_metadata="{metadata_url}"'}


async def require_bearer(
    request: Request,
    services: Services = Depends(get_services),
) -> ResolvedCredential:
    """Resolve the request's bearer credential or answer 401."""
    try:
        return await services.resolver.resolve(request.headers.get("authorization"))
    except CredentialError as exc:
        logger.info("Bearer credential refused: %s", exc)
        raise HTTPException(
            status_code=401,
            detail="Authentication required",
            headers=bearer_challenge(services.settings),
        ) from None
