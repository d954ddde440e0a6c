# OAuth2 Authorization Server with PKCE support.
# Created: 2026-10-08
#
# Ties the client registry, code manager and token issuer together for the
# HTTP layer: /authorize parameter validation, the two /token grants, and
# the RFC 8414 / RFC 9728 metadata documents.

from __future__ import annotations

import logging
from typing import Any

from markgate.oauth2.clients import ClientRegistry
from markgate.oauth2.codes import AuthorizationCodeManager
from markgate.oauth2.errors import InvalidRequest, InvalidScope
from markgate.oauth2.models import (
    CODE_CHALLENGE_METHOD,
    SUPPORTED_AUTH_METHODS,
    SUPPORTED_GRANT_TYPES,
    AuthorizationRequest,
    TokenResponse,
)
from markgate.oauth2.tokens import TokenIssuer

logger = logging.getLogger(__name__)


class AuthorizationServer:
    """OAuth2 authorization server with PKCE."""

    def __init__(
        self,
        clients: ClientRegistry,
        codes: AuthorizationCodeManager,
        tokens: TokenIssuer,
        scopes_supported: list[str],
        default_scope: str,
    ):
        self.clients = clients
        self.codes = codes
        self.tokens = tokens
        self.scopes_supported = list(scopes_supported)
        self.default_scope = default_scope

    @property
    def issuer(self) -> str:
        return self.tokens.issuer

    async def authorize_request(
        self,
        client_id: str | None,
        redirect_uri: str | None,
        response_type: str | None,
        state: str | None,
        code_challenge: str | None,
        code_challenge_method: str | None,
        scope: str | None = None,
    ) -> AuthorizationRequest:
        """Validate /authorize parameters against the registered client."""
        if not client_id:
            raise InvalidRequest("Missing client_id parameter")
        if not redirect_uri:
            raise InvalidRequest("Missing redirect_uri parameter")
        if response_type != "code":
            raise InvalidRequest('Invalid response_type. Only "code" is supported.')
        if not state:
            raise InvalidRequest("Missing state parameter (CSRF protection)")
        if not code_challenge:
            raise InvalidRequest("Missing code_challenge parameter (PKCE required)")
        if code_challenge_method != CODE_CHALLENGE_METHOD:
            raise InvalidRequest('Invalid code_challenge_method. Only "S256" is supported.')

        client = await self.clients.get(client_id)
        if client is None:
            raise InvalidRequest("Invalid client_id")
        if redirect_uri not in client.redirect_uris:
            raise InvalidRequest("Invalid redirect_uri for this client")

        scope = self.normalize_scope(scope)
        return AuthorizationRequest(
            client=client,
            redirect_uri=redirect_uri,
            state=state,
            code_challenge=code_challenge,
            scope=scope,
        )

    def normalize_scope(self, scope: str | None) -> str:
        """Apply the default scope and reject unknown scope values."""
        requested = (scope or "").split()
        if not requested:
            return self.default_scope
        unknown = [s for s in requested if s not in self.scopes_supported]
        if unknown:
            raise InvalidScope(f"Unsupported scope: {' '.join(unknown)}")
        return " ".join(requested)

    async def exchange_authorization_code(
        self,
        code: str,
        client_id: str,
        code_verifier: str,
        redirect_uri: str,
    ) -> TokenResponse:
        """Redeem a code for an access + refresh token pair."""
        self.tokens.ensure_ready()
        user_id, scope = await self.codes.redeem(code, client_id, code_verifier, redirect_uri)
        access_token = self.tokens.issue_access_token(user_id, client_id, scope)
        refresh_token = await self.tokens.issue_refresh_token(user_id, client_id, scope)
        return TokenResponse(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.tokens.access_ttl,
            scope=scope,
        )

    async def exchange_refresh_token(self, refresh_token: str, client_id: str) -> TokenResponse:
        """New access token; the client keeps using the same refresh token."""
        access_token, record = await self.tokens.refresh(refresh_token, client_id)
        return TokenResponse(
            access_token=access_token,
            expires_in=self.tokens.access_ttl,
            scope=record.scope,
        )

    def server_metadata(self) -> dict[str, Any]:
        """RFC 8414 authorization server metadata."""
        base = self.issuer
        return {
            "issuer": base,
            "authorization_endpoint": f"{base}/authorize",
            "token_endpoint": f"{base}/token",
            "registration_endpoint": f"{base}/register",
            "scopes_supported": self.scopes_supported,
            "response_types_supported": ["code"],
            "grant_types_supported": list(SUPPORTED_GRANT_TYPES),
            "token_endpoint_auth_methods_supported": list(SUPPORTED_AUTH_METHODS),
            "code_challenge_methods_supported": [CODE_CHALLENGE_METHOD],
            "token_endpoint_auth_signing_alg_values_supported": ["HS256"],
            "ui_locales_supported": ["en"],
            "require_request_uri_registration": False,
        }

    def resource_metadata(self, resource_url: str, documentation: str = "") -> dict[str, Any]:
        """RFC 9728 protected resource metadata."""
        doc: dict[str, Any] = {
            "resource": resource_url,
            "authorization_servers": [self.issuer],
            "scopes_supported": self.scopes_supported,
            "bearer_methods_supported": ["header"],
        }
        if documentation:
            doc["resource_documentation"] = documentation
        return doc
