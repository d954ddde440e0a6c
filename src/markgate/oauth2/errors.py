# OAuth2 error taxonomy.
# Created: 2026-10-06
#
# Every error carries the RFC 6749 ``error`` code and the HTTP status it maps
# to; the API layer renders them as {"error", "error_description"} JSON.

from __future__ import annotations


class OAuthError(Exception):
    """Base class for errors surfaced to OAuth clients."""

    error = "invalid_request"
    status_code = 400
    default_description = "The request is invalid"

    def __init__(self, description: str | None = None):
        self.description = description or self.default_description
        super().__init__(self.description)

    def to_dict(self) -> dict[str, str]:
        return {"error": self.error, "error_description": self.description}


class InvalidRequest(OAuthError):
    """Malformed or missing request parameters."""


class InvalidClient(OAuthError):
    """Unknown client or failed client authentication."""

    error = "invalid_client"
    status_code = 401
    default_description = "Client authentication failed"


class InvalidGrant(OAuthError):
    """Bad, expired or mismatched authorization code or refresh token."""

    error = "invalid_grant"
    default_description = "Invalid grant"


class CodeNotFound(InvalidGrant):
    default_description = "Invalid or expired authorization code"


class CodeClientMismatch(InvalidGrant):
    default_description = "Client ID mismatch"


class CodeRedirectMismatch(InvalidGrant):
    default_description = "Redirect URI mismatch"


class CodeExpired(InvalidGrant):
    default_description = "Authorization code expired"


class PKCEVerificationFailed(InvalidGrant):
    default_description = "PKCE validation failed"


class UnsupportedGrantType(OAuthError):
    error = "unsupported_grant_type"
    default_description = "Only authorization_code and refresh_token grants are supported"


class InvalidScope(OAuthError):
    error = "invalid_scope"
    default_description = "Requested scope is not supported"


class InvalidClientMetadata(OAuthError):
    """Dynamic registration metadata was rejected."""

    error = "invalid_client_metadata"
    default_description = "Invalid client metadata"


class InvalidRedirectURI(InvalidClientMetadata):
    error = "invalid_redirect_uri"
    default_description = "Invalid redirect_uri"


class AccessDenied(OAuthError):
    """The resource owner declined consent (delivered via redirect)."""

    error = "access_denied"
    status_code = 403
    default_description = "User denied authorization"


class InvalidToken(OAuthError):
    """Access token failed verification. The cause is never disclosed."""

    error = "invalid_token"
    status_code = 401
    default_description = "Invalid access token"


class InvalidState(InvalidRequest):
    """Upstream callback state is unknown, expired or already used."""

    default_description = "Invalid or expired state parameter"


class SessionNotFound(OAuthError):
    error = "invalid_token"
    status_code = 401
    default_description = "Session not found"


class ServerError(OAuthError):
    error = "server_error"
    status_code = 500
    default_description = "Internal server error"


class SigningKeyMissing(ServerError):
    default_description = (
        "MARKGATE_JWT_SIGNING_KEY is not set. Generate one with: python -m markgate generate-key"
    )


class EncryptionKeyMissing(ServerError):
    default_description = (
        "MARKGATE_ENCRYPTION_KEY is not set. Generate one with: python -m markgate generate-key"
    )


class StorageError(ServerError):
    default_description = "Credential storage is unavailable"


class UpstreamError(ServerError):
    """Communication with the upstream provider failed."""

    default_description = "Upstream provider request failed"


class UpstreamTokenError(UpstreamError):
    default_description = "Upstream token exchange failed"


class UpstreamUserInfoError(UpstreamError):
    default_description = "Failed to fetch upstream user info"


class UpstreamRefreshFailed(UpstreamError):
    default_description = "Upstream token refresh failed"
