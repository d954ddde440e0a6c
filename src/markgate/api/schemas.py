# API request/response schemas.
# Created: 2026-10-10
#
# Request models are permissive (everything optional) so that missing or bad
# fields surface as RFC 6749 errors from the handlers rather than as 422s.

from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class TokenRequest(BaseModel):
    """Token exchange or refresh request (form or JSON body)."""

    model_config = ConfigDict(extra="ignore")

    grant_type: str | None = None
    code: str | None = None
    code_verifier: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    redirect_uri: str | None = None
    refresh_token: str | None = None


class RegistrationRequest(BaseModel):
    """RFC 7591 client metadata."""

    model_config = ConfigDict(extra="ignore")

    client_name: str | None = None
    redirect_uris: list[str] | None = None
    grant_types: list[str] | None = None
    token_endpoint_auth_method: str | None = None
    scope: str | None = None


class ConsentForm(BaseModel):
    """Fields posted back by the consent page."""

    action: str = "deny"
    client_id: str | None = None
    redirect_uri: str | None = None
    state: str | None = None
    code_challenge: str | None = None
    scope: str | None = None


class AuthStatus(BaseModel):
    authenticated: bool
    has_valid_token: bool = False
    user_id: str | None = None


class RefreshResult(BaseModel):
    success: bool = True
    has_valid_token: bool = True
    expires_in: int


class LogoutResult(BaseModel):
    success: bool = True


class HealthResponse(BaseModel):
    status: str = "ok"
    service: str = "markgate"
    version: str
    timestamp: str
