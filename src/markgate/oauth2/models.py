# OAuth2 data models.
# Created: 2026-10-06
#
# Records are plain dataclasses, stored as JSON dicts. Timestamps are Unix
# epoch seconds.

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field, fields
from typing import Any

CODE_CHALLENGE_METHOD = "S256"
AUTH_METHOD_NONE = "none"
AUTH_METHOD_CLIENT_SECRET_POST = "client_secret_post"
SUPPORTED_AUTH_METHODS = (AUTH_METHOD_NONE, AUTH_METHOD_CLIENT_SECRET_POST)
SUPPORTED_GRANT_TYPES = ("authorization_code", "refresh_token")


class _Record:
    """JSON (de)serialization shared by all stored records."""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)  # type: ignore[call-overload]

    @classmethod
    def from_dict(cls, data: dict[str, Any]):
        known = {f.name for f in fields(cls)}  # type: ignore[arg-type]
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class OAuthClient(_Record):
    """Registered downstream OAuth client."""

    client_id: str
    client_name: str
    redirect_uris: list[str] = field(default_factory=list)
    grant_types: list[str] = field(default_factory=lambda: list(SUPPORTED_GRANT_TYPES))
    token_endpoint_auth_method: str = AUTH_METHOD_NONE
    scope: str = ""
    client_secret_hash: str | None = None
    registration_access_token: str = ""
    created_at: float = field(default_factory=time.time)

    @property
    def is_public(self) -> bool:
        return self.client_secret_hash is None


@dataclass
class ClientRegistrationResult:
    """Outcome of dynamic registration. ``client_secret`` is shown once."""

    client: OAuthClient
    client_secret: str | None
    registration_client_uri: str

    def to_response(self) -> dict[str, Any]:
        c = self.client
        body: dict[str, Any] = {
            "client_id": c.client_id,
            "client_name": c.client_name,
            "redirect_uris": c.redirect_uris,
            "grant_types": c.grant_types,
            "token_endpoint_auth_method": c.token_endpoint_auth_method,
            "scope": c.scope,
            "client_id_issued_at": int(c.created_at),
            "registration_access_token": c.registration_access_token,
            "registration_client_uri": self.registration_client_uri,
        }
        if self.client_secret is not None:
            body["client_secret"] = self.client_secret
            body["client_secret_expires_at"] = 0
        return body


@dataclass
class AuthorizationCode(_Record):
    """Single-use authorization code bound to a PKCE challenge."""

    code: str
    client_id: str
    user_id: str
    redirect_uri: str
    scope: str
    code_challenge: str
    expires_at: float
    code_challenge_method: str = CODE_CHALLENGE_METHOD
    created_at: float = field(default_factory=time.time)

    def is_expired(self, now: float | None = None) -> bool:
        return (now if now is not None else time.time()) > self.expires_at


@dataclass
class RefreshToken(_Record):
    """Opaque refresh token; bound to the client that received it."""

    token: str
    client_id: str
    user_id: str
    scope: str
    expires_at: float
    created_at: float = field(default_factory=time.time)

    def is_expired(self, now: float | None = None) -> bool:
        return (now if now is not None else time.time()) > self.expires_at


@dataclass(frozen=True)
class AccessTokenClaims:
    """Verified claims of a signed access token."""

    iss: str
    sub: str
    aud: str
    exp: int
    iat: int
    client_id: str
    scope: str
    upstream_user_id: str

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> AccessTokenClaims:
        aud = payload["aud"]
        if isinstance(aud, list):
            aud = aud[0]
        return cls(
            iss=payload["iss"],
            sub=str(payload["sub"]),
            aud=aud,
            exp=int(payload["exp"]),
            iat=int(payload["iat"]),
            client_id=payload["client_id"],
            scope=payload["scope"],
            upstream_user_id=str(payload.get("upstream_user_id", payload["sub"])),
        )


@dataclass
class UpstreamSession(_Record):
    """Authenticated upstream session.

    ``access_token``/``refresh_token`` hold plaintext in memory only; the
    credential store encrypts them before they are persisted.
    """

    session_id: str
    user_id: str
    access_token: str
    refresh_token: str | None
    expires_at: float
    created_at: float = field(default_factory=time.time)
    last_used_at: float = field(default_factory=time.time)


@dataclass
class PKCEState(_Record):
    """CSRF state + PKCE verifier for an in-flight upstream login."""

    state: str
    code_verifier: str
    redirect_uri: str
    expires_at: float
    created_at: float = field(default_factory=time.time)


@dataclass
class TokenResponse:
    """RFC 6749 token endpoint response."""

    access_token: str
    expires_in: int
    scope: str
    refresh_token: str | None = None
    token_type: str = "Bearer"

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
            "scope": self.scope,
        }
        if self.refresh_token:
            body["refresh_token"] = self.refresh_token
        return body


@dataclass(frozen=True)
class AuthorizationRequest:
    """Validated /authorize parameters."""

    client: OAuthClient
    redirect_uri: str
    state: str
    code_challenge: str
    scope: str
