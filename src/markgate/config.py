# Settings — environment-driven configuration for markgate.
# Created: 2026-10-06
#
# Secrets (signing key, encryption key, upstream client secret) are optional.
# A missing secret fails the first operation that needs it, not startup.

from __future__ import annotations

from functools import lru_cache
from typing import Annotated

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

RAINDROP_AUTHORIZATION_ENDPOINT = "https://raindrop.io/oauth/authorize"
RAINDROP_TOKEN_ENDPOINT = "https://raindrop.io/oauth/access_token"
RAINDROP_USER_ENDPOINT = "https://api.raindrop.io/rest/v1/user"


class Settings(BaseSettings):
    """markgate settings, read from ``MARKGATE_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="MARKGATE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Authorization server
    issuer: str = "http://localhost:8000"
    audience: str = "markgate"
    jwt_signing_key: str | None = None
    access_token_ttl: int = 3600
    refresh_token_ttl: int = 30 * 24 * 3600
    default_scope: str = "bookmarks:read bookmarks:write"
    scopes_supported: Annotated[list[str], NoDecode] = [
        "bookmarks:read",
        "bookmarks:write",
    ]

    # Storage
    encryption_key: str | None = None
    session_ttl: int = 14 * 24 * 3600
    redis_url: str | None = None
    storage_timeout: float = 5.0

    # Upstream provider
    upstream_client_id: str = ""
    upstream_client_secret: str = ""
    upstream_redirect_uri: str = "http://localhost:8000/auth/callback"
    upstream_authorization_endpoint: str = RAINDROP_AUTHORIZATION_ENDPOINT
    upstream_token_endpoint: str = RAINDROP_TOKEN_ENDPOINT
    upstream_user_endpoint: str = RAINDROP_USER_ENDPOINT
    upstream_timeout: float = 15.0
    allowed_redirect_uris: Annotated[list[str], NoDecode] = []

    # HTTP surface
    cookie_secure: bool = True
    resource_path: str = "/mcp"
    resource_documentation: str = ""
    log_level: str = "INFO"

    @field_validator("scopes_supported", "allowed_redirect_uris", mode="before")
    @classmethod
    def split_comma_list(cls, v):
        """Accept ``a,b,c`` (or space separated) strings from the environment."""
        if isinstance(v, str):
            return [item.strip() for item in v.replace(" ", ",").split(",") if item.strip()]
        return v

    @field_validator("issuer")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide settings, loaded once."""
    return Settings()
