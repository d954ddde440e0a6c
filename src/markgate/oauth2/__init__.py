# OAuth2 authorization server (PKCE, dynamic registration, JWT access tokens).
# Created: 2026-10-06
