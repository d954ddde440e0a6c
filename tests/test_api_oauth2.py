# Tests for the OAuth2 HTTP endpoints: /register, /authorize, /token.
# Created: 2026-10-14

import asyncio
import base64
import hashlib
import secrets
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest
from fastapi.testclient import TestClient

from markgate.api.app import create_app
from markgate.api.deps import build_services
from markgate.config import Settings
from markgate.oauth2.storage import MemoryKeyValueStore

REDIRECT_URI = "https://app.example.com/callback"


def _make_pkce_pair():
    """Generate a PKCE code_verifier and code_challenge pair."""
    verifier = secrets.token_urlsafe(32)
    challenge = (
        base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest())
        .rstrip(b"=")
        .decode()
    )
    return verifier, challenge


def _query(url: str) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}


def _provider(request: httpx.Request) -> httpx.Response:
    if request.url.path.endswith("/access_token"):
        return httpx.Response(
            200,
            json={
                "access_token": "upstream-access",
                "refresh_token": "upstream-refresh",
                "expires_in": 1209600,
            },
        )
    if request.url.path.endswith("/user"):
        return httpx.Response(200, json={"user": {"_id": 4242}})
    return httpx.Response(404)


@pytest.fixture
def settings():
    return Settings(
        issuer="http://testserver",
        jwt_signing_key="test-signing-key-with-enough-entropy-0123456789",
        encryption_key="test-encryption-key",
        upstream_client_id="upstream-client",
        upstream_client_secret="upstream-secret",
        upstream_redirect_uri="http://testserver/auth/callback",
        cookie_secure=False,
    )


@pytest.fixture
def test_app(settings):
    services = build_services(
        settings, kv=MemoryKeyValueStore(), transport=httpx.MockTransport(_provider)
    )
    return create_app(services=services)


@pytest.fixture
def client(test_app):
    return TestClient(test_app)


def _register(client, **metadata):
    body = {"client_name": "Test MCP Client", "redirect_uris": [REDIRECT_URI]}
    body.update(metadata)
    resp = client.post("/register", json=body)
    assert resp.status_code == 201, resp.text
    return resp.json()


def _authorize_params(client_id, challenge, state="client-state-123", **extra):
    params = {
        "client_id": client_id,
        "redirect_uri": REDIRECT_URI,
        "response_type": "code",
        "state": state,
        "code_challenge": challenge,
        "code_challenge_method": "S256",
    }
    params.update(extra)
    return params


def _login(client, redirect="/"):
    resp = client.get("/auth/init", params={"redirect_uri": redirect}, follow_redirects=False)
    state = _query(resp.headers["location"])["state"]
    return client.get(
        "/auth/callback",
        params={"code": "upstream-code", "state": state},
        follow_redirects=False,
    )


def _get_code(client, client_id, challenge, state="client-state-123", scope=None):
    form = {
        "action": "approve",
        "client_id": client_id,
        "redirect_uri": REDIRECT_URI,
        "state": state,
        "code_challenge": challenge,
    }
    if scope:
        form["scope"] = scope
    resp = client.post("/authorize", data=form, follow_redirects=False)
    assert resp.status_code == 302, resp.text
    return _query(resp.headers["location"])["code"]


# ===================== End-to-end =====================


class TestAuthorizationCodeFlow:
    def test_full_flow(self, client):
        registered = _register(client)
        client_id = registered["client_id"]
        verifier, challenge = _make_pkce_pair()
        params = _authorize_params(client_id, challenge)

        # Not logged in upstream: bounced to /auth/init with a relative return path.
        resp = client.get("/authorize", params=params, follow_redirects=False)
        assert resp.status_code == 302
        login = resp.headers["location"]
        assert login.startswith("/auth/init?")
        assert _query(login)["redirect_uri"].startswith("/authorize?")

        # Upstream login.
        resp = client.get(login, follow_redirects=False)
        assert resp.status_code == 302
        upstream_state = _query(resp.headers["location"])["state"]
        resp = client.get(
            "/auth/callback",
            params={"code": "upstream-code", "state": upstream_state},
            follow_redirects=False,
        )
        assert resp.status_code == 302
        back_to = resp.headers["location"]
        assert back_to.startswith("/authorize?")

        # Consent page.
        resp = client.get(back_to)
        assert resp.status_code == 200
        assert "Test MCP Client" in resp.text
        assert 'name="code_challenge"' in resp.text

        # Approve.
        resp = client.post(
            "/authorize",
            data={
                "action": "approve",
                "client_id": client_id,
                "redirect_uri": REDIRECT_URI,
                "state": "client-state-123",
                "code_challenge": challenge,
            },
            follow_redirects=False,
        )
        assert resp.status_code == 302
        location = resp.headers["location"]
        assert location.startswith(REDIRECT_URI + "?")
        returned = _query(location)
        assert returned["state"] == "client-state-123"

        # Exchange.
        token_form = {
            "grant_type": "authorization_code",
            "code": returned["code"],
            "redirect_uri": REDIRECT_URI,
            "client_id": client_id,
            "code_verifier": verifier,
        }
        resp = client.post("/token", data=token_form)
        assert resp.status_code == 200, resp.text
        assert resp.headers["cache-control"] == "no-store"
        assert resp.headers["pragma"] == "no-cache"
        tokens = resp.json()
        assert tokens["token_type"] == "Bearer"
        assert tokens["expires_in"] == 3600
        assert tokens["scope"] == "bookmarks:read bookmarks:write"
        assert tokens["access_token"].count(".") == 2
        assert tokens["refresh_token"]

        # Replay is rejected.
        resp = client.post("/token", data=token_form)
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_grant"

        # The access token alone resolves to the upstream session.
        resp = TestClient(client.app).get(
            "/auth/status", headers={"Authorization": f"Bearer {tokens['access_token']}"}
        )
        assert resp.json()["user_id"] == "4242"

        # Refresh.
        resp = client.post(
            "/token",
            data={
                "grant_type": "refresh_token",
                "refresh_token": tokens["refresh_token"],
                "client_id": client_id,
            },
        )
        assert resp.status_code == 200
        refreshed = resp.json()
        assert refreshed["access_token"]
        assert "refresh_token" not in refreshed
        assert refreshed["scope"] == tokens["scope"]


# ===================== /register =====================


class TestRegister:
    def test_public_client(self, client):
        resp = client.post(
            "/register", json={"client_name": "A", "redirect_uris": [REDIRECT_URI]}
        )
        assert resp.status_code == 201
        assert resp.headers["cache-control"] == "no-store"
        body = resp.json()
        assert body["client_id"]
        assert body["token_endpoint_auth_method"] == "none"
        assert "client_secret" not in body
        assert body["registration_client_uri"] == f"http://testserver/register/{body['client_id']}"

    def test_confidential_client(self, client):
        body = _register(client, token_endpoint_auth_method="client_secret_post")
        assert body["client_secret"]
        assert body["client_secret_expires_at"] == 0

    def test_missing_redirect_uris(self, client):
        resp = client.post("/register", json={"client_name": "A"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_redirect_uri"

    def test_missing_name(self, client):
        resp = client.post("/register", json={"redirect_uris": [REDIRECT_URI]})
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_client_metadata"

    def test_wrong_types(self, client):
        resp = client.post("/register", json={"client_name": "A", "redirect_uris": REDIRECT_URI})
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_client_metadata"

    def test_malformed_body(self, client):
        resp = client.post(
            "/register", content=b"not json", headers={"Content-Type": "application/json"}
        )
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_client_metadata"

    def test_insecure_redirect(self, client):
        resp = client.post(
            "/register",
            json={"client_name": "A", "redirect_uris": ["http://evil.example.com/cb"]},
        )
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_redirect_uri"


# ===================== /authorize =====================


class TestAuthorize:
    def test_missing_client_id(self, client):
        _, challenge = _make_pkce_pair()
        params = _authorize_params("x", challenge)
        del params["client_id"]
        resp = client.get("/authorize", params=params, follow_redirects=False)
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_request"

    def test_unknown_client(self, client):
        _, challenge = _make_pkce_pair()
        resp = client.get(
            "/authorize", params=_authorize_params("unknown", challenge), follow_redirects=False
        )
        assert resp.status_code == 400

    def test_unregistered_redirect_never_redirects(self, client):
        client_id = _register(client)["client_id"]
        _, challenge = _make_pkce_pair()
        params = _authorize_params(client_id, challenge, redirect_uri="https://evil.example.com/cb")
        resp = client.get("/authorize", params=params, follow_redirects=False)
        assert resp.status_code == 400
        assert "location" not in resp.headers

    def test_plain_challenge_method_rejected(self, client):
        client_id = _register(client)["client_id"]
        _, challenge = _make_pkce_pair()
        params = _authorize_params(client_id, challenge, code_challenge_method="plain")
        resp = client.get("/authorize", params=params, follow_redirects=False)
        assert resp.status_code == 400

    def test_missing_state(self, client):
        client_id = _register(client)["client_id"]
        _, challenge = _make_pkce_pair()
        params = _authorize_params(client_id, challenge)
        del params["state"]
        resp = client.get("/authorize", params=params, follow_redirects=False)
        assert resp.status_code == 400

    def test_unknown_scope(self, client):
        client_id = _register(client)["client_id"]
        _, challenge = _make_pkce_pair()
        params = _authorize_params(client_id, challenge, scope="admin")
        resp = client.get("/authorize", params=params, follow_redirects=False)
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_scope"

    def test_consent_page_escapes_client_name(self, client):
        client_id = _register(client, client_name="<script>alert(1)</script>")["client_id"]
        _login(client)
        _, challenge = _make_pkce_pair()
        resp = client.get("/authorize", params=_authorize_params(client_id, challenge))
        assert resp.status_code == 200
        assert "<script>alert(1)</script>" not in resp.text
        assert "&lt;script&gt;" in resp.text

    def test_deny(self, client):
        client_id = _register(client)["client_id"]
        _, challenge = _make_pkce_pair()
        resp = client.post(
            "/authorize",
            data={
                "action": "deny",
                "client_id": client_id,
                "redirect_uri": REDIRECT_URI,
                "state": "xyz",
                "code_challenge": challenge,
            },
            follow_redirects=False,
        )
        assert resp.status_code == 302
        params = _query(resp.headers["location"])
        assert params["error"] == "access_denied"
        assert params["error_description"]
        assert params["state"] == "xyz"
        assert "code" not in params

    def test_deny_with_unregistered_redirect(self, client):
        client_id = _register(client)["client_id"]
        _, challenge = _make_pkce_pair()
        resp = client.post(
            "/authorize",
            data={
                "action": "deny",
                "client_id": client_id,
                "redirect_uri": "https://evil.example.com/cb",
                "state": "xyz",
                "code_challenge": challenge,
            },
            follow_redirects=False,
        )
        assert resp.status_code == 400

    def test_approve_requires_login(self, client):
        client_id = _register(client)["client_id"]
        _, challenge = _make_pkce_pair()
        resp = client.post(
            "/authorize",
            data={
                "action": "approve",
                "client_id": client_id,
                "redirect_uri": REDIRECT_URI,
                "state": "xyz",
                "code_challenge": challenge,
            },
            follow_redirects=False,
        )
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_request"

    def test_redirect_keeps_existing_query(self, client):
        uri = "https://app.example.com/callback?tenant=acme"
        client_id = _register(client, redirect_uris=[uri])["client_id"]
        _login(client)
        _, challenge = _make_pkce_pair()
        resp = client.post(
            "/authorize",
            data={
                "action": "approve",
                "client_id": client_id,
                "redirect_uri": uri,
                "state": "xyz",
                "code_challenge": challenge,
            },
            follow_redirects=False,
        )
        params = _query(resp.headers["location"])
        assert params["tenant"] == "acme"
        assert params["code"]


# ===================== /token =====================


class TestToken:
    def test_missing_grant_type(self, client):
        resp = client.post("/token", data={"client_id": "x"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_request"

    def test_unsupported_grant_type(self, client):
        resp = client.post("/token", data={"grant_type": "password", "client_id": "x"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "unsupported_grant_type"

    def test_missing_client_id(self, client):
        resp = client.post("/token", data={"grant_type": "authorization_code", "code": "c"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_request"

    def test_unknown_client(self, client):
        resp = client.post(
            "/token", data={"grant_type": "authorization_code", "client_id": "unknown"}
        )
        assert resp.status_code == 401
        assert resp.json()["error"] == "invalid_client"

    def test_missing_code_verifier(self, client):
        client_id = _register(client)["client_id"]
        resp = client.post(
            "/token",
            data={
                "grant_type": "authorization_code",
                "client_id": client_id,
                "code": "c",
                "redirect_uri": REDIRECT_URI,
            },
        )
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_request"

    def test_json_body(self, client):
        client_id = _register(client)["client_id"]
        _login(client)
        verifier, challenge = _make_pkce_pair()
        code = _get_code(client, client_id, challenge)
        resp = client.post(
            "/token",
            json={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": REDIRECT_URI,
                "client_id": client_id,
                "code_verifier": verifier,
            },
        )
        assert resp.status_code == 200
        assert resp.json()["access_token"]

    def test_wrong_verifier_burns_code(self, client):
        client_id = _register(client)["client_id"]
        _login(client)
        verifier, challenge = _make_pkce_pair()
        code = _get_code(client, client_id, challenge)
        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": REDIRECT_URI,
            "client_id": client_id,
            "code_verifier": verifier[:-1] + ("A" if verifier[-1] != "A" else "B"),
        }
        resp = client.post("/token", data=form)
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_grant"

        form["code_verifier"] = verifier
        resp = client.post("/token", data=form)
        assert resp.status_code == 400

    def test_code_bound_to_client(self, client):
        client_a = _register(client)["client_id"]
        client_b = _register(client)["client_id"]
        _login(client)
        verifier, challenge = _make_pkce_pair()
        code = _get_code(client, client_a, challenge)
        resp = client.post(
            "/token",
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": REDIRECT_URI,
                "client_id": client_b,
                "code_verifier": verifier,
            },
        )
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_grant"

    def test_confidential_client_needs_secret(self, client):
        registered = _register(client, token_endpoint_auth_method="client_secret_post")
        client_id = registered["client_id"]
        _login(client)
        verifier, challenge = _make_pkce_pair()
        code = _get_code(client, client_id, challenge)
        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": REDIRECT_URI,
            "client_id": client_id,
            "code_verifier": verifier,
        }
        resp = client.post("/token", data=form)
        assert resp.status_code == 401
        assert resp.json()["error"] == "invalid_client"

        form["client_secret"] = registered["client_secret"]
        resp = client.post("/token", data=form)
        assert resp.status_code == 200

    def test_refresh_token_bound_to_client(self, client):
        client_a = _register(client)["client_id"]
        client_b = _register(client)["client_id"]
        _login(client)
        verifier, challenge = _make_pkce_pair()
        code = _get_code(client, client_a, challenge)
        tokens = client.post(
            "/token",
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": REDIRECT_URI,
                "client_id": client_a,
                "code_verifier": verifier,
            },
        ).json()
        resp = client.post(
            "/token",
            data={
                "grant_type": "refresh_token",
                "refresh_token": tokens["refresh_token"],
                "client_id": client_b,
            },
        )
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_grant"

    def test_missing_signing_key(self, settings):
        keyless = settings.model_copy(update={"jwt_signing_key": None})
        services = build_services(
            keyless, kv=MemoryKeyValueStore(), transport=httpx.MockTransport(_provider)
        )
        client = TestClient(create_app(services=services))
        client_id = _register(client)["client_id"]
        _login(client)
        verifier, challenge = _make_pkce_pair()
        code = _get_code(client, client_id, challenge)
        resp = client.post(
            "/token",
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": REDIRECT_URI,
                "client_id": client_id,
                "code_verifier": verifier,
            },
        )
        assert resp.status_code == 500
        assert resp.json()["error"] == "server_error"
        assert "MARKGATE_JWT_SIGNING_KEY" in resp.json()["error_description"]
        assert asyncio.run(services.store.get_auth_code(code)) is not None
