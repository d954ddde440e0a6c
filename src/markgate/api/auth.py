# Upstream login routes — /auth/init, /auth/callback, /auth/status, /auth/logout, /auth/refresh.
# Created: 2026-10-11
#
# The browser half of the upstream OAuth flow. /auth/init records a PKCE state
# and bounces the user to the provider; /auth/callback finishes the exchange,
# drops a session cookie and returns the user to where they started
# (typically the /authorize consent page).

from __future__ import annotations

import logging
import time
from urllib.parse import urlsplit

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse

from markgate.api.deps import (
    SESSION_COOKIE,
    STATE_COOKIE,
    Services,
    get_services,
    session_id_from,
)
from markgate.api.schemas import AuthStatus, LogoutResult, RefreshResult
from markgate.credentials import CredentialError
from markgate.oauth2.errors import (
    InvalidRedirectURI,
    InvalidRequest,
    InvalidState,
    SessionNotFound,
    UpstreamRefreshFailed,
)
from markgate.oauth2.storage import STATE_TTL

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Auth"])


def validate_post_login_redirect(uri: str, allowed: list[str]) -> None:
    """Accept a same-site relative path, or an absolute URL whose origin and
    path match an allowlist entry exactly. Anything else raises
    :class:`InvalidRedirectURI`.
    """
    if uri.startswith("/") and not uri.startswith("//") and "\\" not in uri:
        return
    if not allowed:
        raise InvalidRedirectURI(
            "No allowed redirect URIs configured. Set MARKGATE_ALLOWED_REDIRECT_URIS."
        )
    try:
        target = urlsplit(uri)
    except ValueError:
        raise InvalidRedirectURI("Redirect URI must be a valid URL or relative path") from None
    if not target.scheme or not target.netloc:
        raise InvalidRedirectURI("Redirect URI must be a valid URL or relative path")

    for entry in allowed:
        try:
            candidate = urlsplit(entry)
        except ValueError:
            continue
        if (
            target.scheme == candidate.scheme
            and target.netloc == candidate.netloc
            and (target.path or "/") == (candidate.path or "/")
        ):
            return
    raise InvalidRedirectURI("Redirect URI not in allowlist")


@router.get("/init")
async def auth_init(
    redirect_uri: str | None = Query(None),
    services: Services = Depends(get_services),
):
    """Start the upstream login and redirect to the provider."""
    if not redirect_uri:
        raise InvalidRequest("redirect_uri parameter is required")
    validate_post_login_redirect(redirect_uri, services.settings.allowed_redirect_uris)

    auth_url, state = await services.upstream.init_flow(redirect_uri)

    response = RedirectResponse(auth_url, status_code=302)
    response.set_cookie(
        STATE_COOKIE,
        state,
        max_age=STATE_TTL,
        path="/",
        httponly=True,
        secure=services.settings.cookie_secure,
        samesite="lax",
    )
    return response


@router.get("/callback")
async def auth_callback(
    request: Request,
    code: str | None = Query(None),
    state: str | None = Query(None),
    error: str | None = Query(None),
    services: Services = Depends(get_services),
):
    """Finish the upstream login, set the session cookie, redirect onwards."""
    if error:
        logger.warning("Upstream provider returned error: %s", error)
        raise InvalidRequest(f"Upstream authorization failed: {error}")
    if not code or not state:
        raise InvalidRequest("code and state parameters are required")

    if request.cookies.get(STATE_COOKIE) != state:
        logger.warning("Upstream callback state does not match cookie")
        raise InvalidState("State parameter mismatch")

    redirect_to = await services.upstream.pending_redirect(state) or "/"
    session = await services.upstream.handle_callback(code, state)

    response = RedirectResponse(redirect_to, status_code=302)
    response.set_cookie(
        SESSION_COOKIE,
        session.session_id,
        max_age=services.settings.session_ttl,
        path="/",
        httponly=True,
        secure=services.settings.cookie_secure,
        samesite="lax",
    )
    response.delete_cookie(STATE_COOKIE, path="/")
    return response


@router.get("/status", response_model=AuthStatus)
async def auth_status(request: Request, services: Services = Depends(get_services)):
    """Whether the caller holds a usable upstream session."""
    credential = session_id_from(request)
    if not credential:
        return AuthStatus(authenticated=False)
    try:
        resolved = await services.resolver.resolve(credential)
    except CredentialError:
        return AuthStatus(authenticated=False)
    return AuthStatus(authenticated=True, has_valid_token=True, user_id=resolved.user_id)


@router.post("/logout", response_model=LogoutResult)
async def auth_logout(request: Request, services: Services = Depends(get_services)):
    session_id = request.cookies.get(SESSION_COOKIE)
    if session_id:
        await services.upstream.logout(session_id)
        logger.info("Session %s... logged out", session_id[:8])

    response = JSONResponse(LogoutResult().model_dump())
    response.delete_cookie(SESSION_COOKIE, path="/")
    return response


@router.post("/refresh", response_model=RefreshResult)
async def auth_refresh(request: Request, services: Services = Depends(get_services)):
    """Refresh the upstream token now, regardless of remaining lifetime."""
    session_id = session_id_from(request)
    if not session_id:
        raise SessionNotFound("No session found")

    session = await services.store.get_session(session_id)
    if session is None:
        raise SessionNotFound()

    try:
        refreshed = await services.upstream.refresh_session(session)
    except UpstreamRefreshFailed as exc:
        raise SessionNotFound("Token refresh failed") from exc

    return RefreshResult(expires_in=max(0, int(refreshed.expires_at - time.time())))
