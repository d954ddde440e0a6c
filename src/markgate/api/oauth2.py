# OAuth2 router — register, authorize (consent), token.
# Created: 2026-10-10

from __future__ import annotations

import html
import logging
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from fastapi import APIRouter, Depends, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from pydantic import ValidationError

from markgate.api.deps import SESSION_COOKIE, Services, get_services
from markgate.api.schemas import ConsentForm, RegistrationRequest, TokenRequest
from markgate.oauth2.errors import (
    AccessDenied,
    InvalidClientMetadata,
    InvalidRequest,
    UnsupportedGrantType,
)
from markgate.oauth2.models import CODE_CHALLENGE_METHOD, SUPPORTED_GRANT_TYPES

logger = logging.getLogger(__name__)

router = APIRouter(tags=["OAuth2"])

NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}

_SCOPE_DESCRIPTIONS = {
    "bookmarks:read": "Read your bookmarks and collections",
    "bookmarks:write": "Create and modify bookmarks",
}

_CONSENT_HTML = """<!DOCTYPE html>
<html lang="en"><head><meta charset="utf-8"><title>Authorize {client_name}</title>
<style>
body {{ font-family: system-ui; max-width: 480px; margin: 40px auto; padding: 20px; }}
.btn {{ padding: 10px 24px; border: none; border-radius: 6px; cursor: pointer; font-size: 16px; }}
.allow {{ background: #2563eb; color: white; }} .allow:hover {{ background: #1d4ed8; }}
.deny {{ background: #e5e7eb; color: #374151; margin-left: 12px; }}
h2 {{ margin-bottom: 8px; }}
.scopes {{ background: #f3f4f6; padding: 12px; border-radius: 8px; margin: 16px 0; }}
.scope {{ display: block; padding: 4px 0; font-size: 14px; }}
</style></head><body>
<h2>Authorize {client_name}</h2>
<p>This application is requesting access to your bookmarks account.</p>
<div class="scopes"><strong>It will be able to:</strong>{scope_items}</div>
<form method="POST" action="/authorize">
<input type="hidden" name="client_id" value="{client_id}">
<input type="hidden" name="redirect_uri" value="{redirect_uri}">
<input type="hidden" name="scope" value="{scope}">
<input type="hidden" name="code_challenge" value="{code_challenge}">
<input type="hidden" name="state" value="{state}">
<button type="submit" name="action" value="approve" class="btn allow">Authorize</button>
<button type="submit" name="action" value="deny" class="btn deny">Deny</button>
</form>
<p><small>Only authorize applications you trust.</small></p>
</body></html>"""


def render_consent(
    client_name: str,
    client_id: str,
    redirect_uri: str,
    scope: str,
    code_challenge: str,
    state: str,
) -> str:
    e = html.escape
    scope_items = "".join(
        f'<span class="scope">&#10003; {e(_SCOPE_DESCRIPTIONS.get(s, s))}</span>'
        for s in scope.split()
    )
    return _CONSENT_HTML.format(
        client_name=e(client_name),
        client_id=e(client_id),
        redirect_uri=e(redirect_uri),
        scope=e(scope),
        code_challenge=e(code_challenge),
        state=e(state),
        scope_items=scope_items,
    )


def redirect_with(uri: str, params: dict[str, str]) -> str:
    """Append *params* to *uri*, keeping any query it already has."""
    parts = urlsplit(uri)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend(params.items())
    return urlunsplit(parts._replace(query=urlencode(query)))


async def _json_object(request: Request) -> dict[str, Any] | None:
    try:
        data = await request.json()
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


async def _logged_in_session(services: Services, request: Request):
    session_id = request.cookies.get(SESSION_COOKIE)
    if not session_id:
        return None
    return await services.store.get_session(session_id)


# -- registration ------------------------------------------------------------


@router.post("/register", status_code=201)
async def register_client(request: Request, services: Services = Depends(get_services)):
    """Dynamic client registration (RFC 7591)."""
    data = await _json_object(request)
    if data is None:
        raise InvalidClientMetadata("Request body must be a JSON object")
    try:
        metadata = RegistrationRequest.model_validate(data)
    except ValidationError as exc:
        raise InvalidClientMetadata(
            f"Invalid client metadata: {exc.error_count()} error(s)"
        ) from None

    result = await services.clients.register(metadata.model_dump(exclude_none=True))
    return JSONResponse(
        status_code=201,
        content=result.to_response(),
        headers={"Cache-Control": "no-store"},
    )


# -- authorization -----------------------------------------------------------


@router.get("/authorize")
async def authorize(request: Request, services: Services = Depends(get_services)):
    """Validate the request, then show the consent page or send the user to log in."""
    params = request.query_params
    auth_request = await services.server.authorize_request(
        client_id=params.get("client_id"),
        redirect_uri=params.get("redirect_uri"),
        response_type=params.get("response_type"),
        state=params.get("state"),
        code_challenge=params.get("code_challenge"),
        code_challenge_method=params.get("code_challenge_method"),
        scope=params.get("scope"),
    )

    if await _logged_in_session(services, request) is None:
        here = request.url.path
        if request.url.query:
            here = f"{here}?{request.url.query}"
        logger.info("No upstream session; sending user to login")
        return RedirectResponse(f"/auth/init?{urlencode({'redirect_uri': here})}", status_code=302)

    return HTMLResponse(
        render_consent(
            client_name=auth_request.client.client_name,
            client_id=auth_request.client.client_id,
            redirect_uri=auth_request.redirect_uri,
            scope=auth_request.scope,
            code_challenge=auth_request.code_challenge,
            state=auth_request.state,
        )
    )


@router.post("/authorize")
async def authorize_consent(request: Request, services: Services = Depends(get_services)):
    """Process the consent decision."""
    form = await request.form()
    consent = ConsentForm.model_validate(
        {k: v for k, v in form.items() if isinstance(v, str)}
    )

    # The redirect target is re-checked against the client before any redirect.
    auth_request = await services.server.authorize_request(
        client_id=consent.client_id,
        redirect_uri=consent.redirect_uri,
        response_type="code",
        state=consent.state,
        code_challenge=consent.code_challenge,
        code_challenge_method=CODE_CHALLENGE_METHOD,
        scope=consent.scope,
    )

    if consent.action != "approve":
        logger.info("User denied authorization for client %s", auth_request.client.client_id)
        denied = AccessDenied().to_dict()
        denied["state"] = auth_request.state
        return RedirectResponse(redirect_with(auth_request.redirect_uri, denied), status_code=302)

    session = await _logged_in_session(services, request)
    if session is None:
        raise InvalidRequest("Authentication required")

    code = await services.codes.issue(
        client_id=auth_request.client.client_id,
        user_id=session.user_id,
        redirect_uri=auth_request.redirect_uri,
        scope=auth_request.scope,
        code_challenge=auth_request.code_challenge,
    )
    return RedirectResponse(
        redirect_with(auth_request.redirect_uri, {"code": code, "state": auth_request.state}),
        status_code=302,
    )


# -- token -------------------------------------------------------------------


async def _token_params(request: Request) -> TokenRequest:
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        data = await _json_object(request)
        if data is None:
            raise InvalidRequest("Request body must be a JSON object")
    else:
        form = await request.form()
        data = {k: v for k, v in form.items() if isinstance(v, str)}
    try:
        return TokenRequest.model_validate(data)
    except ValidationError:
        raise InvalidRequest("Token request parameters must be strings") from None


@router.post("/token")
async def token_exchange(request: Request, services: Services = Depends(get_services)):
    """Exchange an authorization code or refresh token for an access token."""
    body = await _token_params(request)

    if not body.grant_type:
        raise InvalidRequest("Missing grant_type parameter")
    if body.grant_type not in SUPPORTED_GRANT_TYPES:
        raise UnsupportedGrantType()
    if not body.client_id:
        raise InvalidRequest("Missing client_id parameter")

    await services.clients.authenticate(body.client_id, body.client_secret)

    if body.grant_type == "authorization_code":
        if not body.code or not body.redirect_uri or not body.code_verifier:
            raise InvalidRequest("code, redirect_uri and code_verifier are required")
        result = await services.server.exchange_authorization_code(
            code=body.code,
            client_id=body.client_id,
            code_verifier=body.code_verifier,
            redirect_uri=body.redirect_uri,
        )
    else:
        if not body.refresh_token:
            raise InvalidRequest("Missing refresh_token parameter")
        result = await services.server.exchange_refresh_token(body.refresh_token, body.client_id)

    return JSONResponse(content=result.to_dict(), headers=NO_STORE)
