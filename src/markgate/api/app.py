"""FastAPI application factory.

``create_app()`` wires the services once and stores them on ``app.state``.
OAuth errors raised anywhere below a route are rendered by a single handler as
``{"error", "error_description"}`` JSON with the error's HTTP status.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from markgate import __version__
from markgate.api import auth, oauth2, well_known
from markgate.api.deps import Services, build_services
from markgate.config import Settings, get_settings
from markgate.oauth2.errors import OAuthError

logger = logging.getLogger(__name__)


async def oauth_error_handler(request: Request, exc: OAuthError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.description)
    else:
        logger.info("%s %s -> %s: %s", request.method, request.url.path, exc.error, exc.description)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def create_app(settings: Settings | None = None, services: Services | None = None) -> FastAPI:
    """Build the markgate application.

    Pass *services* to supply a pre-built service graph (tests do this to
    inject an in-memory store and a mock upstream transport).
    """
    if services is None:
        services = build_services(settings or get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await app.state.services.close()

    app = FastAPI(
        title="markgate",
        description="OAuth 2.1 authorization server for MCP clients.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.services = services

    # Metadata and token endpoints are fetched cross-origin by browser-based clients.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type"],
    )
    app.add_exception_handler(OAuthError, oauth_error_handler)

    app.include_router(well_known.router)
    app.include_router(oauth2.router)
    app.include_router(auth.router)
    return app
