# Discovery metadata (RFC 8414, RFC 9728) and liveness.
# Created: 2026-10-11

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from markgate import __version__
from markgate.api.deps import Services, get_services
from markgate.api.schemas import HealthResponse

router = APIRouter(tags=["Discovery"])

_METADATA_HEADERS = {"Cache-Control": "max-age=3600"}


def _resource_path(path: str | None, default: str) -> str:
    return "/" + (path or default).lstrip("/")


@router.get("/.well-known/oauth-authorization-server")
async def authorization_server_metadata(services: Services = Depends(get_services)):
    return JSONResponse(services.server.server_metadata(), headers=_METADATA_HEADERS)


@router.get("/.well-known/oauth-protected-resource")
async def protected_resource_metadata(
    path: str | None = Query(None),
    services: Services = Depends(get_services),
):
    """Metadata for the protected resource at ``?path=`` (default ``/mcp``)."""
    settings = services.settings
    resource_url = settings.issuer + _resource_path(path, settings.resource_path)
    doc = services.server.resource_metadata(resource_url, settings.resource_documentation)
    return JSONResponse(doc, headers=_METADATA_HEADERS)


@router.get("/.well-known/oauth-protected-resource/{resource:path}")
async def protected_resource_metadata_for_path(
    resource: str,
    services: Services = Depends(get_services),
):
    """RFC 9728 path-suffixed form: ``/.well-known/oauth-protected-resource/mcp``."""
    settings = services.settings
    resource_url = settings.issuer + _resource_path(resource, settings.resource_path)
    doc = services.server.resource_metadata(resource_url, settings.resource_documentation)
    return JSONResponse(doc, headers=_METADATA_HEADERS)


@router.get("/health", response_model=HealthResponse)
async def health():
    body = HealthResponse(
        version=__version__,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )
    return JSONResponse(
        body.model_dump(),
        headers={"Cache-Control": "no-cache, no-store, must-revalidate"},
    )
