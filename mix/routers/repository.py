"""Repository API router.

Serves the package index and the archives of a repository directory so a
mix client can use it as its ``repo_url``.
"""

import logging
from pathlib import Path

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import FileResponse, Response

from mix.repository import build_index, index_json

router = APIRouter()
log = logging.getLogger("mix.routers.repository")


def repo_dir(request: Request) -> Path:
    return request.app.state.repo_dir


@router.get("/health")
def health(request: Request) -> dict:
    """Health check endpoint for load balancers"""
    settings = request.app.state.settings
    return {
        "status": "healthy",
        "service": settings.service_name,
        "version": settings.service_version,
    }


@router.get("/index.json")
def get_index(request: Request) -> Response:
    """Catalog records for every archive, generated on each request"""
    records = build_index(repo_dir(request))
    return Response(content=index_json(records), media_type="application/json")


@router.get("/{filename}")
def get_package(request: Request, filename: str) -> FileResponse:
    """Download a single .mixpkg archive"""
    base = repo_dir(request).resolve()
    path = (base / filename).resolve()

    if (
        not filename.endswith(".mixpkg")
        or path.parent != base
        or not path.is_file()
    ):
        log.debug(f"Package not found: {filename}")
        raise HTTPException(status_code=404, detail=f"package {filename} not found")

    return FileResponse(path, media_type="application/octet-stream", filename=filename)
