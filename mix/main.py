"""
mix repository server

Publishes a directory of .mixpkg archives over HTTP in the layout the
package manager expects from its ``repo_url``:

- ``GET /index.json``: catalog records of every archive
- ``GET /<name>-<version>.mixpkg``: the archive itself
- ``GET /health``: liveness probe
"""

import logging
from pathlib import Path
from typing import Optional, Union

from fastapi import FastAPI

from mix.config import Settings
from mix.routers import repository

log = logging.getLogger("mix.main")


def create_app(repo_dir: Union[str, Path], settings: Optional[Settings] = None) -> FastAPI:
    """
    Create the repository application.

    Args:
        repo_dir: Directory holding the .mixpkg files to publish
        settings: Service settings, defaults are used if None

    Returns:
        FastAPI application
    """
    settings = settings or Settings()

    app = FastAPI(
        title="mix repository",
        description="Package repository for the mix package manager",
        version=settings.service_version,
    )
    app.state.repo_dir = Path(repo_dir)
    app.state.settings = settings
    app.include_router(repository.router)

    log.info(f"Serving packages from {repo_dir}")
    return app


def serve(repo_dir: Union[str, Path], host: str = "0.0.0.0", port: int = 8080) -> None:
    import uvicorn

    uvicorn.run(create_app(repo_dir), host=host, port=port, log_level="info")
