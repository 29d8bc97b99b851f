"""FastAPI web server exposing task ordering."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .. import __version__
from ..positioning.engine import PositionEngine
from .positions_api import create_positions_router


def create_app(
    project_dir: Optional[Path] = None,
    enable_cors: bool = True,
    engine: Optional[PositionEngine] = None,
) -> FastAPI:
    """Create and configure FastAPI application.

    Args:
        project_dir: Default project directory.
        enable_cors: Whether to enable CORS.
        engine: Engine to serve for the default project instead of the
            YAML-backed one.

    Returns:
        Configured FastAPI app.
    """
    app = FastAPI(
        title="Task Positions",
        description="Ordering service for job task lists",
        version=__version__,
    )

    if enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.state.default_project_dir = project_dir
    app.state.engines = {}

    def _get_project_dir(project_dir_param: Optional[str] = None) -> Path:
        """Get project directory from parameter or default."""
        if project_dir_param:
            return Path(project_dir_param)
        if app.state.default_project_dir:
            return app.state.default_project_dir
        return Path.cwd()

    def _get_engine(project_dir_param: Optional[str] = None) -> PositionEngine:
        """Return the cached engine for the requested project."""
        if engine is not None and not project_dir_param:
            return engine
        resolved = _get_project_dir(project_dir_param).resolve()
        cached = app.state.engines.get(resolved)
        if cached is None:
            cached = PositionEngine.for_project(resolved)
            app.state.engines[resolved] = cached
        return cached

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "name": "Task Positions",
            "version": __version__,
            "status": "running",
        }

    app.include_router(create_positions_router(_get_engine))
    return app
