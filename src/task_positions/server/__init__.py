"""HTTP server for task ordering."""

from .api import create_app

__all__ = ["create_app"]
