"""Provide the public `task_positions` package exports."""

from __future__ import annotations

from .positioning.engine import PositionEngine

__version__ = "0.1.0"

__all__ = ["PositionEngine", "__version__"]
