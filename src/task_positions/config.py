"""Load optional configuration from `.task_positions/config.yaml`."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from loguru import logger

from .constants import (
    CONFIG_FILE,
    DEFAULT_LOG_LEVEL,
    DEFAULT_MAX_KEY_DEPTH,
    DEFAULT_MIN_ITEMS_FOR_REBALANCE,
    STATE_DIR_NAME,
)
from .io_utils import _load_data_with_error
from .logging_utils import normalize_level
from .positioning.allocator import RebalancePolicy


def load_positions_config(project_dir: Path) -> tuple[dict[str, Any], str | None]:
    """Load the optional config file.

    Args:
        project_dir: Project root directory.

    Returns:
        A tuple of `(config, error_message)`. If the file is missing, returns `({}, None)`.
    """
    project_dir = project_dir.resolve()
    path = project_dir / STATE_DIR_NAME / CONFIG_FILE
    if not path.exists():
        return {}, None
    data, err = _load_data_with_error(path, {})
    if err:
        return {}, err
    return data, None


def _get_nested(config: dict[str, Any], *keys: str) -> Any:
    cur: Any = config
    for key in keys:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def get_positioning_config(config: dict[str, Any]) -> dict[str, Any]:
    """Extract the `positioning` block, or an empty dict if not present."""
    raw = _get_nested(config, "positioning")
    return raw if isinstance(raw, dict) else {}


def _positive_int(raw: Any, default: int, name: str) -> int:
    if raw is None:
        return default
    if isinstance(raw, bool) or not isinstance(raw, int) or raw < 1:
        logger.warning("Ignoring invalid positioning.{} value {!r}; using {}", name, raw, default)
        return default
    return raw


def get_rebalance_policy(config: dict[str, Any]) -> RebalancePolicy:
    """Build the rebalance policy from the `positioning` block.

    Invalid values fall back to the defaults.
    """
    block = get_positioning_config(config)
    enabled = block.get("rebalance_enabled", True)
    if not isinstance(enabled, bool):
        logger.warning("Ignoring invalid positioning.rebalance_enabled value {!r}", enabled)
        enabled = True
    return RebalancePolicy(
        max_key_depth=_positive_int(block.get("max_key_depth"), DEFAULT_MAX_KEY_DEPTH, "max_key_depth"),
        min_items=_positive_int(block.get("min_items"), DEFAULT_MIN_ITEMS_FOR_REBALANCE, "min_items"),
        enabled=enabled,
    )


def get_log_level(config: dict[str, Any]) -> str:
    """Extract `logging.level`, defaulting to INFO."""
    return normalize_level(_get_nested(config, "logging", "level"), DEFAULT_LOG_LEVEL)
