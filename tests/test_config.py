"""Tests for config loading (config.py)."""

from __future__ import annotations

from pathlib import Path

import pytest

from task_positions.config import (
    get_log_level,
    get_positioning_config,
    get_rebalance_policy,
    load_positions_config,
)
from task_positions.positioning.allocator import RebalancePolicy


def _write_config(project_dir: Path, text: str) -> None:
    state_dir = project_dir / ".task_positions"
    state_dir.mkdir(parents=True, exist_ok=True)
    (state_dir / "config.yaml").write_text(text, encoding="utf-8")


class TestLoadPositionsConfig:
    def test_missing_file(self, tmp_path: Path) -> None:
        assert load_positions_config(tmp_path) == ({}, None)

    def test_empty_file(self, tmp_path: Path) -> None:
        _write_config(tmp_path, "")
        assert load_positions_config(tmp_path) == ({}, None)

    def test_valid_file(self, tmp_path: Path) -> None:
        _write_config(tmp_path, "positioning:\n  max_key_depth: 6\nlogging:\n  level: debug\n")
        config, err = load_positions_config(tmp_path)
        assert err is None
        assert get_positioning_config(config) == {"max_key_depth": 6}
        assert get_log_level(config) == "DEBUG"

    def test_invalid_yaml_reports_error(self, tmp_path: Path) -> None:
        _write_config(tmp_path, "positioning: [oops")
        config, err = load_positions_config(tmp_path)
        assert config == {}
        assert err is not None and "YAMLError" in err

    def test_non_mapping_reports_error(self, tmp_path: Path) -> None:
        _write_config(tmp_path, "- just\n- a list\n")
        config, err = load_positions_config(tmp_path)
        assert config == {}
        assert err is not None and "expected object" in err


class TestRebalancePolicyFromConfig:
    def test_defaults(self) -> None:
        assert get_rebalance_policy({}) == RebalancePolicy()

    def test_overrides(self) -> None:
        config = {"positioning": {"max_key_depth": 4, "min_items": 10, "rebalance_enabled": False}}
        assert get_rebalance_policy(config) == RebalancePolicy(max_key_depth=4, min_items=10, enabled=False)

    @pytest.mark.parametrize("bad", [0, -3, "8", 2.5, True])
    def test_invalid_depth_falls_back(self, bad: object) -> None:
        policy = get_rebalance_policy({"positioning": {"max_key_depth": bad}})
        assert policy.max_key_depth == RebalancePolicy().max_key_depth

    def test_invalid_enabled_falls_back(self) -> None:
        assert get_rebalance_policy({"positioning": {"rebalance_enabled": "no"}}).enabled is True

    def test_non_mapping_block_ignored(self) -> None:
        assert get_rebalance_policy({"positioning": ["x"]}) == RebalancePolicy()


class TestLogLevel:
    def test_default(self) -> None:
        assert get_log_level({}) == "INFO"

    def test_unknown_level_falls_back(self) -> None:
        assert get_log_level({"logging": {"level": "chatty"}}) == "INFO"
