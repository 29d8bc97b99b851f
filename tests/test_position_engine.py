"""Tests for the project-level position engine (positioning/engine.py)."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
import yaml

from task_positions.positioning.allocator import RebalancePolicy
from task_positions.positioning.engine import PositionEngine
from task_positions.positioning.errors import (
    ContractViolation,
    DuplicateItemError,
    PersistenceError,
    UnknownItemError,
)
from task_positions.positioning.model import Move, container_id_for
from task_positions.positioning.persistence import InMemoryPersistenceAdapter


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    d = tmp_path / "project"
    d.mkdir()
    return d


def _ids(items) -> list[str]:
    return [item.id for item in items]


class SourceDeleteFails(InMemoryPersistenceAdapter):
    """Adapter whose deletes from one container fail once armed."""

    def __init__(self, container_id: str) -> None:
        super().__init__()
        self.container_id = container_id
        self.armed = False

    async def delete(self, container_id: str, item_id: str) -> None:
        if self.armed and container_id == self.container_id:
            raise PersistenceError("store unavailable")
        await super().delete(container_id, item_id)


class TestContainerIds:
    def test_job_scope(self) -> None:
        assert container_id_for("42") == "job:42"

    def test_parent_scope(self) -> None:
        assert container_id_for("42", "t7") == "job:42/parent:t7"


class TestPositionEngine:
    def test_containers_are_independent(self) -> None:
        engine = PositionEngine(InMemoryPersistenceAdapter())

        async def run() -> tuple[list[str], list[str]]:
            await engine.append("job:1", "a")
            await engine.append("job:2", "b")
            await engine.insert_after("job:1", "c", None)
            return _ids(await engine.list_items("job:1")), _ids(await engine.list_items("job:2"))

        first, second = asyncio.run(run())
        assert first == ["c", "a"]
        assert second == ["b"]

    def test_collection_is_shared(self) -> None:
        engine = PositionEngine(InMemoryPersistenceAdapter())

        async def run() -> bool:
            a, b = await asyncio.gather(engine.collection("job:1"), engine.collection("job:1"))
            return a is b

        assert asyncio.run(run()) is True

    def test_placements(self) -> None:
        engine = PositionEngine(InMemoryPersistenceAdapter())
        cid = "job:1"

        async def run() -> list[str]:
            await engine.insert(cid, "a")
            await engine.insert(cid, "b", position="last")
            await engine.insert(cid, "c", position="first")
            await engine.insert(cid, "d", before_id="b")
            await engine.insert(cid, "e", after_id="c")
            await engine.move(cid, "c")
            await engine.move_before(cid, "b", "e")
            return _ids(await engine.list_items(cid))

        assert asyncio.run(run()) == ["b", "e", "a", "d", "c"]

    def test_move_to_top(self) -> None:
        engine = PositionEngine(InMemoryPersistenceAdapter())

        async def run() -> list[str]:
            for item_id in ("a", "b", "c"):
                await engine.append("job:1", item_id)
            await engine.move_after("job:1", "c", None)
            return _ids(await engine.list_items("job:1"))

        assert asyncio.run(run()) == ["c", "a", "b"]

    def test_rejects_two_placements(self) -> None:
        engine = PositionEngine(InMemoryPersistenceAdapter())

        async def run() -> None:
            await engine.append("job:1", "a")
            await engine.insert("job:1", "b", after_id="a", position="first")

        with pytest.raises(ContractViolation):
            asyncio.run(run())

    def test_rejects_unknown_position(self) -> None:
        engine = PositionEngine(InMemoryPersistenceAdapter())
        with pytest.raises(ContractViolation):
            asyncio.run(engine.insert("job:1", "a", position="middle"))

    def test_remove_unknown(self) -> None:
        engine = PositionEngine(InMemoryPersistenceAdapter())
        with pytest.raises(UnknownItemError):
            asyncio.run(engine.remove("job:1", "ghost"))

    def test_reload_picks_up_external_writes(self) -> None:
        adapter = InMemoryPersistenceAdapter()
        engine = PositionEngine(adapter)
        other = PositionEngine(adapter)

        async def run() -> list[str]:
            await engine.append("job:1", "a")
            await other.append("job:1", "b")
            return await engine.reload("job:1")

        assert asyncio.run(run()) == ["a", "b"]


class TestBatchMoveAndReparent:
    def test_batch_move(self, tmp_path: Path) -> None:
        engine = PositionEngine(InMemoryPersistenceAdapter(), events_path=tmp_path / "events.jsonl")

        async def run() -> tuple[list[str], list[str]]:
            for item_id in ("a", "b", "c"):
                await engine.append("job:1", item_id)
            moved = await engine.batch_move("job:1", [Move("c", position="first"), Move("a", before_id="b")])
            return _ids(moved), _ids(await engine.list_items("job:1"))

        moved, order = asyncio.run(run())
        assert moved == ["c", "a"]
        assert order == ["c", "a", "b"]
        events = engine.get_recent_events()[-2:]
        assert [(e["type"], e["item_id"]) for e in events] == [("position.moved", "c"), ("position.moved", "a")]
        assert all(e["details"] == {"batch": True} for e in events)

    def test_batch_move_is_all_or_nothing(self) -> None:
        engine = PositionEngine(InMemoryPersistenceAdapter())

        async def run() -> list[str]:
            for item_id in ("a", "b", "c"):
                await engine.append("job:1", item_id)
            with pytest.raises(UnknownItemError):
                await engine.batch_move("job:1", [Move("c", position="first"), Move("a", after_id="ghost")])
            return _ids(await engine.list_items("job:1"))

        assert asyncio.run(run()) == ["a", "b", "c"]

    def test_reparent(self, tmp_path: Path) -> None:
        engine = PositionEngine(InMemoryPersistenceAdapter(), events_path=tmp_path / "events.jsonl")
        top, sub = container_id_for("1"), container_id_for("1", "p")

        async def run() -> tuple[str, list[str], list[str]]:
            for item_id in ("a", "b", "c"):
                await engine.append(top, item_id)
            await engine.append(sub, "x")
            item = await engine.move(top, "b", position="first", to_container_id=sub)
            return item.id, _ids(await engine.list_items(top)), _ids(await engine.list_items(sub))

        moved, source, target = asyncio.run(run())
        assert moved == "b"
        assert source == ["a", "c"]
        assert target == ["b", "x"]
        removed, placed = engine.get_recent_events()[-2:]
        assert removed["type"] == "position.removed"
        assert removed["container_id"] == top
        assert removed["details"] == {"moved_to": sub}
        assert placed["type"] == "position.moved"
        assert placed["container_id"] == sub

    def test_reparent_to_same_container_is_a_plain_move(self) -> None:
        engine = PositionEngine(InMemoryPersistenceAdapter())

        async def run() -> list[str]:
            for item_id in ("a", "b"):
                await engine.append("job:1", item_id)
            await engine.move("job:1", "b", position="first", to_container_id="job:1")
            return _ids(await engine.list_items("job:1"))

        assert asyncio.run(run()) == ["b", "a"]

    def test_reparent_with_unknown_anchor_leaves_source_untouched(self) -> None:
        engine = PositionEngine(InMemoryPersistenceAdapter())

        async def run() -> tuple[list[str], list[str]]:
            for item_id in ("a", "b"):
                await engine.append("job:1", item_id)
            await engine.append("job:2", "x")
            with pytest.raises(UnknownItemError):
                await engine.move("job:1", "a", after_id="ghost", to_container_id="job:2")
            return _ids(await engine.list_items("job:1")), _ids(await engine.list_items("job:2"))

        assert asyncio.run(run()) == (["a", "b"], ["x"])

    def test_reparent_onto_existing_id_leaves_source_untouched(self) -> None:
        engine = PositionEngine(InMemoryPersistenceAdapter())

        async def run() -> tuple[list[str], list[str]]:
            for item_id in ("a", "b"):
                await engine.append("job:1", item_id)
            await engine.append("job:2", "b")
            with pytest.raises(DuplicateItemError):
                await engine.move("job:1", "b", to_container_id="job:2")
            return _ids(await engine.list_items("job:1")), _ids(await engine.list_items("job:2"))

        assert asyncio.run(run()) == (["a", "b"], ["b"])

    def test_reparent_unknown_item(self) -> None:
        engine = PositionEngine(InMemoryPersistenceAdapter())
        with pytest.raises(UnknownItemError):
            asyncio.run(engine.move("job:1", "ghost", to_container_id="job:2"))

    def test_failed_source_removal_undoes_target_insert(self) -> None:
        adapter = SourceDeleteFails("job:1")
        engine = PositionEngine(adapter)

        async def run() -> tuple[list[str], list[str]]:
            for item_id in ("a", "b"):
                await engine.append("job:1", item_id)
            await engine.append("job:2", "x")
            adapter.armed = True
            with pytest.raises(PersistenceError):
                await engine.move("job:1", "a", to_container_id="job:2")
            return _ids(await engine.list_items("job:1")), _ids(await engine.list_items("job:2"))

        source, target = asyncio.run(run())
        assert source == ["a", "b"]
        assert target == ["x"]
        assert set(adapter.snapshot("job:2")) == {"x"}


class TestEvents:
    def test_events_written_for_each_change(self, tmp_path: Path) -> None:
        events_path = tmp_path / "events.jsonl"
        engine = PositionEngine(InMemoryPersistenceAdapter(), events_path=events_path)

        async def run() -> None:
            await engine.append("job:1", "a")
            await engine.append("job:1", "b")
            await engine.move_after("job:1", "a", "b")
            await engine.remove("job:1", "b")
            await engine.rebalance("job:1")

        asyncio.run(run())
        events = engine.get_recent_events()
        assert [e["type"] for e in events] == [
            "position.assigned",
            "position.assigned",
            "position.moved",
            "position.removed",
            "positions.rebalanced",
        ]
        assert events[2]["item_id"] == "a"
        assert events[2]["after_id"] == "b"
        assert events[3]["key"] is None
        assert events[4]["details"] == {"count": 1, "trigger": "manual"}
        assert all("ts" in e for e in events)

    def test_recent_events_limit(self, tmp_path: Path) -> None:
        engine = PositionEngine(InMemoryPersistenceAdapter(), events_path=tmp_path / "events.jsonl")

        async def run() -> None:
            for i in range(5):
                await engine.append("job:1", f"t{i}")

        asyncio.run(run())
        events = engine.get_recent_events(limit=2)
        assert [e["item_id"] for e in events] == ["t3", "t4"]

    def test_automatic_rebalance_event(self, tmp_path: Path) -> None:
        engine = PositionEngine(
            InMemoryPersistenceAdapter(),
            policy=RebalancePolicy(max_key_depth=1, min_items=2),
            events_path=tmp_path / "events.jsonl",
        )

        async def run() -> None:
            await engine.append("job:1", "a")
            await engine.append("job:1", "b")
            await engine.insert_after("job:1", "c", "a")

        asyncio.run(run())
        events = engine.get_recent_events()
        assert events[-1]["type"] == "positions.rebalanced"
        assert events[-1]["details"]["trigger"] == "automatic"

    def test_no_events_without_path(self) -> None:
        engine = PositionEngine(InMemoryPersistenceAdapter())
        asyncio.run(engine.append("job:1", "a"))
        assert engine.get_recent_events() == []


class TestForProject:
    def test_uses_project_state_dir(self, project_dir: Path) -> None:
        engine = PositionEngine.for_project(project_dir)

        async def run() -> None:
            await engine.append("job:1", "a")

        asyncio.run(run())
        state_dir = project_dir / ".task_positions"
        assert (state_dir / "positions.yaml").exists()
        assert (state_dir / "artifacts" / "position_events.jsonl").exists()

        fresh = PositionEngine.for_project(project_dir)
        assert _ids(asyncio.run(fresh.list_items("job:1"))) == ["a"]

    def test_reads_policy_from_config(self, project_dir: Path) -> None:
        state_dir = project_dir / ".task_positions"
        state_dir.mkdir()
        (state_dir / "config.yaml").write_text(
            "positioning:\n  max_key_depth: 4\n  min_items: 3\n  rebalance_enabled: false\n",
            encoding="utf-8",
        )
        engine = PositionEngine.for_project(project_dir)
        assert engine.policy == RebalancePolicy(max_key_depth=4, min_items=3, enabled=False)

    def test_removed_key_not_reused_by_next_engine(self, project_dir: Path) -> None:
        async def first() -> str:
            engine = PositionEngine.for_project(project_dir)
            await engine.append("job:1", "A")
            await engine.append("job:1", "B")
            placed = await engine.insert_after("job:1", "C", "A")
            assert placed.key is not None
            removed_key = placed.key.encode()
            await engine.remove("job:1", "C")
            return removed_key

        async def second() -> tuple[str, list[str]]:
            engine = PositionEngine.for_project(project_dir)
            placed = await engine.insert_after("job:1", "D", "A")
            assert placed.key is not None
            return placed.key.encode(), _ids(await engine.list_items("job:1"))

        removed_key = asyncio.run(first())
        new_key, order = asyncio.run(second())
        assert new_key != removed_key
        assert order == ["A", "D", "B"]
        data = yaml.safe_load((project_dir / ".task_positions" / "positions.yaml").read_text(encoding="utf-8"))
        assert removed_key in data["retired"]["job:1"]
