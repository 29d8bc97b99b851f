"""Position engine: one owner collection per container, plus an event log.

This is the entry point used by the HTTP API and the CLI.  It wraps
:class:`OrderedCollection` with container bookkeeping, relative placement
("after X", "before Y", "first", "last") and a JSONL log of key changes.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Optional, Sequence

from loguru import logger

from ..config import get_rebalance_policy, load_positions_config
from ..constants import ARTIFACTS_DIR, EVENTS_FILE, STATE_DIR_NAME
from ..io_utils import _append_event, _read_events_tail
from .allocator import PositionAllocator, RebalancePolicy
from .collection import OrderedCollection
from .errors import PositioningError, UnknownItemError
from .file_store import YamlPersistenceAdapter
from .model import Move, OrderedItem, check_placement
from .persistence import PersistenceAdapter


class PositionEngine:
    """Manage ordered collections for every container of a project.

    Parameters
    ----------
    adapter:
        Persistence boundary shared by all containers.
    policy:
        Rebalance policy handed to each collection's allocator.
    events_path:
        Optional JSONL file receiving one line per key change.
    """

    def __init__(
        self,
        adapter: PersistenceAdapter,
        policy: Optional[RebalancePolicy] = None,
        events_path: Optional[Path] = None,
    ) -> None:
        self.adapter = adapter
        self.policy = policy or RebalancePolicy()
        self._events_path = events_path
        self._collections: dict[str, OrderedCollection] = {}
        self._registry_lock = asyncio.Lock()

    @classmethod
    def for_project(cls, project_dir: Path) -> "PositionEngine":
        """Engine backed by ``<project_dir>/.task_positions/positions.yaml``."""
        config, err = load_positions_config(project_dir)
        if err:
            logger.warning("Ignoring unreadable config: {}", err)
        state_dir = project_dir / STATE_DIR_NAME
        return cls(
            YamlPersistenceAdapter(state_dir),
            policy=get_rebalance_policy(config),
            events_path=state_dir / ARTIFACTS_DIR / EVENTS_FILE,
        )

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _emit_event(self, event_type: str, container_id: str, item: Optional[OrderedItem] = None, **details: Any) -> None:
        if self._events_path is None:
            return
        payload: dict[str, Any] = {"type": event_type, "container_id": container_id}
        if item is not None:
            payload["item_id"] = item.id
            payload["key"] = item.key.encode() if item.key else None
            payload["after_id"] = item.repositioned_after_id
        if details:
            payload["details"] = details
        try:
            _append_event(self._events_path, payload)
        except Exception:
            logger.exception("Failed to append position event {} for {}", event_type, container_id)

    def get_recent_events(self, limit: int = 100) -> list[dict[str, Any]]:
        if self._events_path is None:
            return []
        return _read_events_tail(self._events_path, limit)

    # ------------------------------------------------------------------
    # Collections
    # ------------------------------------------------------------------

    async def collection(self, container_id: str) -> OrderedCollection:
        """Return the single owner collection for *container_id*, loading it once."""
        async with self._registry_lock:
            coll = self._collections.get(container_id)
            if coll is None:
                coll = OrderedCollection(container_id, self.adapter, PositionAllocator(self.policy))
                await coll.load()
                self._collections[container_id] = coll
            return coll

    async def list_items(self, container_id: str) -> list[OrderedItem]:
        coll = await self.collection(container_id)
        return coll.items()

    async def reload(self, container_id: str) -> list[str]:
        coll = await self.collection(container_id)
        return await coll.load()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def insert(
        self,
        container_id: str,
        item_id: str,
        *,
        after_id: Optional[str] = None,
        before_id: Optional[str] = None,
        position: Optional[str] = None,
    ) -> OrderedItem:
        """Insert a new item.  With no placement it is appended."""
        check_placement(after_id, before_id, position)
        coll = await self.collection(container_id)
        rebalances = coll.rebalance_count
        await self._insert_into(coll, item_id, after_id, before_id, position)
        return self._placed(coll, item_id, "position.assigned", rebalances)

    async def move(
        self,
        container_id: str,
        item_id: str,
        *,
        after_id: Optional[str] = None,
        before_id: Optional[str] = None,
        position: Optional[str] = None,
        to_container_id: Optional[str] = None,
    ) -> OrderedItem:
        """Give an existing item a new key.  With no placement it moves to the end.

        With *to_container_id* naming another container the item leaves
        *container_id* and is placed in the target instead (re-parenting).
        """
        check_placement(after_id, before_id, position)
        if to_container_id is not None and to_container_id != container_id:
            return await self._reparent(container_id, to_container_id, item_id, after_id, before_id, position)
        coll = await self.collection(container_id)
        rebalances = coll.rebalance_count
        await coll.move(Move(item_id, after_id=after_id, before_id=before_id, position=position))
        return self._placed(coll, item_id, "position.moved", rebalances)

    async def batch_move(self, container_id: str, moves: Sequence[Move]) -> list[OrderedItem]:
        """Apply several moves in one container as a single all-or-nothing commit."""
        coll = await self.collection(container_id)
        rebalances = coll.rebalance_count
        moved = await coll.move_many(moves)
        for item in moved:
            self._emit_event("position.moved", container_id, item, batch=True)
        if coll.rebalance_count != rebalances:
            self._emit_event("positions.rebalanced", container_id, count=len(coll), trigger="automatic")
        logger.info("Moved {} items in {} as one batch", len(moved), container_id)
        return moved

    async def insert_after(self, container_id: str, item_id: str, after_id: Optional[str] = None) -> OrderedItem:
        if after_id is None:
            return await self.insert(container_id, item_id, position="first")
        return await self.insert(container_id, item_id, after_id=after_id)

    async def insert_before(self, container_id: str, item_id: str, before_id: str) -> OrderedItem:
        return await self.insert(container_id, item_id, before_id=before_id)

    async def append(self, container_id: str, item_id: str) -> OrderedItem:
        return await self.insert(container_id, item_id, position="last")

    async def move_after(self, container_id: str, item_id: str, after_id: Optional[str] = None) -> OrderedItem:
        if after_id is None:
            return await self.move(container_id, item_id, position="first")
        return await self.move(container_id, item_id, after_id=after_id)

    async def move_before(self, container_id: str, item_id: str, before_id: str) -> OrderedItem:
        return await self.move(container_id, item_id, before_id=before_id)

    async def remove(self, container_id: str, item_id: str) -> OrderedItem:
        coll = await self.collection(container_id)
        item = await coll.remove(item_id)
        self._emit_event("position.removed", container_id, item)
        return item

    async def rebalance(self, container_id: str, force: bool = True) -> bool:
        coll = await self.collection(container_id)
        changed = await coll.rebalance(force=force)
        if changed:
            self._emit_event("positions.rebalanced", container_id, count=len(coll), trigger="manual")
        return changed

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _insert_into(
        self,
        coll: OrderedCollection,
        item_id: str,
        after_id: Optional[str],
        before_id: Optional[str],
        position: Optional[str],
    ) -> None:
        if after_id:
            await coll.insert_after(item_id, after_id)
        elif before_id:
            await coll.insert_before(item_id, before_id)
        elif position == "first":
            await coll.insert_after(item_id, None)
        else:
            await coll.append(item_id)

    def _placed(self, coll: OrderedCollection, item_id: str, event_type: str, rebalances: int) -> OrderedItem:
        item = coll.get(item_id)
        assert item is not None
        self._emit_event(event_type, coll.container_id, item)
        if coll.rebalance_count != rebalances:
            self._emit_event("positions.rebalanced", coll.container_id, count=len(coll), trigger="automatic")
        logger.info(
            "{} {} in {} (after {})",
            "Moved" if event_type == "position.moved" else "Placed",
            item_id,
            coll.container_id,
            item.repositioned_after_id or "top",
        )
        return item

    async def _reparent(
        self,
        source_id: str,
        target_id: str,
        item_id: str,
        after_id: Optional[str],
        before_id: Optional[str],
        position: Optional[str],
    ) -> OrderedItem:
        source = await self.collection(source_id)
        if item_id not in source:
            raise UnknownItemError(item_id, source_id)
        target = await self.collection(target_id)
        rebalances = target.rebalance_count
        # Place in the target first so a bad anchor or duplicate leaves the source untouched.
        await self._insert_into(target, item_id, after_id, before_id, position)
        try:
            removed = await source.remove(item_id)
        except PositioningError as exc:
            logger.warning("Re-parenting {} failed in {}; undoing insert into {}: {}", item_id, source_id, target_id, exc)
            try:
                await target.remove(item_id)
            except PositioningError:
                logger.exception("Could not undo insert of {} into {}", item_id, target_id)
            raise
        self._emit_event("position.removed", source_id, removed, moved_to=target_id)
        item = self._placed(target, item_id, "position.moved", rebalances)
        logger.info("Re-parented {} from {} to {}", item_id, source_id, target_id)
        return item
