"""Authoritative in-memory order for one container.

Every mutation runs inside the collection's ``asyncio.Lock`` and keeps the
lock while it waits for the persistence adapter, so operations fired in quick
succession are applied one after another, each against the state its
predecessor committed.  A failed write rolls the in-memory change back before
the error reaches the caller.  A write whose caller is cancelled is left to
finish; the next operation waits for it and re-reads the container first.

Repeated insertion after the same anchor puts the newest item closest to the
anchor: inserting C1, C2, C3 after A in ``[A, B]`` yields ``[A, C3, C2, C1, B]``.
"""

from __future__ import annotations

import asyncio
import bisect
from dataclasses import replace
from typing import Awaitable, Callable, Iterable, Iterator, Optional, Sequence

from loguru import logger

from .allocator import PositionAllocator
from .errors import (
    DuplicateItemError,
    InvalidBoundsError,
    KeyCollisionError,
    LoadSupersededError,
    PersistenceError,
    RebalanceError,
    UnknownItemError,
)
from .keys import PositionKey
from .model import ItemState, Move, OrderedItem
from .persistence import Pair, PersistenceAdapter

Bounds = tuple[Optional[PositionKey], Optional[PositionKey]]


class OrderedCollection:
    """Items of one container, ordered by position key.

    Parameters
    ----------
    container_id:
        Opaque id of the parent container (see :func:`container_id_for`).
    adapter:
        Persistence boundary used for every read and write.
    allocator:
        Key allocator; its policy also decides when to rebalance.
    """

    def __init__(
        self,
        container_id: str,
        adapter: PersistenceAdapter,
        allocator: Optional[PositionAllocator] = None,
    ) -> None:
        self.container_id = container_id
        self.allocator = allocator or PositionAllocator()
        self._adapter = adapter
        self._lock = asyncio.Lock()
        self._items: dict[str, OrderedItem] = {}
        self._order: list[str] = []
        self._keys: list[PositionKey] = []
        # Keys given up by any item; seeded from the adapter on load.
        self._retired: set[PositionKey] = set()
        self._load_generation = 0
        self._commits = 0
        self._pending: Optional[asyncio.Future[None]] = None
        self._stale = False
        self.rebalance_count = 0
        self.last_rebalance_error: Optional[RebalanceError] = None

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    def order(self) -> list[str]:
        return list(self._order)

    def items(self) -> list[OrderedItem]:
        return [self._items[item_id] for item_id in self._order]

    def pairs(self) -> list[Pair]:
        return list(zip(self._order, self._keys))

    def get(self, item_id: str) -> Optional[OrderedItem]:
        return self._items.get(item_id)

    def key_of(self, item_id: str) -> PositionKey:
        item = self._require(item_id)
        assert item.key is not None
        return item.key

    def is_retired(self, key: PositionKey) -> bool:
        return key in self._retired

    def __len__(self) -> int:
        return len(self._order)

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._items

    def __iter__(self) -> Iterator[str]:
        return iter(self.order())

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def insert_after(self, item_id: str, after_id: Optional[str] = None) -> PositionKey:
        """Insert *item_id* right after *after_id*, or at the top if ``None``."""
        async with self._lock:
            await self._resync_locked()
            self._require_new(item_id)
            bounds = self._bounds_after(after_id)
            return await self._insert_locked(item_id, bounds, after_id)

    async def insert_before(self, item_id: str, before_id: str) -> PositionKey:
        """Insert *item_id* right before *before_id*."""
        async with self._lock:
            await self._resync_locked()
            self._require_new(item_id)
            bounds, predecessor = self._bounds_before(before_id)
            return await self._insert_locked(item_id, bounds, predecessor)

    async def append(self, item_id: str) -> PositionKey:
        """Insert *item_id* at the end."""
        async with self._lock:
            await self._resync_locked()
            self._require_new(item_id)
            last_id = self._order[-1] if self._order else None
            bounds = (self._keys[-1], None) if self._keys else (None, None)
            return await self._insert_locked(item_id, bounds, last_id)

    async def move(self, move: Move) -> PositionKey:
        """Give ``move.item_id`` a fresh key at the requested place."""
        async with self._lock:
            await self._resync_locked()
            self._require(move.item_id)
            bounds, predecessor = self._move_bounds(move)
            return await self._move_locked(move.item_id, bounds, predecessor)

    async def move_after(self, item_id: str, after_id: Optional[str] = None) -> PositionKey:
        """Give *item_id* a fresh key right after *after_id* (top if ``None``)."""
        if after_id is None:
            return await self.move(Move(item_id, position="first"))
        return await self.move(Move(item_id, after_id=after_id))

    async def move_before(self, item_id: str, before_id: str) -> PositionKey:
        """Give *item_id* a fresh key right before *before_id*."""
        return await self.move(Move(item_id, before_id=before_id))

    async def move_many(self, moves: Sequence[Move]) -> list[OrderedItem]:
        """Apply *moves* in order and commit them with a single ``write_many``.

        Each move is placed against the order left by the previous one.  If
        any move is invalid or the write fails, no item changes.  Returns the
        moved items in the order they were first named.
        """
        async with self._lock:
            await self._resync_locked()
            if not moves:
                return []
            for move in moves:
                self._require(move.item_id)

            snapshots: dict[str, OrderedItem] = {}
            items, order, keys = dict(self._items), list(self._order), list(self._keys)
            retired = set(self._retired)

            def rollback() -> None:
                for item_id, snapshot in snapshots.items():
                    _restore_fields(items[item_id], snapshot)
                self._items, self._order, self._keys, self._retired = items, order, keys, retired

            try:
                for move in moves:
                    item = self._items[move.item_id]
                    snapshots.setdefault(item.id, replace(item))
                    bounds, predecessor = self._move_bounds(move)
                    key = self._allocate(bounds)
                    old_key = item.key
                    assert old_key is not None
                    self._detach(item.id)
                    item.transition(ItemState.REASSIGNED, key, after_id=predecessor)
                    self._attach(item)
                    self._retired.add(old_key)
            except Exception:
                rollback()
                raise

            pairs = [(item_id, self.key_of(item_id)) for item_id in snapshots]
            await self._commit(
                self._adapter.write_many(self.container_id, pairs, retired=self._retired - retired),
                rollback=rollback,
                action=f"batch move of {len(pairs)} items",
            )
            logger.debug("Moved {} items in one batch in {}", len(pairs), self.container_id)
            await self._rebalance_if_needed()
            return [self._items[item_id] for item_id in snapshots]

    async def remove(self, item_id: str) -> OrderedItem:
        """Delete *item_id* and retire its key."""
        async with self._lock:
            await self._resync_locked()
            item = self._require(item_id)
            old_key = item.key
            assert old_key is not None
            self._detach(item_id)
            await self._commit(
                self._adapter.delete(self.container_id, item_id),
                rollback=lambda: self._attach(item),
                action=f"remove {item_id}",
            )
            item.transition(ItemState.REMOVED)
            self._retired.add(old_key)
            logger.debug("Removed {} from {}", item_id, self.container_id)
            return item

    async def rebalance(self, force: bool = True) -> bool:
        """Re-space every key in the container.

        With ``force=False`` this only runs when the allocator's policy asks
        for it.  Returns True if keys were replaced.

        Raises:
            RebalanceError: if the batch write failed; no key was changed.
        """
        async with self._lock:
            await self._resync_locked()
            if not force and not self.allocator.needs_rebalance(self._keys):
                return False
            return await self._rebalance_locked()

    async def load(self, pairs: Optional[Iterable[Pair]] = None) -> list[str]:
        """Rebuild the order from persisted (id, key) pairs.

        Without *pairs* the adapter is read, including the keys retired by
        earlier processes.  A load that is overtaken by a newer one is
        discarded with :class:`LoadSupersededError`.
        """
        self._load_generation += 1
        generation = self._load_generation
        commit_mark = self._commits
        from_adapter = pairs is None
        retired: set[PositionKey] = set()
        if from_adapter:
            loaded = await self._adapter.read_all(self.container_id)
            retired = await self._adapter.read_retired(self.container_id)
        else:
            loaded = list(pairs)

        async with self._lock:
            if generation != self._load_generation:
                logger.debug("Discarding superseded load #{} of {}", generation, self.container_id)
                raise LoadSupersededError(
                    f"Load #{generation} of {self.container_id} superseded by #{self._load_generation}"
                )
            await self._resync_locked()
            if from_adapter and self._commits != commit_mark:
                # A write landed while we were reading; read again under the lock.
                loaded = await self._adapter.read_all(self.container_id)
                retired = await self._adapter.read_retired(self.container_id)
            self._replace_all(loaded)
            self._retired.update(retired)
            logger.debug("Loaded {} items into {}", len(self._order), self.container_id)
            return self.order()

    # ------------------------------------------------------------------
    # Internals (callers hold the lock)
    # ------------------------------------------------------------------

    async def _insert_locked(self, item_id: str, bounds: Bounds, after_id: Optional[str]) -> PositionKey:
        key = self._allocate(bounds)
        item = OrderedItem(item_id)
        item.transition(ItemState.ASSIGNED, key, after_id=after_id)
        self._attach(item)
        await self._commit(
            self._adapter.write(self.container_id, item_id, key),
            rollback=lambda: self._detach(item_id),
            action=f"insert {item_id}",
        )
        logger.debug("Assigned {} -> {} in {}", item_id, key, self.container_id)
        await self._rebalance_if_needed()
        return self.key_of(item_id)

    async def _move_locked(self, item_id: str, bounds: Bounds, after_id: Optional[str]) -> PositionKey:
        item = self._items[item_id]
        snapshot = replace(item)
        old_key = item.key
        assert old_key is not None
        key = self._allocate(bounds)
        self._detach(item_id)
        item.transition(ItemState.REASSIGNED, key, after_id=after_id)
        self._attach(item)

        def rollback() -> None:
            self._detach(item_id)
            _restore_fields(item, snapshot)
            self._attach(item)

        await self._commit(
            self._adapter.write(self.container_id, item_id, key),
            rollback=rollback,
            action=f"move {item_id}",
        )
        self._retired.add(old_key)
        logger.debug("Moved {} {} -> {} in {}", item_id, old_key, key, self.container_id)
        await self._rebalance_if_needed()
        return self.key_of(item_id)

    async def _rebalance_if_needed(self) -> None:
        if not self.allocator.needs_rebalance(self._keys):
            return
        try:
            await self._rebalance_locked()
        except RebalanceError as exc:
            # The triggering write is already committed; the next mutation retries.
            self.last_rebalance_error = exc
            logger.warning("Automatic rebalance of {} failed: {}", self.container_id, exc)

    async def _rebalance_locked(self) -> bool:
        if not self._order:
            return False
        avoid = self._retired | set(self._keys)
        new_pairs = self.allocator.rebalance(self._order, avoid=avoid)
        try:
            await self._persist(self._adapter.write_many(self.container_id, new_pairs))
        except PersistenceError as exc:
            raise RebalanceError(f"Rebalance of {self.container_id} not committed: {exc}") from exc
        except Exception as exc:
            raise RebalanceError(
                f"Rebalance of {self.container_id} not committed: {exc.__class__.__name__}: {exc}"
            ) from exc

        self._retired.update(self._keys)
        previous: Optional[str] = None
        for item_id, key in new_pairs:
            self._items[item_id].transition(ItemState.REASSIGNED, key, after_id=previous)
            previous = item_id
        self._keys = [key for _, key in new_pairs]
        self._commits += 1
        self.rebalance_count += 1
        self.last_rebalance_error = None
        logger.info("Rebalanced {} items in {}", len(new_pairs), self.container_id)
        return True

    async def _persist(self, call: Awaitable[None]) -> None:
        """Await an adapter call that keeps running if the caller is cancelled."""
        task = asyncio.ensure_future(call)
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            self._pending = task
            self._stale = True
            raise

    async def _resync_locked(self) -> None:
        """Wait for a write abandoned by a cancelled caller, then re-read."""
        if self._pending is not None:
            pending = self._pending
            try:
                await pending
            except Exception as exc:
                logger.warning("Interrupted write to {} did not complete: {}", self.container_id, exc)
            self._pending = None
        if not self._stale:
            return
        loaded = await self._adapter.read_all(self.container_id)
        retired = await self._adapter.read_retired(self.container_id)
        self._replace_all(loaded)
        self._retired.update(retired)
        self._stale = False
        self._commits += 1
        logger.info("Re-read {} after an interrupted write", self.container_id)

    async def _commit(self, call: Awaitable[None], *, rollback: Callable[[], None], action: str) -> None:
        try:
            await self._persist(call)
        except PersistenceError as exc:
            rollback()
            logger.warning("Rolled back {} in {}: {}", action, self.container_id, exc)
            raise
        except Exception as exc:
            rollback()
            logger.warning("Rolled back {} in {}: {}", action, self.container_id, exc)
            raise PersistenceError(f"{action} failed: {exc.__class__.__name__}: {exc}") from exc
        except BaseException:
            # Cancelled: the write may still land, so the collection is re-read before its next use.
            rollback()
            raise
        self._commits += 1

    def _allocate(self, bounds: Bounds) -> PositionKey:
        low, high = bounds
        if low is None:
            key = self.allocator.first(high)
        elif high is None:
            key = self.allocator.last(low)
        else:
            key = self.allocator.between(low, high)
        while key in self._retired or self._index_of_key(key) is not None:
            key = self.allocator.between(key, high)
        return key

    def _move_bounds(self, move: Move) -> tuple[Bounds, Optional[str]]:
        item_id = move.item_id
        if item_id in (move.after_id, move.before_id):
            raise InvalidBoundsError(f"Cannot move {item_id} relative to itself")
        if move.after_id:
            return self._bounds_after(move.after_id, exclude=item_id), move.after_id
        if move.before_id:
            return self._bounds_before(move.before_id, exclude=item_id)
        if move.position == "first":
            return self._bounds_after(None, exclude=item_id), None
        last_other = next((i for i in reversed(self._order) if i != item_id), None)
        if last_other is None:
            return self._bounds_after(None, exclude=item_id), None
        return self._bounds_after(last_other, exclude=item_id), last_other

    def _bounds_after(self, after_id: Optional[str], exclude: Optional[str] = None) -> Bounds:
        order = [i for i in self._order if i != exclude]
        if after_id is None:
            return None, (self._items[order[0]].key if order else None)
        self._require(after_id)
        idx = order.index(after_id)
        low = self._items[after_id].key
        high = self._items[order[idx + 1]].key if idx + 1 < len(order) else None
        return low, high

    def _bounds_before(self, before_id: str, exclude: Optional[str] = None) -> tuple[Bounds, Optional[str]]:
        self._require(before_id)
        order = [i for i in self._order if i != exclude]
        idx = order.index(before_id)
        predecessor = order[idx - 1] if idx > 0 else None
        low = self._items[predecessor].key if predecessor else None
        return (low, self._items[before_id].key), predecessor

    def _require(self, item_id: str) -> OrderedItem:
        item = self._items.get(item_id)
        if item is None:
            raise UnknownItemError(item_id, self.container_id)
        return item

    def _require_new(self, item_id: str) -> None:
        if item_id in self._items:
            raise DuplicateItemError(f"Item {item_id} already exists in {self.container_id}")

    def _index_of_key(self, key: PositionKey) -> Optional[int]:
        idx = bisect.bisect_left(self._keys, key)
        if idx < len(self._keys) and self._keys[idx] == key:
            return idx
        return None

    def _attach(self, item: OrderedItem) -> None:
        assert item.key is not None
        if self._index_of_key(item.key) is not None:
            raise KeyCollisionError(f"Key {item.key} already used in {self.container_id}")
        idx = bisect.bisect_left(self._keys, item.key)
        self._keys.insert(idx, item.key)
        self._order.insert(idx, item.id)
        self._items[item.id] = item

    def _detach(self, item_id: str) -> None:
        item = self._items.pop(item_id)
        assert item.key is not None
        idx = self._index_of_key(item.key)
        assert idx is not None
        del self._keys[idx]
        del self._order[idx]

    def _replace_all(self, pairs: Iterable[tuple[str, PositionKey | str]]) -> None:
        normalized = [
            (str(item_id), key if isinstance(key, PositionKey) else PositionKey.decode(key))
            for item_id, key in pairs
        ]
        ordered = sorted(normalized, key=lambda pair: pair[1])
        seen_ids: set[str] = set()
        for i, (item_id, key) in enumerate(ordered):
            if item_id in seen_ids:
                raise DuplicateItemError(f"Item {item_id} appears twice in {self.container_id}")
            seen_ids.add(item_id)
            if i and ordered[i - 1][1] == key:
                raise KeyCollisionError(
                    f"Items {ordered[i - 1][0]} and {item_id} share key {key} in {self.container_id}"
                )
        items: dict[str, OrderedItem] = {}
        previous: Optional[str] = None
        for item_id, key in ordered:
            items[item_id] = OrderedItem(
                id=item_id,
                key=key,
                state=ItemState.ASSIGNED,
                repositioned_after_id=previous,
            )
            previous = item_id
        self._items = items
        self._order = [item_id for item_id, _ in ordered]
        self._keys = [key for _, key in ordered]


def _restore_fields(item: OrderedItem, snapshot: OrderedItem) -> None:
    item.key = snapshot.key
    item.state = snapshot.state
    item.repositioned_after_id = snapshot.repositioned_after_id
    item.reordered_at = snapshot.reordered_at
