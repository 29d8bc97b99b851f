"""Persistence boundary for (item id, position key) pairs."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Iterable, Sequence

from .keys import PositionKey

Pair = tuple[str, PositionKey]


class PersistenceAdapter(ABC):
    """Reads and writes the keys of one or more containers.

    Implementations raise :class:`~.errors.PersistenceError` on failure.
    ``write_many`` must be all-or-nothing.

    Every key an item gives up (replaced by ``write``/``write_many`` or
    dropped by ``delete``) is recorded as retired in the same commit, and
    ``read_retired`` returns them so a later process never hands one out
    again.
    """

    @abstractmethod
    async def read_all(self, container_id: str) -> list[Pair]:
        raise NotImplementedError

    @abstractmethod
    async def read_retired(self, container_id: str) -> set[PositionKey]:
        raise NotImplementedError

    @abstractmethod
    async def write(self, container_id: str, item_id: str, key: PositionKey) -> None:
        raise NotImplementedError

    @abstractmethod
    async def write_many(
        self,
        container_id: str,
        pairs: Sequence[Pair],
        retired: Iterable[PositionKey] = (),
    ) -> None:
        """Replace the keys of *pairs* and also retire the extra *retired* keys."""
        raise NotImplementedError

    @abstractmethod
    async def delete(self, container_id: str, item_id: str) -> None:
        raise NotImplementedError


class InMemoryPersistenceAdapter(PersistenceAdapter):
    """Dict-backed adapter storing encoded keys.

    *latency* (seconds) is awaited before every call so tests can interleave
    operations the way a real network round trip would.
    """

    def __init__(self, latency: float = 0.0) -> None:
        self.latency = latency
        self._data: dict[str, dict[str, str]] = {}
        self._retired: dict[str, set[str]] = {}

    async def _pause(self) -> None:
        await asyncio.sleep(self.latency)

    def _store(self, container_id: str, updates: dict[str, str], retired: Iterable[str] = ()) -> None:
        entries = self._data.setdefault(container_id, {})
        graveyard = self._retired.setdefault(container_id, set())
        for item_id, raw in updates.items():
            old = entries.get(item_id)
            if old is not None and old != raw:
                graveyard.add(old)
        graveyard.update(retired)
        entries.update(updates)

    async def read_all(self, container_id: str) -> list[Pair]:
        await self._pause()
        stored = self._data.get(container_id, {})
        return [(item_id, PositionKey.decode(raw)) for item_id, raw in stored.items()]

    async def read_retired(self, container_id: str) -> set[PositionKey]:
        await self._pause()
        return {PositionKey.decode(raw) for raw in self._retired.get(container_id, set())}

    async def write(self, container_id: str, item_id: str, key: PositionKey) -> None:
        await self._pause()
        self._store(container_id, {item_id: key.encode()})

    async def write_many(
        self,
        container_id: str,
        pairs: Sequence[Pair],
        retired: Iterable[PositionKey] = (),
    ) -> None:
        await self._pause()
        updates = {item_id: key.encode() for item_id, key in pairs}
        self._store(container_id, updates, (key.encode() for key in retired))

    async def delete(self, container_id: str, item_id: str) -> None:
        await self._pause()
        old = self._data.get(container_id, {}).pop(item_id, None)
        if old is not None:
            self._retired.setdefault(container_id, set()).add(old)

    def snapshot(self, container_id: str) -> dict[str, str]:
        """Raw stored keys for *container_id* (encoded form)."""
        return dict(self._data.get(container_id, {}))

    def retired_snapshot(self, container_id: str) -> set[str]:
        return set(self._retired.get(container_id, set()))
