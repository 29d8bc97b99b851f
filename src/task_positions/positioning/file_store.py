"""YAML file-backed persistence adapter.

All containers of a project live in a single ``positions.yaml`` inside the
project's ``.task_positions/`` directory::

    version: 1
    containers:
      job:1:
      - {id: a, key: V}
    retired:
      job:1: [U]

Every call takes a cross-process file lock, reads the file, applies its
change and writes the whole file back with write-tmp-then-rename, so
``write_many`` and the retired keys it records commit as one atomic swap.
A file that does not have this shape is reported, never overwritten.
Blocking I/O runs in a worker thread to keep the event loop free.
"""

from __future__ import annotations

import asyncio
import threading
from pathlib import Path
from typing import Any, Callable, Iterable, Sequence

import yaml
from filelock import FileLock, Timeout

from ..constants import LOCK_TIMEOUT, POSITIONS_FILE, POSITIONS_LOCK_FILE, STORE_VERSION
from ..io_utils import _atomic_write_yaml, _load_data_with_error
from .errors import InvalidKeyError, PersistenceError
from .keys import PositionKey
from .persistence import Pair, PersistenceAdapter

Entries = dict[str, str]
Containers = dict[str, list[dict[str, Any]]]
Graveyard = dict[str, list[str]]


def _load_raw(path: Path) -> tuple[Containers, Graveyard]:
    """Load the container and retired-key maps from *path*.

    Raises:
        PersistenceError: if the file cannot be parsed or has the wrong shape.
    """
    data, err = _load_data_with_error(path, {})
    if err:
        raise PersistenceError(f"Refusing to use corrupt store: {err}")
    containers = data.get("containers", {})
    if containers is None:
        containers = {}
    if not isinstance(containers, dict):
        raise PersistenceError(
            f"{path.name}: 'containers' must be a mapping, got {type(containers).__name__}"
        )
    for container_id, rows in containers.items():
        if not isinstance(rows, list) or not all(
            isinstance(row, dict) and row.get("id") is not None and row.get("key") is not None
            for row in rows
        ):
            raise PersistenceError(f"{path.name}: malformed rows for container {container_id}")
    retired = data.get("retired", {})
    if retired is None:
        retired = {}
    if not isinstance(retired, dict) or not all(isinstance(keys, list) for keys in retired.values()):
        raise PersistenceError(f"{path.name}: 'retired' must map container ids to key lists")
    return dict(containers), dict(retired)


def _save_raw(path: Path, containers: Containers, retired: Graveyard) -> None:
    _atomic_write_yaml(path, {"version": STORE_VERSION, "containers": containers, "retired": retired})


def _entries(rows: list[dict[str, Any]] | None) -> Entries:
    return {str(row["id"]): str(row["key"]) for row in rows or []}


def _rows(entries: Entries) -> list[dict[str, str]]:
    return [{"id": item_id, "key": key} for item_id, key in sorted(entries.items(), key=lambda kv: kv[1])]


def _decode(raw: str, where: str) -> PositionKey:
    try:
        return PositionKey.decode(raw)
    except InvalidKeyError as exc:
        raise PersistenceError(f"{POSITIONS_FILE}: corrupt key in {where}: {exc}") from exc


class YamlPersistenceAdapter(PersistenceAdapter):
    """Thread- and process-safe adapter over ``positions.yaml``.

    Parameters
    ----------
    state_dir:
        Path to the ``.task_positions/`` directory for the project.
    """

    def __init__(self, state_dir: Path, lock_timeout: float = LOCK_TIMEOUT) -> None:
        self._state_dir = state_dir
        self._path = state_dir / POSITIONS_FILE
        self._lock = FileLock(str(state_dir / POSITIONS_LOCK_FILE), timeout=lock_timeout)
        self._thread_lock = threading.RLock()

    @property
    def path(self) -> Path:
        return self._path

    # -- internal helpers ---------------------------------------------------

    def _load_sync(self) -> tuple[Containers, Graveyard]:
        with self._thread_lock:
            self._state_dir.mkdir(parents=True, exist_ok=True)
            with self._lock:
                return _load_raw(self._path)

    def _read_sync(self, container_id: str) -> list[Pair]:
        containers, _ = self._load_sync()
        entries = _entries(containers.get(container_id))
        return [(item_id, _decode(raw, container_id)) for item_id, raw in entries.items()]

    def _read_retired_sync(self, container_id: str) -> set[PositionKey]:
        _, retired = self._load_sync()
        return {_decode(str(raw), container_id) for raw in retired.get(container_id, [])}

    def _mutate_sync(self, container_id: str, change: Callable[[Entries, set[str]], None]) -> None:
        with self._thread_lock:
            self._state_dir.mkdir(parents=True, exist_ok=True)
            with self._lock:
                containers, retired = _load_raw(self._path)
                entries = _entries(containers.get(container_id))
                graveyard = {str(raw) for raw in retired.get(container_id, [])}
                change(entries, graveyard)
                containers[container_id] = _rows(entries)
                retired[container_id] = sorted(graveyard)
                _save_raw(self._path, containers, retired)

    async def _run(self, func: Callable[..., Any], *args: Any) -> Any:
        try:
            return await asyncio.to_thread(func, *args)
        except Timeout as exc:
            raise PersistenceError(f"Timed out waiting for {self._lock.lock_file}") from exc
        except (OSError, yaml.YAMLError) as exc:
            raise PersistenceError(f"{self._path.name}: {exc.__class__.__name__}: {exc}") from exc

    # -- PersistenceAdapter -------------------------------------------------

    async def read_all(self, container_id: str) -> list[Pair]:
        return await self._run(self._read_sync, container_id)

    async def read_retired(self, container_id: str) -> set[PositionKey]:
        return await self._run(self._read_retired_sync, container_id)

    async def write(self, container_id: str, item_id: str, key: PositionKey) -> None:
        await self.write_many(container_id, [(item_id, key)])

    async def write_many(
        self,
        container_id: str,
        pairs: Sequence[Pair],
        retired: Iterable[PositionKey] = (),
    ) -> None:
        updates = {item_id: key.encode() for item_id, key in pairs}
        extra = {key.encode() for key in retired}

        def change(entries: Entries, graveyard: set[str]) -> None:
            for item_id, raw in updates.items():
                old = entries.get(item_id)
                if old is not None and old != raw:
                    graveyard.add(old)
            graveyard.update(extra)
            entries.update(updates)

        await self._run(self._mutate_sync, container_id, change)

    async def delete(self, container_id: str, item_id: str) -> None:
        def change(entries: Entries, graveyard: set[str]) -> None:
            old = entries.pop(item_id, None)
            if old is not None:
                graveyard.add(old)

        await self._run(self._mutate_sync, container_id, change)
