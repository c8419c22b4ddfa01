"""Client-local key/value persistence and cross-context change signalling."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Callable, Protocol, runtime_checkable

LOG = logging.getLogger(__name__)


@runtime_checkable
class KeyValueStorage(Protocol):
    """String key/value store shared by every context of one origin."""

    def get(self, key: str) -> str | None:
        """Return the stored value or ``None``."""

    def set(self, key: str, value: str) -> None:
        """Store ``value`` under ``key``."""

    def remove(self, key: str) -> None:
        """Delete ``key`` if present."""


class MemoryStorage:
    """Process-local storage used by tests and throwaway sessions."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._items: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self._items.get(key)

    def set(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove(self, key: str) -> None:
        self._items.pop(key, None)


class FileStorage:
    """JSON-object file shared by every process pointed at the same path.

    Each write replaces the whole file atomically, so concurrent writers are
    last-writer-wins. A missing, unreadable or corrupt file reads as empty.
    Write listeners run right after each successful replace.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._write_listeners: set[Callable[[], None]] = set()

    @property
    def path(self) -> Path:
        return self._path

    def get(self, key: str) -> str | None:
        value = self._load().get(key)
        return value if isinstance(value, str) else None

    def set(self, key: str, value: str) -> None:
        items = self._load()
        items[key] = value
        self._write(items)

    def remove(self, key: str) -> None:
        items = self._load()
        if key not in items:
            return
        del items[key]
        self._write(items)

    def subscribe(self, listener: Callable[[], None]) -> Callable[[], None]:
        """Call ``listener`` after every write made through this instance."""

        self._write_listeners.add(listener)

        def _unsubscribe() -> None:
            self._write_listeners.discard(listener)

        return _unsubscribe

    def _load(self) -> dict[str, Any]:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError:
            LOG.warning("Storage file unreadable", extra={"path": str(self._path)})
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            LOG.warning("Storage file is not valid JSON", extra={"path": str(self._path)})
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, items: dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self._path.parent, prefix=".storage-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(items, handle, sort_keys=True)
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        for listener in tuple(self._write_listeners):
            try:
                listener()
            except Exception:
                LOG.exception("Storage write listener failed")


class StorageWatcher:
    """Poll a storage file and report changes made by other processes."""

    def __init__(self, path: Path, callback: Callable[[], None], *, interval: float = 1.0) -> None:
        self._path = path
        self._callback = callback
        self._interval = interval
        self._task: asyncio.Task[Any] | None = None
        self._signature = self._stat()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Begin polling on the running event loop."""

        if self.running:
            return
        self._signature = self._stat()
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._runner())

    def stop(self) -> None:
        if self._task:
            self._task.cancel()
            self._task = None

    def check(self) -> bool:
        """Compare the file against the last seen state; notify on change."""

        signature = self._stat()
        if signature == self._signature:
            return False
        self._signature = signature
        self._callback()
        return True

    def acknowledge(self) -> None:
        """Record the current file state as seen (after a local write)."""

        self._signature = self._stat()

    async def _runner(self) -> None:
        try:
            while True:
                await asyncio.sleep(self._interval)
                try:
                    self.check()
                except Exception:
                    LOG.exception("Storage change listener failed", extra={"path": str(self._path)})
        except asyncio.CancelledError:
            return

    def _stat(self) -> tuple[int, int] | None:
        try:
            stat = self._path.stat()
        except OSError:
            return None
        return stat.st_mtime_ns, stat.st_size


__all__ = ["FileStorage", "KeyValueStorage", "MemoryStorage", "StorageWatcher"]
