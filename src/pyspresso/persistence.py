"""String-keyed durable key-value stores used for identity persistence.

Stores notify registered listeners after every change.  Listeners may run
on any thread (whichever thread performed the write) and must not block.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import tempfile
import threading
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Protocol

_logger = logging.getLogger(__name__)

#: ``listener(store, key)``; *key* is ``None`` when the whole store changed.
ChangeListener = Callable[["KeyValueStore", "str | None"], None]


class KeyValueStore(Protocol):
    def get(self, key: str, default: str | None = None) -> str | None:
        ...

    def put(self, key: str, value: str) -> None:
        ...

    def remove(self, key: str) -> None:
        ...

    def clear(self) -> None:
        ...

    def items(self) -> dict[str, str]:
        ...

    def add_listener(self, listener: ChangeListener) -> None:
        ...

    def remove_listener(self, listener: ChangeListener) -> None:
        ...


class MemoryStore:
    """Non-durable store; the base for :class:`JsonFileStore`."""

    def __init__(self, initial: Mapping[str, str] | None = None) -> None:
        self._lock = threading.RLock()
        self._data: dict[str, str] = dict(initial or {})
        self._listeners: list[ChangeListener] = []

    def get(self, key: str, default: str | None = None) -> str | None:
        with self._lock:
            return self._data.get(key, default)

    def put(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value
            self._commit()
        self._notify(key)

    def put_many(self, values: Mapping[str, str | None]) -> None:
        """Write several keys in one commit; ``None`` values remove the key."""
        with self._lock:
            for key, value in values.items():
                if value is None:
                    self._data.pop(key, None)
                else:
                    self._data[key] = value
            self._commit()
        self._notify(None)

    def remove(self, key: str) -> None:
        with self._lock:
            if key not in self._data:
                return
            del self._data[key]
            self._commit()
        self._notify(key)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()
            self._commit()
        self._notify(None)

    def replace(self, values: Mapping[str, str]) -> None:
        """Swap the whole content in a single commit and notification."""
        with self._lock:
            self._data = dict(values)
            self._commit()
        self._notify(None)

    def items(self) -> dict[str, str]:
        with self._lock:
            return dict(self._data)

    def add_listener(self, listener: ChangeListener) -> None:
        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def remove_listener(self, listener: ChangeListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _commit(self) -> None:
        """Persist ``_data``; called with the lock held."""

    def _notify(self, key: str | None) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(self, key)
            except Exception:
                _logger.debug("Store change listener failed", exc_info=True)


class JsonFileStore(MemoryStore):
    """Key-value store persisted as one JSON object per file.

    Writes go to a temporary file in the same directory and are moved into
    place with :func:`os.replace`, so a crash leaves either the old or the
    new content.  An unreadable file is logged and treated as empty; a
    failed write is logged and the values live on in memory only.
    """

    def __init__(self, path: Path | str) -> None:
        super().__init__()
        self._path = Path(path)
        self._data = self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> dict[str, str]:
        try:
            text = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError:
            _logger.error("Cannot read %s, starting empty", self._path, exc_info=True)
            return {}

        try:
            loaded = json.loads(text)
        except json.JSONDecodeError:
            _logger.error("Cannot parse %s, starting empty", self._path)
            return {}
        if not isinstance(loaded, dict):
            _logger.error("%s does not hold a JSON object, starting empty", self._path)
            return {}
        return {str(k): str(v) for k, v in loaded.items() if v is not None}

    def _commit(self) -> None:
        try:
            self._write()
        except OSError:
            # Values stay in memory for this process.
            _logger.error("Cannot persist %s", self._path, exc_info=True)

    def _write(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self._path.name}.", dir=self._path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(self._data, handle, separators=(",", ":"))
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self._path)
        except BaseException:
            with contextlib.suppress(OSError):
                os.unlink(tmp_name)
            raise

