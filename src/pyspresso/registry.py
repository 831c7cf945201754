"""Explicit handle-keyed registry with one-time initialisation."""

from __future__ import annotations

import threading
from collections.abc import Callable, Hashable
from typing import Generic, TypeVar

T = TypeVar("T")


class Registry(Generic[T]):
    """Maps an opaque handle (a project token, an app context...) to one instance.

    The factory runs at most once per handle, under the registry lock, so
    concurrent first callers all get the same object.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._instances: dict[Hashable, T] = {}

    def get(self, handle: Hashable) -> T | None:
        with self._lock:
            return self._instances.get(handle)

    def get_or_create(self, handle: Hashable, factory: Callable[[], T]) -> T:
        with self._lock:
            instance = self._instances.get(handle)
            if instance is None:
                instance = factory()
                self._instances[handle] = instance
            return instance

    def remove(self, handle: Hashable) -> T | None:
        with self._lock:
            return self._instances.pop(handle, None)

    def all_instances(self) -> list[T]:
        with self._lock:
            return list(self._instances.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._instances)
