"""Session id management for tracked events."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable

from pyspresso._constants import INTERNAL_EVENT_NAME, SESSION_INACTIVITY_MS


def _now_ms() -> int:
    return int(time.time() * 1000)


class SessionTracker:
    """Derives ``<device_id>-<creation ms>`` session ids.

    A new id is created when none exists, when no real activity has been
    recorded yet, or when the last real activity is older than
    *inactivity_ms*.  The internal synthetic event never counts as
    activity.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], int] = _now_ms,
        inactivity_ms: int = SESSION_INACTIVITY_MS,
        internal_event_name: str = INTERNAL_EVENT_NAME,
    ) -> None:
        self._clock = clock
        self._inactivity_ms = inactivity_ms
        self._internal_event_name = internal_event_name
        self._lock = threading.Lock()
        self._session_id: str | None = None
        self._last_activity_ms: int | None = None

    @property
    def last_activity_ms(self) -> int | None:
        return self._last_activity_ms

    def session_id(self, device_id: str | None) -> str | None:
        """Return the current session id, rotating it if needed."""
        with self._lock:
            now = self._clock()
            if self._session_id is None or self._last_activity_ms is None:
                self._create(device_id, now)
            elif now - self._last_activity_ms > self._inactivity_ms:
                self._create(device_id, now)
            return self._session_id

    def new_session(self, device_id: str | None) -> str | None:
        """Force a fresh session id."""
        with self._lock:
            self._create(device_id, self._clock())
            return self._session_id

    def record_activity(self, event_name: str | None) -> None:
        if not event_name or event_name == self._internal_event_name:
            return
        with self._lock:
            self._last_activity_ms = self._clock()

    def _create(self, device_id: str | None, now_ms: int) -> None:
        if device_id:
            self._session_id = f"{device_id}-{now_ms}"
        else:
            self._session_id = None
