"""Flush cadence policy used by the dispatcher.

This module holds no timers of its own; the dispatcher asks it what to do
after every command and reports back when a send actually happened.
"""

from __future__ import annotations

import threading

from pyspresso._constants import DEFAULT_BULK_UPLOAD_LIMIT, DEFAULT_FLUSH_INTERVAL_MS


class FlushPolicy:
    """Depth threshold, advisory timer and flush statistics.

    ``flush_interval_ms`` and ``disable_fallback`` can change at runtime;
    ``bulk_upload_limit`` is fixed.  The average inter-flush interval is a
    diagnostic and never feeds back into scheduling.
    """

    def __init__(
        self,
        *,
        bulk_upload_limit: int = DEFAULT_BULK_UPLOAD_LIMIT,
        flush_interval_ms: int = DEFAULT_FLUSH_INTERVAL_MS,
        disable_fallback: bool = True,
    ) -> None:
        if bulk_upload_limit <= 0:
            raise ValueError("bulk_upload_limit must be > 0")
        self._lock = threading.Lock()
        self._bulk_upload_limit = bulk_upload_limit
        self._flush_interval_ms = flush_interval_ms
        self._disable_fallback = disable_fallback
        self._flush_count = 0
        self._average_flush_interval_ms = 0
        self._last_flush_ms = -1

    @property
    def bulk_upload_limit(self) -> int:
        return self._bulk_upload_limit

    @property
    def flush_interval_ms(self) -> int:
        with self._lock:
            return self._flush_interval_ms

    @flush_interval_ms.setter
    def flush_interval_ms(self, value: int) -> None:
        with self._lock:
            self._flush_interval_ms = int(value)

    @property
    def disable_fallback(self) -> bool:
        with self._lock:
            return self._disable_fallback

    @disable_fallback.setter
    def disable_fallback(self, value: bool) -> None:
        with self._lock:
            self._disable_fallback = bool(value)

    @property
    def flush_count(self) -> int:
        with self._lock:
            return self._flush_count

    @property
    def average_flush_interval_ms(self) -> int:
        with self._lock:
            return self._average_flush_interval_ms

    @property
    def last_flush_ms(self) -> int | None:
        with self._lock:
            return self._last_flush_ms if self._last_flush_ms >= 0 else None

    def should_flush_now(self, depth: int) -> bool:
        return depth >= self._bulk_upload_limit

    def should_schedule(self, depth: int, *, flush_pending: bool) -> bool:
        """Whether a delayed flush should be armed after observing *depth*."""
        if depth <= 0 or flush_pending:
            return False
        return self.flush_interval_ms >= 0

    def retry_delay_ms(self) -> int | None:
        """Delay before retrying a recoverable failure; ``None`` if timers are off."""
        interval = self.flush_interval_ms
        return interval if interval >= 0 else None

    def record_flush(self, now_ms: int) -> int | None:
        """Fold one performed send into the statistics.

        Returns the updated average in milliseconds, or ``None`` for the
        very first flush (no interval to measure yet).
        """
        with self._lock:
            new_count = self._flush_count + 1
            average: int | None = None
            if self._last_flush_ms >= 0:
                # flush_count sends so far means flush_count - 1 measured gaps
                gaps = self._flush_count - 1
                gap = now_ms - self._last_flush_ms
                total = gap + self._average_flush_interval_ms * gaps
                self._average_flush_interval_ms = total // (gaps + 1)
                average = self._average_flush_interval_ms
            self._last_flush_ms = now_ms
            self._flush_count = new_count
            return average
