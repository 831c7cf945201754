"""Custom exception hierarchy for pyspresso."""

from __future__ import annotations


class SpressoError(Exception):
    """Base exception for all pyspresso errors."""


class SpressoConfigError(SpressoError):
    """Invalid or missing configuration."""


class SpressoStorageError(SpressoError):
    """The durable queue could not be opened or written."""


class SpressoTransportError(SpressoError):
    """HTTP-level failure (network, non-2xx, missing acknowledgement).

    ``recoverable`` tells the transport whether the batch may be retried
    later or has to be discarded.
    """

    def __init__(
        self,
        message: str,
        *,
        recoverable: bool,
        status_code: int | None = None,
        endpoint: str = "",
        body: str | None = None,
    ) -> None:
        self.recoverable = recoverable
        self.status_code = status_code
        self.endpoint = endpoint
        self.body = body
        super().__init__(message)


class SpressoWorkerDeadError(SpressoError):
    """The dispatcher worker stopped and no longer processes commands.

    Never raised from fire-and-forget calls; only from explicit
    synchronisation points such as :meth:`Dispatcher.sync`.
    """
