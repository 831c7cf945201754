"""Data models shared between the facade, the identity store and the worker."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Identity(BaseModel):
    """Snapshot of the persisted identity fields.

    Parameters
    ----------
    events_distinct_id : str
        Anonymous id used for events; generated on first load.
    people_distinct_id : str or None
        Id people records are addressed to; ``None`` until
        ``People.identify`` is called.
    device_id : str
        Device id; defaults to ``events_distinct_id``.
    user_id : str or None
        Logged-in user id set by ``identify``.
    ref_user_id : str or None
        Referring user id.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    events_distinct_id: str
    people_distinct_id: str | None = None
    device_id: str
    user_id: str | None = None
    ref_user_id: str | None = None


class EventDescription(BaseModel):
    """Immutable description of a tracked event, built on the caller's thread.

    The worker turns it into the wire record by adding device defaults and
    the token.
    """

    model_config = ConfigDict(frozen=True)

    event_name: str
    properties: dict[str, Any] = Field(default_factory=dict)
    token: str
    time_ms: int
    version: str
    device_id: str | None = None

    @field_validator("event_name")
    @classmethod
    def _require_name(cls, value: str) -> str:
        if not value:
            raise ValueError("event_name must be non-empty")
        return value


class DeliveryStatus(StrEnum):
    """Outcome of delivering one batch."""

    # The collector received and acknowledged the batch.
    SUCCEEDED = "succeeded"
    # Could not be sent right now (offline, I/O error, 5xx); retry later.
    FAILED_RECOVERABLE = "failed_recoverable"
    # The batch itself is unsendable or was rejected; discard it.
    FAILED_UNRECOVERABLE = "failed_unrecoverable"


class DeliveryResult(BaseModel):
    """Final classification of a ``post_batch`` call plus the last response body."""

    model_config = ConfigDict(frozen=True)

    status: DeliveryStatus
    body: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == DeliveryStatus.SUCCEEDED


class QueuedBatch(BaseModel):
    """A batch read from the durable queue.

    ``last_id`` is the highest row id included; everything up to and
    including it is deleted once the batch is settled.
    """

    model_config = ConfigDict(frozen=True)

    last_id: int
    payload: str
    count: int
