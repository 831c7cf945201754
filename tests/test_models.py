from __future__ import annotations

import pydantic
import pytest

from pyspresso.models import DeliveryResult, DeliveryStatus, EventDescription, Identity


def test_event_description_requires_name() -> None:
    with pytest.raises(pydantic.ValidationError):
        EventDescription(event_name="", token="tok", time_ms=0, version="1.2.0")


def test_event_description_is_frozen() -> None:
    event = EventDescription(event_name="a", token="tok", time_ms=0, version="1.2.0")

    with pytest.raises(pydantic.ValidationError):
        event.event_name = "b"  # type: ignore[misc]


def test_identity_rejects_unknown_fields() -> None:
    with pytest.raises(pydantic.ValidationError):
        Identity(events_distinct_id="a", device_id="a", email="x@y.z")  # type: ignore[call-arg]


def test_delivery_result_succeeded_flag() -> None:
    assert DeliveryResult(status=DeliveryStatus.SUCCEEDED).succeeded
    assert not DeliveryResult(status=DeliveryStatus.FAILED_RECOVERABLE, body="busy").succeeded
