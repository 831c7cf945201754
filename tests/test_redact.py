from __future__ import annotations

from pyspresso._redact import redact_for_log


def test_redact_for_log_redacts_sensitive_keys() -> None:
    record = {
        "event": "spresso_view_pdp",
        "properties": {"token": "project-token", "sku": "A1", "Email": "a@b.c"},
        "$token": "project-token",
        "$set": {"$phone": "+3100000000", "plan": "pro"},
    }

    redacted = redact_for_log(record)

    assert redacted["event"] == "spresso_view_pdp"
    assert redacted["properties"]["token"] == "<redacted>"
    assert redacted["properties"]["Email"] == "<redacted>"
    assert redacted["properties"]["sku"] == "A1"
    assert redacted["$token"] == "<redacted>"
    assert redacted["$set"] == {"$phone": "<redacted>", "plan": "pro"}


def test_redact_for_log_truncates_long_strings() -> None:
    redacted = redact_for_log({"value": "x" * 600}, max_string=10)

    assert redacted["value"].startswith("x" * 10)
    assert "<truncated>" in redacted["value"]


def test_redact_for_log_keeps_lists_and_scalars() -> None:
    assert redact_for_log([1, 2.5, True, None, b"abc"]) == [1, 2.5, True, None, "<bytes:3b>"]


def test_redact_for_log_masks_identifiers() -> None:
    record = {
        "event": "spresso_view_pdp",
        "properties": {"userId": "user-123456789", "deviceId": "short", "sku": "A1"},
        "$distinct_id": "4f1c2a90-people",
    }

    redacted = redact_for_log(record)

    assert redacted["$distinct_id"] == "4f1c***"
    assert redacted["properties"]["userId"] == "user***"
    assert redacted["properties"]["deviceId"] == "***"
    assert redacted["properties"]["sku"] == "A1"
