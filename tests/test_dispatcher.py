from __future__ import annotations

import json
import socket
import time
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

from pyspresso._dispatcher import Dispatcher, Flush, WorkerState, set_sending_enabled
from pyspresso.config import DeviceProfile, SpressoConfig
from pyspresso.exceptions import SpressoWorkerDeadError
from pyspresso.models import DeliveryResult, DeliveryStatus, EventDescription
from pyspresso.storage import SqliteMessageStore, Table

EVENTS_URL = "https://collector.example/track"
EVENTS_FALLBACK_URL = "https://fallback.example/track"
PEOPLE_URL = "https://people.example/engage"


class _RecordingTransport:
    def __init__(self, *statuses: DeliveryStatus) -> None:
        self._statuses = list(statuses)
        self.calls: list[tuple[str, str, str | None]] = []

    async def post_batch(self, raw_payload: str, primary_url: str, fallback_url: str | None) -> DeliveryResult:
        self.calls.append((raw_payload, primary_url, fallback_url))
        status = self._statuses.pop(0) if self._statuses else DeliveryStatus.SUCCEEDED
        return DeliveryResult(status=status)


class _BrokenStore(SqliteMessageStore):
    def append(self, entry: dict[str, Any], table: Table) -> int:
        raise RuntimeError("disk on fire")


def _config(tmp_path: Path, **overrides: Any) -> SpressoConfig:
    values: dict[str, Any] = {
        "token": "tok",
        "data_dir": tmp_path,
        "flush_interval_ms": -1,
        "events_endpoint": EVENTS_URL,
        "events_fallback_endpoint": EVENTS_FALLBACK_URL,
        "people_endpoint": PEOPLE_URL,
        "device": DeviceProfile(os="Linux", os_version="6.1", model="x86_64"),
    }
    values.update(overrides)
    return SpressoConfig(**values)


def _event(name: str = "spresso_view_pdp", **props: Any) -> EventDescription:
    return EventDescription(
        event_name=name,
        properties=props,
        token="tok",
        time_ms=1_700_000_000_000,
        version="1.2.0",
        device_id="device-1",
    )


def _queued(config: SpressoConfig, table: Table = Table.EVENTS) -> int:
    store = SqliteMessageStore(config.queue_path)
    store.open()
    try:
        return store.count(table)
    finally:
        store.close()


def _wait_for(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.01)
    raise AssertionError("condition not met in time")


@pytest.fixture
def make_dispatcher() -> Iterator[Callable[..., Dispatcher]]:
    created: list[Dispatcher] = []

    def factory(config: SpressoConfig, **kwargs: Any) -> Dispatcher:
        dispatcher = Dispatcher(config, **kwargs)
        created.append(dispatcher)
        return dispatcher

    yield factory
    for dispatcher in created:
        dispatcher.close()


@pytest.fixture(autouse=True)
def _sending_enabled() -> Iterator[None]:
    set_sending_enabled(True)
    yield
    set_sending_enabled(True)


def test_bulk_limit_triggers_immediate_flush(tmp_path: Path, make_dispatcher: Callable[..., Dispatcher]) -> None:
    config = _config(tmp_path)
    transport = _RecordingTransport()
    dispatcher = make_dispatcher(config, transport=transport)

    for i in range(39):
        dispatcher.enqueue_event(_event(n=i))
    dispatcher.sync()
    assert transport.calls == []

    dispatcher.enqueue_event(_event(n=39))
    dispatcher.sync()

    assert len(transport.calls) == 1
    payload, primary, _fallback = transport.calls[0]
    assert primary == EVENTS_URL
    assert [r["properties"]["n"] for r in json.loads(payload)] == list(range(40))
    assert _queued(config) == 0


def test_event_wire_record(tmp_path: Path, make_dispatcher: Callable[..., Dispatcher]) -> None:
    config = _config(tmp_path)
    transport = _RecordingTransport()
    dispatcher = make_dispatcher(config, transport=transport)

    dispatcher.enqueue_event(_event("spresso_tap_add_to_cart", sku="A1", os="override"))
    dispatcher.flush()
    dispatcher.sync()

    [record] = json.loads(transport.calls[0][0])
    assert record["event"] == "spresso_tap_add_to_cart"
    assert record["utcTimestampMs"] == 1_700_000_000_000
    assert record["v"] == "1.2.0"
    assert record["deviceId"] == "device-1"
    props = record["properties"]
    assert props["token"] == "tok"
    assert props["libVersion"] == "1.2.0"
    assert props["osVersion"] == "6.1"
    assert props["sku"] == "A1"
    # event properties win over device defaults
    assert props["os"] == "override"


def test_enqueue_order_is_preserved(tmp_path: Path, make_dispatcher: Callable[..., Dispatcher]) -> None:
    config = _config(tmp_path)
    transport = _RecordingTransport()
    dispatcher = make_dispatcher(config, transport=transport)

    for name in ("e0", "e1", "e2", "e3", "e4"):
        dispatcher.enqueue_event(_event(name))
    dispatcher.flush()
    dispatcher.sync()

    assert [r["event"] for r in json.loads(transport.calls[0][0])] == ["e0", "e1", "e2", "e3", "e4"]


def test_people_records_go_to_people_endpoint(tmp_path: Path, make_dispatcher: Callable[..., Dispatcher]) -> None:
    config = _config(tmp_path)
    transport = _RecordingTransport()
    dispatcher = make_dispatcher(config, transport=transport)

    dispatcher.enqueue_people({"$set": {"plan": "pro"}, "$token": "tok", "$time": 1, "$distinct_id": "u1"})
    dispatcher.flush()
    dispatcher.sync()

    assert len(transport.calls) == 1
    payload, primary, _ = transport.calls[0]
    assert primary == PEOPLE_URL
    assert json.loads(payload) == [{"$set": {"plan": "pro"}, "$token": "tok", "$time": 1, "$distinct_id": "u1"}]
    assert _queued(config, Table.PEOPLE) == 0


def test_timer_flush_after_interval(tmp_path: Path, make_dispatcher: Callable[..., Dispatcher]) -> None:
    config = _config(tmp_path, flush_interval_ms=30)
    transport = _RecordingTransport()
    dispatcher = make_dispatcher(config, transport=transport)

    dispatcher.enqueue_event(_event())

    _wait_for(lambda: len(transport.calls) == 1)
    dispatcher.sync()
    assert _queued(config) == 0


def test_set_flush_interval_replaces_pending_timer(tmp_path: Path, make_dispatcher: Callable[..., Dispatcher]) -> None:
    config = _config(tmp_path, flush_interval_ms=60_000)
    transport = _RecordingTransport()
    dispatcher = make_dispatcher(config, transport=transport)

    dispatcher.enqueue_event(_event("first"))
    dispatcher.set_flush_interval(30)
    dispatcher.enqueue_event(_event("second"))

    _wait_for(lambda: len(transport.calls) == 1)
    assert [r["event"] for r in json.loads(transport.calls[0][0])] == ["first", "second"]
    assert dispatcher.policy.flush_interval_ms == 30


def test_stale_timer_flush_leaves_pending_timer_alone(
    tmp_path: Path, make_dispatcher: Callable[..., Dispatcher]
) -> None:
    config = _config(tmp_path, flush_interval_ms=60_000)
    transport = _RecordingTransport()
    dispatcher = make_dispatcher(config, transport=transport)

    dispatcher.enqueue_event(_event())
    # A timer that was replaced before it fired.
    dispatcher.submit(Flush(scheduled=True, generation=-1))
    dispatcher.sync()

    assert transport.calls == []
    assert _queued(config) == 1

    dispatcher.enqueue_event(_event("second"))
    dispatcher.sync()
    assert transport.calls == []
    assert _queued(config) == 2


def test_unresolvable_collector_keeps_rows(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, make_dispatcher: Callable[..., Dispatcher]
) -> None:
    def fake_getaddrinfo(host: str, *args: object) -> list[object]:
        raise socket.gaierror("no network")

    monkeypatch.setattr(socket, "getaddrinfo", fake_getaddrinfo)
    config = _config(tmp_path, check_connectivity=True)
    dispatcher = make_dispatcher(config)

    dispatcher.enqueue_event(_event())
    dispatcher.flush()
    dispatcher.sync()

    assert not dispatcher.is_dead()
    assert _queued(config) == 1


def test_recoverable_failure_keeps_rows(tmp_path: Path, make_dispatcher: Callable[..., Dispatcher]) -> None:
    config = _config(tmp_path)
    transport = _RecordingTransport(DeliveryStatus.FAILED_RECOVERABLE, DeliveryStatus.SUCCEEDED)
    dispatcher = make_dispatcher(config, transport=transport)

    dispatcher.enqueue_event(_event())
    dispatcher.flush()
    dispatcher.sync()
    assert _queued(config) == 1

    dispatcher.flush()
    dispatcher.sync()
    assert _queued(config) == 0
    # same rows, same bytes
    assert transport.calls[0][0] == transport.calls[1][0]


def test_recoverable_failure_schedules_retry(tmp_path: Path, make_dispatcher: Callable[..., Dispatcher]) -> None:
    config = _config(tmp_path, flush_interval_ms=30)
    transport = _RecordingTransport(DeliveryStatus.FAILED_RECOVERABLE, DeliveryStatus.SUCCEEDED)
    dispatcher = make_dispatcher(config, transport=transport)

    dispatcher.enqueue_event(_event())

    _wait_for(lambda: len(transport.calls) == 2)
    dispatcher.sync()
    assert _queued(config) == 0


def test_unrecoverable_failure_discards_batch(tmp_path: Path, make_dispatcher: Callable[..., Dispatcher]) -> None:
    config = _config(tmp_path)
    transport = _RecordingTransport(DeliveryStatus.FAILED_UNRECOVERABLE)
    dispatcher = make_dispatcher(config, transport=transport)

    dispatcher.enqueue_event(_event())
    dispatcher.flush()
    dispatcher.sync()

    assert len(transport.calls) == 1
    assert _queued(config) == 0


def test_empty_flush_does_nothing(tmp_path: Path, make_dispatcher: Callable[..., Dispatcher]) -> None:
    config = _config(tmp_path)
    transport = _RecordingTransport()
    dispatcher = make_dispatcher(config, transport=transport)

    dispatcher.flush()
    dispatcher.sync()

    assert transport.calls == []
    assert dispatcher.policy.flush_count == 0
    assert dispatcher.policy.average_flush_interval_ms == 0


def test_flush_statistics(tmp_path: Path, make_dispatcher: Callable[..., Dispatcher]) -> None:
    now = [10_000]
    config = _config(tmp_path)
    transport = _RecordingTransport()
    dispatcher = make_dispatcher(config, transport=transport, clock=lambda: now[0])

    for step in (0, 1_000, 3_000):
        now[0] += step
        dispatcher.enqueue_event(_event())
        dispatcher.flush()
        dispatcher.sync()

    assert dispatcher.policy.flush_count == 3
    assert dispatcher.policy.average_flush_interval_ms == 2_000


def test_sending_disabled_keeps_queue(tmp_path: Path, make_dispatcher: Callable[..., Dispatcher]) -> None:
    config = _config(tmp_path)
    transport = _RecordingTransport()
    dispatcher = make_dispatcher(config, transport=transport)
    set_sending_enabled(False)

    dispatcher.enqueue_event(_event())
    dispatcher.flush()
    dispatcher.sync()

    assert transport.calls == []
    assert _queued(config) == 1
    assert dispatcher.policy.flush_count == 0


def test_fallback_url_follows_setting(tmp_path: Path, make_dispatcher: Callable[..., Dispatcher]) -> None:
    config = _config(tmp_path)
    transport = _RecordingTransport()
    dispatcher = make_dispatcher(config, transport=transport)

    dispatcher.enqueue_event(_event())
    dispatcher.flush()
    dispatcher.set_disable_fallback(False)
    dispatcher.enqueue_event(_event())
    dispatcher.flush()
    dispatcher.sync()

    assert [call[2] for call in transport.calls] == [None, EVENTS_FALLBACK_URL]


def test_expired_records_are_purged_on_start(tmp_path: Path, make_dispatcher: Callable[..., Dispatcher]) -> None:
    config = _config(tmp_path)
    store = SqliteMessageStore(config.queue_path)
    store.open()
    store.append({"event": "old"}, Table.EVENTS)
    store.close()

    far_future = int(time.time() * 1000) + config.data_expiration_ms + 60_000
    transport = _RecordingTransport()
    dispatcher = make_dispatcher(config, transport=transport, clock=lambda: far_future)

    dispatcher.flush()
    dispatcher.sync()

    assert transport.calls == []
    assert _queued(config) == 0


def test_close_keeps_queued_records(tmp_path: Path) -> None:
    config = _config(tmp_path)
    dispatcher = Dispatcher(config, transport=_RecordingTransport())

    dispatcher.enqueue_event(_event())
    dispatcher.close()

    assert dispatcher.state == WorkerState.DEAD
    assert _queued(config) == 1


def test_kill_discards_queue_and_stops(tmp_path: Path, make_dispatcher: Callable[..., Dispatcher]) -> None:
    config = _config(tmp_path)
    transport = _RecordingTransport()
    dispatcher = make_dispatcher(config, transport=transport)

    for _ in range(3):
        dispatcher.enqueue_event(_event())
    dispatcher.enqueue_people({"$set": {"a": 1}, "$distinct_id": "u1"})
    dispatcher.hard_kill()

    with pytest.raises(SpressoWorkerDeadError):
        dispatcher.sync()
    assert dispatcher.is_dead()
    assert _queued(config, Table.EVENTS) == 0
    assert _queued(config, Table.PEOPLE) == 0

    # dropped, not raised
    dispatcher.enqueue_event(_event())
    dispatcher.flush()
    assert transport.calls == []


def test_unexpected_fault_is_fail_stop(
    tmp_path: Path, make_dispatcher: Callable[..., Dispatcher], caplog: pytest.LogCaptureFixture
) -> None:
    config = _config(tmp_path)
    transport = _RecordingTransport()
    dispatcher = make_dispatcher(config, store=_BrokenStore(config.queue_path), transport=transport)

    dispatcher.enqueue_event(_event())
    with pytest.raises(SpressoWorkerDeadError):
        dispatcher.sync()

    assert dispatcher.state == WorkerState.DEAD
    assert "no more messages will be processed" in caplog.text
    dispatcher.enqueue_event(_event())
    dispatcher.flush()
    assert transport.calls == []
