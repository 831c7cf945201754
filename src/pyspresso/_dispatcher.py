"""Dispatcher: the single consumer that owns the durable queue.

Producers on arbitrary threads hand immutable commands to the worker
through :meth:`Dispatcher.submit`, which never blocks.  The worker is a
dedicated thread running its own asyncio loop; commands are processed
strictly in arrival order, and network I/O is awaited inline, so commands
submitted during a flush wait behind it.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

import aiohttp

from pyspresso._constants import LIB_VERSION
from pyspresso._redact import redact_for_log
from pyspresso._transport import HttpTransport, Transport
from pyspresso.config import SpressoConfig
from pyspresso.connectivity import ConnectivityProbe, ResolverProbe
from pyspresso.exceptions import SpressoWorkerDeadError
from pyspresso.flush_policy import FlushPolicy
from pyspresso.models import DeliveryStatus, EventDescription, QueuedBatch
from pyspresso.storage import MessageStore, SqliteMessageStore, Table

_logger = logging.getLogger(__name__)

_sending_enabled = threading.Event()
_sending_enabled.set()


def set_sending_enabled(enabled: bool) -> None:
    """Process-wide switch; while off, flushes keep the queue untouched."""
    if enabled:
        _sending_enabled.set()
    else:
        _sending_enabled.clear()


def is_sending_enabled() -> bool:
    return _sending_enabled.is_set()


def _now_ms() -> int:
    return int(time.time() * 1000)


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class EnqueueEvent:
    event: EventDescription


@dataclass(frozen=True)
class EnqueuePeople:
    record: Mapping[str, Any]


@dataclass(frozen=True)
class Flush:
    # True when fired by the worker's own timer.
    scheduled: bool = False
    # Timer that fired it; stale timers are ignored.
    generation: int = 0


@dataclass(frozen=True)
class SetFlushInterval:
    interval_ms: int


@dataclass(frozen=True)
class SetFallbackDisabled:
    disabled: bool


@dataclass(frozen=True)
class Kill:
    pass


@dataclass(frozen=True)
class Barrier:
    """Sync point: set once every command submitted before it was handled."""

    done: threading.Event = field(default_factory=threading.Event, compare=False)


@dataclass(frozen=True)
class Shutdown:
    """Stop the worker, keeping queued records for the next process."""


Command = EnqueueEvent | EnqueuePeople | Flush | SetFlushInterval | SetFallbackDisabled | Kill | Barrier | Shutdown


class WorkerState(StrEnum):
    CREATED = "created"
    RUNNING = "running"
    DEAD = "dead"


@dataclass(slots=True)
class _Settlement:
    table: Table
    batch: QueuedBatch
    primary_url: str
    fallback_url: str | None


class Dispatcher:
    """Single-consumer command processor.

    Usage::

        dispatcher = Dispatcher(config)
        dispatcher.enqueue_event(event)
        dispatcher.flush()
        dispatcher.close()
    """

    def __init__(
        self,
        config: SpressoConfig,
        *,
        store: MessageStore | None = None,
        transport: Transport | None = None,
        connectivity: ConnectivityProbe | None = None,
        clock: Callable[[], int] = _now_ms,
        thread_name: str = "pyspresso-dispatcher",
    ) -> None:
        self._config = config
        if store is None:
            store = SqliteMessageStore(config.queue_path, batch_limit=config.batch_limit)
        self._store: MessageStore = store
        self._transport = transport
        if connectivity is None and config.check_connectivity:
            connectivity = ResolverProbe([config.events_url, config.people_url])
        self._connectivity = connectivity
        self._clock = clock
        self._policy = FlushPolicy(
            bulk_upload_limit=config.bulk_upload_limit,
            flush_interval_ms=config.flush_interval_ms,
            disable_fallback=config.disable_fallback,
        )
        self._log_posts = threading.Event()

        self._state = WorkerState.CREATED
        self._state_lock = threading.Lock()

        # Touched only from the worker thread.
        self._http_session: aiohttp.ClientSession | None = None
        self._flush_timer: asyncio.TimerHandle | None = None
        self._flush_pending = False
        self._flush_generation = 0

        self._loop: asyncio.AbstractEventLoop | None = None
        self._mailbox: asyncio.Queue[Command] | None = None
        self._ready = threading.Event()
        self._thread = threading.Thread(target=self._run_thread, name=thread_name, daemon=True)
        self._thread.start()
        self._ready.wait()

        if config.debug:
            _logger.debug("Spresso configured with %s", config.describe())

    # ------------------------------------------------------------------
    # Producer side (any thread)
    # ------------------------------------------------------------------

    @property
    def state(self) -> WorkerState:
        with self._state_lock:
            return self._state

    @property
    def policy(self) -> FlushPolicy:
        return self._policy

    def is_dead(self) -> bool:
        return self.state == WorkerState.DEAD

    def log_posts(self) -> None:
        """Log every queued record and post at INFO level."""
        self._log_posts.set()

    def submit(self, command: Command) -> None:
        """Hand *command* to the worker without blocking; dropped once dead."""
        with self._state_lock:
            loop, mailbox = self._loop, self._mailbox
            if self._state == WorkerState.DEAD or loop is None or mailbox is None:
                self._log_about("Dead worker dropping a message: %r", command)
                return
            try:
                loop.call_soon_threadsafe(mailbox.put_nowait, command)
            except RuntimeError:
                self._log_about("Worker loop closed, dropping a message: %r", command)

    def enqueue_event(self, event: EventDescription) -> None:
        self.submit(EnqueueEvent(event))

    def enqueue_people(self, record: Mapping[str, Any]) -> None:
        self.submit(EnqueuePeople(dict(record)))

    def flush(self) -> None:
        self.submit(Flush())

    def set_flush_interval(self, interval_ms: int) -> None:
        self.submit(SetFlushInterval(int(interval_ms)))

    def set_disable_fallback(self, disabled: bool) -> None:
        self.submit(SetFallbackDisabled(bool(disabled)))

    def hard_kill(self) -> None:
        """Discard every queued record and stop processing for good."""
        self.submit(Kill())

    def sync(self, timeout: float | None = 5.0) -> None:
        """Block until everything submitted so far has been handled.

        Raises
        ------
        SpressoWorkerDeadError
            If the worker is dead once the barrier is passed.
        TimeoutError
            If the worker did not reach the barrier in time.
        """
        barrier = Barrier()
        self.submit(barrier)
        deadline = None if timeout is None else time.monotonic() + timeout
        # A barrier submitted while the worker is stopping may never run.
        while not barrier.done.wait(0.05):
            if self.is_dead():
                break
            if deadline is not None and time.monotonic() >= deadline:
                raise TimeoutError(f"Dispatcher did not reach the sync point within {timeout}s")
        if self.is_dead():
            raise SpressoWorkerDeadError("Dispatcher worker is dead")

    def close(self, timeout: float | None = 5.0) -> None:
        """Stop the worker; queued records stay on disk."""
        self.submit(Shutdown())
        if threading.current_thread() is not self._thread:
            self._thread.join(timeout)

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    def _log_about(self, message: str, *args: Any) -> None:
        level = logging.INFO if self._log_posts.is_set() or self._config.debug else logging.DEBUG
        _logger.log(level, message, *args)

    def _run_thread(self) -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        self._loop = loop
        self._mailbox = asyncio.Queue()
        self._ready.set()
        try:
            loop.run_until_complete(self._run())
        finally:
            with self._state_lock:
                self._state = WorkerState.DEAD
                self._loop = None
            try:
                loop.run_until_complete(loop.shutdown_asyncgens())
            finally:
                loop.close()

    async def _run(self) -> None:
        mailbox = self._mailbox
        assert mailbox is not None  # noqa: S101
        try:
            while True:
                command = await mailbox.get()
                if isinstance(command, Shutdown):
                    self._log_about("Worker shutting down, keeping queued records")
                    break
                try:
                    keep_running = await self._handle(command)
                except Exception:
                    _logger.exception("Worker threw an unhandled exception, no more messages will be processed")
                    break
                if not keep_running:
                    break
        finally:
            self._mark_dead()
            await self._teardown()

    def _mark_dead(self) -> None:
        with self._state_lock:
            self._state = WorkerState.DEAD
        self._cancel_scheduled_flush()

    async def _teardown(self) -> None:
        # Release anyone blocked in sync() on commands that will never run.
        mailbox = self._mailbox
        while mailbox is not None and not mailbox.empty():
            leftover = mailbox.get_nowait()
            if isinstance(leftover, Barrier):
                leftover.done.set()
            else:
                self._log_about("Dead worker dropping a message: %r", leftover)

        if self._http_session is not None:
            try:
                await self._http_session.close()
            except Exception:
                _logger.debug("Closing HTTP session failed", exc_info=True)
            self._http_session = None
        try:
            self._store.close()
        except Exception:
            _logger.debug("Closing queue store failed", exc_info=True)

    def _start(self) -> None:
        """One-time setup when the first command arrives."""
        self._store.open()
        cutoff = self._clock() - self._config.data_expiration_ms
        self._store.purge_older_than(cutoff, Table.EVENTS)
        self._store.purge_older_than(cutoff, Table.PEOPLE)
        if self._transport is None:
            self._http_session = aiohttp.ClientSession()
            self._transport = HttpTransport(
                self._http_session,
                connectivity=self._connectivity,
                verbose_ack=self._config.debug,
                timeout=self._config.request_timeout,
            )
        with self._state_lock:
            self._state = WorkerState.RUNNING

    async def _handle(self, command: Command) -> bool:
        """Process one command; ``False`` stops the worker."""
        if self.state == WorkerState.CREATED:
            self._start()

        queue_depth = -1

        if isinstance(command, SetFlushInterval):
            self._log_about("Changing flush interval to %d", command.interval_ms)
            self._policy.flush_interval_ms = command.interval_ms
            self._cancel_scheduled_flush()
        elif isinstance(command, SetFallbackDisabled):
            self._log_about("Setting fallback disabled to %s", command.disabled)
            self._policy.disable_fallback = command.disabled
        elif isinstance(command, EnqueuePeople):
            self._log_about("Queuing people record for sending later: %s", redact_for_log(command.record))
            queue_depth = self._store.append(dict(command.record), Table.PEOPLE)
        elif isinstance(command, EnqueueEvent):
            record = self._prepare_event(command.event)
            self._log_about("Queuing event for sending later: %s", redact_for_log(record))
            queue_depth = self._store.append(record, Table.EVENTS)
        elif isinstance(command, Flush):
            if command.scheduled and command.generation != self._flush_generation:
                self._log_about("Ignoring stale scheduled flush")
                return True
            if command.scheduled:
                self._flush_timer = None
                self._flush_pending = False
            self._log_about("Flushing queue due to %s flush", "scheduled" if command.scheduled else "forced")
            await self._send_all()
        elif isinstance(command, Kill):
            _logger.warning("Worker received a hard kill, dumping all queued records")
            self._store.delete_all(Table.EVENTS)
            self._store.delete_all(Table.PEOPLE)
            return False
        elif isinstance(command, Barrier):
            command.done.set()
        else:
            _logger.error("Unexpected message received by worker: %r", command)

        if self._policy.should_flush_now(queue_depth):
            self._log_about("Flushing queue due to bulk upload limit")
            await self._send_all()
        elif self._policy.should_schedule(queue_depth, flush_pending=self._flush_pending):
            interval = self._policy.flush_interval_ms
            self._log_about("Queue depth %d, adding flush in %d ms", queue_depth, interval)
            self._schedule_flush(interval)
        return True

    def _prepare_event(self, event: EventDescription) -> dict[str, Any]:
        properties = self._config.device.default_properties(LIB_VERSION)
        properties["token"] = event.token
        properties.update(event.properties)
        return {
            "event": event.event_name,
            "properties": properties,
            "utcTimestampMs": event.time_ms,
            "v": event.version,
            "deviceId": event.device_id,
        }

    # ------------------------------------------------------------------
    # Flushing
    # ------------------------------------------------------------------

    def _schedule_flush(self, delay_ms: int) -> None:
        loop, mailbox = self._loop, self._mailbox
        if loop is None or mailbox is None:
            return
        self._flush_generation += 1
        self._flush_pending = True
        command = Flush(scheduled=True, generation=self._flush_generation)
        self._flush_timer = loop.call_later(max(delay_ms, 0) / 1000.0, mailbox.put_nowait, command)

    def _cancel_scheduled_flush(self) -> None:
        timer = self._flush_timer
        self._flush_generation += 1
        self._flush_timer = None
        self._flush_pending = False
        if timer is not None:
            timer.cancel()

    async def _send_all(self) -> None:
        if not is_sending_enabled():
            _logger.info("Sending is disabled, keeping queued records")
            return

        fallback_disabled = self._policy.disable_fallback
        routes = (
            (Table.EVENTS, self._config.events_url, self._config.events_fallback_url),
            (Table.PEOPLE, self._config.people_url, self._config.people_fallback_url),
        )
        pending: list[_Settlement] = []
        for table, primary, fallback in routes:
            batch = self._store.read_batch(table)
            if batch is None:
                continue
            if batch.count == 0:
                # Only unreadable rows; nothing to send.
                self._store.delete_up_to(batch.last_id, table)
                continue
            pending.append(_Settlement(table, batch, primary, None if fallback_disabled else fallback))

        if not pending:
            return

        average = self._policy.record_flush(self._clock())
        if average is not None:
            self._log_about("Average send frequency approximately %d seconds", average // 1000)

        for settlement in pending:
            await self._send_batch(settlement)

    async def _send_batch(self, settlement: _Settlement) -> None:
        transport = self._transport
        assert transport is not None  # noqa: S101
        table, batch = settlement.table, settlement.batch

        self._log_about("Sending %d %s records to %s", batch.count, table.value, settlement.primary_url)
        result = await transport.post_batch(batch.payload, settlement.primary_url, settlement.fallback_url)

        if result.status == DeliveryStatus.SUCCEEDED:
            self._log_about("Posted %d %s records to %s", batch.count, table.value, settlement.primary_url)
            self._store.delete_up_to(batch.last_id, table)
        elif result.status == DeliveryStatus.FAILED_RECOVERABLE:
            if not self._flush_pending:
                delay = self._policy.retry_delay_ms()
                if delay is not None:
                    self._log_about("Recoverable failure sending %s, retrying in %d ms", table.value, delay)
                    self._schedule_flush(delay)
        else:
            _logger.warning(
                "Unrecoverable failure sending %s, dropping %d records",
                table.value,
                batch.count,
            )
            self._store.delete_up_to(batch.last_id, table)

