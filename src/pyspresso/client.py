"""Public facade: tracking events and people updates."""

from __future__ import annotations

import datetime as dt
import json
import logging
import threading
import time
import uuid
from collections.abc import Callable, Hashable, Mapping, Sequence
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from pyspresso._constants import ENGAGE_DATE_FORMAT, LIB_VERSION
from pyspresso._dispatcher import Dispatcher
from pyspresso.config import SpressoConfig
from pyspresso.connectivity import ConnectivityProbe
from pyspresso.exceptions import SpressoError
from pyspresso.identity import IdentityStore
from pyspresso.models import EventDescription
from pyspresso.persistence import JsonFileStore
from pyspresso.registry import Registry
from pyspresso.session import SessionTracker

_logger = logging.getLogger(__name__)

_collection_enabled = threading.Event()
_collection_enabled.set()


def set_collection_enabled(enabled: bool) -> None:
    """Process-wide switch; while off, ``track`` does nothing."""
    if enabled:
        _collection_enabled.set()
    else:
        _collection_enabled.clear()


def is_collection_enabled() -> bool:
    return _collection_enabled.is_set()


def _now_ms() -> int:
    return int(time.time() * 1000)


def _timezone_offset_ms() -> int:
    offset = dt.datetime.now().astimezone().utcoffset()
    return int(offset.total_seconds() * 1000) if offset is not None else 0


def _is_json(value: Any) -> bool:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return False
    return True


_INSTANCES: Registry[SpressoClient] = Registry()
_REFERRER_STORES: Registry[JsonFileStore] = Registry()


def shared_referrer_store(path: Path) -> JsonFileStore:
    """One store object per referrer file, so every client sees every change."""
    key = path.expanduser().absolute()
    return _REFERRER_STORES.get_or_create(key, lambda: JsonFileStore(key))


class SpressoClient:
    """Records events and people updates for one project token.

    Usage::

        client = SpressoClient.get_instance("shop", SpressoConfig(token="..."))
        client.identify("user-42")
        client.track("spresso_view_pdp", {"productId": "sku-1"})
        client.flush()

    All methods may be called from any thread and never raise for
    telemetry failures; problems are logged instead.
    """

    def __init__(
        self,
        config: SpressoConfig,
        *,
        dispatcher: Dispatcher | None = None,
        identity: IdentityStore | None = None,
        sessions: SessionTracker | None = None,
        connectivity: ConnectivityProbe | None = None,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self._config = config
        self._clock = clock
        self._handle: Hashable | None = None
        self._dispatcher = dispatcher or Dispatcher(config, connectivity=connectivity)
        self._identity = identity or IdentityStore(
            JsonFileStore(config.identity_path),
            shared_referrer_store(config.referrer_path),
        )
        self._sessions = sessions or SessionTracker(clock=clock)
        self._people = People(self)

        # People records buffered before an earlier shutdown go out now
        # if the people id was already known.
        self._send_people_records(self._identity.drain_waiting_people_records())

    @classmethod
    def get_instance(cls, handle: Hashable, config: SpressoConfig | None = None, **kwargs: Any) -> SpressoClient:
        """Return the client registered for *handle*, creating it on first use.

        *config* defaults to :meth:`SpressoConfig.from_env` and is only
        consulted when the instance is created.
        """

        def factory() -> SpressoClient:
            instance = cls(config or SpressoConfig.from_env(), **kwargs)
            instance._handle = handle
            return instance

        return _INSTANCES.get_or_create(handle, factory)

    @staticmethod
    def all_instances() -> list[SpressoClient]:
        return _INSTANCES.all_instances()

    @property
    def config(self) -> SpressoConfig:
        return self._config

    @property
    def people(self) -> People:
        return self._people

    @property
    def dispatcher(self) -> Dispatcher:
        return self._dispatcher

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    def identify(self, user_id: str | None) -> None:
        """Mark subsequent events as coming from the logged-in *user_id*.

        Does not touch the people distinct id; see :meth:`People.identify`.
        """
        self._identity.set_user_id(user_id)

    def get_distinct_id(self) -> str:
        return self._identity.get_events_distinct_id()

    def get_user_id(self) -> str | None:
        return self._identity.get_user_id()

    def get_device_id(self) -> str:
        return self._identity.get_device_id()

    def set_device_id(self, device_id: str) -> None:
        self._identity.set_device_id(device_id)

    def new_session(self) -> str | None:
        """Start a new session immediately and return its id."""
        return self._sessions.new_session(self.get_device_id())

    # ------------------------------------------------------------------
    # Super properties
    # ------------------------------------------------------------------

    def get_super_properties(self) -> dict[str, Any]:
        return self._identity.get_super_properties()

    def register_super_properties(self, properties: Mapping[str, Any]) -> None:
        self._identity.register_super_properties(properties)

    def register_super_properties_once(self, properties: Mapping[str, Any]) -> None:
        self._identity.register_super_properties_once(properties)

    def unregister_super_property(self, name: str) -> None:
        self._identity.unregister_super_property(name)

    def clear_super_properties(self) -> None:
        self._identity.clear_super_properties()

    def get_referrer_properties(self) -> dict[str, str]:
        return self._identity.get_referrer_properties()

    def write_referrer_properties(self, properties: Mapping[str, str]) -> None:
        self._identity.write_referrer_properties(properties)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def track(self, event_name: str, properties: Mapping[str, Any] | None = None) -> None:
        """Queue one event.

        Property precedence, lowest first: referrer properties, super
        properties, the reserved fields (``userId``, ``isLoggedIn``,
        ``deviceId``, ``sessionId``, ``uid``, ``timezoneOffsetms``), then
        *properties*.
        """
        if not is_collection_enabled():
            _logger.debug("Collection disabled, not tracking %s", event_name)
            return
        if self._config.debug:
            _logger.debug("track %s", event_name)

        now = self._clock()
        identity = self._identity.identity()

        message_props: dict[str, Any] = {}
        message_props.update(self._identity.get_referrer_properties())
        message_props.update(self._identity.get_super_properties())

        if identity.user_id is not None:
            message_props["userId"] = identity.user_id
            message_props["isLoggedIn"] = True
        else:
            message_props["isLoggedIn"] = False
        message_props["deviceId"] = identity.device_id

        session_id = self._sessions.session_id(identity.device_id)
        if session_id is not None:
            message_props["sessionId"] = session_id
        message_props["uid"] = str(uuid.uuid4())
        message_props["timezoneOffsetms"] = _timezone_offset_ms()

        if properties:
            message_props.update(properties)

        if not _is_json(message_props):
            _logger.error("Properties of event %s are not JSON serialisable, dropping it", event_name)
            return

        try:
            event = EventDescription(
                event_name=event_name,
                properties=message_props,
                token=self._config.token,
                time_ms=now,
                version=LIB_VERSION,
                device_id=identity.device_id,
            )
        except ValidationError:
            _logger.error("Cannot track event %r", event_name, exc_info=True)
            return

        self._dispatcher.enqueue_event(event)
        self._sessions.record_activity(event_name)

    def flush(self) -> None:
        """Ask the worker to send everything queued so far."""
        if self._config.debug:
            _logger.debug("flush requested")
        self._dispatcher.flush()

    # ------------------------------------------------------------------
    # Runtime settings
    # ------------------------------------------------------------------

    def set_flush_interval(self, interval_ms: int) -> None:
        self._dispatcher.set_flush_interval(interval_ms)

    def enable_fallback_server(self, enabled: bool) -> None:
        self._dispatcher.set_disable_fallback(not enabled)

    def log_posts(self) -> None:
        self._dispatcher.log_posts()

    def clear_preferences(self) -> None:
        """Forget ids, super properties and waiting people records.

        Records already queued for delivery are unaffected.
        """
        self._identity.clear_all()

    # ------------------------------------------------------------------
    # Push id
    # ------------------------------------------------------------------

    def store_push_id(self, registration_id: str) -> None:
        self._identity.store_push_id(registration_id)

    def get_push_id(self) -> str | None:
        return self._identity.get_push_id()

    def clear_push_id(self) -> None:
        self._identity.clear_push_id()

    # ------------------------------------------------------------------

    def close(self) -> None:
        """Stop the worker (queued records stay on disk) and unregister."""
        if self._handle is not None:
            _INSTANCES.remove(self._handle)
        self._dispatcher.close()
        self._identity.close()

    # ------------------------------------------------------------------
    # People plumbing
    # ------------------------------------------------------------------

    def _record_people_message(self, message: dict[str, Any]) -> None:
        if "$distinct_id" in message:
            self._dispatcher.enqueue_people(message)
        else:
            self._identity.store_waiting_people_record(message)

    def _send_people_records(self, records: Sequence[Mapping[str, Any]]) -> None:
        for record in records:
            self._dispatcher.enqueue_people(record)

    def _identify_people(self, distinct_id: str) -> None:
        self._identity.set_people_distinct_id(distinct_id)
        self._send_people_records(self._identity.drain_waiting_people_records())

    def _people_distinct_id(self) -> str | None:
        return self._identity.get_people_distinct_id()


class People:
    """Profile updates addressed to the people distinct id.

    Records built before :meth:`identify` has ever been called are kept
    in the identity store and sent, in order, once an id is known.
    """

    def __init__(self, client: SpressoClient, *, fixed_distinct_id: str | None = None) -> None:
        self._client = client
        self._fixed_distinct_id = fixed_distinct_id

    def identify(self, distinct_id: str) -> None:
        if self._fixed_distinct_id is not None:
            raise SpressoError("This People object has a fixed, constant distinct id")
        self._client._identify_people(distinct_id)

    def get_distinct_id(self) -> str | None:
        if self._fixed_distinct_id is not None:
            return self._fixed_distinct_id
        return self._client._people_distinct_id()

    def with_identity(self, distinct_id: str) -> People:
        """Return a view whose records always go to *distinct_id*."""
        return People(self._client, fixed_distinct_id=distinct_id)

    def set(self, properties: Mapping[str, Any] | str, value: Any = None) -> None:
        self._record("$set", _as_properties(properties, value))

    def set_once(self, properties: Mapping[str, Any] | str, value: Any = None) -> None:
        self._record("$set_once", _as_properties(properties, value))

    def increment(self, properties: Mapping[str, float] | str, value: float = 1) -> None:
        self._record("$add", _as_properties(properties, value))

    def append(self, name: str, value: Any) -> None:
        self._record("$append", {name: value})

    def union(self, name: str, values: Sequence[Any]) -> None:
        self._record("$union", {name: list(values)})

    def unset(self, name: str) -> None:
        self._record("$unset", [name])

    def track_charge(self, amount: float, properties: Mapping[str, Any] | None = None) -> None:
        """Append a ``$transactions`` entry stamped with the current UTC time."""
        transaction: dict[str, Any] = {
            "$amount": amount,
            "$time": dt.datetime.now(dt.UTC).strftime(ENGAGE_DATE_FORMAT),
        }
        if properties:
            transaction.update(properties)
        self.append("$transactions", transaction)

    def clear_charges(self) -> None:
        self.unset("$transactions")

    def delete_user(self) -> None:
        self._record("$delete", None)

    def _record(self, action: str, properties: Any) -> None:
        client = self._client
        if client.config.debug:
            _logger.debug("people %s", action)

        message: dict[str, Any] = {
            action: properties,
            "$token": client.config.token,
            "$time": client._clock(),
        }
        distinct_id = self.get_distinct_id()
        if distinct_id is not None:
            message["$distinct_id"] = distinct_id

        if not _is_json(message):
            _logger.error("People %s update is not JSON serialisable, dropping it", action)
            return
        client._record_people_message(message)


def _as_properties(properties: Mapping[str, Any] | str, value: Any) -> dict[str, Any]:
    if isinstance(properties, str):
        return {properties: value}
    return dict(properties)
