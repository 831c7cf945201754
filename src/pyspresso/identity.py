"""Identity Store: cached, write-through identity and property state.

Called directly from arbitrary application threads, so every public method
takes the store lock.  Referrer properties live in a separate key-value
store that other components may rewrite at any time; they have their own
lock and a dirty flag so readers only ever see a fully built snapshot.
"""

from __future__ import annotations

import copy
import json
import logging
import threading
import uuid
from collections.abc import Callable, Mapping
from typing import Any

from pyspresso.models import Identity
from pyspresso.persistence import KeyValueStore, MemoryStore

_logger = logging.getLogger(__name__)

_EVENTS_DISTINCT_ID = "events_distinct_id"
_PEOPLE_DISTINCT_ID = "people_distinct_id"
_DEVICE_ID = "device_id"
_USER_ID = "user_id"
_REF_USER_ID = "ref_user_id"
_WAITING_ARRAY = "waiting_array"
_SUPER_PROPERTIES = "super_properties"
_PUSH_ID = "push_id"


def _new_distinct_id() -> str:
    return str(uuid.uuid4())


def _is_json_value(value: Any) -> bool:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return False
    return True


class IdentityStore:
    """Persistent identities, super properties, referrer properties and
    people records waiting for an identity.

    Every mutation is persisted to *store* before the call returns.
    """

    def __init__(
        self,
        store: KeyValueStore,
        referrer_store: KeyValueStore | None = None,
        *,
        id_factory: Callable[[], str] = _new_distinct_id,
    ) -> None:
        self._store = store
        self._referrer_store: KeyValueStore = referrer_store if referrer_store is not None else MemoryStore()
        self._id_factory = id_factory
        self._lock = threading.RLock()

        self._identities_loaded = False
        self._events_distinct_id: str | None = None
        self._people_distinct_id: str | None = None
        self._device_id: str | None = None
        self._user_id: str | None = None
        self._ref_user_id: str | None = None
        self._waiting_records: list[dict[str, Any]] | None = None
        self._super_properties: dict[str, Any] | None = None

        # Reentrant: the change listener runs on the writer's thread.
        self._referrer_lock = threading.RLock()
        self._referrer_dirty = True
        self._referrer_cache: dict[str, str] | None = None
        self._referrer_store.add_listener(self._on_referrer_changed)

    # ------------------------------------------------------------------
    # Identities
    # ------------------------------------------------------------------

    def _ensure_identities(self) -> None:
        if not self._identities_loaded:
            self._read_identities()

    def _read_identities(self) -> None:
        store = self._store
        self._events_distinct_id = store.get(_EVENTS_DISTINCT_ID)
        self._people_distinct_id = store.get(_PEOPLE_DISTINCT_ID)
        self._device_id = store.get(_DEVICE_ID)
        self._user_id = store.get(_USER_ID)
        self._ref_user_id = store.get(_REF_USER_ID)
        self._waiting_records = None

        raw_waiting = store.get(_WAITING_ARRAY)
        if raw_waiting is not None:
            try:
                parsed = json.loads(raw_waiting)
            except json.JSONDecodeError:
                _logger.error("Could not interpret waiting people records %r", raw_waiting[:200])
            else:
                if isinstance(parsed, list):
                    self._waiting_records = [r for r in parsed if isinstance(r, dict)]
                    if len(self._waiting_records) != len(parsed):
                        _logger.error("Dropped unparsable entries from waiting people records")
                else:
                    _logger.error("Waiting people records are not a JSON array")

        needs_write = False
        if not self._events_distinct_id:
            self._events_distinct_id = self._id_factory()
            needs_write = True
        if not self._device_id:
            self._device_id = self._events_distinct_id
            needs_write = True

        self._identities_loaded = True
        if needs_write:
            self._write_identities()

    def _write_identities(self) -> None:
        waiting = json.dumps(self._waiting_records) if self._waiting_records is not None else None
        values: dict[str, str | None] = {
            _EVENTS_DISTINCT_ID: self._events_distinct_id,
            _PEOPLE_DISTINCT_ID: self._people_distinct_id,
            _DEVICE_ID: self._device_id,
            _USER_ID: self._user_id,
            _REF_USER_ID: self._ref_user_id,
            _WAITING_ARRAY: waiting,
        }
        put_many = getattr(self._store, "put_many", None)
        if put_many is not None:
            put_many(values)
            return
        for key, value in values.items():
            if value is None:
                self._store.remove(key)
            else:
                self._store.put(key, value)

    def identity(self) -> Identity:
        """Immutable snapshot of all identity fields."""
        with self._lock:
            self._ensure_identities()
            assert self._events_distinct_id is not None  # noqa: S101
            assert self._device_id is not None  # noqa: S101
            return Identity(
                events_distinct_id=self._events_distinct_id,
                people_distinct_id=self._people_distinct_id,
                device_id=self._device_id,
                user_id=self._user_id,
                ref_user_id=self._ref_user_id,
            )

    def get_events_distinct_id(self) -> str:
        return self.identity().events_distinct_id

    def set_events_distinct_id(self, value: str) -> None:
        with self._lock:
            self._ensure_identities()
            self._events_distinct_id = value
            self._write_identities()

    def get_people_distinct_id(self) -> str | None:
        return self.identity().people_distinct_id

    def set_people_distinct_id(self, value: str | None) -> None:
        with self._lock:
            self._ensure_identities()
            self._people_distinct_id = value
            self._write_identities()

    def get_device_id(self) -> str:
        return self.identity().device_id

    def set_device_id(self, value: str) -> None:
        with self._lock:
            self._ensure_identities()
            self._device_id = value
            self._write_identities()

    def get_user_id(self) -> str | None:
        return self.identity().user_id

    def set_user_id(self, value: str | None) -> None:
        with self._lock:
            self._ensure_identities()
            self._user_id = value
            self._write_identities()

    def get_ref_user_id(self) -> str | None:
        return self.identity().ref_user_id

    def set_ref_user_id(self, value: str | None) -> None:
        with self._lock:
            self._ensure_identities()
            self._ref_user_id = value
            self._write_identities()

    # ------------------------------------------------------------------
    # People records waiting for an identity
    # ------------------------------------------------------------------

    def store_waiting_people_record(self, record: Mapping[str, Any]) -> None:
        with self._lock:
            self._ensure_identities()
            if self._waiting_records is None:
                self._waiting_records = []
            self._waiting_records.append(copy.deepcopy(dict(record)))
            self._write_identities()

    def waiting_people_record_count(self) -> int:
        with self._lock:
            self._ensure_identities()
            return len(self._waiting_records or [])

    def drain_waiting_people_records(self) -> list[dict[str, Any]]:
        """Remove and return buffered people records, in insertion order.

        Each record is stamped with the current people distinct id.  Nothing
        is drained while that id is still unknown.
        """
        with self._lock:
            self._ensure_identities()
            distinct_id = self._people_distinct_id
            if distinct_id is None or self._waiting_records is None:
                return []

            drained = []
            for record in self._waiting_records:
                stamped = dict(record)
                stamped["$distinct_id"] = distinct_id
                drained.append(stamped)

            self._waiting_records = None
            self._store.remove(_WAITING_ARRAY)
            return drained

    # ------------------------------------------------------------------
    # Super properties
    # ------------------------------------------------------------------

    def _ensure_super_properties(self) -> dict[str, Any]:
        if self._super_properties is None:
            self._read_super_properties()
        assert self._super_properties is not None  # noqa: S101
        return self._super_properties

    def _read_super_properties(self) -> None:
        raw = self._store.get(_SUPER_PROPERTIES, "{}") or "{}"
        try:
            parsed = json.loads(raw)
            if not isinstance(parsed, dict):
                raise ValueError("super properties are not a JSON object")
        except ValueError:
            _logger.error("Cannot parse stored super properties, resetting them")
            self._super_properties = {}
            self._store_super_properties()
            return
        self._super_properties = parsed

    def _store_super_properties(self) -> None:
        props = json.dumps(self._super_properties, separators=(",", ":"))
        _logger.debug("Storing super properties %s", props)
        self._store.put(_SUPER_PROPERTIES, props)

    def get_super_properties(self) -> dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._ensure_super_properties())

    def register_super_properties(self, properties: Mapping[str, Any]) -> None:
        with self._lock:
            cache = self._ensure_super_properties()
            for key, value in properties.items():
                if not _is_json_value(value):
                    _logger.error("Super property %r is not JSON serialisable, ignoring it", key)
                    continue
                cache[str(key)] = copy.deepcopy(value)
            self._store_super_properties()

    def register_super_properties_once(self, properties: Mapping[str, Any]) -> None:
        """Like :meth:`register_super_properties` but never overwrites."""
        with self._lock:
            cache = self._ensure_super_properties()
            for key, value in properties.items():
                if str(key) in cache:
                    continue
                if not _is_json_value(value):
                    _logger.error("Super property %r is not JSON serialisable, ignoring it", key)
                    continue
                cache[str(key)] = copy.deepcopy(value)
            self._store_super_properties()

    def unregister_super_property(self, name: str) -> None:
        with self._lock:
            self._ensure_super_properties().pop(name, None)
            self._store_super_properties()

    def clear_super_properties(self) -> None:
        with self._lock:
            self._super_properties = {}
            self._store_super_properties()

    # ------------------------------------------------------------------
    # Referrer properties
    # ------------------------------------------------------------------

    def _on_referrer_changed(self, _store: KeyValueStore, _key: str | None) -> None:
        self.invalidate_referrer()

    def invalidate_referrer(self) -> None:
        """Mark the referrer snapshot stale; the next read rebuilds it."""
        with self._referrer_lock:
            self._referrer_dirty = True

    def get_referrer_properties(self) -> dict[str, str]:
        with self._referrer_lock:
            if self._referrer_dirty or self._referrer_cache is None:
                self._referrer_cache = {k: str(v) for k, v in self._referrer_store.items().items()}
                self._referrer_dirty = False
            return dict(self._referrer_cache)

    def write_referrer_properties(self, properties: Mapping[str, str]) -> None:
        """Replace the referrer store's content as one update."""
        with self._referrer_lock:
            replace = getattr(self._referrer_store, "replace", None)
            if replace is not None:
                replace({k: str(v) for k, v in properties.items()})
            else:
                self._referrer_store.clear()
                for key, value in properties.items():
                    self._referrer_store.put(key, str(value))
            self._referrer_dirty = True

    # ------------------------------------------------------------------
    # Push id
    # ------------------------------------------------------------------

    def store_push_id(self, registration_id: str) -> None:
        with self._lock:
            self._store.put(_PUSH_ID, registration_id)

    def get_push_id(self) -> str | None:
        with self._lock:
            return self._store.get(_PUSH_ID)

    def clear_push_id(self) -> None:
        with self._lock:
            self._store.remove(_PUSH_ID)

    # ------------------------------------------------------------------

    def clear_all(self) -> None:
        """Forget identities, super properties, waiting records and push id.

        Fresh ids are generated immediately.  Records already queued for
        delivery are unaffected.
        """
        with self._lock:
            self._store.clear()
            self._super_properties = None
            self._identities_loaded = False
            self._read_super_properties()
            self._read_identities()

    def close(self) -> None:
        self._referrer_store.remove_listener(self._on_referrer_changed)
