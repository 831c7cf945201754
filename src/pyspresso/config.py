"""Client configuration for pyspresso."""

from __future__ import annotations

import dataclasses
import os
import platform
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pyspresso._constants import (
    DEFAULT_BATCH_LIMIT,
    DEFAULT_BULK_UPLOAD_LIMIT,
    DEFAULT_DATA_EXPIRATION_MS,
    DEFAULT_FLUSH_INTERVAL_MS,
    EVENTS_ENDPOINT,
    EVENTS_ENDPOINT_STAGING,
)
from pyspresso.exceptions import SpressoConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _env_int(env: Mapping[str, str], key: str) -> int | None:
    raw = env.get(key)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise SpressoConfigError(f"{key} must be an integer, got {raw!r}") from exc


@dataclasses.dataclass(frozen=True)
class DeviceProfile:
    """Device metadata attached to every outgoing event.

    Collecting real device information is up to the host application;
    :meth:`detect` fills in what the ``platform`` module knows.
    """

    os: str = "UNKNOWN"
    os_version: str = "UNKNOWN"
    manufacturer: str = "UNKNOWN"
    brand: str = "UNKNOWN"
    model: str = "UNKNOWN"
    app_version: str | None = None
    carrier: str | None = None
    wifi: bool | None = None
    screen_dpi: int | None = None
    screen_height: int | None = None
    screen_width: int | None = None

    @classmethod
    def detect(cls) -> DeviceProfile:
        uname = platform.uname()
        return cls(
            os=uname.system or "UNKNOWN",
            os_version=uname.release or "UNKNOWN",
            model=uname.machine or "UNKNOWN",
        )

    def default_properties(self, lib_version: str) -> dict[str, Any]:
        """Default event properties, in the collector's key format."""
        props: dict[str, Any] = {
            "libVersion": lib_version,
            "os": self.os,
            "osVersion": self.os_version,
            "manufacturer": self.manufacturer,
            "brand": self.brand,
            "model": self.model,
        }
        optional = {
            "screenDpi": self.screen_dpi,
            "screenHeight": self.screen_height,
            "screenWidth": self.screen_width,
            "appVersion": self.app_version,
            "carrier": self.carrier,
            "wifi": self.wifi,
        }
        props.update({k: v for k, v in optional.items() if v is not None})
        return props


@dataclasses.dataclass(frozen=True)
class SpressoConfig:
    """Client configuration.

    Parameters
    ----------
    token : str
        Project token stamped on every event (``token``) and people
        record (``$token``).
    debug : bool
        Use the staging collector and expect the verbose acknowledgement
        (``{"status": 1}``) instead of the plain ``1`` body.
    bulk_upload_limit : int
        Queue depth that triggers an immediate flush.  Must stay below
        the batch size the collector accepts.
    flush_interval_ms : int
        Advisory delay before an automatic flush once something is
        queued.  Negative disables automatic flushing.
    data_expiration_ms : int
        Queued records older than this are purged when the worker starts.
    disable_fallback : bool
        Never retry a recoverable failure against the fallback endpoint.
    events_endpoint, events_fallback_endpoint : str or None
        Collector URLs for events.  ``None`` picks the production or
        staging URL depending on *debug*; the fallback defaults to the
        primary.
    people_endpoint, people_fallback_endpoint : str or None
        Collector URLs for people records.  Default to the events URLs.
    batch_limit : int
        Maximum number of queued records sent in one request.
    request_timeout : float
        Total timeout in seconds for a single HTTP attempt.
    check_connectivity : bool
        Resolve the collector hosts before each send and keep records
        queued when none resolves.
    data_dir : Path
        Directory holding the queue database and the identity store.
    device : DeviceProfile
        Device metadata for default event properties.
    """

    token: str
    debug: bool = False
    bulk_upload_limit: int = DEFAULT_BULK_UPLOAD_LIMIT
    flush_interval_ms: int = DEFAULT_FLUSH_INTERVAL_MS
    data_expiration_ms: int = DEFAULT_DATA_EXPIRATION_MS
    disable_fallback: bool = True
    events_endpoint: str | None = None
    events_fallback_endpoint: str | None = None
    people_endpoint: str | None = None
    people_fallback_endpoint: str | None = None
    batch_limit: int = DEFAULT_BATCH_LIMIT
    request_timeout: float = 30.0
    check_connectivity: bool = False
    data_dir: Path = dataclasses.field(default_factory=lambda: Path.home() / ".pyspresso")
    device: DeviceProfile = dataclasses.field(default_factory=DeviceProfile.detect)

    @property
    def events_url(self) -> str:
        if self.events_endpoint:
            return self.events_endpoint
        return EVENTS_ENDPOINT_STAGING if self.debug else EVENTS_ENDPOINT

    @property
    def events_fallback_url(self) -> str:
        return self.events_fallback_endpoint or self.events_url

    @property
    def people_url(self) -> str:
        return self.people_endpoint or self.events_url

    @property
    def people_fallback_url(self) -> str:
        return self.people_fallback_endpoint or self.events_fallback_url

    @property
    def queue_path(self) -> Path:
        return self.data_dir / f"queue_{self.token}.sqlite3"

    @property
    def identity_path(self) -> Path:
        return self.data_dir / f"identity_{self.token}.json"

    @property
    def referrer_path(self) -> Path:
        return self.data_dir / "referrer.json"

    def describe(self) -> str:
        """Human-readable summary for debug logging."""
        return (
            f"BulkUploadLimit {self.bulk_upload_limit}, "
            f"FlushInterval {self.flush_interval_ms}, "
            f"DataExpiration {self.data_expiration_ms}, "
            f"DisableFallback {self.disable_fallback}, "
            f"EventsEndpoint {self.events_url}, "
            f"EventsFallbackEndpoint {self.events_fallback_url}"
        )

    @classmethod
    def from_env(cls, **overrides: Any) -> SpressoConfig:
        """Create configuration from environment variables.

        Reads ``SPRESSO_TOKEN`` and optional ``SPRESSO_*`` variables.
        Explicit keyword arguments override environment values.

        Raises
        ------
        SpressoConfigError
            If no token is available or a numeric variable is malformed.
        """
        env = os.environ

        _ENV_STR_MAP = {
            "SPRESSO_TOKEN": "token",
            "SPRESSO_EVENTS_ENDPOINT": "events_endpoint",
            "SPRESSO_EVENTS_FALLBACK_ENDPOINT": "events_fallback_endpoint",
            "SPRESSO_PEOPLE_ENDPOINT": "people_endpoint",
            "SPRESSO_PEOPLE_FALLBACK_ENDPOINT": "people_fallback_endpoint",
        }
        config_kwargs: dict[str, Any] = {}
        for env_key, field_name in _ENV_STR_MAP.items():
            val = env.get(env_key)
            if val is not None:
                config_kwargs[field_name] = val

        _ENV_INT_MAP = {
            "SPRESSO_BULK_UPLOAD_LIMIT": "bulk_upload_limit",
            "SPRESSO_FLUSH_INTERVAL_MS": "flush_interval_ms",
            "SPRESSO_DATA_EXPIRATION_MS": "data_expiration_ms",
            "SPRESSO_BATCH_LIMIT": "batch_limit",
        }
        for env_key, field_name in _ENV_INT_MAP.items():
            if field_name in overrides:
                continue
            value = _env_int(env, env_key)
            if value is not None:
                config_kwargs[field_name] = value

        timeout_env = env.get("SPRESSO_REQUEST_TIMEOUT")
        if timeout_env is not None and "request_timeout" not in overrides:
            try:
                config_kwargs["request_timeout"] = float(timeout_env)
            except ValueError as exc:
                raise SpressoConfigError(f"SPRESSO_REQUEST_TIMEOUT must be a number, got {timeout_env!r}") from exc

        data_dir_env = env.get("SPRESSO_DATA_DIR")
        if data_dir_env is not None and "data_dir" not in overrides:
            config_kwargs["data_dir"] = Path(data_dir_env).expanduser()

        if "debug" not in overrides:
            config_kwargs["debug"] = _env_bool(env.get("SPRESSO_DEBUG"), False)
        if "disable_fallback" not in overrides:
            config_kwargs["disable_fallback"] = _env_bool(env.get("SPRESSO_DISABLE_FALLBACK"), True)
        if "check_connectivity" not in overrides:
            config_kwargs["check_connectivity"] = _env_bool(env.get("SPRESSO_CHECK_CONNECTIVITY"), False)

        config_kwargs.update(overrides)

        if not config_kwargs.get("token"):
            raise SpressoConfigError("SPRESSO_TOKEN is not set and no token was given")

        return cls(**config_kwargs)
