from __future__ import annotations

from pathlib import Path

import pytest

from pyspresso._constants import EVENTS_ENDPOINT, EVENTS_ENDPOINT_STAGING
from pyspresso.config import DeviceProfile, SpressoConfig
from pyspresso.exceptions import SpressoConfigError


def test_defaults() -> None:
    config = SpressoConfig(token="tok", device=DeviceProfile())

    assert config.bulk_upload_limit == 40
    assert config.flush_interval_ms == 10_000
    assert config.data_expiration_ms == 5 * 24 * 60 * 60 * 1000
    assert config.disable_fallback is True
    assert config.events_url == EVENTS_ENDPOINT
    assert config.events_fallback_url == EVENTS_ENDPOINT
    assert config.people_url == EVENTS_ENDPOINT
    assert config.people_fallback_url == EVENTS_ENDPOINT


def test_debug_uses_staging_collector() -> None:
    config = SpressoConfig(token="tok", debug=True, device=DeviceProfile())
    assert config.events_url == EVENTS_ENDPOINT_STAGING


def test_people_endpoints_default_to_events_endpoints() -> None:
    config = SpressoConfig(
        token="tok",
        events_endpoint="https://a.example/track",
        events_fallback_endpoint="https://b.example/track",
        device=DeviceProfile(),
    )

    assert config.people_url == "https://a.example/track"
    assert config.people_fallback_url == "https://b.example/track"


def test_from_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("SPRESSO_TOKEN", "env-token")
    monkeypatch.setenv("SPRESSO_FLUSH_INTERVAL_MS", "2500")
    monkeypatch.setenv("SPRESSO_DISABLE_FALLBACK", "no")
    monkeypatch.setenv("SPRESSO_DEBUG", "1")
    monkeypatch.setenv("SPRESSO_DATA_DIR", str(tmp_path))

    config = SpressoConfig.from_env(bulk_upload_limit=10)

    assert config.token == "env-token"
    assert config.flush_interval_ms == 2500
    assert config.bulk_upload_limit == 10
    assert config.disable_fallback is False
    assert config.debug is True
    assert config.queue_path.parent == tmp_path


def test_from_env_overrides_win(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SPRESSO_TOKEN", "env-token")
    monkeypatch.setenv("SPRESSO_FLUSH_INTERVAL_MS", "2500")

    config = SpressoConfig.from_env(token="explicit", flush_interval_ms=-1)

    assert config.token == "explicit"
    assert config.flush_interval_ms == -1


def test_from_env_requires_token(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("SPRESSO_TOKEN", raising=False)
    with pytest.raises(SpressoConfigError):
        SpressoConfig.from_env()


def test_from_env_rejects_malformed_numbers(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SPRESSO_TOKEN", "tok")
    monkeypatch.setenv("SPRESSO_BULK_UPLOAD_LIMIT", "many")
    with pytest.raises(SpressoConfigError):
        SpressoConfig.from_env()


def test_device_default_properties() -> None:
    device = DeviceProfile(os="Linux", os_version="6.1", model="x86_64", app_version="3.2", wifi=True)

    props = device.default_properties("1.2.0")

    assert props == {
        "libVersion": "1.2.0",
        "os": "Linux",
        "osVersion": "6.1",
        "manufacturer": "UNKNOWN",
        "brand": "UNKNOWN",
        "model": "x86_64",
        "appVersion": "3.2",
        "wifi": True,
    }


def test_connectivity_check_is_opt_in(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SPRESSO_TOKEN", "tok")
    monkeypatch.delenv("SPRESSO_CHECK_CONNECTIVITY", raising=False)
    assert SpressoConfig.from_env().check_connectivity is False

    monkeypatch.setenv("SPRESSO_CHECK_CONNECTIVITY", "1")
    assert SpressoConfig.from_env().check_connectivity is True
