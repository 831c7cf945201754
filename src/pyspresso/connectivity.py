"""Best-effort connectivity signals checked before any network attempt."""

from __future__ import annotations

import logging
import socket
from collections.abc import Iterable
from typing import Protocol
from urllib.parse import urlsplit

_logger = logging.getLogger(__name__)


class ConnectivityProbe(Protocol):
    def is_online(self) -> bool:
        ...


class AlwaysOnline:
    """Probe for hosts without a connectivity signal: always assume online."""

    def is_online(self) -> bool:
        return True


class ResolverProbe:
    """Considers the device online when any of the given hosts resolves.

    Name resolution is cheap compared to a failed POST and fails fast when
    there is no network at all.
    """

    def __init__(self, urls_or_hosts: Iterable[str]) -> None:
        hosts: list[str] = []
        for value in urls_or_hosts:
            host = urlsplit(value).hostname if "://" in value else value
            if host and host not in hosts:
                hosts.append(host)
        self._hosts = hosts

    def is_online(self) -> bool:
        if not self._hosts:
            return True
        for host in self._hosts:
            try:
                socket.getaddrinfo(host, None)
            except socket.gaierror:
                continue
            return True
        return False


def check_online(probe: ConnectivityProbe) -> bool:
    """Ask *probe*, treating a missing permission to check as online."""
    try:
        online = probe.is_online()
    except PermissionError:
        _logger.debug("No permission to check connectivity, assuming online")
        return True
    _logger.debug("Connectivity probe says we %s online", "are" if online else "are not")
    return online
