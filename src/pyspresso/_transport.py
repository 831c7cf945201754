"""HTTP transport: one batch per call, primary/fallback policy and outcome classification."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Protocol

import aiohttp

from pyspresso._constants import ACK_BODY, FLAKY_SOCKET_ATTEMPTS, LIB_VERSION, RECOVERABLE_HTTP_STATUSES
from pyspresso.connectivity import AlwaysOnline, ConnectivityProbe, check_online
from pyspresso.exceptions import SpressoTransportError
from pyspresso.models import DeliveryResult, DeliveryStatus

_logger = logging.getLogger(__name__)


class Transport(Protocol):
    """Structural transport interface used by the dispatcher.

    Having a protocol here makes it easy to pass test doubles while
    keeping the production implementation (`HttpTransport`) concrete.
    """

    async def post_batch(self, raw_payload: str, primary_url: str, fallback_url: str | None) -> DeliveryResult:
        ...


def build_request_body(raw_payload: str) -> bytes:
    """Wrap a serialised JSON array as ``{"datas": <array>}``."""
    return ('{"datas":' + raw_payload + "}").encode("utf-8")


def is_acknowledged(body: str, *, verbose: bool) -> bool:
    """Whether a 2xx body carries the collector's acknowledgement marker.

    The plain marker is the literal ``1`` (surrounding whitespace is
    ignored); in verbose mode the collector answers ``{"status": 1}``.
    """
    if not verbose:
        return body.strip() == ACK_BODY
    try:
        parsed = json.loads(body)
    except json.JSONDecodeError:
        return False
    return isinstance(parsed, dict) and parsed.get("status") == 1


def classify_http_status(status: int) -> DeliveryStatus:
    if 200 <= status < 300:
        return DeliveryStatus.SUCCEEDED
    if status >= 500 or status in RECOVERABLE_HTTP_STATUSES:
        return DeliveryStatus.FAILED_RECOVERABLE
    return DeliveryStatus.FAILED_UNRECOVERABLE


class HttpTransport:
    """aiohttp transport posting batches to the collector."""

    def __init__(
        self,
        http_session: aiohttp.ClientSession,
        *,
        connectivity: ConnectivityProbe | None = None,
        verbose_ack: bool = False,
        timeout: float = 30.0,
        max_attempts: int = FLAKY_SOCKET_ATTEMPTS,
    ) -> None:
        self._http = http_session
        self._connectivity = connectivity or AlwaysOnline()
        self._verbose_ack = verbose_ack
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._max_attempts = max(1, max_attempts)

    async def post_batch(self, raw_payload: str, primary_url: str, fallback_url: str | None) -> DeliveryResult:
        """Deliver one batch.

        1. Offline per the connectivity probe: recoverable, no I/O
        2. POST to *primary_url*
        3. If that failed recoverably and *fallback_url* is set, POST once
           to the fallback and report its outcome
        """
        if not check_online(self._connectivity):
            _logger.debug("Not posting to %s, the device is offline", primary_url)
            return DeliveryResult(status=DeliveryStatus.FAILED_RECOVERABLE)

        result = await self._post(primary_url, raw_payload)
        if result.status == DeliveryStatus.FAILED_RECOVERABLE and fallback_url:
            _logger.debug("Retrying post with fallback URL %s", fallback_url)
            result = await self._post(fallback_url, raw_payload)
            if not result.succeeded:
                _logger.error("Could not post data to %s or %s", primary_url, fallback_url)
        return result

    async def _post(self, url: str, raw_payload: str) -> DeliveryResult:
        try:
            body = await self._request(url, build_request_body(raw_payload))
        except SpressoTransportError as exc:
            status = DeliveryStatus.FAILED_RECOVERABLE if exc.recoverable else DeliveryStatus.FAILED_UNRECOVERABLE
            if exc.recoverable:
                _logger.debug("Cannot post to %s (ok, can retry): %s", url, exc)
            else:
                _logger.error("Cannot post to %s, will not retry: %s", url, exc)
            return DeliveryResult(status=status, body=exc.body)
        _logger.debug("Request to %s returned %r", url, body[:200])
        return DeliveryResult(status=DeliveryStatus.SUCCEEDED, body=body)

    async def _request(self, url: str, data: bytes) -> str:
        headers = {
            "content-type": "application/json",
            "accept": "application/json",
            "user-agent": f"pyspresso/{LIB_VERSION}",
        }

        for attempt in range(1, self._max_attempts + 1):
            _logger.debug("POST %s (attempt %d, %d bytes)", url, attempt, len(data))
            try:
                async with self._http.post(url, data=data, headers=headers, timeout=self._timeout) as resp:
                    status = resp.status
                    text = await resp.text()
            except aiohttp.ServerDisconnectedError:
                # Stale keep-alive connection reused by the pool; a fresh
                # attempt usually goes through.
                _logger.debug("Server disconnected on attempt %d to %s, retrying", attempt, url)
                continue
            except (aiohttp.InvalidURL, aiohttp.NonHttpUrlClientError) as exc:
                raise SpressoTransportError(
                    f"Cannot interpret {url} as a URL",
                    recoverable=False,
                    endpoint=url,
                ) from exc
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
                raise SpressoTransportError(
                    f"Request to {url} failed: {exc!r}",
                    recoverable=True,
                    endpoint=url,
                ) from exc
            except MemoryError as exc:
                raise SpressoTransportError(
                    f"Payload of {len(data)} bytes too large to send",
                    recoverable=False,
                    endpoint=url,
                ) from exc
            except ValueError as exc:
                raise SpressoTransportError(
                    f"Invalid request to {url}: {exc}",
                    recoverable=False,
                    endpoint=url,
                ) from exc

            self._check_response(url, status, text)
            return text

        raise SpressoTransportError(
            f"Server kept disconnecting after {self._max_attempts} attempts to {url}",
            recoverable=True,
            endpoint=url,
        )

    def _check_response(self, url: str, status: int, text: str) -> None:
        classification = classify_http_status(status)
        if classification == DeliveryStatus.SUCCEEDED:
            if is_acknowledged(text, verbose=self._verbose_ack):
                return
            raise SpressoTransportError(
                f"HTTP {status} from {url} without acknowledgement: {text[:200]}",
                recoverable=False,
                status_code=status,
                endpoint=url,
                body=text,
            )
        raise SpressoTransportError(
            f"HTTP {status} from {url}: {text[:200]}",
            recoverable=classification == DeliveryStatus.FAILED_RECOVERABLE,
            status_code=status,
            endpoint=url,
            body=text,
        )
