"""
HTTP adapter — TLS-pinned httpx clients and the remote bundle source.

Every outbound call goes through an httpx.AsyncClient built here:
  - TLS 1.2 is the minimum protocol version
  - certificate validation is always on
  - the CA file is the latest verified bundle when one is known, otherwise
    certifi's bundle, which is the initial trust anchor set

That last point is the bootstrapping dependency of the whole system: fetching
a fresh catalog needs a trusted transport, and the trusted transport wants a
verified bundle. Shipping certifi as the starting point breaks the cycle.

Retry/backoff via tenacity on transient errors (network, timeout). HTTP
status errors are not retried.
"""

from __future__ import annotations

import inspect
import ssl
from collections.abc import Awaitable, Callable
from pathlib import Path

import certifi
import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

log = structlog.get_logger()

DEFAULT_TIMEOUT_SECONDS = 5


def build_ssl_context(ca_bundle: Path | None = None) -> ssl.SSLContext:
    """
    Create a verifying SSL context with TLS 1.2 as the minimum version.

    Falls back to certifi's CA bundle when `ca_bundle` is None.
    """
    cafile = str(ca_bundle) if ca_bundle is not None else certifi.where()
    context = ssl.create_default_context(cafile=cafile)
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    context.check_hostname = True
    context.verify_mode = ssl.CERT_REQUIRED
    return context


def build_async_client(
    ca_bundle: Path | None = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> httpx.AsyncClient:
    """Create an AsyncClient that enforces the transport policy above."""
    return httpx.AsyncClient(
        verify=build_ssl_context(ca_bundle),
        timeout=timeout,
        follow_redirects=False,
    )


async def open_client(
    factory: Callable[[], httpx.AsyncClient | Awaitable[httpx.AsyncClient]],
) -> httpx.AsyncClient:
    """Call a client factory that may be plain or async."""
    client = factory()
    if inspect.isawaitable(client):
        client = await client
    return client


class HttpBundleSource:
    """
    Download the catalog document and bundle files from the remote source.

    `base_url` is the directory URL; the catalog lives at
    `{base_url}ca-certs.json` and artifacts at `{base_url}{filename}`.
    """

    CATALOG_NAME = "ca-certs.json"

    def __init__(self, base_url: str, client: httpx.AsyncClient) -> None:
        self._base_url = base_url if base_url.endswith("/") else base_url + "/"
        self._client = client

    @property
    def base_url(self) -> str:
        return self._base_url

    async def fetch_catalog(self) -> bytes:
        """GET the remote catalog document (raw bytes; parsing is the caller's job)."""
        data = await self._get(self._base_url + self.CATALOG_NAME)
        log.info("remote.catalog_fetched", url=self._base_url, size_bytes=len(data))
        return data

    async def fetch_file(self, filename: str) -> bytes:
        data = await self._get(self._base_url + filename)
        log.info("remote.file_fetched", file=filename, size_bytes=len(data))
        return data

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=0.1, max=30),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError)),
        reraise=True,
    )
    async def _get(self, url: str) -> bytes:
        """HTTP GET with retry — status errors propagate to the caller."""
        response = await self._client.get(url)
        response.raise_for_status()
        return response.content
