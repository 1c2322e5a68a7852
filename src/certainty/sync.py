"""
Synchronization — keep the local catalog and bundle files fresh.

RemoteSync decides when the local copy is stale and refreshes it:

  is_stale()  no cache marker, unreadable marker, or marker older than the TTL
  refresh()   1. GET the remote ca-certs.json
              2. rotate the local catalog to ca-certs-backup-<timestamp>.json
              3. write the fetched catalog
              4. download each listed cacert*.pem not already on disk
              5. write the cache marker (only after every step succeeded)

refresh() returns a Result: Success(list of downloaded paths) or a Failure
describing the first network/filesystem problem. A failed cycle never updates
the marker, so the next call retries from scratch.

RemoteFetch is the Fetch orchestrator wired to a RemoteSync: it refreshes
before listing when the cache is stale and turns on signature and Chronicle
checks by default.
"""

from __future__ import annotations

import asyncio
import json
import os
import re
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import httpx
import structlog

from certainty.adapters.catalog import JsonCatalog
from certainty.adapters.http_client import DEFAULT_TIMEOUT_SECONDS, HttpBundleSource, open_client
from certainty.domain.models import DEFAULT_TRUST_ANCHORS, DEFAULT_TRUST_CHANNEL, CatalogEntry, TrustAnchors
from certainty.domain.ports import HttpClientFactory
from certainty.errors import SyncError
from certainty.fetch import Fetch, create_verified_client
from certainty.result import ErrorCode, Result

log = structlog.get_logger()

DEFAULT_URL = "https://raw.githubusercontent.com/paragonie/certainty/master/data/"
DEFAULT_CACHE_TTL_SECONDS = 86400
CACHE_MARKER_NAME = "ca-certs.cache"
ARTIFACT_PATTERN = re.compile(r"^cacert(-[0-9]{4}-[0-9]{2}-[0-9]{2})?\.pem$")

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class RemoteSync:
    """Time-based cache policy plus the refresh cycle for one data directory."""

    def __init__(
        self,
        catalog: JsonCatalog,
        url: str = DEFAULT_URL,
        cache_ttl: int = DEFAULT_CACHE_TTL_SECONDS,
        client_factory: HttpClientFactory | None = None,
        connect_timeout: float = DEFAULT_TIMEOUT_SECONDS,
        trust_source: Fetch | None = None,
        clock: Clock = _utcnow,
    ) -> None:
        self._catalog = catalog
        self._url = url or DEFAULT_URL
        self._cache_ttl = cache_ttl if cache_ttl is not None else DEFAULT_CACHE_TTL_SECONDS
        self._client_factory = client_factory
        self._connect_timeout = connect_timeout
        self._trust_source = trust_source
        self._clock = clock

    @property
    def marker_path(self) -> Path:
        return self._catalog.data_dir / CACHE_MARKER_NAME

    @property
    def cache_ttl(self) -> int:
        return self._cache_ttl

    # ─────────────────────── Cache policy ───────────────────────

    def last_synced(self) -> datetime | None:
        """Timestamp stored in the cache marker, or None if absent/unreadable."""
        try:
            text = self.marker_path.read_text(encoding="utf-8").strip()
            stamp = datetime.fromisoformat(text)
        except (OSError, ValueError):
            return None
        if stamp.tzinfo is None:
            stamp = stamp.replace(tzinfo=UTC)
        return stamp

    def is_stale(self) -> bool:
        stamp = self.last_synced()
        if stamp is None:
            return True
        elapsed = (self._clock() - stamp).total_seconds()
        return elapsed >= self._cache_ttl

    # ─────────────────────── Refresh cycle ───────────────────────

    async def refresh(self) -> Result[list[Path]]:
        """Run one synchronization cycle; never raises for I/O failures."""
        try:
            downloaded = await self._refresh()
        except httpx.TimeoutException as e:
            return Result.failure(ErrorCode.TIMEOUT_ERROR, f"Timed out talking to {self._url}", e)
        except httpx.HTTPError as e:
            return Result.failure(ErrorCode.EXTERNAL_SERVICE_ERROR, f"Could not download bundles from {self._url}", e)
        except ValueError as e:
            return Result.failure(ErrorCode.VALIDATION_ERROR, f"Remote catalog at {self._url} is unusable", e)
        except OSError as e:
            return Result.failure(ErrorCode.FILESYSTEM_ERROR, "Could not update the data directory", e)
        log.info("sync.refreshed", url=self._url, downloaded=len(downloaded))
        return Result.success(downloaded)

    async def _refresh(self) -> list[Path]:
        async with await self._open_client() as client:
            source = HttpBundleSource(self._url, client)
            rows = self._parse_catalog(await source.fetch_catalog())

            now = self._clock()
            await self._catalog.replace_rows(rows, backup_suffix=now.strftime("%Y%m%d%H%M%S"))

            downloaded: list[Path] = []
            for target in await asyncio.to_thread(self._missing_artifacts, rows):
                data = await source.fetch_file(target.name)
                await asyncio.to_thread(self._write_artifact, target, data)
                downloaded.append(target)

        await asyncio.to_thread(
            self.marker_path.write_text, self._clock().isoformat(), "utf-8"
        )
        return downloaded

    async def _open_client(self) -> httpx.AsyncClient:
        """Explicit factory if given, otherwise trust the resident verified bundle."""
        if self._client_factory is not None:
            return await open_client(self._client_factory)
        return await create_verified_client(self._trust_source, self._connect_timeout)

    @staticmethod
    def _write_artifact(target: Path, data: bytes) -> None:
        """Write via a temp file so an interrupted download never looks complete."""
        partial = target.with_name(f".{target.name}.part")
        partial.write_bytes(data)
        os.replace(partial, target)

    @staticmethod
    def _parse_catalog(body: bytes) -> list[Any]:
        rows = json.loads(body)
        if not isinstance(rows, list):
            raise ValueError("Remote catalog must be a JSON array")
        return rows

    def _missing_artifacts(self, rows: list[Any]) -> list[Path]:
        """Listed files matching the artifact pattern that are not on disk yet."""
        missing = []
        for row in rows:
            filename = row.get("file") if isinstance(row, dict) else None
            if not isinstance(filename, str) or not ARTIFACT_PATTERN.match(filename):
                continue
            target = self._catalog.data_dir / filename
            if not target.exists():
                missing.append(target)
        return missing


class RemoteFetch(Fetch):
    """
    Fetch that refreshes its catalog from the remote source when stale.

    Signature and Chronicle checks are on by default. Files downloaded by a
    refresh must pass a Chronicle cross-check before their first use.
    """

    def __init__(
        self,
        catalog: JsonCatalog,
        sync: RemoteSync,
        trust_channel: str = DEFAULT_TRUST_CHANNEL,
        anchors: TrustAnchors = DEFAULT_TRUST_ANCHORS,
        http_client_factory: HttpClientFactory | None = None,
    ) -> None:
        super().__init__(
            catalog,
            trust_channel=trust_channel,
            anchors=anchors,
            check_signature_by_default=True,
            check_chronicle_by_default=True,
            http_client_factory=http_client_factory,
        )
        self._sync = sync

    @property
    def sync(self) -> RemoteSync:
        return self._sync

    async def list_bundles(
        self,
        custom_validator: str = "",
        trust_channel: str = "",
    ) -> list[CatalogEntry]:
        if await asyncio.to_thread(self._sync.is_stale):
            result = await self._sync.refresh()
            if result.is_failure():
                failure = result.error()
                log.error("sync.failed", failure=str(failure))
                raise SyncError("Could not download bundles") from failure.exception
            for path in result.value():
                self.mark_unverified(path)
        return await super().list_bundles(custom_validator, trust_channel)
