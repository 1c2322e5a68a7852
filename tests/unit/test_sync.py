"""
Unit tests for synchronization — cache policy, refresh cycle, RemoteFetch.

The remote source is a BundleFactory in a separate temp directory served
through respx. Time is injected so staleness is tested at exact boundaries.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

import httpx
import pytest
import respx

from certainty.adapters.catalog import JsonCatalog
from certainty.domain.models import TrustAnchors
from certainty.errors import SyncError
from certainty.result import ErrorCode
from certainty.sync import CACHE_MARKER_NAME, RemoteFetch, RemoteSync
from tests.helpers import (
    CHRONICLE_TEST_URL,
    REMOTE_TEST_URL,
    BundleFactory,
    TestKeys,
    chronicle_record,
    chronicle_response,
)

NOW = datetime(2024, 1, 2, 3, 4, 5, tzinfo=UTC)
TTL = 3600


class FakeClock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def sync(catalog: JsonCatalog, clock: FakeClock) -> RemoteSync:
    return RemoteSync(
        catalog,
        url=REMOTE_TEST_URL,
        cache_ttl=TTL,
        client_factory=httpx.AsyncClient,
        clock=clock,
    )


@pytest.fixture()
def remote(tmp_path: Path, keys: TestKeys) -> BundleFactory:
    path = tmp_path / "remote"
    path.mkdir()
    return BundleFactory(path, keys)


def _serve(remote: BundleFactory) -> dict[str, respx.Route]:
    """Mock the remote catalog and every file it lists."""
    routes = {
        "ca-certs.json": respx.get(REMOTE_TEST_URL + "ca-certs.json").mock(
            return_value=httpx.Response(200, json=remote.rows)
        )
    }
    for row in remote.rows:
        path = remote.data_dir / row["file"]
        if path.exists():
            routes[row["file"]] = respx.get(REMOTE_TEST_URL + row["file"]).mock(
                return_value=httpx.Response(200, content=path.read_bytes())
            )
    return routes


def _write_marker(data_dir: Path, stamp: datetime | str) -> None:
    text = stamp if isinstance(stamp, str) else stamp.isoformat()
    (data_dir / CACHE_MARKER_NAME).write_text(text, encoding="utf-8")


class TestStaleness:
    """Verify the time-based cache policy."""

    def test_missing_marker_is_stale(self, sync: RemoteSync) -> None:
        """
        GIVEN no cache marker
        WHEN staleness is checked
        THEN the cache is stale.
        """
        assert sync.is_stale() is True

    def test_unreadable_marker_is_stale(self, sync: RemoteSync, data_dir: Path) -> None:
        """
        GIVEN a marker that is not a timestamp
        WHEN staleness is checked
        THEN last_synced is None and the cache is stale.
        """
        _write_marker(data_dir, "yesterday-ish")
        assert sync.last_synced() is None
        assert sync.is_stale() is True

    def test_just_inside_ttl_is_fresh(self, sync: RemoteSync, data_dir: Path) -> None:
        """
        GIVEN a marker one second younger than the TTL
        WHEN staleness is checked
        THEN the cache is fresh.
        """
        _write_marker(data_dir, NOW - timedelta(seconds=TTL - 1))
        assert sync.is_stale() is False

    def test_exactly_ttl_is_stale(self, sync: RemoteSync, data_dir: Path) -> None:
        """
        GIVEN a marker exactly one TTL old
        WHEN staleness is checked
        THEN the cache is stale.
        """
        _write_marker(data_dir, NOW - timedelta(seconds=TTL))
        assert sync.is_stale() is True

    def test_past_ttl_is_stale(self, sync: RemoteSync, data_dir: Path) -> None:
        """
        GIVEN a marker older than the TTL
        WHEN staleness is checked
        THEN the cache is stale.
        """
        _write_marker(data_dir, NOW - timedelta(seconds=TTL + 1))
        assert sync.is_stale() is True

    def test_naive_marker_is_read_as_utc(self, sync: RemoteSync, data_dir: Path) -> None:
        """
        GIVEN a marker without a UTC offset
        WHEN it is read
        THEN it is taken as UTC.
        """
        _write_marker(data_dir, "2024-01-02T03:00:00")
        assert sync.last_synced() == datetime(2024, 1, 2, 3, 0, 0, tzinfo=UTC)
        assert sync.is_stale() is False


class TestRefresh:
    """Verify one synchronization cycle end to end."""

    @pytest.mark.asyncio
    @respx.mock
    async def test_refresh_installs_catalog_and_files(
        self, sync: RemoteSync, remote: BundleFactory, bundles: BundleFactory, data_dir: Path
    ) -> None:
        """
        GIVEN an existing local catalog and a remote listing two bundles
        WHEN refresh runs
        THEN the old catalog is backed up, the new one installed,
        both files downloaded and the marker written.
        """
        bundles.add("2023-01-01")
        bundles.write()
        old_catalog = (data_dir / "ca-certs.json").read_text(encoding="utf-8")
        remote.add("2024-01-01")
        remote.add("2024-01-02", filename="cacert.pem")
        _serve(remote)

        result = await sync.refresh()

        assert result.is_success()
        assert sorted(p.name for p in result.value()) == ["cacert-2024-01-01.pem", "cacert.pem"]
        assert json.loads((data_dir / "ca-certs.json").read_text(encoding="utf-8")) == remote.rows
        backup = data_dir / "ca-certs-backup-20240102030405.json"
        assert backup.read_text(encoding="utf-8") == old_catalog
        assert (data_dir / "cacert.pem").read_bytes() == (remote.data_dir / "cacert.pem").read_bytes()
        assert sync.last_synced() == NOW
        assert sync.is_stale() is False

    @pytest.mark.asyncio
    @respx.mock
    async def test_second_refresh_downloads_nothing(
        self, sync: RemoteSync, remote: BundleFactory, clock: FakeClock
    ) -> None:
        """
        GIVEN a completed refresh
        WHEN a later refresh sees the same remote listing
        THEN no file is downloaded again and the marker moves forward.
        """
        remote.add("2024-01-01")
        routes = _serve(remote)

        await sync.refresh()
        clock.now = NOW + timedelta(hours=2)
        result = await sync.refresh()

        assert result.value() == []
        assert routes["cacert-2024-01-01.pem"].call_count == 1
        assert sync.last_synced() == NOW + timedelta(hours=2)

    @pytest.mark.asyncio
    @respx.mock
    async def test_same_second_refreshes_keep_original_catalog(
        self, sync: RemoteSync, remote: BundleFactory, data_dir: Path
    ) -> None:
        """
        GIVEN a local catalog and a clock that does not advance
        WHEN refresh runs twice
        THEN the original catalog survives in the first backup and the second gets a counter.
        """
        (data_dir / "ca-certs.json").write_text('{"original": true}', encoding="utf-8")
        remote.add("2024-01-01")
        _serve(remote)

        await sync.refresh()
        await sync.refresh()

        first = data_dir / "ca-certs-backup-20240102030405.json"
        second = data_dir / "ca-certs-backup-20240102030405-1.json"
        assert json.loads(first.read_text(encoding="utf-8")) == {"original": True}
        assert json.loads(second.read_text(encoding="utf-8")) == remote.rows

    @pytest.mark.asyncio
    @respx.mock
    async def test_non_artifact_names_are_never_downloaded(
        self, sync: RemoteSync, remote: BundleFactory, data_dir: Path
    ) -> None:
        """
        GIVEN a remote catalog listing a path traversal and a script
        WHEN refresh runs
        THEN only the cacert file is downloaded.
        """
        remote.add("2024-01-01")
        remote.rows.append({"date": "2024-01-03", "file": "../evil.pem"})
        remote.rows.append({"date": "2024-01-04", "file": "install.sh"})
        _serve(remote)

        result = await sync.refresh()

        assert [p.name for p in result.value()] == ["cacert-2024-01-01.pem"]
        assert not (data_dir / "install.sh").exists()

    @pytest.mark.asyncio
    @respx.mock
    async def test_server_error_leaves_state_untouched(
        self, sync: RemoteSync, bundles: BundleFactory, data_dir: Path
    ) -> None:
        """
        GIVEN a remote source answering HTTP 500
        WHEN refresh runs
        THEN it returns a Failure and neither catalog nor marker change.
        """
        bundles.add("2023-01-01")
        bundles.write()
        before = (data_dir / "ca-certs.json").read_text(encoding="utf-8")
        respx.get(REMOTE_TEST_URL + "ca-certs.json").mock(return_value=httpx.Response(500))

        result = await sync.refresh()

        assert result.is_failure()
        assert result.error().code is ErrorCode.EXTERNAL_SERVICE_ERROR
        assert (data_dir / "ca-certs.json").read_text(encoding="utf-8") == before
        assert not (data_dir / CACHE_MARKER_NAME).exists()

    @pytest.mark.asyncio
    @respx.mock
    async def test_catalog_must_be_an_array(self, sync: RemoteSync, data_dir: Path) -> None:
        """
        GIVEN a remote catalog that is a JSON object
        WHEN refresh runs
        THEN a validation Failure is returned and no marker is written.
        """
        respx.get(REMOTE_TEST_URL + "ca-certs.json").mock(return_value=httpx.Response(200, json={"rows": []}))

        result = await sync.refresh()

        assert result.error().code is ErrorCode.VALIDATION_ERROR
        assert not (data_dir / CACHE_MARKER_NAME).exists()

    @pytest.mark.asyncio
    @respx.mock
    async def test_failed_download_does_not_write_marker(
        self, sync: RemoteSync, remote: BundleFactory, data_dir: Path
    ) -> None:
        """
        GIVEN a remote catalog whose bundle file answers 404
        WHEN refresh runs
        THEN it fails, leaves no partial file and the cache stays stale.
        """
        remote.add("2024-01-01")
        respx.get(REMOTE_TEST_URL + "ca-certs.json").mock(return_value=httpx.Response(200, json=remote.rows))
        respx.get(REMOTE_TEST_URL + "cacert-2024-01-01.pem").mock(return_value=httpx.Response(404))

        result = await sync.refresh()

        assert result.is_failure()
        assert not (data_dir / "cacert-2024-01-01.pem").exists()
        assert sync.is_stale() is True


class TestRemoteFetch:
    """Verify the orchestrator wired to a RemoteSync."""

    @pytest.fixture()
    def remote_fetch(self, catalog: JsonCatalog, sync: RemoteSync, anchors: TrustAnchors) -> RemoteFetch:
        return RemoteFetch(catalog, sync, anchors=anchors)

    def test_checks_are_on_by_default(self, remote_fetch: RemoteFetch) -> None:
        """
        GIVEN a RemoteFetch with default arguments
        WHEN its defaults are read
        THEN signature and Chronicle checks are on.
        """
        assert remote_fetch.check_signature_by_default is True
        assert remote_fetch.check_chronicle_by_default is True

    @pytest.mark.asyncio
    @respx.mock
    async def test_failed_refresh_raises_sync_error(self, remote_fetch: RemoteFetch) -> None:
        """
        GIVEN a stale cache and a remote answering 503
        WHEN the latest bundle is requested
        THEN SyncError is raised.
        """
        respx.get(REMOTE_TEST_URL + "ca-certs.json").mock(return_value=httpx.Response(503))

        with pytest.raises(SyncError, match="Could not download bundles"):
            await remote_fetch.get_latest_bundle()

    @pytest.mark.asyncio
    @respx.mock
    async def test_fresh_cache_makes_no_request(
        self, remote_fetch: RemoteFetch, bundles: BundleFactory, data_dir: Path
    ) -> None:
        """
        GIVEN a fresh cache marker
        WHEN the latest bundle is requested without Chronicle
        THEN the local bundle is returned and nothing is fetched.
        """
        row = bundles.add("2024-01-01")
        bundles.write()
        _write_marker(data_dir, NOW)

        bundle = await remote_fetch.get_latest_bundle(check_chronicle=False)

        assert bundle.file_path.name == row["file"]
        assert respx.calls.call_count == 0

    @pytest.mark.asyncio
    @respx.mock
    async def test_downloaded_bundles_are_cross_checked(
        self, remote_fetch: RemoteFetch, remote: BundleFactory, keys: TestKeys, data_dir: Path
    ) -> None:
        """
        GIVEN a stale cache and a remote with one new bundle
        WHEN the latest bundle is requested
        THEN it is downloaded, confirmed in Chronicle and returned.
        """
        row = remote.add("2024-01-01")
        _serve(remote)
        lookup = respx.get(f"{CHRONICLE_TEST_URL}/lookup/{row['chronicle']}").mock(
            return_value=chronicle_response([chronicle_record(row["sha256"], keys.primary)], keys.chronicle)
        )

        bundle = await remote_fetch.get_latest_bundle()

        assert bundle.file_path == data_dir / row["file"]
        assert lookup.call_count == 1
        assert str(bundle.file_path) not in remote_fetch.unverified

    @pytest.mark.asyncio
    @respx.mock
    async def test_downloads_are_marked_unverified(
        self, remote_fetch: RemoteFetch, remote: BundleFactory, data_dir: Path
    ) -> None:
        """
        GIVEN a stale cache and a remote with one new bundle
        WHEN bundles are listed
        THEN the downloaded path awaits a Chronicle confirmation.
        """
        row = remote.add("2024-01-01")
        _serve(remote)

        await remote_fetch.list_bundles()

        assert str(data_dir / row["file"]) in remote_fetch.unverified
