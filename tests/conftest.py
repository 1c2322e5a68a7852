"""
Shared test fixtures for the certainty test suite.

Each test gets its own data directory (tmp_path), its own Ed25519 keys and a
BundleFactory to populate the catalog. HTTP is always mocked with respx.
"""

from __future__ import annotations

from pathlib import Path

import pytest
import structlog

from certainty.adapters.catalog import JsonCatalog
from certainty.domain.models import TrustAnchors
from tests.helpers import BundleFactory, TestKeys


@pytest.fixture(autouse=True)
def _quiet_structlog() -> None:
    """Keep log output out of test reports."""
    structlog.configure(wrapper_class=structlog.make_filtering_bound_logger(50))


@pytest.fixture()
def keys() -> TestKeys:
    return TestKeys()


@pytest.fixture()
def anchors(keys: TestKeys) -> TrustAnchors:
    """Trust anchors built from the test keys, Chronicle enabled."""
    return keys.anchors()


@pytest.fixture()
def data_dir(tmp_path: Path) -> Path:
    path = tmp_path / "data"
    path.mkdir()
    return path


@pytest.fixture()
def bundles(data_dir: Path, keys: TestKeys) -> BundleFactory:
    return BundleFactory(data_dir, keys)


@pytest.fixture()
def catalog(data_dir: Path) -> JsonCatalog:
    return JsonCatalog(data_dir)
