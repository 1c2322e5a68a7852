"""
Fetch — select the newest bundle that passes verification.

One run of get_latest_bundle() walks the catalog entries of the configured
trust channel, newest first, and for each candidate:

    digest ──fail──▶ quarantine("SHA256 mismatch"), next
      │ pass
    signature (if enabled) ──fail──▶ quarantine("Ed25519 signature mismatch"), next
      │ pass
    Chronicle (mandatory, or conditional) ──fail──▶ quarantine("Chronicle"), next
      │ pass
    accepted → returned

Running out of candidates raises NoValidBundleError. Checks run strictly one
after another; nothing is fanned out in parallel.

Chronicle modes:
  - check_chronicle=True   every candidate is cross-checked
  - check_chronicle=False  never cross-checked
  - check_chronicle=None   conditional: enforced only for paths still in the
                           in-memory `unverified` set (first sighting in this
                           process, or freshly downloaded). Confirmed paths skip
                           the network round-trip on later lookups. The set is
                           not persisted, so a restarted process re-checks
                           everything once.
"""

from __future__ import annotations

import ssl
from pathlib import Path

import httpx
import structlog

from certainty.adapters.http_client import DEFAULT_TIMEOUT_SECONDS, build_async_client
from certainty.domain.models import (
    DEFAULT_TRUST_ANCHORS,
    DEFAULT_TRUST_CHANNEL,
    Bundle,
    CatalogEntry,
    TrustAnchors,
)
from certainty.domain.ports import BundleCatalog, BundleValidator, HttpClientFactory
from certainty.errors import CatalogError, NoValidBundleError
from certainty.validator import Validator

log = structlog.get_logger()

REASON_SHA256 = "SHA256 mismatch"
REASON_SIGNATURE = "Ed25519 signature mismatch"
REASON_CHRONICLE = "Chronicle"


class Fetch:
    """
    Selection orchestrator over a local catalog.

    Bundles naming a custom validator tag are checked by the validator
    registered under that tag; unknown tags fall back to the default one.
    """

    def __init__(
        self,
        catalog: BundleCatalog,
        trust_channel: str = DEFAULT_TRUST_CHANNEL,
        anchors: TrustAnchors = DEFAULT_TRUST_ANCHORS,
        check_signature_by_default: bool = False,
        check_chronicle_by_default: bool = False,
        http_client_factory: HttpClientFactory | None = None,
    ) -> None:
        self._catalog = catalog
        self.trust_channel = trust_channel or DEFAULT_TRUST_CHANNEL
        self._anchors = anchors
        self._http_client_factory = http_client_factory or self._resident_client
        self._default_validator: BundleValidator = Validator(anchors, self._http_client_factory)
        self._validators: dict[str, BundleValidator] = {}
        self._seen: set[str] = set()
        self.unverified: set[str] = set()
        self.check_signature_by_default = check_signature_by_default
        self.check_chronicle_by_default = check_chronicle_by_default

    @property
    def catalog(self) -> BundleCatalog:
        return self._catalog

    @property
    def data_dir(self) -> Path:
        return self._catalog.data_dir

    # ─────────────────────── Configuration ───────────────────────

    def add_validator(self, name: str, validator: BundleValidator) -> Fetch:
        """Register a verification engine for bundles tagged `name`."""
        self._validators[name] = validator
        return self

    def set_chronicle(self, url: str, public_key: str) -> Fetch:
        """Point the default validator at another Chronicle instance."""
        self._anchors = self._anchors.with_chronicle(url, public_key)
        self._default_validator = Validator(self._anchors, self._http_client_factory)
        return self

    def mark_unverified(self, path: Path | str) -> None:
        """Require a Chronicle confirmation for `path` on its next conditional check."""
        self.unverified.add(str(path))

    def validator_for(self, bundle: Bundle) -> BundleValidator:
        if bundle.custom_validator and bundle.custom_validator in self._validators:
            return self._validators[bundle.custom_validator]
        return self._default_validator

    def trust_source(self) -> Fetch:
        """
        A plain Fetch over the same catalog, anchors and validators.

        Resolving the resident bundle through it never touches this Fetch's
        first-sighting bookkeeping and never needs a Chronicle lookup.
        """
        source = Fetch(self._catalog, self.trust_channel, self._anchors, http_client_factory=build_async_client)
        source._validators = dict(self._validators)
        return source

    async def _resident_client(self) -> httpx.AsyncClient:
        """Chronicle lookups trust the newest bundle that verifies locally."""
        return await create_verified_client(self.trust_source())

    # ─────────────────────── Listing ───────────────────────

    async def list_bundles(
        self,
        custom_validator: str = "",
        trust_channel: str = "",
    ) -> list[CatalogEntry]:
        return await self._catalog.list_bundles(trust_channel or self.trust_channel, custom_validator)

    async def get_all_bundles(self, custom_validator: str = "") -> list[Bundle]:
        return [entry.bundle for entry in await self.list_bundles(custom_validator)]

    # ─────────────────────── Selection ───────────────────────

    async def get_latest_bundle(
        self,
        check_signature: bool | None = None,
        check_chronicle: bool | None = None,
    ) -> Bundle:
        """
        Return the newest bundle that passes every enabled check.

        `None` for either flag means "use this Fetch's default"; for
        `check_chronicle` it also selects the conditional mode.
        """
        if check_signature is None:
            check_signature = self.check_signature_by_default
        conditional_chronicle = check_chronicle is None
        if check_chronicle is None:
            check_chronicle = self.check_chronicle_by_default

        for entry in await self.list_bundles():
            bundle = entry.bundle
            path = str(bundle.file_path)
            if path not in self._seen:
                self._seen.add(path)
                self.unverified.add(path)
            validator = self.validator_for(bundle)

            if not await validator.check_sha256_sum(bundle):
                await self._catalog.quarantine(entry.index, REASON_SHA256, file=entry.file)
                continue

            if check_signature and not await self._check_signature(validator, bundle):
                await self._catalog.quarantine(entry.index, REASON_SIGNATURE, file=entry.file)
                continue

            if check_chronicle and (not conditional_chronicle or path in self.unverified):
                if not await validator.check_chronicle_hash(bundle):
                    await self._catalog.quarantine(entry.index, REASON_CHRONICLE, file=entry.file)
                    continue
                self.unverified.discard(path)

            log.info(
                "fetch.bundle_selected",
                file=bundle.file_path.name,
                date=entry.date,
                trust_channel=self.trust_channel,
                signature_checked=check_signature,
                chronicle_checked=check_chronicle,
            )
            return bundle

        log.error("fetch.no_valid_bundle", data_dir=str(self.data_dir), trust_channel=self.trust_channel)
        raise NoValidBundleError("No valid bundles were found in the data directory.")

    @staticmethod
    async def _check_signature(validator: BundleValidator, bundle: Bundle) -> bool:
        """Primary anchor first; the backup anchor covers key rotation."""
        if await validator.check_ed25519_signature(bundle):
            return True
        return await validator.check_ed25519_signature(bundle, backup_key=True)


async def get_latest_ca_bundle(fetch: Fetch) -> bytes:
    """Contents of the newest verified bundle."""
    bundle = await fetch.get_latest_bundle()
    return await bundle.read_contents()


async def resident_ca_bundle(fetch: Fetch) -> Path | None:
    """
    Path of the newest bundle that verifies locally, or None.

    No catalog, or no bundle passing, means the caller is still bootstrapping
    and should fall back to the initial trust anchor set.
    """
    try:
        bundle = await fetch.get_latest_bundle(check_signature=True, check_chronicle=False)
    except (CatalogError, NoValidBundleError) as e:
        log.info("fetch.no_resident_bundle", reason=str(e))
        return None
    return bundle.file_path


async def create_verified_client(
    fetch: Fetch | None = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> httpx.AsyncClient:
    """
    AsyncClient trusting the latest verified bundle.

    Falls back to certifi (the bootstrap anchors) when no bundle is resident
    or the resident bundle cannot be loaded as a CA file.
    """
    ca_bundle = await resident_ca_bundle(fetch) if fetch is not None else None
    if ca_bundle is None:
        return build_async_client(timeout=timeout)
    try:
        return build_async_client(ca_bundle, timeout=timeout)
    except ssl.SSLError as e:
        log.warning("fetch.ca_bundle_unusable", file=ca_bundle.name, error=str(e))
        return build_async_client(timeout=timeout)
