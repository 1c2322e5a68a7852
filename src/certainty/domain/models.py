"""
Domain models — immutable values for bundles, catalog entries and trust anchors.

A Bundle describes one candidate CA file and the metadata needed to prove it
authentic. It never changes after construction: a rejected bundle is recorded
in the catalog ("bad-bundle"), not in the record.

TrustAnchors groups the process-wide trust constants (signing keys, Chronicle
endpoint and key, repository identifier) into one value so that validators can
be built against substitute keys in tests or custom trust channels.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from pathlib import Path

DEFAULT_TRUST_CHANNEL = "Mozilla"
DEFAULT_REPOSITORY = "paragonie/certainty"

PRIMARY_SIGNING_PUBKEY = "98f2dfad4115fea9f096c35485b3bf20b06e94acac3b7acf6185aa5806020342"
BACKUP_SIGNING_PUBKEY = "1cb438a66110689f1192b511a88030f02049c40d196dc1844f9e752531fdd195"
CHRONICLE_URL = "https://php-chronicle.pie-hosted.com/chronicle"
CHRONICLE_PUBKEY = "Bgcc1QfkP0UNgMZuHzi0hC1hA1SoVAyUrskmSkzRw3E="


@dataclass(frozen=True, slots=True)
class Bundle:
    """
    One candidate CA bundle file plus its trust metadata.

    `sha256sum` and `signature` are hex strings as stored in the catalog;
    the `*_bytes()` accessors decode them (ValueError on malformed hex).
    """

    file_path: Path
    sha256sum: str = ""
    signature: str = ""
    custom_validator: str | None = None
    chronicle_hash: str = ""
    trust_channel: str = DEFAULT_TRUST_CHANNEL

    def __post_init__(self) -> None:
        if not self.trust_channel:
            object.__setattr__(self, "trust_channel", DEFAULT_TRUST_CHANNEL)
        object.__setattr__(self, "file_path", Path(self.file_path))

    @property
    def has_custom(self) -> bool:
        return bool(self.custom_validator)

    def sha256sum_bytes(self) -> bytes:
        return bytes.fromhex(self.sha256sum)

    def signature_bytes(self) -> bytes:
        return bytes.fromhex(self.signature)

    async def read_contents(self) -> bytes:
        """Read the whole bundle file without blocking the event loop."""
        return await asyncio.to_thread(self.file_path.read_bytes)


@dataclass(frozen=True, slots=True)
class CatalogEntry:
    """
    A catalog row that survived filtering, ready for selection.

    `index` is the row's position in the persisted (unfiltered) catalog and is
    what quarantine writes target; `file` is the row's filename as written in
    the catalog, used to confirm the row has not moved since it was listed. `key` is the fixed-width selection key;
    sorting keys in descending order yields newest first.
    """

    key: str
    index: int
    date: str
    file: str
    bundle: Bundle


@dataclass(frozen=True, slots=True)
class TrustAnchors:
    """
    Immutable trust configuration handed to a Validator.

    Signing keys are raw 32-byte Ed25519 public keys. A validator whose
    anchors carry neither a Chronicle URL nor a Chronicle public key has opted
    out of the transparency log check.
    """

    primary_public_key: bytes = field(repr=False)
    backup_public_key: bytes = field(repr=False)
    chronicle_url: str | None = None
    chronicle_public_key: str | None = None
    repository: str = DEFAULT_REPOSITORY

    @property
    def signing_keys(self) -> tuple[bytes, bytes]:
        return self.primary_public_key, self.backup_public_key

    @property
    def chronicle_opted_out(self) -> bool:
        return not self.chronicle_url and not self.chronicle_public_key

    def with_chronicle(self, url: str | None, public_key: str | None) -> TrustAnchors:
        return replace(self, chronicle_url=url, chronicle_public_key=public_key)


DEFAULT_TRUST_ANCHORS = TrustAnchors(
    primary_public_key=bytes.fromhex(PRIMARY_SIGNING_PUBKEY),
    backup_public_key=bytes.fromhex(BACKUP_SIGNING_PUBKEY),
    chronicle_url=CHRONICLE_URL,
    chronicle_public_key=CHRONICLE_PUBKEY,
)
