"""
Validator — the three independent checks that prove a bundle authentic.

  1. check_sha256_sum        file digest == catalog digest (constant-time compare)
  2. check_ed25519_signature detached signature over the file, primary or backup key
  3. check_chronicle_hash    the transparency log attests the same digest

Each check is stateless per call: the Validator only holds its TrustAnchors
and a factory for HTTP clients. A normal mismatch is a False result; an input
that cannot be evaluated raises (see certainty.errors).

Log record strictness has two tiers. A record signed by a key that is not one
of our anchors is simply not ours and always yields False. Any other defect
(missing fields, bad signature, digest or repository not in the contents) is
reported as False in lenient mode and raised in strict mode. Callers that do
not choose get strict: the check escalates as soon as content-level
validation begins.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
from pathlib import Path
from typing import Any

import structlog
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from certainty.adapters.chronicle import ChronicleClient, b64url_decode
from certainty.adapters.http_client import build_async_client
from certainty.domain.models import DEFAULT_TRUST_ANCHORS, Bundle, TrustAnchors
from certainty.domain.ports import HttpClientFactory, TransparencyLog
from certainty.errors import (
    BundleTypeError,
    ConfigurationError,
    IncompleteLogRecordError,
    LogRecordError,
)

log = structlog.get_logger()

BUFFER_SIZE = 16384


def _require_bundle(bundle: object) -> Bundle:
    if not isinstance(bundle, Bundle):
        raise BundleTypeError(f"Expected a Bundle, got {type(bundle).__name__}")
    return bundle


def hash_file(path: Path, algorithm: str = "sha256") -> bytes:
    """Digest a file in BUFFER_SIZE chunks and return the raw digest."""
    ctx = hashlib.new(algorithm)
    with path.open("rb") as handle:
        while chunk := handle.read(BUFFER_SIZE):
            ctx.update(chunk)
    return ctx.digest()


def verify_detached(public_key: bytes, signature: bytes, message: bytes) -> bool:
    """Ed25519 detached signature check; False instead of raising on mismatch."""
    try:
        Ed25519PublicKey.from_public_bytes(public_key).verify(signature, message)
    except (InvalidSignature, ValueError):
        return False
    return True


class Validator:
    """
    Verification engine bound to one set of trust anchors.

    Implements the BundleValidator port. Register instances under a tag with
    Fetch.add_validator() to verify some bundles against different anchors.
    """

    def __init__(
        self,
        anchors: TrustAnchors = DEFAULT_TRUST_ANCHORS,
        http_client_factory: HttpClientFactory = build_async_client,
        transparency_log: TransparencyLog | None = None,
    ) -> None:
        self._anchors = anchors
        self._http_client_factory = http_client_factory
        self._transparency_log = transparency_log

    @property
    def anchors(self) -> TrustAnchors:
        return self._anchors

    # ─────────────────────── 1. Digest ───────────────────────

    async def check_sha256_sum(self, bundle: Bundle) -> bool:
        """Stream the file, hash it, and compare in constant time."""
        bundle = _require_bundle(bundle)
        try:
            expected = bundle.sha256sum_bytes()
        except ValueError:
            log.warning("validator.sha256_malformed", file=bundle.file_path.name)
            return False
        actual = await asyncio.to_thread(hash_file, bundle.file_path)
        matched = hmac.compare_digest(actual, expected)
        if not matched:
            log.warning("validator.sha256_mismatch", file=bundle.file_path.name)
        return matched

    # ─────────────────────── 2. Signature ───────────────────────

    async def check_ed25519_signature(self, bundle: Bundle, backup_key: bool = False) -> bool:
        """
        Verify the detached signature against the primary (or backup) anchor.

        Trying the backup after a primary failure is the caller's decision.
        """
        bundle = _require_bundle(bundle)
        public_key = self._anchors.backup_public_key if backup_key else self._anchors.primary_public_key
        try:
            signature = bundle.signature_bytes()
        except ValueError:
            return False
        contents = await bundle.read_contents()
        return verify_detached(public_key, signature, contents)

    # ─────────────────────── 3. Transparency log ───────────────────────

    async def check_chronicle_hash(self, bundle: Bundle, strict_envelope: bool = True) -> bool:
        """
        Cross-check the bundle against the Chronicle transparency log.

        Passes if ANY returned record passes every content check. Fails
        closed when the bundle has no Chronicle hash, unless this validator
        has opted out of the log entirely (no URL and no public key).
        """
        bundle = _require_bundle(bundle)
        if self._anchors.chronicle_opted_out:
            return True
        if not bundle.chronicle_hash:
            log.warning("validator.chronicle_hash_missing", file=bundle.file_path.name)
            return False

        results = await self._log_client().lookup(bundle.chronicle_hash, strict_envelope)
        if results is None:
            return False

        first_error: LogRecordError | None = None
        for row in results:
            try:
                if await self.validate_chronicle_contents(bundle, row):
                    return True
            except LogRecordError as e:
                log.warning("validator.chronicle_record_rejected", file=bundle.file_path.name, error=str(e))
                first_error = first_error or e
        if first_error is not None:
            raise first_error
        return False

    async def validate_chronicle_contents(
        self,
        bundle: Bundle,
        row: Any,
        strict: bool | None = None,
    ) -> bool:
        """
        Check one log record: anchor key, record signature, digest, repository.

        `strict=None` escalates to strict (raise on defects); pass False for
        silent False results.
        """
        bundle = _require_bundle(bundle)
        strict = True if strict is None else strict

        if not isinstance(row, dict) or not all(row.get(name) for name in ("signature", "contents", "publickey")):
            return self._reject(strict, IncompleteLogRecordError("Incomplete data"))
        contents = row["contents"]
        if not isinstance(contents, str):
            return self._reject(strict, IncompleteLogRecordError("Record contents must be text"))

        try:
            public_key = b64url_decode(row["publickey"])
        except ValueError:
            return False
        if not any(hmac.compare_digest(public_key, anchor) for anchor in self._anchors.signing_keys):
            # Not one of our keys.
            return False

        try:
            signature = b64url_decode(row["signature"])
        except ValueError:
            return self._reject(strict, LogRecordError("Invalid signature."))
        if not verify_detached(public_key, signature, contents.encode("utf-8")):
            return self._reject(strict, LogRecordError("Invalid signature."))

        if bundle.sha256sum not in contents:
            return self._reject(strict, LogRecordError("SHA256 hash not present in response body"))

        repository = self._anchors.repository
        if repository not in contents and repository.replace("/", "\\/") not in contents:
            return self._reject(strict, LogRecordError("Repository name not present in response body"))
        return True

    @staticmethod
    def _reject(strict: bool, error: LogRecordError) -> bool:
        if strict:
            raise error
        return False

    def _log_client(self) -> TransparencyLog:
        if self._transparency_log is None:
            if not self._anchors.chronicle_url or not self._anchors.chronicle_public_key:
                raise ConfigurationError("Chronicle URL and public key must be configured together")
            self._transparency_log = ChronicleClient(
                self._anchors.chronicle_url,
                self._anchors.chronicle_public_key,
                self._http_client_factory,
            )
        return self._transparency_log

    # ─────────────────────── Composition ───────────────────────

    async def verify(
        self,
        bundle: Bundle,
        check_signature: bool = True,
        check_chronicle: bool = True,
    ) -> bool:
        """
        Fully verify a bundle: digest → signature → log, short-circuiting.

        The backup signing key is tried when the primary one fails.
        """
        if not await self.check_sha256_sum(bundle):
            return False
        if check_signature and not await self.check_signature_any_anchor(bundle):
            return False
        if check_chronicle and not await self.check_chronicle_hash(bundle):
            return False
        return True

    async def check_signature_any_anchor(self, bundle: Bundle) -> bool:
        if await self.check_ed25519_signature(bundle):
            return True
        return await self.check_ed25519_signature(bundle, backup_key=True)
