"""
Test helpers — throwaway Ed25519 keys, signed bundles and Chronicle responses.

Nothing here touches the production trust anchors: every test builds its own
TrustAnchors from freshly generated keys.
"""

from __future__ import annotations

import base64
import hashlib
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import httpx
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from certainty.adapters.chronicle import ENVELOPE_SIGNATURE_HEADER
from certainty.domain.models import TrustAnchors

CHRONICLE_TEST_URL = "https://chronicle.test/chronicle"
REMOTE_TEST_URL = "https://bundles.test/data/"
PEM_BODY = b"-----BEGIN CERTIFICATE-----\nMIIB-test-certificate\n-----END CERTIFICATE-----\n"


def raw_public_key(key: Ed25519PrivateKey) -> bytes:
    return key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii")


@dataclass
class TestKeys:
    """Primary and backup release keys plus the Chronicle service key."""

    __test__ = False

    primary: Ed25519PrivateKey = field(default_factory=Ed25519PrivateKey.generate)
    backup: Ed25519PrivateKey = field(default_factory=Ed25519PrivateKey.generate)
    chronicle: Ed25519PrivateKey = field(default_factory=Ed25519PrivateKey.generate)

    def anchors(self, with_chronicle: bool = True) -> TrustAnchors:
        return TrustAnchors(
            primary_public_key=raw_public_key(self.primary),
            backup_public_key=raw_public_key(self.backup),
            chronicle_url=CHRONICLE_TEST_URL if with_chronicle else None,
            chronicle_public_key=b64url(raw_public_key(self.chronicle)) if with_chronicle else None,
        )


class BundleFactory:
    """Write bundle files into a data directory and collect their catalog rows."""

    def __init__(self, data_dir: Path, keys: TestKeys) -> None:
        self.data_dir = data_dir
        self.keys = keys
        self.rows: list[dict[str, Any]] = []

    def add(
        self,
        date: str,
        filename: str | None = None,
        contents: bytes | None = None,
        *,
        signer: Ed25519PrivateKey | None = None,
        sha256: str | None = None,
        trust_channel: str = "Mozilla",
        chronicle: str | None = None,
        **extra: Any,
    ) -> dict[str, Any]:
        """Create a signed bundle file and append its row (not yet written)."""
        filename = filename or f"cacert-{date[:10]}.pem"
        contents = contents if contents is not None else PEM_BODY + date.encode()
        (self.data_dir / filename).write_bytes(contents)
        signer = signer or self.keys.primary
        row: dict[str, Any] = {
            "date": date,
            "file": filename,
            "sha256": sha256 or hashlib.sha256(contents).hexdigest(),
            "signature": signer.sign(contents).hex(),
            "trust-channel": trust_channel,
            "chronicle": chronicle if chronicle is not None else f"lookup-{date[:10]}",
            **extra,
        }
        self.rows.append(row)
        return row

    def write(self) -> Path:
        path = self.data_dir / "ca-certs.json"
        path.write_text(json.dumps(self.rows, indent=4), encoding="utf-8")
        return path

    def read(self) -> list[dict[str, Any]]:
        return json.loads((self.data_dir / "ca-certs.json").read_text(encoding="utf-8"))


def chronicle_record(
    sha256: str,
    signer: Ed25519PrivateKey,
    repository: str = "paragonie\\/certainty",
) -> dict[str, str]:
    """A log record attesting `sha256`, signed the way the release tooling does."""
    contents = json.dumps({"repository": "__REPO__", "sha256": sha256}).replace("__REPO__", repository)
    return {
        "contents": contents,
        "publickey": b64url(raw_public_key(signer)),
        "signature": b64url(signer.sign(contents.encode("utf-8"))),
    }


def chronicle_response(
    results: list[Any],
    signer: Ed25519PrivateKey | None,
) -> httpx.Response:
    """A lookup response whose body is signed by `signer` (None = unsigned)."""
    body = json.dumps({"version": "1.0", "status": "OK", "results": results}).encode("utf-8")
    headers = {}
    if signer is not None:
        headers[ENVELOPE_SIGNATURE_HEADER] = b64url(signer.sign(body))
    return httpx.Response(200, content=body, headers=headers)
