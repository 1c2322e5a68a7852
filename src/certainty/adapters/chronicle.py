"""
Chronicle adapter — signed lookups against the transparency log.

Chronicle is an append-only log that publishes, for every released bundle, a
record signed by the release key. A lookup is a plain GET:

    GET {chronicle_url}/lookup/{chronicle_hash}

The whole HTTP response is an envelope signed by the log's own Ed25519 key
(base64url signature in the `Body-Signature-Ed25519` header, one or more
values). The body is trusted only if one of those signatures verifies; only
then is it parsed:

    {"version": "...", "datetime": "...", "status": "OK",
     "results": [{"contents": "...", "signature": "...", "publickey": "..."}, ...]}

Record-level checks are the Validator's job; this module only proves the
response came from the log.
"""

from __future__ import annotations

import base64
import binascii
import json
from typing import Any

import httpx
import structlog
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from certainty.adapters.http_client import build_async_client, open_client
from certainty.domain.ports import HttpClientFactory
from certainty.errors import ConfigurationError, EnvelopeSignatureError, LogResponseError

log = structlog.get_logger()

ENVELOPE_SIGNATURE_HEADER = "Body-Signature-Ed25519"


def b64url_decode(value: str) -> bytes:
    """Decode base64url with or without padding. Raises ValueError on bad input."""
    try:
        return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))
    except (binascii.Error, TypeError) as e:
        raise ValueError(f"Invalid base64url value: {value!r}") from e


def load_public_key(encoded: str) -> Ed25519PublicKey:
    """Parse a base64url-encoded raw Ed25519 public key."""
    try:
        return Ed25519PublicKey.from_public_bytes(b64url_decode(encoded))
    except ValueError as e:
        raise ConfigurationError(f"Invalid Chronicle public key: {encoded!r}") from e


class ChronicleClient:
    """
    Query the Chronicle transparency log and verify the response envelope.

    Implements the TransparencyLog port.
    """

    def __init__(
        self,
        url: str,
        public_key: str,
        client_factory: HttpClientFactory = build_async_client,
    ) -> None:
        self._url = url.rstrip("/")
        self._public_key = load_public_key(public_key)
        self._client_factory = client_factory

    def lookup_url(self, chronicle_hash: str) -> str:
        return f"{self._url}/lookup/{chronicle_hash}"

    async def lookup(
        self,
        chronicle_hash: str,
        strict_envelope: bool = True,
    ) -> list[dict[str, Any]] | None:
        """
        Fetch the records published under `chronicle_hash`.

        Returns the `results` list once the envelope verifies. An invalid
        envelope raises EnvelopeSignatureError when `strict_envelope` is set,
        otherwise returns None. A verified but unusable body raises
        LogResponseError.
        """
        url = self.lookup_url(chronicle_hash)
        async with await open_client(self._client_factory) as client:
            response = await self._get(client, url)

        signatures = response.headers.get_list(ENVELOPE_SIGNATURE_HEADER)
        if not self.verify_envelope(signatures, response.content):
            if strict_envelope:
                raise EnvelopeSignatureError(f"No valid {ENVELOPE_SIGNATURE_HEADER} header on {url}")
            log.warning("chronicle.envelope_invalid", url=url)
            return None

        try:
            document = json.loads(response.content)
        except ValueError as e:
            raise LogResponseError(f"Chronicle response from {url} is not JSON") from e
        results = document.get("results") if isinstance(document, dict) else None
        if not isinstance(results, list):
            raise LogResponseError(f"Chronicle response from {url} has no results list")
        log.debug("chronicle.lookup_complete", url=url, results=len(results))
        return results

    def verify_envelope(self, signatures: list[str], body: bytes) -> bool:
        """True if any of the header signatures is valid over the raw body."""
        for encoded in signatures:
            try:
                self._public_key.verify(b64url_decode(encoded.strip()), body)
            except (ValueError, InvalidSignature):
                continue
            return True
        return False

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=0.1, max=30),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError)),
        reraise=True,
    )
    async def _get(self, client: httpx.AsyncClient, url: str) -> httpx.Response:
        response = await client.get(url)
        response.raise_for_status()
        return response
