"""
Ports — Protocol-based interfaces between the orchestrator and its collaborators.

The selection orchestrator only knows these contracts:

  BundleCatalog    → list candidates, quarantine a rejected one
  BundleValidator  → the three independent checks
  TransparencyLog  → fetch signed lookup results for a Chronicle hash

Adapters satisfy a port simply by implementing its methods (structural
typing), so tests can pass fakes and custom trust channels can register their
own validator objects.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import httpx

from certainty.domain.models import Bundle, CatalogEntry

HttpClientFactory = Callable[[], httpx.AsyncClient | Awaitable[httpx.AsyncClient]]


@runtime_checkable
class BundleCatalog(Protocol):
    """Port: the persisted list of candidate bundles."""

    @property
    def data_dir(self) -> Path: ...

    async def list_bundles(
        self,
        trust_channel: str = ...,
        custom_validator: str = "",
    ) -> list[CatalogEntry]:
        """Return usable entries of one trust channel, newest first."""
        ...

    async def quarantine(self, index: int, reason: str, file: str | None = None) -> None:
        """
        Durably mark the row at `index` of the persisted catalog as bad.

        When `file` is given the row must still name that file.
        """
        ...


@runtime_checkable
class BundleValidator(Protocol):
    """
    Port: the shared check interface of every verification engine.

    Checks return False for a normal mismatch and raise only when the input
    could not be evaluated (see certainty.errors).
    """

    async def check_sha256_sum(self, bundle: Bundle) -> bool: ...

    async def check_ed25519_signature(self, bundle: Bundle, backup_key: bool = False) -> bool: ...

    async def check_chronicle_hash(self, bundle: Bundle, strict_envelope: bool = True) -> bool: ...


@runtime_checkable
class TransparencyLog(Protocol):
    """Port: query the append-only log for records matching a Chronicle hash."""

    async def lookup(self, chronicle_hash: str, strict_envelope: bool = True) -> list[dict[str, Any]] | None:
        """
        Return the verified `results` list, or None when the envelope signature
        is invalid and `strict_envelope` is False.
        """
        ...
