"""
Catalog adapter — the `ca-certs.json` file in the data directory.

The catalog is a JSON array; each row describes one bundle:

    {
        "date": "2024-03-11",
        "file": "cacert-2024-03-11.pem",
        "sha256": "<hex>",
        "signature": "<hex Ed25519 signature>",
        "trust-channel": "Mozilla",
        "chronicle": "<Chronicle lookup hash>",      (optional)
        "custom": "<validator tag>",                 (optional)
        "bad-bundle": "Marked bad on ... for ..."    (optional, set by quarantine)
    }

Parsing is lenient: rows missing a required field, rows whose file is absent
and rows of another trust channel are skipped. A missing or unreadable
catalog file is fatal (CatalogError).

All writes (quarantine, sync rotation) run under an exclusive FileLock on
`ca-certs.json.lock` and replace the file atomically, so concurrent
quarantines from several processes cannot lose each other's updates.
"""

from __future__ import annotations

import asyncio
import json
import os
import re
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

import structlog
from filelock import FileLock, Timeout

from certainty.domain.models import DEFAULT_TRUST_CHANNEL, Bundle, CatalogEntry
from certainty.errors import CatalogError, DataDirectoryError

log = structlog.get_logger()

CATALOG_NAME = "ca-certs.json"
REQUIRED_FIELDS = ("date", "file", "sha256", "signature", "trust-channel")

_KEY_DATE_DIGITS = 14  # YYYYMMDDHHMMSS
_KEY_SUFFIX = "0000"
_NON_DIGITS = re.compile(r"[^0-9]")


def selection_key(date: str) -> str:
    """
    Normalize a catalog date into a fixed-width numeric key.

    "2024-03-11" → "202403110000000000"; "2024-03-11T10:20:30Z" →
    "202403111020300000". Equal-width keys sort lexically in date order.
    """
    digits = _NON_DIGITS.sub("", date)[:_KEY_DATE_DIGITS]
    return digits.ljust(_KEY_DATE_DIGITS, "0") + _KEY_SUFFIX


def _next_key(key: str) -> str:
    return str(int(key) + 1).zfill(len(key))


def render_catalog(rows: list[Any]) -> str:
    """Serialize catalog rows the way they are stored on disk (4-space indent)."""
    return json.dumps(rows, indent=4) + "\n"


class JsonCatalog:
    """
    Read, filter and quarantine bundles listed in `<data_dir>/ca-certs.json`.

    Implements the BundleCatalog port.
    """

    def __init__(self, data_dir: Path | str, lock_timeout: float = 30.0) -> None:
        self._data_dir = Path(data_dir)
        if not self._data_dir.is_dir():
            raise DataDirectoryError(
                f"Could not open data directory ({self._data_dir}) for reading/writing"
            )
        self._lock = FileLock(str(self.path) + ".lock", timeout=lock_timeout)

    @property
    def data_dir(self) -> Path:
        return self._data_dir

    @property
    def path(self) -> Path:
        return self._data_dir / CATALOG_NAME

    # ─────────────────────── Reading ───────────────────────

    async def load_rows(self) -> list[Any]:
        """Return the raw catalog array. Raises CatalogError if it cannot be used."""
        return await asyncio.to_thread(self._read_rows)

    def _read_rows(self) -> list[Any]:
        try:
            text = self.path.read_text(encoding="utf-8")
        except OSError as e:
            raise CatalogError(f"{self.path} could not be loaded") from e
        try:
            rows = json.loads(text)
        except json.JSONDecodeError as e:
            raise CatalogError(f"{self.path} is not valid JSON") from e
        if not isinstance(rows, list):
            raise CatalogError(f"{self.path} must contain a JSON array")
        return rows

    async def list_bundles(
        self,
        trust_channel: str = DEFAULT_TRUST_CHANNEL,
        custom_validator: str = "",
    ) -> list[CatalogEntry]:
        """
        Return the selectable entries of one trust channel, newest first.

        A row's own "custom" tag wins over `custom_validator`.
        """
        return await asyncio.to_thread(
            self._list_entries, trust_channel or DEFAULT_TRUST_CHANNEL, custom_validator
        )

    def _list_entries(self, trust_channel: str, custom_validator: str) -> list[CatalogEntry]:
        rows = self._read_rows()
        entries: dict[str, CatalogEntry] = {}
        for index, row in enumerate(rows):
            if not self._is_candidate(row, trust_channel):
                continue
            key = selection_key(str(row["date"]))
            while key in entries:
                key = _next_key(key)
            entries[key] = CatalogEntry(
                key=key,
                index=index,
                date=str(row["date"]),
                file=row["file"],
                bundle=Bundle(
                    file_path=self._data_dir / row["file"],
                    sha256sum=row["sha256"],
                    signature=row["signature"],
                    custom_validator=row.get("custom") or custom_validator or None,
                    chronicle_hash=row.get("chronicle") or "",
                    trust_channel=trust_channel,
                ),
            )
        return [entries[key] for key in sorted(entries, reverse=True)]

    def _is_candidate(self, row: Any, trust_channel: str) -> bool:
        if not isinstance(row, dict):
            return False
        if any(name not in row for name in REQUIRED_FIELDS):
            return False
        if not all(isinstance(row[name], str) for name in REQUIRED_FIELDS[1:]):
            return False
        if not (self._data_dir / row["file"]).is_file():
            return False
        if row.get("bad-bundle"):
            return False
        return row["trust-channel"] == trust_channel

    # ─────────────────────── Writing ───────────────────────

    async def quarantine(self, index: int, reason: str, file: str | None = None) -> None:
        """
        Mark the row at `index` of the persisted catalog as bad.

        Re-reads the full file (not the filtered view) under the catalog lock,
        stamps "bad-bundle" with the current time and reason, and rewrites it.

        `file` is the filename the caller saw at `index` when it listed the
        catalog. If a sync has rewritten the catalog since, the row is looked
        up by that filename instead; CatalogError if no row names it anymore.
        """
        marked = await asyncio.to_thread(self._quarantine, index, reason, file)
        log.warning("catalog.quarantined", index=marked, listed_index=index, file=file, reason=reason)

    def _quarantine(self, index: int, reason: str, file: str | None) -> int:
        with self._locked():
            rows = self._read_rows()
            index = self._locate(rows, index, file)
            now = datetime.now().astimezone().isoformat(timespec="seconds")
            rows[index]["bad-bundle"] = f"Marked bad on {now} for reason: {reason}"
            self._atomic_write(self.path, render_catalog(rows))
            return index

    def _locate(self, rows: list[Any], index: int, file: str | None) -> int:
        def names(row: Any) -> bool:
            return isinstance(row, dict) and (file is None or row.get("file") == file)

        if 0 <= index < len(rows) and names(rows[index]):
            return index
        if file is not None:
            for position, row in enumerate(rows):
                if names(row):
                    return position
            raise CatalogError(f"{self.path} no longer lists {file}")
        raise CatalogError(f"No catalog row at index {index} in {self.path}")

    async def replace_rows(self, rows: list[Any], backup_suffix: str) -> Path | None:
        """
        Install a new catalog, rotating the current one to a backup first.

        The current file is renamed to `ca-certs-backup-<suffix>.json` (never
        overwritten in place), then the new content is written atomically.
        An existing backup with the same suffix is kept; the new one gets a
        `-1`, `-2`, ... counter. Returns the backup path, or None when there
        was no previous catalog.
        """
        return await asyncio.to_thread(self._replace_rows, rows, backup_suffix)

    def _replace_rows(self, rows: list[Any], backup_suffix: str) -> Path | None:
        with self._locked():
            backup: Path | None = None
            if self.path.exists():
                backup = self._free_backup_path(backup_suffix)
                os.replace(self.path, backup)
                log.info("catalog.backed_up", backup=backup.name)
            self._atomic_write(self.path, render_catalog(rows))
            return backup

    def _free_backup_path(self, suffix: str) -> Path:
        candidate = self._data_dir / f"ca-certs-backup-{suffix}.json"
        counter = 0
        while candidate.exists():
            counter += 1
            candidate = self._data_dir / f"ca-certs-backup-{suffix}-{counter}.json"
        return candidate

    @contextmanager
    def _locked(self) -> Iterator[None]:
        """Hold the exclusive catalog lock for the duration of the block."""
        try:
            self._lock.acquire()
        except Timeout as e:
            raise CatalogError(
                f"Timed out acquiring lock {self._lock.lock_file}; another writer may be stalled"
            ) from e
        try:
            yield
        finally:
            self._lock.release()

    @staticmethod
    def _atomic_write(path: Path, text: str) -> None:
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(text)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
