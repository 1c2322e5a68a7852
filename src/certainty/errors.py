"""
Exception hierarchy.

Verification failures (digest, signature or log mismatch) are NOT exceptions:
they are boolean outcomes consumed by the selection orchestrator. The classes
below cover the cases where a bundle could not be evaluated at all, so callers
can tell "proven inauthentic" apart from "unknown".
"""

from __future__ import annotations


class CertaintyError(Exception):
    """Base class for every error raised by this package."""


# ─────────────────────── Configuration (fatal) ───────────────────────


class ConfigurationError(CertaintyError):
    """Fatal misconfiguration — raised immediately, never retried."""


class DataDirectoryError(ConfigurationError):
    """The data directory is missing or not usable."""


class CatalogError(ConfigurationError):
    """The catalog file is missing, unreadable or not a JSON array."""


# ─────────────────────── Protocol / integrity ───────────────────────


class IntegrityError(CertaintyError):
    """A response or record could not be evaluated as trustworthy data."""


class EnvelopeSignatureError(IntegrityError):
    """The transparency log response carries no valid envelope signature."""


class LogResponseError(IntegrityError):
    """The transparency log response body is not the expected document."""


class LogRecordError(IntegrityError):
    """A transparency log record failed a content check in strict mode."""


class IncompleteLogRecordError(LogRecordError):
    """A transparency log record is missing signature, contents or public key."""


class BundleTypeError(CertaintyError, TypeError):
    """A verification check was handed something that is not a Bundle."""


# ─────────────────────── Terminal outcomes ───────────────────────


class NoValidBundleError(CertaintyError):
    """Every candidate bundle in the trust channel failed verification."""


class SyncError(CertaintyError):
    """A synchronization cycle with the remote source did not complete."""
