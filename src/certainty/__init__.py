"""
certainty — verified root certificate bundles for TLS clients.

Keeps a local catalog of CA bundle files in sync with a remote source and
answers one question: which cached bundle is the newest one that is provably
authentic? A bundle is accepted only after its SHA-256 digest, its Ed25519
signature, and a cross-check against the Chronicle transparency log agree.
"""

__version__ = "0.1.0"
