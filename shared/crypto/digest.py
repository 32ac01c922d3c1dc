from __future__ import annotations
import base64

from cryptography.hazmat.primitives import hashes


def sha256(data: bytes) -> bytes:
    """Binary SHA-256 digest of data."""
    h = hashes.Hash(hashes.SHA256())
    h.update(data)
    return h.finalize()


def b64encode(data: bytes) -> str:
    """Standard-alphabet Base64 with padding, as the server expects."""
    return base64.b64encode(data).decode("ascii")
