# obs-websocket v5 authentication

from __future__ import annotations

from shared.crypto.digest import b64encode, sha256


def derive_auth_key(password: str, salt: str, challenge: str) -> str:
    """
    Derive the Identify 'authentication' string.

        secret = base64(sha256(password + salt))
        auth   = base64(sha256(secret + challenge))

    The intermediate secret must stay Base64 (not hex) before the second
    round or the server rejects the key. Nothing is kept after returning.
    """
    secret = b64encode(sha256((password + salt).encode("utf-8")))
    return b64encode(sha256((secret + challenge).encode("utf-8")))
