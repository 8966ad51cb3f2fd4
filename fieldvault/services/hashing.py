"""Deterministic hash index for exact-match lookup on encrypted columns."""
from __future__ import annotations

from fieldvault.utils.crypto import sha256_hash

DIGEST_LENGTH = 64


def digest(plaintext: str, salt: str) -> str:
    """SHA-256 of ``salt || plaintext``, lowercase hex, always 64 chars.

    Same salt + same plaintext gives the same digest in every process.
    """
    return sha256_hash((salt + plaintext).encode("utf-8"))


class HashIndex:
    """Binds the deployment-wide salt.

    Changing the salt invalidates every stored ``<field>_hash`` value;
    nothing here detects or repairs that.
    """

    __slots__ = ("_salt",)

    def __init__(self, salt: str) -> None:
        if not salt:
            raise ValueError("Hash salt must not be empty")
        self._salt = salt

    def digest(self, plaintext: str) -> str:
        return digest(plaintext, self._salt)
