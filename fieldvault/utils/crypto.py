"""Low-level cryptographic primitives for fieldvault.

Pure functions with no domain knowledge, reusable building blocks.
"""

from __future__ import annotations

import hashlib
import hmac
import os

from argon2.low_level import Type, hash_secret_raw
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.hashes import SHA256
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

AES_BLOCK_BYTES = 16
KEY_BYTES = 32


def derive_master_key(passphrase: str, salt: bytes) -> bytes:
    """Derive a 256-bit master key from a passphrase using Argon2id.

    Parameters match OWASP recommendations for Argon2id:
    time_cost=3, memory_cost=64 MiB, parallelism=1.
    """
    return hash_secret_raw(
        secret=passphrase.encode("utf-8"),
        salt=salt,
        time_cost=3,
        memory_cost=65536,
        parallelism=1,
        hash_len=KEY_BYTES,
        type=Type.ID,
    )


def derive_subkey(master: bytes, info: bytes, length: int = KEY_BYTES) -> bytes:
    """Derive a sub-key from the master key using HKDF-SHA256.

    Salt is None because the master key already carries 256 bits of entropy.
    """
    hkdf = HKDF(
        algorithm=SHA256(),
        length=length,
        salt=None,
        info=info,
    )
    return hkdf.derive(master)


def generate_iv() -> bytes:
    """Fresh random 16-byte IV for AES-CBC. Never reuse one."""
    return os.urandom(AES_BLOCK_BYTES)


def aes_cbc_encrypt(key: bytes, iv: bytes, plaintext: bytes) -> bytes:
    """PKCS7-pad and encrypt plaintext with AES-256-CBC."""
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(plaintext) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    return encryptor.update(padded) + encryptor.finalize()


def aes_cbc_decrypt(key: bytes, iv: bytes, ciphertext: bytes) -> bytes:
    """Decrypt AES-256-CBC ciphertext and strip PKCS7 padding.

    Raises ValueError on bad padding or a ciphertext that is not a whole
    number of blocks. Callers must verify the MAC first.
    """
    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()
    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    return unpadder.update(padded) + unpadder.finalize()


def hmac_sha256(key: bytes, data: bytes) -> str:
    """Compute HMAC-SHA256(key, data). Returns hex-encoded digest."""
    return hmac.new(key, data, hashlib.sha256).hexdigest()


def constant_time_equals(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def sha256_hash(data: bytes) -> str:
    """Compute SHA-256 hash. Returns hex-encoded digest."""
    return hashlib.sha256(data).hexdigest()
