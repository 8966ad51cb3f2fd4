"""Envelope codec for fieldvault.

Encrypts a single field value into a self-describing envelope
``base64(JSON{"iv", "value", "mac"})`` using AES-256-CBC with an
HMAC-SHA256 tag (encrypt-then-MAC), and detects whether a stored value
already is one.
"""

from __future__ import annotations

import base64
import binascii
import json
import re
from dataclasses import dataclass
from enum import Enum

from fieldvault.utils.crypto import (
    KEY_BYTES,
    aes_cbc_decrypt,
    aes_cbc_encrypt,
    constant_time_equals,
    derive_master_key,
    derive_subkey,
    generate_iv,
    hmac_sha256,
)

ENVELOPE_KEYS = frozenset({"iv", "value", "mac"})

_HEX_KEY_RE = re.compile(r"^[0-9a-fA-F]{64}$")


class DecodeError(Exception):
    """Base class for decode-time failures."""


class InvalidEnvelope(DecodeError):
    """Stored value is not a well-formed envelope."""


class AuthenticationFailure(DecodeError):
    """MAC did not verify: wrong key or tampered ciphertext."""


class EncryptionFailure(Exception):
    """Raised when a value cannot be encrypted (key misconfiguration, bad input)."""


class EnvelopeState(str, Enum):
    ENCRYPTED = "encrypted"
    PLAINTEXT = "plaintext"
    MALFORMED = "malformed"  # decodes to an object carrying only some envelope keys


@dataclass(frozen=True, slots=True)
class EncryptedEnvelope:
    """Immutable container for one encrypted field value."""

    iv: bytes
    ciphertext: bytes
    mac: bytes  # raw HMAC-SHA256 tag, hex-encoded on the wire

    def serialize(self) -> str:
        payload = {
            "iv": base64.b64encode(self.iv).decode("ascii"),
            "value": base64.b64encode(self.ciphertext).decode("ascii"),
            "mac": self.mac.hex(),
        }
        raw = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        return base64.b64encode(raw).decode("ascii")


def _decode_payload(value: object) -> object:
    """base64 -> JSON. Returns None if either step fails."""
    if isinstance(value, bytes):
        try:
            value = value.decode("ascii")
        except UnicodeDecodeError:
            return None
    if not isinstance(value, str) or not value:
        return None
    try:
        raw = base64.b64decode(value, validate=True)
        return json.loads(raw)
    except (binascii.Error, ValueError, RecursionError):
        # RecursionError: deeply nested JSON arrays or objects
        return None


def looks_like_envelope(value: object) -> bool:
    """Structural, non-authenticating envelope check.

    Only used to keep the transform idempotent. A plaintext that happens to
    be base64 JSON with exactly these three keys is a false positive.
    """
    payload = _decode_payload(value)
    return isinstance(payload, dict) and set(payload) == ENVELOPE_KEYS


def classify(value: object) -> EnvelopeState:
    """Tag a stored value. Never raises.

    Objects carrying some of the envelope keys, or all of them plus extra
    keys (e.g. the ``tag`` member other frameworks add), are MALFORMED.
    """
    payload = _decode_payload(value)
    if isinstance(payload, dict):
        keys = set(payload)
        if keys == ENVELOPE_KEYS:
            return EnvelopeState.ENCRYPTED
        if keys & ENVELOPE_KEYS:
            return EnvelopeState.MALFORMED
    return EnvelopeState.PLAINTEXT


def parse_key(raw: str, salt: bytes) -> bytes:
    """Turn a configured key into 32 bytes of master key material.

    ``base64:<b64>`` and 64 hex chars are used as-is; anything else is
    treated as a passphrase and stretched with Argon2id over ``salt``.
    """
    raw = raw.strip()
    if not raw:
        raise EncryptionFailure("Encryption key is empty")
    if raw.startswith("base64:"):
        try:
            key = base64.b64decode(raw[len("base64:"):], validate=True)
        except binascii.Error as exc:
            raise EncryptionFailure("Encryption key is not valid base64") from exc
    elif _HEX_KEY_RE.match(raw):
        key = bytes.fromhex(raw)
    else:
        if len(salt) < 8:
            raise EncryptionFailure("Passphrase keys need a hash salt of at least 8 bytes")
        key = derive_master_key(raw, salt)
    if len(key) != KEY_BYTES:
        raise EncryptionFailure(f"Encryption key must be {KEY_BYTES} bytes, got {len(key)}")
    return key


class EnvelopeCodec:
    """AES-256-CBC + HMAC-SHA256 envelope codec.

    Derives separate encryption and MAC sub-keys from the master key via
    HKDF. Does NOT keep the master key itself.
    """

    __slots__ = ("_enc_key", "_mac_key")

    def __init__(self, master_key: bytes) -> None:
        if len(master_key) != KEY_BYTES:
            raise EncryptionFailure(
                f"Encryption key must be {KEY_BYTES} bytes, got {len(master_key)}"
            )
        self._enc_key = derive_subkey(master_key, b"fieldvault-enc")
        self._mac_key = derive_subkey(master_key, b"fieldvault-mac")

    def _mac(self, iv_b64: str, value_b64: str) -> str:
        return hmac_sha256(self._mac_key, (iv_b64 + value_b64).encode("ascii"))

    def encode_envelope(self, plaintext: str) -> EncryptedEnvelope:
        if not isinstance(plaintext, str):
            raise EncryptionFailure(
                f"Only string values can be encrypted, got {type(plaintext).__name__}"
            )
        iv = generate_iv()
        try:
            ciphertext = aes_cbc_encrypt(self._enc_key, iv, plaintext.encode("utf-8"))
        except (ValueError, UnicodeEncodeError) as exc:
            raise EncryptionFailure(f"Encryption failed: {exc}") from exc
        mac = self._mac(
            base64.b64encode(iv).decode("ascii"),
            base64.b64encode(ciphertext).decode("ascii"),
        )
        return EncryptedEnvelope(iv=iv, ciphertext=ciphertext, mac=bytes.fromhex(mac))

    def encode(self, plaintext: str) -> str:
        """Encrypt plaintext and return the serialized envelope."""
        return self.encode_envelope(plaintext).serialize()

    def decode(self, stored: str | bytes) -> str:
        """Verify and decrypt a serialized envelope.

        Raises InvalidEnvelope on anything that is not a well-formed envelope,
        AuthenticationFailure when the MAC does not verify.
        """
        payload = _decode_payload(stored)
        if not isinstance(payload, dict) or not ENVELOPE_KEYS <= set(payload):
            raise InvalidEnvelope("Value is not an encrypted envelope")
        iv_b64, value_b64, mac = payload["iv"], payload["value"], payload["mac"]
        if not all(isinstance(v, str) for v in (iv_b64, value_b64, mac)):
            raise InvalidEnvelope("Envelope fields must be strings")

        if not constant_time_equals(self._mac(iv_b64, value_b64), mac.lower()):
            raise AuthenticationFailure("Envelope MAC verification failed")

        try:
            iv = base64.b64decode(iv_b64, validate=True)
            ciphertext = base64.b64decode(value_b64, validate=True)
            return aes_cbc_decrypt(self._enc_key, iv, ciphertext).decode("utf-8")
        except (binascii.Error, ValueError) as exc:
            # MAC verified but payload unusable: written with a different layout
            raise InvalidEnvelope(f"Envelope payload is corrupt: {exc}") from exc
