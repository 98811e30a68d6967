# donorpin/security/envelope_crypto.py
from __future__ import annotations

import hashlib
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM


_SALT_LEN = 32
_NONCE_LEN = 12
_KEY_LEN = 32
_TAG_LEN = 16
_DEFAULT_ITERATIONS = 100_000


class EnvelopeDecryptError(Exception):
    """Raised when a sealed blob cannot be opened (wrong device, tampered, truncated)."""


def derive_device_key(device_id: str, salt: bytes, iterations: int = _DEFAULT_ITERATIONS) -> bytes:
    if len(salt) != _SALT_LEN:
        raise ValueError("invalid_salt_length")
    if iterations < _DEFAULT_ITERATIONS:
        raise ValueError("kdf_iterations_too_small")
    return hashlib.pbkdf2_hmac("sha256", device_id.encode("utf-8"), salt, iterations, dklen=_KEY_LEN)


def seal(plaintext: bytes, device_id: str, iterations: int = _DEFAULT_ITERATIONS) -> bytes:
    """
    Encrypt with a fresh key per write.

    Layout: salt(32B) || nonce(12B) || AES-256-GCM ciphertext+tag
    """
    salt = os.urandom(_SALT_LEN)
    nonce = os.urandom(_NONCE_LEN)
    key = derive_device_key(device_id, salt, iterations)
    ct = AESGCM(key).encrypt(nonce, plaintext, None)
    return salt + nonce + ct


def open_sealed(blob: bytes, device_id: str, iterations: int = _DEFAULT_ITERATIONS) -> bytes:
    if not isinstance(blob, (bytes, bytearray)) or len(blob) < _SALT_LEN + _NONCE_LEN + _TAG_LEN:
        raise EnvelopeDecryptError("sealed_blob_truncated")
    blob = bytes(blob)
    salt = blob[:_SALT_LEN]
    nonce = blob[_SALT_LEN : _SALT_LEN + _NONCE_LEN]
    ct = blob[_SALT_LEN + _NONCE_LEN :]
    key = derive_device_key(device_id, salt, iterations)
    try:
        return AESGCM(key).decrypt(nonce, ct, None)
    except InvalidTag as exc:
        raise EnvelopeDecryptError("sealed_blob_auth_failed") from exc
