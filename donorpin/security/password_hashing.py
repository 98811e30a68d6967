# donorpin/security/password_hashing.py
from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os
import secrets
from typing import Optional, Tuple


_DEFAULT_ITERATIONS = 10_000
_SALT_LEN = 16
_KEY_LEN = 32


def _load_pepper_bytes() -> bytes:
    """
    Optional secret (pepper) mixed into every PIN derivation.
    - If unset: return b"" (no pepper).
    - If set: supports either raw string or base64 prefixed with "base64:".

    Environment variable:
      DONORPIN_PIN_PEPPER
        examples:
          export DONORPIN_PIN_PEPPER="my-long-random-pepper"
          export DONORPIN_PIN_PEPPER="base64:8cS7...=="
    """
    v = (os.environ.get("DONORPIN_PIN_PEPPER") or "").strip()
    if not v:
        return b""
    if v.startswith("base64:"):
        return base64.b64decode(v[len("base64:") :].encode("utf-8"), validate=True)
    return v.encode("utf-8")


def _derive(pin: str, salt: bytes, pepper: bytes, iterations: int) -> bytes:
    material = pin.encode("utf-8") + pepper
    return hashlib.pbkdf2_hmac("sha256", material, salt, iterations, dklen=_KEY_LEN)


def hash_pin(pin: str, salt: Optional[bytes] = None, iterations: int = _DEFAULT_ITERATIONS) -> str:
    """
    Return base64(salt || derived_key).

    The pepper is NOT part of the encoded credential.
    """
    if salt is None:
        salt = os.urandom(_SALT_LEN)
    if len(salt) != _SALT_LEN:
        raise ValueError("invalid_salt_length")
    dk = _derive(pin, salt, _load_pepper_bytes(), iterations)
    return base64.b64encode(salt + dk).decode("ascii")


def split_credential(credential_hash: str) -> Optional[Tuple[bytes, bytes]]:
    """Return (salt, stored_key), or None when the encoding is malformed."""
    if not isinstance(credential_hash, str) or not credential_hash:
        return None
    try:
        raw = base64.b64decode(credential_hash.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError, ValueError):
        return None
    if len(raw) != _SALT_LEN + _KEY_LEN:
        return None
    return raw[:_SALT_LEN], raw[_SALT_LEN:]


def verify_pin(pin: str, credential_hash: str, iterations: int = _DEFAULT_ITERATIONS) -> bool:
    """
    Constant-time verification over the derived key bytes.
    Never raises: a malformed credential or an unreadable pepper simply fails.
    """
    if not isinstance(pin, str):
        return False
    parts = split_credential(credential_hash)
    if parts is None:
        return False
    salt, expected = parts

    try:
        pepper = _load_pepper_bytes()
    except (binascii.Error, ValueError):
        return False
    return hmac.compare_digest(_derive(pin, salt, pepper, iterations), expected)


def generate_random_pin(length: int = 5) -> str:
    """Uniform random numeric PIN, zero-padded. For demos and tests."""
    return f"{secrets.randbelow(10 ** length):0{length}d}"
