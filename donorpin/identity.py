"""
Collaborators owned by the rest of the portal.

The identity cache is filled by the registration flow and only read here.
The session authenticator turns a cached identity into a backing account.
"""
from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from typing import Mapping, Optional, Protocol

import yaml


@dataclass(frozen=True)
class CachedIdentity:
    first_name: str
    last_name: str
    date_of_birth: str
    external_id: str


# Same shape: a reset claim is compared field by field against the cache.
IdentityClaim = CachedIdentity


class IdentityCache(Protocol):
    def get_cached_identity(self) -> Optional[CachedIdentity]:
        ...


class SessionAuthenticator(Protocol):
    async def login(self, identity: CachedIdentity) -> Optional[str]:
        """Return the subject id of the backing account, or None."""
        ...


class MemoryIdentityCache:
    def __init__(self, identity: Optional[CachedIdentity] = None):
        self.identity = identity

    def get_cached_identity(self) -> Optional[CachedIdentity]:
        return self.identity


def _norm(v: Optional[str]) -> str:
    return (v or "").strip().lower()


def identity_matches(claim: CachedIdentity, cached: CachedIdentity) -> bool:
    """Case-insensitive, trimmed, every field compared (no early exit)."""
    pairs = (
        (claim.first_name, cached.first_name),
        (claim.last_name, cached.last_name),
        (claim.date_of_birth, cached.date_of_birth),
        (claim.external_id, cached.external_id),
    )
    ok = True
    for a, b in pairs:
        ok &= hmac.compare_digest(_norm(a).encode("utf-8"), _norm(b).encode("utf-8"))
    return ok


def donor_hash_id(identity: CachedIdentity) -> str:
    """SHA-256 hex over the registration fields, as stored by the donor directory."""
    s = f"{identity.first_name}{identity.last_name}{identity.date_of_birth}{identity.external_id}"
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


class DirectorySessionAuthenticator:
    """Resolves a subject from a {donor_hash_id: subject_id} mapping."""

    def __init__(self, directory: Mapping[str, str]):
        self.directory = directory

    async def login(self, identity: CachedIdentity) -> Optional[str]:
        return self.directory.get(donor_hash_id(identity))


class FileIdentityCache:
    """
    Identity snapshot left on disk by the registration flow (YAML mapping with
    first_name, last_name, date_of_birth, external_id). Missing or incomplete
    files read as "no cached identity".
    """

    def __init__(self, path: str):
        self.path = path

    def get_cached_identity(self) -> Optional[CachedIdentity]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError):
            return None
        if not isinstance(raw, dict):
            return None
        fields = ("first_name", "last_name", "date_of_birth", "external_id")
        if any(not str(raw.get(k) or "").strip() for k in fields):
            return None
        return CachedIdentity(**{k: str(raw[k]) for k in fields})
