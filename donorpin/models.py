from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple

from .config import MAX_ATTEMPT_HISTORY


@dataclass(frozen=True)
class AttemptEntry:
    timestamp: int
    success: bool
    context: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"timestamp": self.timestamp, "success": self.success}
        if self.context is not None:
            d["context"] = self.context
        return d

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "AttemptEntry":
        ctx = raw.get("context")
        return cls(
            timestamp=int(raw["timestamp"]),
            success=bool(raw["success"]),
            context=str(ctx) if ctx is not None else None,
        )


@dataclass
class PinCredentialRecord:
    credential_hash: str
    created_at: int
    last_used_at: int
    subject_id: str
    is_active: bool = True
    attempts: Tuple[AttemptEntry, ...] = ()

    def with_attempt(self, entry: AttemptEntry) -> "PinCredentialRecord":
        """New record with entry appended; history keeps the newest entries only."""
        attempts = (tuple(self.attempts) + (entry,))[-MAX_ATTEMPT_HISTORY:]
        return replace(self, attempts=attempts, last_used_at=max(self.last_used_at, entry.timestamp))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "credential_hash": self.credential_hash,
            "created_at": self.created_at,
            "last_used_at": self.last_used_at,
            "attempts": [a.to_dict() for a in self.attempts],
            "is_active": self.is_active,
            "subject_id": self.subject_id,
        }

    def to_json(self) -> bytes:
        return json.dumps(self.to_dict(), separators=(",", ":"), sort_keys=True).encode("utf-8")

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "PinCredentialRecord":
        is_active = raw["is_active"]
        if not isinstance(is_active, bool):
            raise ValueError("is_active_must_be_bool")
        attempts = raw.get("attempts", [])
        if not isinstance(attempts, list):
            raise ValueError("attempts_must_be_list")
        return cls(
            credential_hash=str(raw["credential_hash"]),
            created_at=int(raw["created_at"]),
            last_used_at=int(raw["last_used_at"]),
            subject_id=str(raw["subject_id"]),
            is_active=is_active,
            attempts=tuple(AttemptEntry.from_dict(a) for a in attempts),
        )

    @classmethod
    def from_json(cls, data: bytes) -> "PinCredentialRecord":
        raw = json.loads(data.decode("utf-8"))
        if not isinstance(raw, dict):
            raise ValueError("record_must_be_object")
        return cls.from_dict(raw)


def validate_record(record: PinCredentialRecord) -> List[str]:
    errors: List[str] = []
    if not record.credential_hash:
        errors.append("credential_hash_required")
    if not record.subject_id:
        errors.append("subject_id_required")
    if record.created_at <= 0:
        errors.append("invalid_created_at")
    if record.last_used_at <= 0:
        errors.append("invalid_last_used_at")
    if record.last_used_at < record.created_at:
        errors.append("last_used_before_created")
    if len(record.attempts) > MAX_ATTEMPT_HISTORY:
        errors.append("too_many_attempts")
    return errors


@dataclass(frozen=True)
class EncryptedEnvelope:
    ciphertext: bytes
    device_binding_tag: str
    stored_at: int
    expires_at: int
    schema_version: str


@dataclass(frozen=True)
class LockoutState:
    is_locked: bool
    attempts_remaining: int
    lockout_expires_at: Optional[int] = None
    last_attempt_at: Optional[int] = None


@dataclass(frozen=True)
class StorageInfo:
    has_envelope: bool
    is_expired: bool = False
    stored_at: Optional[int] = None
    expires_at: Optional[int] = None
    schema_version: Optional[str] = None


@dataclass
class AuthResult:
    decision: str
    reason: str
    subject_id: Optional[str] = None
    attempts_remaining: Optional[int] = None
    lockout_expires_at: Optional[int] = None
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.decision == "ALLOW"
