# donorpin/security/audit_logging.py
from __future__ import annotations

import json
from typing import Any, Dict, Optional

from .device_binding import device_label


def build_audit_context(
    *,
    action: Optional[str] = None,
    subject_id: Optional[str] = None,
    attempts_remaining: Optional[int] = None,
    lockout_expires_at: Optional[int] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Build a JSON-serializable dict for audit logs.
    Never put PINs, hashes or identity fields in here.
    """
    d: Dict[str, Any] = {
        "device": device_label(),
    }

    if action is not None:
        d["action"] = str(action)
    if subject_id is not None:
        d["subject_id"] = str(subject_id)
    if attempts_remaining is not None:
        d["attempts_remaining"] = int(attempts_remaining)
    if lockout_expires_at is not None:
        d["lockout_expires_at"] = int(lockout_expires_at)

    if extra:
        for k, v in extra.items():
            d[str(k)] = v

    return d


def encode_audit_context(ctx: Dict[str, Any], max_len: int = 512) -> str:
    """
    Encode context as compact JSON string.
    If too long, truncate deterministically.
    """
    s = json.dumps(ctx, separators=(",", ":"), ensure_ascii=False, sort_keys=True, default=str)
    if len(s) <= max_len:
        return s
    return s[: max_len - 3] + "..."


def compact_reason(reason: str, audit_context_json: Optional[str] = None) -> str:
    """
    Pack reason + audit context into a single string suitable for pin_auth_logs.reason.

    Example:
      "bad_pin|ctx={...}"
    """
    r = (reason or "").strip() or "unknown"
    if not audit_context_json:
        return r
    return f"{r}|ctx={audit_context_json}"
