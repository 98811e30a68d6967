from __future__ import annotations

import os
import sqlite3
from typing import Any, Dict, List, Optional

from .models import EncryptedEnvelope


# Single credential per device: every row lives in the same slot.
PIN_SLOT = "pin"

SCHEMA_SQL = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS pin_envelope (
  slot                TEXT PRIMARY KEY,
  ciphertext          BLOB NOT NULL,
  device_binding_tag  TEXT NOT NULL,
  stored_at           INTEGER NOT NULL,
  expires_at          INTEGER NOT NULL,
  schema_version      TEXT NOT NULL,
  updated_at          TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS pin_device_binding (
  slot                TEXT PRIMARY KEY,
  device_binding_tag  TEXT NOT NULL,
  updated_at          TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS pin_auth_logs (
  id          INTEGER PRIMARY KEY AUTOINCREMENT,
  ts          TEXT NOT NULL DEFAULT (datetime('now')),
  action      TEXT NOT NULL,
  subject_id  TEXT,
  decision    TEXT,
  reason      TEXT
);
"""


def ensure_parent_dir(db_path: str) -> None:
    parent = os.path.dirname(db_path)
    if parent:
        os.makedirs(parent, exist_ok=True)


def connect(db_path: str) -> sqlite3.Connection:
    if db_path != ":memory:":
        ensure_parent_dir(db_path)
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    return conn


def init_db(conn: sqlite3.Connection) -> None:
    conn.executescript(SCHEMA_SQL)
    conn.commit()


def write_envelope(conn: sqlite3.Connection, envelope: EncryptedEnvelope) -> None:
    conn.execute(
        """
        INSERT INTO pin_envelope(slot, ciphertext, device_binding_tag, stored_at, expires_at, schema_version)
        VALUES(?, ?, ?, ?, ?, ?)
        ON CONFLICT(slot) DO UPDATE SET
          ciphertext=excluded.ciphertext,
          device_binding_tag=excluded.device_binding_tag,
          stored_at=excluded.stored_at,
          expires_at=excluded.expires_at,
          schema_version=excluded.schema_version,
          updated_at=datetime('now')
        """,
        (
            PIN_SLOT,
            sqlite3.Binary(envelope.ciphertext),
            envelope.device_binding_tag,
            int(envelope.stored_at),
            int(envelope.expires_at),
            envelope.schema_version,
        ),
    )
    conn.execute(
        """
        INSERT INTO pin_device_binding(slot, device_binding_tag)
        VALUES(?, ?)
        ON CONFLICT(slot) DO UPDATE SET
          device_binding_tag=excluded.device_binding_tag,
          updated_at=datetime('now')
        """,
        (PIN_SLOT, envelope.device_binding_tag),
    )
    conn.commit()


def read_envelope(conn: sqlite3.Connection) -> Optional[EncryptedEnvelope]:
    row = conn.execute(
        """
        SELECT ciphertext, device_binding_tag, stored_at, expires_at, schema_version
        FROM pin_envelope WHERE slot=?
        """,
        (PIN_SLOT,),
    ).fetchone()
    if not row:
        return None
    return EncryptedEnvelope(
        ciphertext=bytes(row["ciphertext"]),
        device_binding_tag=str(row["device_binding_tag"]),
        stored_at=int(row["stored_at"]),
        expires_at=int(row["expires_at"]),
        schema_version=str(row["schema_version"]),
    )


def read_device_binding(conn: sqlite3.Connection) -> Optional[str]:
    row = conn.execute(
        "SELECT device_binding_tag FROM pin_device_binding WHERE slot=?",
        (PIN_SLOT,),
    ).fetchone()
    return str(row["device_binding_tag"]) if row else None


def delete_envelope(conn: sqlite3.Connection) -> None:
    conn.execute("DELETE FROM pin_envelope WHERE slot=?", (PIN_SLOT,))
    conn.execute("DELETE FROM pin_device_binding WHERE slot=?", (PIN_SLOT,))
    conn.commit()


def log_pin_event(
    conn: sqlite3.Connection,
    action: str,
    decision: str,
    reason: str,
    subject_id: Optional[str] = None,
) -> None:
    conn.execute(
        """
        INSERT INTO pin_auth_logs(action, subject_id, decision, reason)
        VALUES(?, ?, ?, ?)
        """,
        (action, subject_id, decision, reason),
    )
    conn.commit()


def recent_pin_events(conn: sqlite3.Connection, limit: int = 20) -> List[Dict[str, Any]]:
    rows = conn.execute(
        """
        SELECT id, ts, action, subject_id, decision, reason
        FROM pin_auth_logs ORDER BY id DESC LIMIT ?
        """,
        (int(limit),),
    ).fetchall()
    return [dict(r) for r in rows]
