"""
Device-bound persistence for the single PIN credential of this device.

The record is sealed with a key derived from the current device identity,
so the persisted bytes are useless elsewhere. Anything unreadable (expired,
foreign device, tampered, unknown schema, structurally invalid) is purged
and reported as "no credential"; callers never learn why.
"""
from __future__ import annotations

import asyncio
import logging
import sqlite3
from dataclasses import replace
from typing import Optional, Protocol

from . import db
from .clock import Clock, system_clock
from .config import DEFAULT_POLICY, MIN_STORE_KDF_ITERATIONS, SecurityPolicy
from .models import EncryptedEnvelope, PinCredentialRecord, StorageInfo, validate_record
from .security.device_binding import DeviceIdentity, device_binding_tag, verify_device_binding
from .security.envelope_crypto import EnvelopeDecryptError, open_sealed, seal


logger = logging.getLogger(__name__)

SCHEMA_VERSION = "1.0"


class EnvelopeBackend(Protocol):
    def read_envelope(self) -> Optional[EncryptedEnvelope]:
        ...

    def write_envelope(self, envelope: EncryptedEnvelope) -> None:
        ...

    def delete_envelope(self) -> None:
        ...


class MemoryEnvelopeBackend:
    def __init__(self) -> None:
        self.envelope: Optional[EncryptedEnvelope] = None
        self.binding_tag: Optional[str] = None

    def read_envelope(self) -> Optional[EncryptedEnvelope]:
        return self.envelope

    def write_envelope(self, envelope: EncryptedEnvelope) -> None:
        self.envelope = envelope
        self.binding_tag = envelope.device_binding_tag

    def delete_envelope(self) -> None:
        self.envelope = None
        self.binding_tag = None


class SqliteEnvelopeBackend:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def read_envelope(self) -> Optional[EncryptedEnvelope]:
        return db.read_envelope(self.conn)

    def write_envelope(self, envelope: EncryptedEnvelope) -> None:
        db.write_envelope(self.conn, envelope)

    def delete_envelope(self) -> None:
        db.delete_envelope(self.conn)


class DeviceBoundStore:
    def __init__(
        self,
        backend: EnvelopeBackend,
        device: DeviceIdentity,
        policy: SecurityPolicy = DEFAULT_POLICY,
        clock: Clock = system_clock,
        kdf_iterations: int = MIN_STORE_KDF_ITERATIONS,
        schema_version: str = SCHEMA_VERSION,
    ):
        if kdf_iterations < MIN_STORE_KDF_ITERATIONS:
            raise ValueError("store_kdf_iterations_too_small")
        self.backend = backend
        self.device = device
        self.policy = policy.validate()
        self.clock = clock
        self.kdf_iterations = kdf_iterations
        self.schema_version = schema_version
        self._lock = asyncio.Lock()

    async def put(self, record: PinCredentialRecord, storage_expiry_days: Optional[int] = None) -> bool:
        async with self._lock:
            return await self._put(record, storage_expiry_days)

    async def get(self) -> Optional[PinCredentialRecord]:
        async with self._lock:
            return await self._get()

    async def clear(self) -> bool:
        async with self._lock:
            return self._purge("cleared")

    async def has_valid_record(self) -> bool:
        record = await self.get()
        return record is not None and record.is_active

    async def storage_info(self) -> StorageInfo:
        """Envelope metadata only; nothing is decrypted."""
        async with self._lock:
            try:
                env = self.backend.read_envelope()
            except Exception:
                logger.exception("pin envelope metadata read failed")
                return StorageInfo(has_envelope=False)
            if env is None:
                return StorageInfo(has_envelope=False)
            return StorageInfo(
                has_envelope=True,
                is_expired=self.clock() > env.expires_at,
                stored_at=env.stored_at,
                expires_at=env.expires_at,
                schema_version=env.schema_version,
            )

    async def extend_expiration(self, days: int) -> bool:
        """Re-seal the current record with a fresh storage window of `days`."""
        if days <= 0:
            return False
        async with self._lock:
            record = await self._get()
            if record is None:
                return False
            return await self._put(record, days)

    async def update(self, record: PinCredentialRecord, **changes) -> bool:
        return await self.put(replace(record, **changes))

    async def _put(self, record: PinCredentialRecord, storage_expiry_days: Optional[int]) -> bool:
        problems = validate_record(record)
        if problems:
            logger.warning("refusing to store invalid pin record: %s", ",".join(problems))
            return False
        try:
            device_id = self.device.current_device_id()
            ciphertext = await asyncio.to_thread(seal, record.to_json(), device_id, self.kdf_iterations)
            now = self.clock()
            days = storage_expiry_days if storage_expiry_days is not None else self.policy.storage_expiry_days
            envelope = EncryptedEnvelope(
                ciphertext=ciphertext,
                device_binding_tag=device_binding_tag(device_id),
                stored_at=now,
                expires_at=now + days * 24 * 60 * 60 * 1000,
                schema_version=self.schema_version,
            )
            self.backend.write_envelope(envelope)
        except Exception:
            logger.exception("pin envelope write failed")
            return False
        return True

    async def _get(self) -> Optional[PinCredentialRecord]:
        try:
            env = self.backend.read_envelope()
        except Exception:
            logger.exception("pin envelope read failed")
            self._purge("unreadable")
            return None
        if env is None:
            return None

        if env.schema_version != self.schema_version:
            self._purge("schema")
            return None

        now = self.clock()
        if now > env.expires_at:
            self._purge("storage_expired")
            return None

        try:
            device_id = self.device.current_device_id()
        except Exception:
            logger.exception("device identity unavailable")
            return None

        # Fail closed: never attempt decryption for another device.
        if not verify_device_binding(env.device_binding_tag, device_id):
            self._purge("device_mismatch")
            return None

        try:
            plaintext = await asyncio.to_thread(open_sealed, env.ciphertext, device_id, self.kdf_iterations)
            record = PinCredentialRecord.from_json(plaintext)
        except (EnvelopeDecryptError, ValueError, KeyError, TypeError):
            self._purge("corrupt")
            return None

        if validate_record(record):
            self._purge("corrupt")
            return None

        if now > record.created_at + self.policy.credential_expiry_ms:
            self._purge("credential_expired")
            return None

        return record

    def _purge(self, cause: str) -> bool:
        logger.info("pin envelope purged (%s)", cause)
        try:
            self.backend.delete_envelope()
        except Exception:
            logger.exception("pin envelope purge failed")
            return False
        return True
