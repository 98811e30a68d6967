from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, Optional

from .clock import Clock, system_clock
from .config import AppConfig, AuthConfig
from .db import log_pin_event
from .identity import CachedIdentity, IdentityCache, SessionAuthenticator, identity_matches
from .ledger import AttemptLedger
from .models import AuthResult, LockoutState, PinCredentialRecord
from .security import build_audit_context, compact_reason, encode_audit_context
from .security.device_binding import DeviceIdentity, HostDeviceIdentity
from .security.password_hashing import hash_pin, verify_pin
from .security.pin_policy import PinCheck, check_pin, is_well_formed, pins_match, validate_pin
from .store import DeviceBoundStore, MemoryEnvelopeBackend, SqliteEnvelopeBackend


logger = logging.getLogger(__name__)

AuditSink = Callable[[str, str, str, Optional[str]], None]

DEMO_SUBJECT_PREFIX = "demo-user-"

NO_CREDENTIAL = "no_credential"
CREDENTIAL_INACTIVE = "credential_inactive"
LOCKED = "locked"
UNLOCKED = "unlocked"


@dataclass
class PinStatus:
    state: str
    is_pin_setup: bool
    is_pin_authenticated: bool
    lockout: LockoutState


def _allow(reason: str = "ok", **kwargs) -> AuthResult:
    return AuthResult(decision="ALLOW", reason=reason, **kwargs)


def _deny(reason: str, **kwargs) -> AuthResult:
    return AuthResult(decision="DENY", reason=reason, **kwargs)


class PinAuthContext:
    """
    Setup / login / change / reset protocols for one device.

    One instance per device session. The credential state is never cached
    here: every call re-derives it from the store and the attempt ledger.
    The only in-memory flag is whether this session has unlocked with a PIN.
    """

    def __init__(
        self,
        store: DeviceBoundStore,
        *,
        identity_cache: Optional[IdentityCache] = None,
        session: Optional[SessionAuthenticator] = None,
        auth: Optional[AuthConfig] = None,
        audit: Optional[AuditSink] = None,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.policy = store.policy
        self.clock = clock or store.clock
        self.ledger = AttemptLedger(store, self.clock)
        self.identity_cache = identity_cache
        self.session = session
        self.auth = auth or AuthConfig()
        self.audit = audit
        self.is_pin_authenticated = False
        self._lock = asyncio.Lock()

    # -- public protocols -------------------------------------------------

    async def setup(self, pin: str, confirm_pin: str, subject_id: Optional[str] = None) -> AuthResult:
        return await self._run("setup", lambda: self._setup(pin, confirm_pin, subject_id))

    async def authenticate(self, pin: str, session_active: bool = False) -> AuthResult:
        return await self._run("authenticate", lambda: self._authenticate(pin, session_active))

    async def change(self, current_pin: str, new_pin: str, confirm_new_pin: str) -> AuthResult:
        return await self._run("change", lambda: self._change(current_pin, new_pin, confirm_new_pin))

    async def reset(self, claim: CachedIdentity) -> AuthResult:
        return await self._run("reset", lambda: self._reset(claim))

    async def status(self) -> PinStatus:
        async with self._lock:
            record = await self.store.get()
            lockout = await self.ledger.evaluate_lockout(record)
            return PinStatus(
                state=self._state_of(record, lockout),
                is_pin_setup=record is not None and record.is_active,
                is_pin_authenticated=self.is_pin_authenticated,
                lockout=lockout,
            )

    def validate_input(self, pin: str) -> PinCheck:
        return check_pin(pin, self.policy)

    def has_cached_identity(self) -> bool:
        return self._cached_identity() is not None

    def logout(self) -> None:
        self.is_pin_authenticated = False

    # -- protocol bodies ----------------------------------------------------

    async def _setup(self, pin: str, confirm_pin: str, subject_id: Optional[str]) -> AuthResult:
        if not pins_match(pin, confirm_pin):
            return _deny("pin_mismatch")

        v = validate_pin(pin, self.policy)
        if not v.is_valid:
            return _deny("invalid_pin", errors=v.errors, warnings=v.warnings)

        subject = subject_id or await self._resolve_subject()
        if not subject:
            return _deny("no_subject", warnings=v.warnings)

        credential_hash = await asyncio.to_thread(hash_pin, pin.strip())
        now = self.clock()
        record = PinCredentialRecord(
            credential_hash=credential_hash,
            created_at=now,
            last_used_at=now,
            subject_id=subject,
            is_active=True,
            attempts=(),
        )

        stored = await self.store.put(record)
        # Usable for the rest of this process even when nothing durable was written.
        self.is_pin_authenticated = True
        if not stored:
            return _deny("not_persisted", subject_id=subject, warnings=v.warnings)
        return _allow(subject_id=subject, warnings=v.warnings)

    async def _authenticate(self, pin: str, session_active: bool) -> AuthResult:
        record = await self.store.get()
        if record is None:
            return _deny(NO_CREDENTIAL)
        if not record.is_active:
            return _deny(CREDENTIAL_INACTIVE)

        lockout = await self.ledger.evaluate_lockout(record)
        if lockout.is_locked:
            return _deny("locked_out", attempts_remaining=0, lockout_expires_at=lockout.lockout_expires_at)

        candidate = (pin or "").strip()
        if not is_well_formed(candidate, self.policy):
            return _deny("invalid_pin", errors=validate_pin(candidate, self.policy).errors)

        ok = await asyncio.to_thread(verify_pin, candidate, record.credential_hash)

        # The outcome is durable before the caller hears about it.
        if not await self.ledger.record_attempt(ok, "authenticate"):
            self.is_pin_authenticated = False
            return _deny(NO_CREDENTIAL)

        if not ok:
            return await self._failure_result()

        if not await self.ledger.reset():
            logger.warning("attempt ledger reset failed after successful pin check")
        self.is_pin_authenticated = True
        return await self._establish_session(record.subject_id, session_active)

    async def _change(self, current_pin: str, new_pin: str, confirm_new_pin: str) -> AuthResult:
        if not self.is_pin_authenticated:
            return _deny("not_authenticated")

        record = await self.store.get()
        if record is None:
            return _deny(NO_CREDENTIAL)
        if not record.is_active:
            return _deny(CREDENTIAL_INACTIVE)

        lockout = await self.ledger.evaluate_lockout(record)
        if lockout.is_locked:
            return _deny("locked_out", attempts_remaining=0, lockout_expires_at=lockout.lockout_expires_at)

        candidate = (current_pin or "").strip()
        ok = is_well_formed(candidate, self.policy) and await asyncio.to_thread(
            verify_pin, candidate, record.credential_hash
        )
        if not ok:
            if not await self.ledger.record_attempt(False, "change"):
                return _deny(NO_CREDENTIAL)
            return await self._failure_result()

        v = validate_pin(new_pin, self.policy)
        if not v.is_valid:
            return _deny("invalid_pin", errors=v.errors, warnings=v.warnings)
        if new_pin.strip() == candidate:
            return _deny("same_pin")
        if not pins_match(new_pin, confirm_new_pin):
            return _deny("pin_mismatch")

        new_hash = await asyncio.to_thread(hash_pin, new_pin.strip())
        updated = replace(
            record,
            credential_hash=new_hash,
            attempts=(),
            last_used_at=max(record.last_used_at, self.clock()),
        )
        if not await self.store.put(updated):
            return _deny("not_persisted", subject_id=record.subject_id)
        return _allow(subject_id=record.subject_id, warnings=v.warnings)

    async def _reset(self, claim: CachedIdentity) -> AuthResult:
        cached = self._cached_identity()
        if cached is None:
            return _deny("identity_unavailable")
        if claim is None or not identity_matches(claim, cached):
            return _deny("identity_mismatch")

        # Only path that clears a lockout: the record, its envelope and its ledger go together.
        if not await self.store.clear():
            return _deny("not_persisted")
        self.is_pin_authenticated = False
        return _allow()

    # -- helpers --------------------------------------------------------------

    async def _failure_result(self) -> AuthResult:
        state = await self.ledger.evaluate_lockout()
        if state.is_locked:
            return _deny("now_locked", attempts_remaining=0, lockout_expires_at=state.lockout_expires_at)
        return _deny("bad_pin", attempts_remaining=state.attempts_remaining)

    async def _establish_session(self, subject_id: str, session_active: bool) -> AuthResult:
        if session_active or self.session is None or not self.auth.require_backing_session:
            return _allow(subject_id=subject_id)

        demo = self.auth.allow_demo_subject and subject_id.startswith(DEMO_SUBJECT_PREFIX)
        identity = self._cached_identity()
        resolved = await self.session.login(identity) if identity is not None else None
        if resolved:
            return _allow(subject_id=subject_id if not demo else resolved)
        if demo:
            return _allow("ok_demo", subject_id=subject_id)

        self.is_pin_authenticated = False
        return _deny("verified_no_session", subject_id=subject_id)

    async def _resolve_subject(self) -> Optional[str]:
        identity = self._cached_identity()
        if identity is not None:
            if self.session is None:
                return None
            return await self.session.login(identity)
        if self.auth.allow_demo_subject:
            return f"{DEMO_SUBJECT_PREFIX}{self.clock()}"
        return None

    def _cached_identity(self) -> Optional[CachedIdentity]:
        if self.identity_cache is None:
            return None
        return self.identity_cache.get_cached_identity()

    @staticmethod
    def _state_of(record: Optional[PinCredentialRecord], lockout: LockoutState) -> str:
        if record is None:
            return NO_CREDENTIAL
        if not record.is_active:
            return CREDENTIAL_INACTIVE
        return LOCKED if lockout.is_locked else UNLOCKED

    async def _run(self, action: str, body: Callable[[], Awaitable[AuthResult]]) -> AuthResult:
        async with self._lock:
            try:
                result = await body()
            except Exception:
                logger.exception("pin %s failed unexpectedly", action)
                result = _deny("internal_error")
        self._emit(action, result)
        return result

    def _emit(self, action: str, result: AuthResult) -> None:
        logger.info("pin %s decision=%s reason=%s", action, result.decision, result.reason)
        if self.audit is None:
            return
        ctx = encode_audit_context(
            build_audit_context(
                action=action,
                subject_id=result.subject_id,
                attempts_remaining=result.attempts_remaining,
                lockout_expires_at=result.lockout_expires_at,
            )
        )
        try:
            self.audit(action, result.decision, compact_reason(result.reason, ctx), result.subject_id)
        except Exception:
            logger.exception("pin audit sink failed")


def build_context(
    cfg: AppConfig,
    conn=None,
    *,
    device: Optional[DeviceIdentity] = None,
    identity_cache: Optional[IdentityCache] = None,
    session: Optional[SessionAuthenticator] = None,
    clock: Clock = system_clock,
) -> PinAuthContext:
    """Wire store, ledger and collaborators from configuration."""
    if cfg.store.backend == "memory":
        backend = MemoryEnvelopeBackend()
    elif conn is None:
        raise ValueError("sqlite_backend_requires_connection")
    else:
        backend = SqliteEnvelopeBackend(conn)

    store = DeviceBoundStore(
        backend,
        device or HostDeviceIdentity(),
        policy=cfg.policy,
        clock=clock,
        kdf_iterations=cfg.store.kdf_iterations,
        schema_version=cfg.store.schema_version,
    )

    audit = None
    if conn is not None:
        def audit(action: str, decision: str, reason: str, subject_id: Optional[str]) -> None:
            log_pin_event(conn, action, decision, reason, subject_id)

    return PinAuthContext(
        store,
        identity_cache=identity_cache,
        session=session,
        auth=cfg.auth,
        audit=audit,
        clock=clock,
    )
