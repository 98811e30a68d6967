from __future__ import annotations

import logging
from dataclasses import replace
from typing import Iterable, Optional

from .clock import Clock, system_clock
from .config import SecurityPolicy
from .models import AttemptEntry, LockoutState, PinCredentialRecord
from .store import DeviceBoundStore


logger = logging.getLogger(__name__)


def compute_lockout(attempts: Iterable[AttemptEntry], policy: SecurityPolicy, now: int) -> LockoutState:
    """
    Lockout is always derived from wall-clock time: only attempts inside the
    trailing window count, so a lock lapses on its own and cannot be raced down.
    """
    window = policy.lockout_window_ms
    recent = [a for a in attempts if now - a.timestamp < window]
    failures = [a for a in recent if not a.success]
    last_at = recent[-1].timestamp if recent else None

    if len(failures) >= policy.max_attempts:
        expires_at = failures[-1].timestamp + window
        if now < expires_at:
            return LockoutState(
                is_locked=True,
                attempts_remaining=0,
                lockout_expires_at=expires_at,
                last_attempt_at=failures[-1].timestamp,
            )
        return LockoutState(is_locked=False, attempts_remaining=policy.max_attempts, last_attempt_at=last_at)

    return LockoutState(
        is_locked=False,
        attempts_remaining=max(0, policy.max_attempts - len(failures)),
        last_attempt_at=last_at,
    )


class AttemptLedger:
    def __init__(self, store: DeviceBoundStore, clock: Optional[Clock] = None):
        self.store = store
        self.clock = clock or store.clock or system_clock

    @property
    def policy(self) -> SecurityPolicy:
        return self.store.policy

    async def record_attempt(self, success: bool, context: Optional[str] = None) -> bool:
        record = await self.store.get()
        if record is None:
            return False
        entry = AttemptEntry(timestamp=self.clock(), success=bool(success), context=context)
        return await self.store.put(record.with_attempt(entry))

    async def evaluate_lockout(self, record: Optional[PinCredentialRecord] = None) -> LockoutState:
        if record is None:
            record = await self.store.get()
        if record is None:
            return LockoutState(is_locked=False, attempts_remaining=self.policy.max_attempts)
        return compute_lockout(record.attempts, self.policy, self.clock())

    async def reset(self) -> bool:
        record = await self.store.get()
        if record is None:
            return False
        now = self.clock()
        return await self.store.put(replace(record, attempts=(), last_used_at=max(record.last_used_at, now)))
