from __future__ import annotations

import pytest

from donorpin.auth_flow import PinAuthContext
from donorpin.clock import days_ms, minutes_ms
from donorpin.config import SecurityPolicy
from donorpin.identity import CachedIdentity, MemoryIdentityCache
from donorpin.security import StaticDeviceIdentity
from donorpin.store import DeviceBoundStore, MemoryEnvelopeBackend


class FakeClock:
    def __init__(self, start: int = 1_760_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int = 0, *, minutes: float = 0, days: float = 0) -> None:
        self.now += ms + minutes_ms(minutes) + days_ms(days)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def policy():
    return SecurityPolicy()


@pytest.fixture
def backend():
    return MemoryEnvelopeBackend()


@pytest.fixture
def device():
    return StaticDeviceIdentity("device-A")


@pytest.fixture
def store(backend, device, policy, clock):
    return DeviceBoundStore(backend, device, policy=policy, clock=clock)


@pytest.fixture
def identity():
    return CachedIdentity(
        first_name="Maria",
        last_name="Rossi",
        date_of_birth="1990-05-01",
        external_id="AVIS-0042",
    )


@pytest.fixture
def identity_cache(identity):
    return MemoryIdentityCache(identity)


@pytest.fixture
def audit_lines():
    return []


@pytest.fixture
def ctx(store, identity_cache, clock, audit_lines):
    def audit(action, decision, reason, subject_id):
        audit_lines.append((action, decision, reason, subject_id))

    return PinAuthContext(store, identity_cache=identity_cache, audit=audit, clock=clock)
