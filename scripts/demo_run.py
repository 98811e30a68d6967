#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio

from donorpin.auth_flow import PinAuthContext
from donorpin.config import SecurityPolicy
from donorpin.identity import CachedIdentity, MemoryIdentityCache
from donorpin.security import StaticDeviceIdentity
from donorpin.store import DeviceBoundStore, MemoryEnvelopeBackend


def _print(title: str) -> None:
    print("\n" + "=" * 80)
    print(title)
    print("=" * 80)


def _show(step: str, result) -> None:
    extra = ""
    if result.attempts_remaining is not None:
        extra += f" attempts_remaining={result.attempts_remaining}"
    if result.lockout_expires_at is not None:
        extra += f" lockout_expires_at={result.lockout_expires_at}"
    print(f"{step:<28} decision={result.decision} reason={result.reason}{extra}")


async def demo_lockout_and_reset() -> None:
    _print("1) Lockout after three wrong PINs, cleared only by identity-verified reset")

    identity = CachedIdentity("Maria", "Rossi", "1990-05-01", "AVIS-0042")
    backend = MemoryEnvelopeBackend()
    store = DeviceBoundStore(backend, StaticDeviceIdentity("demo-device-A"), policy=SecurityPolicy())
    ctx = PinAuthContext(store, identity_cache=MemoryIdentityCache(identity))

    _show("setup 13579", await ctx.setup("13579", "13579", subject_id="donor-42"))
    for pin in ("00000", "11111", "22222"):
        _show(f"authenticate {pin}", await ctx.authenticate(pin))
    _show("authenticate 13579", await ctx.authenticate("13579"))

    claim = CachedIdentity(" maria ", "ROSSI", "1990-05-01", "avis-0042")
    _show("reset (matching identity)", await ctx.reset(claim))
    _show("setup 24680", await ctx.setup("24680", "24680", subject_id="donor-42"))
    _show("authenticate 24680", await ctx.authenticate("24680"))


async def demo_device_binding() -> None:
    _print("2) Envelope written on device A is useless on device B")

    backend = MemoryEnvelopeBackend()
    store_a = DeviceBoundStore(backend, StaticDeviceIdentity("demo-device-A"))
    store_b = DeviceBoundStore(backend, StaticDeviceIdentity("demo-device-B"))

    ctx_a = PinAuthContext(store_a)
    _show("setup on A", await ctx_a.setup("13579", "13579", subject_id="donor-42"))
    print(f"read on B -> {await store_b.get()}")
    print(f"read on A -> {await store_a.get()} (purged by the mismatch)")


async def run(only: str) -> None:
    if only in ("all", "lockout"):
        await demo_lockout_and_reset()
    if only in ("all", "device"):
        await demo_device_binding()


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--only", choices=("all", "lockout", "device"), default="all")
    args = parser.parse_args()
    asyncio.run(run(args.only))


if __name__ == "__main__":
    main()
