import asyncio

import pytest

from donorpin import auth_flow
from donorpin.auth_flow import (
    CREDENTIAL_INACTIVE,
    LOCKED,
    NO_CREDENTIAL,
    UNLOCKED,
    PinAuthContext,
    build_context,
)
from donorpin.config import AppConfig, AuthConfig, SecurityPolicy, StoreConfig
from donorpin.identity import (
    CachedIdentity,
    DirectorySessionAuthenticator,
    MemoryIdentityCache,
    donor_hash_id,
)
from donorpin.store import DeviceBoundStore

MIN = 60 * 1000


async def setup_donor(ctx, pin="13579"):
    r = await ctx.setup(pin, pin, subject_id="donor-42")
    assert r.ok, r
    return r


async def test_lockout_and_reset_walkthrough(ctx, identity, backend):
    await setup_donor(ctx)

    r = await ctx.authenticate("00000")
    assert (r.decision, r.reason, r.attempts_remaining) == ("DENY", "bad_pin", 2)
    r = await ctx.authenticate("11111")
    assert (r.reason, r.attempts_remaining) == ("bad_pin", 1)
    r = await ctx.authenticate("22222")
    assert (r.reason, r.attempts_remaining) == ("now_locked", 0)
    assert r.lockout_expires_at is not None

    r = await ctx.authenticate("13579")
    assert r.decision == "DENY"
    assert r.reason == "locked_out"

    r = await ctx.reset(identity)
    assert r.ok
    assert backend.envelope is None
    assert not ctx.is_pin_authenticated

    r = await ctx.setup("24680", "24680", subject_id="donor-42")
    assert r.ok
    status = await ctx.status()
    assert status.state == UNLOCKED
    assert status.lockout.attempts_remaining == 3


async def test_locked_account_never_reaches_verification(ctx, monkeypatch):
    await setup_donor(ctx)
    for pin in ("00000", "11111", "22222"):
        await ctx.authenticate(pin)

    calls = []

    def counting_verify(pin, credential_hash):
        calls.append(pin)
        return True

    monkeypatch.setattr("donorpin.auth_flow.verify_pin", counting_verify)
    r = await ctx.authenticate("13579")
    assert r.reason == "locked_out"
    assert calls == []


async def test_lock_lapses_after_window(ctx, clock):
    await setup_donor(ctx)
    for pin in ("00000", "11111", "22222"):
        await ctx.authenticate(pin)
    assert (await ctx.status()).state == LOCKED

    clock.advance(minutes=15)
    r = await ctx.authenticate("13579")
    assert r.ok
    assert r.subject_id == "donor-42"


async def test_success_resets_the_ledger(ctx, store):
    await setup_donor(ctx)
    await ctx.authenticate("00000")
    await ctx.authenticate("11111")

    r = await ctx.authenticate("13579")
    assert (r.decision, r.reason, r.subject_id) == ("ALLOW", "ok", "donor-42")
    assert ctx.is_pin_authenticated
    assert (await store.get()).attempts == ()

    r = await ctx.authenticate("00000")
    assert r.attempts_remaining == 2


async def test_concurrent_logins_are_serialised(ctx, monkeypatch):
    await setup_donor(ctx)
    verified = []
    real_verify = auth_flow.verify_pin

    def tracking_verify(pin, credential_hash):
        verified.append(pin)
        return real_verify(pin, credential_hash)

    monkeypatch.setattr("donorpin.auth_flow.verify_pin", tracking_verify)
    results = await asyncio.gather(*(ctx.authenticate(pin) for pin in ("00000", "11111", "22222", "33333")))

    assert [(r.reason, r.attempts_remaining) for r in results] == [
        ("bad_pin", 2),
        ("bad_pin", 1),
        ("now_locked", 0),
        ("locked_out", 0),
    ]
    assert verified == ["00000", "11111", "22222"]


async def test_malformed_input_is_not_an_attempt(ctx):
    await setup_donor(ctx)
    r = await ctx.authenticate("12a")
    assert r.reason == "invalid_pin"
    assert r.errors
    assert (await ctx.status()).lockout.attempts_remaining == 3


async def test_authenticate_without_credential(ctx):
    r = await ctx.authenticate("13579")
    assert (r.decision, r.reason) == ("DENY", NO_CREDENTIAL)


async def test_inactive_credential(ctx, store):
    await setup_donor(ctx)
    record = await store.get()
    assert await store.update(record, is_active=False)

    r = await ctx.authenticate("13579")
    assert r.reason == CREDENTIAL_INACTIVE
    assert (await ctx.status()).state == CREDENTIAL_INACTIVE


class TestSetup:
    async def test_confirmation_mismatch(self, ctx, backend):
        r = await ctx.setup("13579", "13578", subject_id="donor-42")
        assert r.reason == "pin_mismatch"
        assert backend.envelope is None

    async def test_weak_pin(self, ctx, backend):
        r = await ctx.setup("12345", "12345", subject_id="donor-42")
        assert r.reason == "invalid_pin"
        assert r.errors == ["PIN cannot be sequential (e.g., 12345, 54321)"]
        assert backend.envelope is None

    async def test_record_shape(self, ctx, store, clock):
        r = await setup_donor(ctx)
        assert r.subject_id == "donor-42"
        record = await store.get()
        assert record.subject_id == "donor-42"
        assert record.created_at == record.last_used_at == clock()
        assert record.is_active
        assert record.attempts == ()
        assert "13579" not in record.credential_hash
        assert ctx.is_pin_authenticated

    async def test_no_subject_without_session_or_demo(self, ctx, backend):
        r = await ctx.setup("13579", "13579")
        assert r.reason == "no_subject"
        assert backend.envelope is None

    async def test_subject_from_backing_session(self, store, identity, clock):
        session = DirectorySessionAuthenticator({donor_hash_id(identity): "donor-77"})
        ctx = PinAuthContext(store, identity_cache=MemoryIdentityCache(identity), session=session, clock=clock)
        r = await ctx.setup("13579", "13579")
        assert r.ok
        assert r.subject_id == "donor-77"

    async def test_persistence_failure(self, device, policy, clock):
        class FailingBackend:
            def read_envelope(self):
                return None

            def write_envelope(self, envelope):
                raise OSError("read-only storage")

            def delete_envelope(self):
                pass

        ctx = PinAuthContext(DeviceBoundStore(FailingBackend(), device, policy=policy, clock=clock))
        r = await ctx.setup("13579", "13579", subject_id="donor-42")
        assert (r.decision, r.reason) == ("DENY", "not_persisted")
        assert ctx.is_pin_authenticated


class TestChange:
    async def test_requires_unlocked_session(self, ctx):
        await setup_donor(ctx)
        ctx.logout()
        r = await ctx.change("13579", "24680", "24680")
        assert r.reason == "not_authenticated"

    async def test_change_replaces_credential(self, ctx):
        await setup_donor(ctx)
        r = await ctx.change("13579", "24680", "24680")
        assert r.ok
        assert r.subject_id == "donor-42"

        assert (await ctx.authenticate("24680")).ok
        assert (await ctx.authenticate("13579")).reason == "bad_pin"

    async def test_wrong_current_pin_counts_as_failure(self, ctx):
        await setup_donor(ctx)
        r = await ctx.change("00000", "24680", "24680")
        assert (r.reason, r.attempts_remaining) == ("bad_pin", 2)
        await ctx.change("11111", "24680", "24680")
        r = await ctx.change("22222", "24680", "24680")
        assert r.reason == "now_locked"

        r = await ctx.change("13579", "24680", "24680")
        assert r.reason == "locked_out"

    @pytest.mark.parametrize(
        "new,confirm,reason",
        [
            ("12345", "12345", "invalid_pin"),
            ("13579", "13579", "same_pin"),
            ("24680", "24681", "pin_mismatch"),
        ],
    )
    async def test_new_pin_rejections(self, ctx, store, new, confirm, reason):
        await setup_donor(ctx)
        before = (await store.get()).credential_hash
        r = await ctx.change("13579", new, confirm)
        assert r.reason == reason
        assert (await store.get()).credential_hash == before


class TestReset:
    async def test_case_and_whitespace_insensitive(self, ctx, backend):
        await setup_donor(ctx)
        claim = CachedIdentity(" maria", "ROSSI ", "1990-05-01", "avis-0042")
        assert (await ctx.reset(claim)).ok
        assert backend.envelope is None

    @pytest.mark.parametrize("field", ["first_name", "last_name", "date_of_birth", "external_id"])
    async def test_any_field_mismatch_is_refused(self, ctx, identity, backend, field):
        from dataclasses import replace

        await setup_donor(ctx)
        r = await ctx.reset(replace(identity, **{field: "other"}))
        assert r.reason == "identity_mismatch"
        assert backend.envelope is not None

    async def test_without_cached_identity(self, store, identity, clock):
        ctx = PinAuthContext(store, identity_cache=MemoryIdentityCache(None), clock=clock)
        r = await ctx.reset(identity)
        assert r.reason == "identity_unavailable"
        assert not ctx.has_cached_identity()

    async def test_failed_delete_is_not_reported_as_reset(self, ctx, identity, backend):
        await setup_donor(ctx)
        for pin in ("00000", "11111", "22222"):
            await ctx.authenticate(pin)

        def refuse():
            raise OSError("read-only storage")

        backend.delete_envelope = refuse
        r = await ctx.reset(identity)
        assert (r.decision, r.reason) == ("DENY", "not_persisted")
        assert backend.envelope is not None
        assert (await ctx.status()).state == LOCKED


class TestBackingSession:
    async def test_verified_pin_without_account(self, store, identity_cache, clock):
        ctx = PinAuthContext(
            store,
            identity_cache=identity_cache,
            session=DirectorySessionAuthenticator({}),
            clock=clock,
        )
        await setup_donor(ctx)
        r = await ctx.authenticate("13579")
        assert (r.decision, r.reason) == ("DENY", "verified_no_session")
        assert not ctx.is_pin_authenticated
        # a verified PIN is still a success for the ledger
        assert (await ctx.status()).lockout.attempts_remaining == 3

    async def test_existing_session_skips_login(self, store, identity_cache, clock):
        ctx = PinAuthContext(
            store,
            identity_cache=identity_cache,
            session=DirectorySessionAuthenticator({}),
            clock=clock,
        )
        await setup_donor(ctx)
        r = await ctx.authenticate("13579", session_active=True)
        assert r.ok

    async def test_login_resolves(self, store, identity, identity_cache, clock):
        ctx = PinAuthContext(
            store,
            identity_cache=identity_cache,
            session=DirectorySessionAuthenticator({donor_hash_id(identity): "donor-42"}),
            clock=clock,
        )
        await setup_donor(ctx)
        r = await ctx.authenticate("13579")
        assert (r.reason, r.subject_id) == ("ok", "donor-42")
        assert ctx.is_pin_authenticated


class TestDemoSubject:
    async def test_off_by_default(self, store, clock):
        ctx = PinAuthContext(store, identity_cache=MemoryIdentityCache(None), clock=clock)
        assert (await ctx.setup("13579", "13579")).reason == "no_subject"

    async def test_demo_flow(self, store, clock):
        ctx = PinAuthContext(
            store,
            identity_cache=MemoryIdentityCache(None),
            session=DirectorySessionAuthenticator({}),
            auth=AuthConfig(allow_demo_subject=True),
            clock=clock,
        )
        r = await ctx.setup("13579", "13579")
        assert r.ok
        assert r.subject_id == f"demo-user-{clock()}"

        r = await ctx.authenticate("13579")
        assert (r.decision, r.reason) == ("ALLOW", "ok_demo")


class TestAudit:
    async def test_every_decision_is_audited(self, ctx, audit_lines):
        await setup_donor(ctx)
        await ctx.authenticate("00000")

        assert [(a, d) for a, d, _, _ in audit_lines] == [("setup", "ALLOW"), ("authenticate", "DENY")]
        action, decision, reason, subject = audit_lines[0]
        assert reason.startswith("ok|ctx=")
        assert subject == "donor-42"
        assert audit_lines[1][2].startswith("bad_pin|ctx=")
        assert '"attempts_remaining":2' in audit_lines[1][2]

    async def test_pins_never_reach_the_audit_trail(self, ctx, audit_lines):
        await setup_donor(ctx)
        await ctx.authenticate("24680")
        await ctx.change("13579", "86420", "86420")
        for line in audit_lines:
            for pin in ("13579", "24680", "86420"):
                assert pin not in line[2]

    async def test_unexpected_errors_become_denials(self, ctx, audit_lines, monkeypatch):
        await setup_donor(ctx)

        def broken(pin, credential_hash):
            raise RuntimeError("kdf unavailable")

        monkeypatch.setattr("donorpin.auth_flow.verify_pin", broken)
        r = await ctx.authenticate("13579")
        assert (r.decision, r.reason) == ("DENY", "internal_error")
        assert audit_lines[-1][2].startswith("internal_error")

    async def test_broken_sink_does_not_change_outcome(self, store, clock):
        def sink(*args):
            raise OSError("log disk full")

        ctx = PinAuthContext(store, audit=sink, clock=clock)
        assert (await ctx.setup("13579", "13579", subject_id="donor-42")).ok


async def test_status_and_helpers(ctx):
    s = await ctx.status()
    assert s.state == NO_CREDENTIAL
    assert not s.is_pin_setup
    assert ctx.has_cached_identity()

    await setup_donor(ctx)
    s = await ctx.status()
    assert s.is_pin_setup and s.is_pin_authenticated
    ctx.logout()
    assert not (await ctx.status()).is_pin_authenticated

    check = ctx.validate_input("12345")
    assert not check.validation.is_valid
    assert check.label == "Strong"


async def test_build_context_sqlite(clock, device, identity_cache):
    from donorpin import db

    conn = db.connect(":memory:")
    db.init_db(conn)
    cfg = AppConfig(db_path=":memory:", policy=SecurityPolicy(max_attempts=2))
    ctx = build_context(cfg, conn, device=device, identity_cache=identity_cache, clock=clock)

    assert (await ctx.setup("13579", "13579", subject_id="donor-42")).ok
    assert (await ctx.authenticate("00000")).attempts_remaining == 1
    assert db.read_envelope(conn) is not None

    events = db.recent_pin_events(conn)
    assert [e["action"] for e in events] == ["authenticate", "setup"]
    assert events[0]["decision"] == "DENY"
    assert events[0]["reason"].startswith("bad_pin")


def test_build_context_memory(device):
    cfg = AppConfig(store=StoreConfig(backend="memory"))
    ctx = build_context(cfg, device=device)
    assert ctx.audit is None
    assert ctx.policy == cfg.policy


def test_build_context_sqlite_needs_a_connection(device):
    with pytest.raises(ValueError, match="sqlite_backend_requires_connection"):
        build_context(AppConfig(), device=device)
