import json

import pytest

from donorpin.models import AttemptEntry, AuthResult, PinCredentialRecord, validate_record


def make(**kw):
    base = dict(credential_hash="abc", created_at=100, last_used_at=100, subject_id="donor-42")
    base.update(kw)
    return PinCredentialRecord(**base)


def test_json_round_trip_keeps_attempt_order():
    rec = make(attempts=(AttemptEntry(101, False, "authenticate"), AttemptEntry(102, True)))
    assert PinCredentialRecord.from_json(rec.to_json()) == rec


def test_with_attempt_caps_history():
    rec = make()
    for i in range(12):
        rec = rec.with_attempt(AttemptEntry(200 + i, False))
    assert len(rec.attempts) == 10
    assert rec.attempts[0].timestamp == 202
    assert rec.last_used_at == 211


def test_with_attempt_never_moves_last_used_backwards():
    rec = make(last_used_at=500).with_attempt(AttemptEntry(300, True))
    assert rec.last_used_at == 500


@pytest.mark.parametrize(
    "changes,problem",
    [
        ({"credential_hash": ""}, "credential_hash_required"),
        ({"subject_id": ""}, "subject_id_required"),
        ({"created_at": 0, "last_used_at": 0}, "invalid_created_at"),
        ({"last_used_at": 99}, "last_used_before_created"),
        ({"attempts": tuple(AttemptEntry(100, True) for _ in range(11))}, "too_many_attempts"),
    ],
)
def test_validate_record(changes, problem):
    assert problem in validate_record(make(**changes))


def test_valid_record_has_no_problems():
    assert validate_record(make()) == []


@pytest.mark.parametrize(
    "raw",
    [
        b"[]",
        b"not json",
        json.dumps({"credential_hash": "a", "created_at": 1, "last_used_at": 1,
                    "subject_id": "s", "is_active": "yes"}).encode(),
        json.dumps({"credential_hash": "a", "created_at": 1, "last_used_at": 1,
                    "subject_id": "s", "is_active": True, "attempts": {}}).encode(),
        json.dumps({"created_at": 1}).encode(),
    ],
)
def test_from_json_rejects_bad_structure(raw):
    with pytest.raises((ValueError, KeyError, TypeError)):
        PinCredentialRecord.from_json(raw)


def test_auth_result_ok():
    assert AuthResult("ALLOW", "ok").ok
    assert not AuthResult("DENY", "bad_pin").ok
