from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from gatekeep.core.errors import LocalCredentialError, LockoutError, PasswordPolicyError
from gatekeep.domain.config import LockoutConfig, PasswordConfig
from gatekeep.services.auth import local as local_module
from gatekeep.services.auth.local import (
    LocalCredentialStore,
    LockoutTracker,
    hash_password,
    password_violations,
    verify_password,
)


POLICY = PasswordConfig()


def test_hash_and_verify_password() -> None:
    hashed = hash_password("Correct-Horse-1", rounds=4)
    assert hashed.startswith("$2")
    assert verify_password("Correct-Horse-1", hashed)
    assert not verify_password("correct-horse-1", hashed)
    assert not verify_password("anything", "not-a-bcrypt-hash")


def test_long_passwords_are_not_truncated() -> None:
    base = "A1!" + "x" * 80
    hashed = hash_password(base + "a", rounds=4)
    assert not verify_password(base + "b", hashed)


def test_password_policy_violations() -> None:
    assert password_violations("Correct-Horse-1", POLICY) == []
    assert password_violations("short", POLICY) == [
        "shorter than 8 characters",
        "missing an uppercase letter",
        "missing a digit",
        "missing a symbol",
    ]
    relaxed = PasswordConfig(min_length=4, require_symbols=False, require_uppercase=False)
    assert password_violations("abc1", relaxed) == []


def test_register_and_verify_accounts() -> None:
    store = LocalCredentialStore(rounds=4)
    account = store.register("Ada@Example.com", "Correct-Horse-1", policy=POLICY, name="Ada", roles=("viewer",))
    assert account.email == "ada@example.com"
    assert account.id.startswith("local_")
    assert "Correct-Horse-1" not in repr(account)
    assert store.verify("ADA@example.com", "Correct-Horse-1") == account
    with pytest.raises(LocalCredentialError):
        store.verify("ada@example.com", "wrong")
    with pytest.raises(LocalCredentialError):
        store.verify("ghost@example.com", "Correct-Horse-1")
    with pytest.raises(LocalCredentialError):
        store.register("ada@example.com", "Correct-Horse-2", policy=POLICY)
    with pytest.raises(PasswordPolicyError) as excinfo:
        store.register("bob@example.com", "weak", policy=POLICY)
    assert excinfo.value.details["violations"]


def test_change_password_and_mfa() -> None:
    store = LocalCredentialStore(rounds=4)
    store.register("ada@example.com", "Correct-Horse-1", policy=POLICY)
    with pytest.raises(LocalCredentialError):
        store.change_password("ada@example.com", "wrong", "Battery-Staple-2", policy=POLICY)
    with pytest.raises(PasswordPolicyError):
        store.change_password("ada@example.com", "Correct-Horse-1", "weak", policy=POLICY)
    store.change_password("ada@example.com", "Correct-Horse-1", "Battery-Staple-2", policy=POLICY)
    assert store.verify("ada@example.com", "Battery-Staple-2")
    assert store.set_mfa("ada@example.com", True).mfa_enabled is True
    with pytest.raises(LocalCredentialError):
        store.set_mfa("ghost@example.com", True)


def test_lockout_after_max_attempts_and_expiry(monkeypatch) -> None:
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    monkeypatch.setattr(local_module, "_utc_now", lambda: now)
    tracker = LockoutTracker(LockoutConfig(max_attempts=3, lockout_duration_minutes=10))
    assert tracker.record_failure("local:ada") is False
    assert tracker.record_failure("local:ada") is False
    assert tracker.failures("local:ada") == 2
    assert tracker.record_failure("local:ada") is True
    assert tracker.is_locked("local:ada")
    with pytest.raises(LockoutError) as excinfo:
        tracker.check("local:ada")
    assert excinfo.value.details["reason"] == "locked"

    later = now + timedelta(minutes=11)
    monkeypatch.setattr(local_module, "_utc_now", lambda: later)
    tracker.check("local:ada")
    assert not tracker.is_locked("local:ada")


def test_failures_reset_after_quiet_period(monkeypatch) -> None:
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    monkeypatch.setattr(local_module, "_utc_now", lambda: now)
    tracker = LockoutTracker(LockoutConfig(max_attempts=3, reset_after_minutes=15))
    tracker.record_failure("p")
    tracker.record_failure("p")
    later = now + timedelta(minutes=16)
    monkeypatch.setattr(local_module, "_utc_now", lambda: later)
    assert tracker.record_failure("p") is False
    assert tracker.failures("p") == 1
    tracker.record_success("p")
    assert tracker.failures("p") == 0


def test_ip_lists() -> None:
    tracker = LockoutTracker(
        LockoutConfig(max_attempts=1, ip_whitelist=("10.0.0.1",), ip_blacklist=("203.0.113.9",))
    )
    with pytest.raises(LockoutError) as excinfo:
        tracker.check("p", "203.0.113.9")
    assert excinfo.value.details["reason"] == "ip_blacklisted"
    assert tracker.record_failure("p", "10.0.0.1") is False
    tracker.check("p", "10.0.0.1")
    assert tracker.record_failure("p", "198.51.100.2") is True
    # Whitelisted sources bypass an active lock.
    tracker.check("p", "10.0.0.1")
    with pytest.raises(LockoutError):
        tracker.check("p", "198.51.100.2")


def test_unlock_and_purge(monkeypatch) -> None:
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    monkeypatch.setattr(local_module, "_utc_now", lambda: now)
    tracker = LockoutTracker(LockoutConfig(max_attempts=1, reset_after_minutes=15, lockout_duration_minutes=5))
    tracker.record_failure("locked")
    assert tracker.unlock("locked") is True
    assert tracker.unlock("locked") is False
    tracker.check("locked")

    tracker.record_failure("stale")
    monkeypatch.setattr(local_module, "_utc_now", lambda: now + timedelta(minutes=20))
    assert tracker.purge_stale() == 1
    assert tracker.failures("stale") == 0


def test_disabled_lockout_never_locks() -> None:
    tracker = LockoutTracker(LockoutConfig(enabled=False, max_attempts=1))
    assert tracker.record_failure("p") is False
    tracker.check("p")
