from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from functools import lru_cache
import base64
import hashlib
import logging
import string
import threading
from uuid import uuid4

import bcrypt

from gatekeep.core.errors import LocalCredentialError, LockoutError, PasswordPolicyError
from gatekeep.domain.config import LockoutConfig, PasswordConfig


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _prehash(password: str) -> bytes:
    # SHA-256 first so passwords past bcrypt's 72-byte limit are not truncated.
    return base64.b64encode(hashlib.sha256(password.encode("utf-8")).digest())


def hash_password(password: str, *, rounds: int = 12) -> str:
    return bcrypt.hashpw(_prehash(password), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(_prehash(password), hashed.encode("utf-8"))
    except (ValueError, TypeError):
        return False


@lru_cache
def _dummy_hash(rounds: int) -> str:
    # Unknown accounts still pay one bcrypt check so timing does not reveal them.
    return hash_password("gatekeep-timing-dummy", rounds=rounds)


def password_violations(password: str, policy: PasswordConfig) -> list[str]:
    violations: list[str] = []
    if len(password) < policy.min_length:
        violations.append(f"shorter than {policy.min_length} characters")
    if len(password) > policy.max_length:
        violations.append(f"longer than {policy.max_length} characters")
    if policy.require_uppercase and not any(ch.isupper() for ch in password):
        violations.append("missing an uppercase letter")
    if policy.require_lowercase and not any(ch.islower() for ch in password):
        violations.append("missing a lowercase letter")
    if policy.require_numbers and not any(ch.isdigit() for ch in password):
        violations.append("missing a digit")
    if policy.require_symbols and not any(ch in string.punctuation for ch in password):
        violations.append("missing a symbol")
    return violations


def enforce_password_policy(password: str, policy: PasswordConfig) -> None:
    violations = password_violations(password, policy)
    if violations:
        raise PasswordPolicyError("Password does not meet policy: " + "; ".join(violations), violations=violations)


@dataclass(frozen=True)
class LocalAccount:
    id: str
    email: str
    password_hash: str = field(repr=False)
    name: str = ""
    verified: bool = False
    mfa_enabled: bool = False
    roles: tuple[str, ...] = ()
    groups: tuple[str, ...] = ()
    created_at: datetime = field(default_factory=_utc_now)


class LocalCredentialStore:
    # Emails are matched case-insensitively; hashes never leave this store.

    def __init__(self, *, rounds: int = 12) -> None:
        self._rounds = rounds
        self._accounts: dict[str, LocalAccount] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _key(email: str) -> str:
        return email.strip().lower()

    def register(
        self,
        email: str,
        password: str,
        *,
        policy: PasswordConfig,
        name: str = "",
        roles: tuple[str, ...] = (),
        groups: tuple[str, ...] = (),
        verified: bool = False,
    ) -> LocalAccount:
        key = self._key(email)
        if not key:
            raise LocalCredentialError("Email is required")
        enforce_password_policy(password, policy)
        account = LocalAccount(
            id=f"local_{uuid4().hex}",
            email=key,
            password_hash=hash_password(password, rounds=self._rounds),
            name=name,
            verified=verified,
            roles=tuple(roles),
            groups=tuple(groups),
        )
        with self._lock:
            if key in self._accounts:
                raise LocalCredentialError("Account already exists", email=key)
            self._accounts[key] = account
        logger.info("local_account_registered account=%s", account.id)
        return account

    def get(self, email: str) -> LocalAccount | None:
        with self._lock:
            return self._accounts.get(self._key(email))

    def verify(self, email: str, password: str) -> LocalAccount:
        account = self.get(email)
        if account is None:
            verify_password(password, _dummy_hash(self._rounds))
            raise LocalCredentialError("Invalid email or password")
        if not verify_password(password, account.password_hash):
            raise LocalCredentialError("Invalid email or password")
        return account

    def change_password(self, email: str, current: str, new: str, *, policy: PasswordConfig) -> LocalAccount:
        account = self.verify(email, current)
        enforce_password_policy(new, policy)
        updated = replace(account, password_hash=hash_password(new, rounds=self._rounds))
        with self._lock:
            self._accounts[account.email] = updated
        return updated

    def set_mfa(self, email: str, enabled: bool) -> LocalAccount:
        with self._lock:
            account = self._accounts.get(self._key(email))
            if account is None:
                raise LocalCredentialError("Unknown account")
            updated = replace(account, mfa_enabled=enabled)
            self._accounts[account.email] = updated
        return updated


@dataclass
class _AttemptState:
    failures: int = 0
    last_failure: datetime | None = None
    locked_until: datetime | None = None


class LockoutTracker:
    """Failed-attempt counters per principal plus source-address allow/deny lists.

    A principal is locked for ``lockout_duration_minutes`` once it reaches
    ``max_attempts`` failures; counters reset after ``reset_after_minutes``
    without a failure. Whitelisted addresses are never counted or locked;
    blacklisted addresses are always rejected.
    """

    def __init__(self, config: LockoutConfig) -> None:
        self._config = config
        self._attempts: dict[str, _AttemptState] = {}
        self._lock = threading.Lock()

    def configure(self, config: LockoutConfig) -> None:
        with self._lock:
            self._config = config

    def check(self, principal: str, ip_address: str = "") -> None:
        config = self._config
        if ip_address and ip_address in config.ip_blacklist:
            logger.warning("lockout_ip_blacklisted principal=%s ip=%s", principal, ip_address)
            raise LockoutError("Source address is blocked", principal=principal, reason="ip_blacklisted")
        if not config.enabled or (ip_address and ip_address in config.ip_whitelist):
            return
        now = _utc_now()
        with self._lock:
            state = self._attempts.get(principal)
            locked_until = state.locked_until if state else None
            if locked_until is not None and locked_until <= now:
                state.locked_until = None
                state.failures = 0
                locked_until = None
        if locked_until is not None:
            logger.warning("lockout_active principal=%s until=%s", principal, locked_until.isoformat())
            raise LockoutError(
                "Account is temporarily locked",
                principal=principal,
                reason="locked",
                locked_until=locked_until.isoformat(),
            )

    def record_failure(self, principal: str, ip_address: str = "") -> bool:
        # Returns True when this failure triggers a lockout.
        config = self._config
        if not config.enabled or (ip_address and ip_address in config.ip_whitelist):
            return False
        now = _utc_now()
        with self._lock:
            state = self._attempts.setdefault(principal, _AttemptState())
            if state.last_failure is not None and now - state.last_failure > timedelta(
                minutes=config.reset_after_minutes
            ):
                state.failures = 0
            state.failures += 1
            state.last_failure = now
            triggered = state.failures >= config.max_attempts
            if triggered:
                state.locked_until = now + timedelta(minutes=config.lockout_duration_minutes)
                state.failures = 0
        if triggered:
            logger.warning("lockout_triggered principal=%s attempts=%s", principal, config.max_attempts)
        return triggered

    def record_success(self, principal: str) -> None:
        with self._lock:
            self._attempts.pop(principal, None)

    def unlock(self, principal: str) -> bool:
        with self._lock:
            state = self._attempts.pop(principal, None)
        return state is not None and state.locked_until is not None

    def is_locked(self, principal: str) -> bool:
        with self._lock:
            state = self._attempts.get(principal)
            return bool(state and state.locked_until and state.locked_until > _utc_now())

    def failures(self, principal: str) -> int:
        with self._lock:
            state = self._attempts.get(principal)
            return state.failures if state else 0

    def purge_stale(self) -> int:
        # Drop counters that have reset and are not locked.
        now = _utc_now()
        reset_after = timedelta(minutes=self._config.reset_after_minutes)
        with self._lock:
            stale = [
                principal
                for principal, state in self._attempts.items()
                if (state.locked_until is None or state.locked_until <= now)
                and (state.last_failure is None or now - state.last_failure > reset_after)
            ]
            for principal in stale:
                del self._attempts[principal]
        return len(stale)
