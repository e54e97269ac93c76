from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timedelta, timezone
import calendar
import threading
from typing import Any

from gatekeep.domain.models import (
    AuthenticationMetrics,
    AuthorizationMetrics,
    ComplianceMetrics,
    EncryptionMetrics,
    SecurityAnalyticsSnapshot,
    SecurityEvent,
    SecurityMetrics,
    ThreatMetrics,
)
from gatekeep.services.audit import AuditLog


PERIODS = ("hour", "day", "week", "month", "quarter", "year")
_PERIOD_MONTHS = {"month": 1, "quarter": 3, "year": 12}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _shift_months(value: datetime, months: int) -> datetime:
    # Calendar-month arithmetic; clamps the day to the target month length.
    month_index = value.month - 1 - months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def period_cutoff(period: str, now: datetime) -> datetime:
    if period == "hour":
        return now - timedelta(hours=1)
    if period == "day":
        return now - timedelta(days=1)
    if period == "week":
        return now - timedelta(days=7)
    if period in _PERIOD_MONTHS:
        return _shift_months(now, _PERIOD_MONTHS[period])
    raise ValueError(f"Unsupported analytics period: {period}")


def _count(events: Iterable[SecurityEvent], type_: str | tuple[str, ...], **predicates: Any) -> int:
    types = (type_,) if isinstance(type_, str) else type_
    total = 0
    for event in events:
        if event.type not in types:
            continue
        if "result" in predicates and event.result not in predicates["result"]:
            continue
        if "severity" in predicates and event.severity != predicates["severity"]:
            continue
        if "detail" in predicates:
            key, expected = predicates["detail"]
            if event.details.get(key) != expected:
                continue
        total += 1
    return total


def compute_metrics(events: list[SecurityEvent]) -> SecurityMetrics:
    threats_total = _count(events, "threat-detected")
    violations_total = _count(events, "compliance-violation")
    resolved = _count(events, "compliance-violation", detail=("status", "resolved"))
    return SecurityMetrics(
        authentication=AuthenticationMetrics(
            total_logins=_count(events, "authentication"),
            successful_logins=_count(events, "authentication", result=("success",)),
            failed_logins=_count(events, "authentication", result=("failure",)),
            mfa_enabled=_count(events, "mfa-enabled"),
            lockouts=_count(events, "lockout"),
        ),
        authorization=AuthorizationMetrics(
            total_requests=_count(events, "authorization"),
            allowed_requests=_count(events, "authorization", result=("success",)),
            denied_requests=_count(events, "authorization", result=("failure", "blocked")),
            policy_violations=_count(events, "authorization", result=("blocked",)),
        ),
        threats=ThreatMetrics(
            total_threats=threats_total,
            blocked_threats=_count(events, "threat-detected", result=("blocked",)),
            investigated_threats=_count(events, "threat-detected", detail=("action", "investigate")),
            false_positives=_count(events, "threat-detected", detail=("false_positive", True)),
        ),
        compliance=ComplianceMetrics(
            total_violations=violations_total,
            critical_violations=_count(events, "compliance-violation", severity="critical"),
            resolved_violations=resolved,
            pending_violations=violations_total - resolved,
        ),
        encryption=EncryptionMetrics(
            encrypted_data=_count(events, "encryption"),
            decrypted_data=_count(events, "decryption"),
            key_rotations=_count(events, "key-rotation"),
            encryption_errors=_count(events, ("encryption", "decryption"), result=("failure",)),
        ),
    )


class SecurityAnalytics:
    # Read-only view over an AuditLog; keeps the latest snapshot per period.

    def __init__(self, audit_log: AuditLog) -> None:
        self._audit_log = audit_log
        self._latest: dict[str, SecurityAnalyticsSnapshot] = {}
        self._lock = threading.Lock()

    def generate_security_analytics(self, period: str = "day", *, now: datetime | None = None) -> SecurityAnalyticsSnapshot:
        if period not in PERIODS:
            raise ValueError(f"Unsupported analytics period: {period}")
        # Naive datetimes are read as local time, the same way the audit log stores them.
        generated_at = (now or _utc_now()).astimezone(timezone.utc)
        cutoff = period_cutoff(period, generated_at)
        events = [event for event in self._audit_log.get_events() if event.timestamp >= cutoff]
        snapshot = SecurityAnalyticsSnapshot(
            period=period,
            metrics=compute_metrics(events),
            cutoff=cutoff,
            event_count=len(events),
            generated_at=generated_at,
        )
        with self._lock:
            self._latest[period] = snapshot
        return snapshot

    def get_analytics(self, period: str) -> SecurityAnalyticsSnapshot | None:
        with self._lock:
            return self._latest.get(period)
