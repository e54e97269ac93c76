from __future__ import annotations

from collections.abc import Callable, Mapping
from datetime import datetime, timezone
import logging
import threading
from types import MappingProxyType
from typing import Any
from uuid import uuid4

from gatekeep.domain.models import EVENT_RESULTS, EVENT_TYPES, SEVERITIES, EventMetadata, SecurityEvent


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["authorization", "token", "secret", "password", "verifier", "private_key", "material"]
_REDACTED_VALUE = "[REDACTED]"

EventListener = Callable[[SecurityEvent], None]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(item) for item in value]
    return value


def freeze_details(value: Any) -> Any:
    # Read-only view for stored events: mappings become proxies, sequences become tuples.
    if isinstance(value, Mapping):
        return MappingProxyType({key: freeze_details(item) for key, item in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze_details(item) for item in value)
    return value


class AuditLog:
    """Append-only security event store partitioned by UTC day.

    There is no update or delete API; retention purging belongs to external
    housekeeping. Listeners registered with ``subscribe`` run synchronously
    after each append and must not raise.
    """

    def __init__(self, *, enabled: bool = True, version: str = "") -> None:
        self.enabled = enabled
        self._version = version
        self._partitions: dict[str, list[SecurityEvent]] = {}
        self._listeners: list[EventListener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def log_security_event(
        self,
        *,
        type: str,
        severity: str,
        source: str,
        target: str,
        action: str,
        result: str,
        details: dict[str, Any] | None = None,
        metadata: EventMetadata | dict[str, Any] | None = None,
        timestamp: datetime | None = None,
    ) -> SecurityEvent | None:
        if not self.enabled:
            return None
        if type not in EVENT_TYPES:
            raise ValueError(f"Unsupported security event type: {type}")
        if severity not in SEVERITIES:
            raise ValueError(f"Unsupported severity: {severity}")
        if result not in EVENT_RESULTS:
            raise ValueError(f"Unsupported event result: {result}")
        event = SecurityEvent(
            id=uuid4().hex,
            timestamp=(timestamp or _utc_now()).astimezone(timezone.utc),
            type=type,
            severity=severity,  # type: ignore[arg-type]
            source=source,
            target=target,
            action=action,
            result=result,  # type: ignore[arg-type]
            details=freeze_details(sanitize_metadata(details or {})),
            metadata=self._fill_metadata(metadata),
        )
        with self._lock:
            self._partitions.setdefault(event.partition, []).append(event)
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:  # noqa: BLE001
                logger.warning("audit_listener_failed event_id=%s type=%s", event.id, event.type, exc_info=True)
        return event

    def get_events(self, date: str | None = None) -> list[SecurityEvent]:
        with self._lock:
            if date is not None:
                return list(self._partitions.get(date, []))
            return [event for key in sorted(self._partitions) for event in self._partitions[key]]

    def partitions(self) -> list[str]:
        with self._lock:
            return sorted(self._partitions)

    def __len__(self) -> int:
        with self._lock:
            return sum(len(events) for events in self._partitions.values())

    def _fill_metadata(self, metadata: EventMetadata | dict[str, Any] | None) -> EventMetadata:
        if isinstance(metadata, EventMetadata):
            raw: dict[str, Any] = {
                "ip_address": metadata.ip_address,
                "user_agent": metadata.user_agent,
                "session_id": metadata.session_id,
                "request_id": metadata.request_id,
                "correlation_id": metadata.correlation_id,
                "version": metadata.version,
            }
        else:
            raw = dict(metadata or {})
        return EventMetadata(
            ip_address=str(raw.get("ip_address") or ""),
            user_agent=str(raw.get("user_agent") or ""),
            session_id=str(raw.get("session_id") or ""),
            request_id=str(raw.get("request_id") or uuid4().hex),
            correlation_id=str(raw.get("correlation_id") or uuid4().hex),
            version=str(raw.get("version") or self._version),
        )
