from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
import os
import threading
from uuid import uuid4

from gatekeep.core.errors import ConfigurationError, KeyInUseError, KeyNotFoundError
from gatekeep.domain.models import EncryptionKey
from gatekeep.services.audit import AuditLog
from gatekeep.services.crypto.envelope import ALGORITHMS
from gatekeep.services.crypto.utils import decode_key_material


logger = logging.getLogger(__name__)

KEY_ID_PREFIX = "enc"
KEY_MATERIAL_BYTES = 32
MIN_IMPORTED_MATERIAL_BYTES = 16


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_key_id() -> str:
    return f"{KEY_ID_PREFIX}_{uuid4().hex}"


class KeyRing:
    """Versioned symmetric keys with exactly one default.

    Rotation creates the next version, makes it the default and retires the
    previous default. Retired keys stay available for decryption until they
    are deleted explicitly; the default key can never be deleted.
    """

    def __init__(
        self,
        *,
        audit_log: AuditLog,
        algorithm: str = "aes-256-gcm",
        rotation_enabled: bool = True,
        rotation_interval_days: int = 90,
    ) -> None:
        self._audit_log = audit_log
        self._keys: dict[str, EncryptionKey] = {}
        self._default_id: str | None = None
        self._version = 0
        self._lock = threading.Lock()
        self.configure(
            algorithm=algorithm,
            rotation_enabled=rotation_enabled,
            rotation_interval_days=rotation_interval_days,
        )

    def configure(self, *, algorithm: str, rotation_enabled: bool, rotation_interval_days: int) -> None:
        if algorithm not in ALGORITHMS:
            raise ConfigurationError(f"Unsupported encryption algorithm: {algorithm}", algorithm=algorithm)
        with self._lock:
            self._algorithm = algorithm
            self._rotation_enabled = rotation_enabled
            self._rotation_interval = timedelta(days=rotation_interval_days)

    def _install(self, material: bytes) -> tuple[EncryptionKey, EncryptionKey | None]:
        # Caller holds the lock.
        now = _utc_now()
        self._version += 1
        key = EncryptionKey(
            id=_new_key_id(),
            version=self._version,
            algorithm=self._algorithm,
            material=material,
            created_at=now,
        )
        previous = self._keys.get(self._default_id) if self._default_id else None
        if previous is not None:
            previous.status = "retired"
            previous.retired_at = now
        self._keys[key.id] = key
        self._default_id = key.id
        return key, previous

    def ensure_default(self) -> EncryptionKey:
        with self._lock:
            if self._default_id is not None:
                return self._keys[self._default_id]
            key, _ = self._install(os.urandom(KEY_MATERIAL_BYTES))
        logger.info("keyring_bootstrapped key=%s version=%s", key.id, key.version)
        return key

    def import_key(self, material: str | bytes) -> EncryptionKey:
        raw = decode_key_material(material) if isinstance(material, str) else bytes(material)
        if len(raw) < MIN_IMPORTED_MATERIAL_BYTES:
            raise ConfigurationError(
                f"Imported key material must be at least {MIN_IMPORTED_MATERIAL_BYTES} bytes",
                length=len(raw),
            )
        with self._lock:
            key, previous = self._install(raw)
        logger.info(
            "keyring_key_imported key=%s version=%s retired=%s",
            key.id,
            key.version,
            previous.id if previous else None,
        )
        return key

    def get(self, key_id: str) -> EncryptionKey:
        with self._lock:
            key = self._keys.get(key_id)
        if key is None:
            raise KeyNotFoundError(f"Encryption key {key_id} not found", key_id=key_id)
        return key

    def default(self) -> EncryptionKey:
        with self._lock:
            key = self._keys.get(self._default_id) if self._default_id else None
        if key is None:
            raise KeyNotFoundError("No default encryption key")
        return key

    @property
    def default_id(self) -> str | None:
        with self._lock:
            return self._default_id

    def list_keys(self) -> list[EncryptionKey]:
        with self._lock:
            return sorted(self._keys.values(), key=lambda key: key.version)

    def rotate(self, reason: str = "manual", *, source: str = "system") -> EncryptionKey:
        with self._lock:
            key, previous = self._install(os.urandom(KEY_MATERIAL_BYTES))
        logger.info(
            "keyring_rotated key=%s version=%s retired=%s reason=%s",
            key.id,
            key.version,
            previous.id if previous else None,
            reason,
        )
        self._audit_log.log_security_event(
            type="key-rotation",
            severity="medium",
            source=source,
            target=key.id,
            action="rotate",
            result="success",
            details={
                "version": key.version,
                "algorithm": key.algorithm,
                "retired_key_id": previous.id if previous else None,
                "reason": reason,
            },
        )
        return key

    def rotate_if_due(self, *, now: datetime | None = None) -> EncryptionKey | None:
        if not self._rotation_enabled:
            return None
        current = now or _utc_now()
        with self._lock:
            key = self._keys.get(self._default_id) if self._default_id else None
            due = key is None or current - key.created_at >= self._rotation_interval
        if not due:
            return None
        return self.rotate("scheduled")

    def delete(self, key_id: str) -> None:
        with self._lock:
            if key_id == self._default_id:
                raise KeyInUseError(f"Encryption key {key_id} is the default key", key_id=key_id)
            if self._keys.pop(key_id, None) is None:
                raise KeyNotFoundError(f"Encryption key {key_id} not found", key_id=key_id)
        logger.info("keyring_key_deleted key=%s", key_id)
