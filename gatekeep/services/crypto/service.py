from __future__ import annotations

from collections.abc import Mapping
import logging
import threading
from typing import Any

from cryptography.exceptions import InvalidTag

from gatekeep.core.errors import DecryptionError, EncryptionError, KeyNotFoundError
from gatekeep.domain.config import EncryptionConfig
from gatekeep.domain.models import EventMetadata
from gatekeep.services.audit import AuditLog
from gatekeep.services.crypto.envelope import Envelope, open_envelope, seal
from gatekeep.services.crypto.keys import KeyRing


logger = logging.getLogger(__name__)


class EncryptionService:
    """Envelope encryption of UTF-8 strings under KeyRing keys.

    Each ``encrypt`` and ``decrypt`` call writes exactly one audit event
    (``encryption``/``decryption``), including failed calls.
    """

    def __init__(self, config: EncryptionConfig, *, keyring: KeyRing, audit_log: AuditLog) -> None:
        self._keyring = keyring
        self._audit_log = audit_log
        self._lock = threading.Lock()
        self._config = config

    def configure(self, config: EncryptionConfig) -> None:
        self._keyring.configure(
            algorithm=config.algorithm,
            rotation_enabled=config.key_rotation,
            rotation_interval_days=config.rotation_interval,
        )
        with self._lock:
            self._config = config

    @property
    def keyring(self) -> KeyRing:
        return self._keyring

    def encrypt(
        self,
        plaintext: str,
        key_id: str | None = None,
        *,
        source: str = "system",
        metadata: EventMetadata | dict[str, Any] | None = None,
    ) -> str:
        config = self._config
        if not config.enabled:
            self._record("encryption", "failure", source, key_id or "default", {"error": EncryptionError.code}, metadata)
            raise EncryptionError("Encryption is disabled")
        try:
            key = self._keyring.get(key_id) if key_id else self._keyring.default()
        except KeyNotFoundError as exc:
            self._record("encryption", "failure", source, key_id or "default", {"error": exc.code}, metadata)
            raise
        try:
            envelope = seal(
                plaintext.encode("utf-8"),
                material=key.material,
                key_id=key.id,
                algorithm=config.algorithm,
                kdf=config.key_derivation,
                salt_length=config.salt_length,
                iv_length=config.iv_length,
                iterations=config.pbkdf2_iterations,
            )
        except Exception as exc:
            logger.warning("encryption_failed key=%s algorithm=%s", key.id, config.algorithm, exc_info=True)
            self._record("encryption", "failure", source, key.id, {"error": EncryptionError.code}, metadata)
            raise EncryptionError("Encryption failed", key_id=key.id) from exc
        self._record(
            "encryption",
            "success",
            source,
            key.id,
            {"algorithm": envelope.algorithm, "kdf": envelope.kdf, "key_version": key.version},
            metadata,
        )
        return envelope.to_json()

    def decrypt(
        self,
        envelope: str | bytes | Mapping[str, Any],
        *,
        source: str = "system",
        metadata: EventMetadata | dict[str, Any] | None = None,
    ) -> str:
        try:
            parsed = Envelope.parse(envelope)
        except (ValueError, TypeError) as exc:
            logger.warning("decryption_envelope_invalid")
            self._record("decryption", "failure", source, "unknown", {"error": DecryptionError.code}, metadata)
            raise DecryptionError("Envelope could not be parsed") from exc
        try:
            key = self._keyring.get(parsed.key_id)
        except KeyNotFoundError as exc:
            self._record("decryption", "failure", source, parsed.key_id, {"error": exc.code}, metadata)
            raise
        try:
            plaintext = open_envelope(parsed, material=key.material)
            text = plaintext.decode("utf-8")
        except (InvalidTag, ValueError) as exc:
            logger.warning("decryption_failed key=%s algorithm=%s", key.id, parsed.algorithm)
            self._record("decryption", "failure", source, key.id, {"error": DecryptionError.code}, metadata)
            raise DecryptionError("Envelope could not be decrypted", key_id=key.id) from exc
        self._record(
            "decryption",
            "success",
            source,
            key.id,
            {"algorithm": parsed.algorithm, "kdf": parsed.kdf, "key_status": key.status},
            metadata,
        )
        return text

    def _record(
        self,
        type_: str,
        result: str,
        source: str,
        target: str,
        details: dict[str, Any],
        metadata: EventMetadata | dict[str, Any] | None,
    ) -> None:
        self._audit_log.log_security_event(
            type=type_,
            severity="low" if result == "success" else "high",
            source=source,
            target=target,
            action="encrypt" if type_ == "encryption" else "decrypt",
            result=result,
            details=details,
            metadata=metadata,
        )
