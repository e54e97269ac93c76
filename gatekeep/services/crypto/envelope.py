from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
import json
import os
from typing import Any

from cryptography.hazmat.primitives.ciphers.aead import AESGCM, ChaCha20Poly1305

from gatekeep.services.crypto.utils import derive_key, kdf_label, stable_json


ALGORITHMS = frozenset({"aes-256-gcm", "chacha20-poly1305"})
ENVELOPE_FIELDS = ("encrypted", "salt", "iv", "algorithm", "keyId", "kdf")


@dataclass(frozen=True)
class Envelope:
    # Hex-encoded; "encrypted" is ciphertext followed by the 16-byte AEAD tag.
    # "kdf" names the derivation and its parameters, e.g. "hkdf" or "pbkdf2:210000".
    encrypted: str
    salt: str
    iv: str
    algorithm: str
    key_id: str
    kdf: str

    def to_dict(self) -> dict[str, str]:
        return {
            "encrypted": self.encrypted,
            "salt": self.salt,
            "iv": self.iv,
            "algorithm": self.algorithm,
            "keyId": self.key_id,
            "kdf": self.kdf,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def parse(cls, raw: str | bytes | Mapping[str, Any]) -> Envelope:
        payload = json.loads(raw) if isinstance(raw, (str, bytes)) else dict(raw)
        if not isinstance(payload, dict):
            raise ValueError("Envelope must be a JSON object")
        missing = [name for name in ENVELOPE_FIELDS if not isinstance(payload.get(name), str)]
        if missing:
            raise ValueError(f"Envelope missing fields: {', '.join(missing)}")
        if payload["algorithm"] not in ALGORITHMS:
            raise ValueError(f"Unsupported algorithm: {payload['algorithm']}")
        return cls(
            encrypted=payload["encrypted"],
            salt=payload["salt"],
            iv=payload["iv"],
            algorithm=payload["algorithm"],
            key_id=payload["keyId"],
            kdf=payload["kdf"],
        )


def _cipher(algorithm: str, key: bytes) -> AESGCM | ChaCha20Poly1305:
    if algorithm == "aes-256-gcm":
        return AESGCM(key)
    if algorithm == "chacha20-poly1305":
        return ChaCha20Poly1305(key)
    raise ValueError(f"Unsupported algorithm: {algorithm}")


def _associated_data(*, key_id: str, algorithm: str, kdf: str) -> bytes:
    return stable_json({"algorithm": algorithm, "keyId": key_id, "kdf": kdf})


def seal(
    plaintext: bytes,
    *,
    material: bytes,
    key_id: str,
    algorithm: str,
    kdf: str,
    salt_length: int,
    iv_length: int,
    iterations: int,
) -> Envelope:
    # Fresh salt and IV per call; the IV written to the envelope is the one used.
    salt = os.urandom(salt_length)
    iv = os.urandom(iv_length)
    label = kdf_label(kdf, iterations=iterations)
    key = derive_key(material, salt, kdf=label)
    sealed = _cipher(algorithm, key).encrypt(
        iv,
        plaintext,
        _associated_data(key_id=key_id, algorithm=algorithm, kdf=label),
    )
    return Envelope(
        encrypted=sealed.hex(),
        salt=salt.hex(),
        iv=iv.hex(),
        algorithm=algorithm,
        key_id=key_id,
        kdf=label,
    )


def open_envelope(envelope: Envelope, *, material: bytes) -> bytes:
    # Everything but the key material comes from the envelope itself.
    # Raises InvalidTag when data, key or binding is wrong, ValueError on a bad kdf label.
    key = derive_key(material, bytes.fromhex(envelope.salt), kdf=envelope.kdf)
    return _cipher(envelope.algorithm, key).decrypt(
        bytes.fromhex(envelope.iv),
        bytes.fromhex(envelope.encrypted),
        _associated_data(key_id=envelope.key_id, algorithm=envelope.algorithm, kdf=envelope.kdf),
    )
