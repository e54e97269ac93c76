from __future__ import annotations

import base64
import binascii
import json
from typing import Any

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt


DERIVED_KEY_LENGTH = 32
_HKDF_INFO = b"gatekeep-envelope-v1"
_MIN_ITERATIONS = 1_000
_MAX_ITERATIONS = 10_000_000


def decode_key_material(value: str) -> bytes:
    """Decode base64 or hex key material into raw bytes."""
    stripped = value.strip()
    if not stripped:
        raise ValueError("key material is empty")
    try:
        return bytes.fromhex(stripped)
    except ValueError:
        try:
            return base64.b64decode(stripped, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("key material must be base64 or hex") from exc


def stable_json(value: dict[str, Any]) -> bytes:
    return json.dumps(value, separators=(",", ":"), sort_keys=True).encode("utf-8")


def kdf_label(kdf: str, *, iterations: int) -> str:
    # The PBKDF2 work factor travels with the envelope, e.g. "pbkdf2:210000".
    return f"{kdf}:{iterations}" if kdf == "pbkdf2" else kdf


def parse_kdf_label(label: str) -> tuple[str, int | None]:
    name, _, params = label.partition(":")
    if name != "pbkdf2":
        if params:
            raise ValueError(f"Unexpected parameters for {name}")
        return name, None
    if not params.isdigit() or not _MIN_ITERATIONS <= int(params) <= _MAX_ITERATIONS:
        raise ValueError(f"Invalid pbkdf2 iteration count: {params or 'missing'}")
    return name, int(params)


def derive_key(material: bytes, salt: bytes, *, kdf: str) -> bytes:
    # One 256-bit key per (material, salt); the salt is never reused across messages.
    name, iterations = parse_kdf_label(kdf)
    if name == "hkdf":
        return HKDF(algorithm=hashes.SHA256(), length=DERIVED_KEY_LENGTH, salt=salt, info=_HKDF_INFO).derive(material)
    if name == "pbkdf2":
        return PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=DERIVED_KEY_LENGTH,
            salt=salt,
            iterations=iterations,
        ).derive(material)
    if name == "scrypt":
        return Scrypt(salt=salt, length=DERIVED_KEY_LENGTH, n=2**14, r=8, p=1).derive(material)
    raise ValueError(f"Unsupported key derivation: {name}")
