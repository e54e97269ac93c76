from __future__ import annotations

from typing import Any

from gatekeep.domain.models import ClaimMapping, Identity
from gatekeep.services.authz.evaluator import resolve_path


_TRUE_STRINGS = frozenset({"true", "1", "yes"})


def lookup_claim(payload: dict[str, Any], path: str) -> Any:
    # Exact keys win over dotted traversal so "profile.email" may be a literal key.
    if path in payload:
        return payload[path]
    return resolve_path(payload, path)


def _as_str(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def _as_optional_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    return bool(value)


def _as_list(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, (list, tuple, set)):
        return tuple(str(item) for item in value)
    return (str(value),)


def map_claims(payload: dict[str, Any], mapping: ClaimMapping, *, provider: str) -> Identity:
    # Pure table lookup: the same payload and mapping always yield the same identity.
    identity_id = _as_str(lookup_claim(payload, mapping.id))
    return Identity(
        id=identity_id,
        email=_as_str(lookup_claim(payload, mapping.email)),
        name=_as_str(lookup_claim(payload, mapping.name)),
        first_name=_as_str(lookup_claim(payload, mapping.first_name)),
        last_name=_as_str(lookup_claim(payload, mapping.last_name)),
        verified=_as_bool(lookup_claim(payload, mapping.verified)),
        provider=provider,
        provider_id=identity_id,
        avatar=_as_optional_str(lookup_claim(payload, mapping.avatar)),
        locale=_as_optional_str(lookup_claim(payload, mapping.locale)),
        timezone=_as_optional_str(lookup_claim(payload, mapping.timezone)),
        groups=_as_list(lookup_claim(payload, mapping.groups)),
        roles=_as_list(lookup_claim(payload, mapping.roles)),
        custom={name: lookup_claim(payload, path) for name, path in mapping.custom.items()},
    )
