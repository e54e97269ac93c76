from __future__ import annotations

from gatekeep.domain.models import ClaimMapping
from gatekeep.services.auth.claims import lookup_claim, map_claims
from gatekeep.services.auth.providers import default_providers


def test_missing_fields_fall_back_to_empty_defaults() -> None:
    identity = map_claims({"id": 7}, ClaimMapping(), provider="custom")
    assert identity.id == "7"
    assert identity.provider_id == "7"
    assert identity.email == ""
    assert identity.name == ""
    assert identity.avatar is None
    assert identity.locale is None
    assert identity.verified is False
    assert identity.groups == ()
    assert identity.roles == ()


def test_dotted_paths_and_custom_fields() -> None:
    mapping = ClaimMapping(
        id="sub",
        email="profile.email",
        groups="membership.groups",
        custom={"tenant": "org.tenant", "missing": "nope.nothing"},
    )
    payload = {
        "sub": "abc",
        "profile": {"email": "x@example.com"},
        "membership": {"groups": ["ops", "dev"]},
        "org": {"tenant": "acme"},
    }
    identity = map_claims(payload, mapping, provider="idp")
    assert identity.email == "x@example.com"
    assert identity.groups == ("ops", "dev")
    assert identity.custom == {"tenant": "acme", "missing": None}


def test_literal_dotted_key_wins_over_traversal() -> None:
    assert lookup_claim({"a.b": 1, "a": {"b": 2}}, "a.b") == 1


def test_verified_string_coercion() -> None:
    mapping = ClaimMapping()
    for raw, expected in [("true", True), ("YES", True), ("1", True), ("false", False), ("0", False), (1, True)]:
        identity = map_claims({"id": "u", "email_verified": raw}, mapping, provider="p")
        assert identity.verified is expected


def test_mapping_is_deterministic() -> None:
    payload = {"id": "u1", "email": "a@b.c", "groups": "solo"}
    first = map_claims(payload, ClaimMapping(), provider="p")
    second = map_claims(payload, ClaimMapping(), provider="p")
    assert first == second
    assert first.groups == ("solo",)


def test_microsoft_mapping_reads_graph_fields() -> None:
    microsoft = next(p for p in default_providers() if p.id == "microsoft")
    payload = {
        "id": "ms-1",
        "mail": "m@corp.example",
        "displayName": "Morgan Smith",
        "givenName": "Morgan",
        "surname": "Smith",
        "jobTitle": "Engineer",
    }
    identity = map_claims(payload, microsoft.mapping, provider="microsoft")
    assert identity.email == "m@corp.example"
    assert identity.name == "Morgan Smith"
    assert identity.last_name == "Smith"
    assert identity.custom["job_title"] == "Engineer"
    assert identity.custom["department"] is None
