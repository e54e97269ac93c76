from __future__ import annotations

from typing import Any

from gatekeep.domain.models import LDAPConfig, SAMLConfig


class FakeTokenClient:
    def __init__(self, payload: dict[str, Any] | None = None, error: Exception | None = None) -> None:
        self.payload = payload or {
            "access_token": "access-1",
            "refresh_token": "refresh-1",
            "token_type": "Bearer",
            "expires_in": 3600,
            "scope": "openid email profile",
        }
        self.error = error
        self.calls: list[tuple[str, dict[str, str]]] = []

    async def __call__(self, token_endpoint: str, form: dict[str, str]) -> dict[str, Any]:
        self.calls.append((token_endpoint, dict(form)))
        if self.error is not None:
            raise self.error
        return dict(self.payload)


class FakeUserInfoClient:
    def __init__(self, payload: dict[str, Any] | None = None, error: Exception | None = None) -> None:
        self.payload = payload or {
            "id": 1234,
            "email": "ada@example.com",
            "name": "Ada Lovelace",
            "given_name": "Ada",
            "family_name": "Lovelace",
            "picture": "https://example.com/ada.png",
            "verified_email": True,
        }
        self.error = error
        self.calls: list[tuple[str, str]] = []

    async def __call__(self, user_info_endpoint: str, token: str) -> dict[str, Any]:
        self.calls.append((user_info_endpoint, token))
        if self.error is not None:
            raise self.error
        return dict(self.payload)


class FakeRevokeClient:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str, str]] = []

    async def __call__(self, revoke_endpoint: str, token: str, client_id: str) -> None:
        self.calls.append((revoke_endpoint, token, client_id))


class FakeSAMLValidator:
    def __init__(self, attributes: dict[str, Any] | None = None, error: Exception | None = None) -> None:
        self.attributes = attributes or {"id": "saml-user", "email": "saml@example.com", "name": "Sam L"}
        self.error = error

    async def __call__(self, saml_response: str, saml_config: SAMLConfig) -> dict[str, Any]:
        if self.error is not None:
            raise self.error
        return dict(self.attributes)


class FakeLDAPAuthenticator:
    def __init__(self, users: dict[str, str] | None = None) -> None:
        self.users = users or {"grace": "Correct-Horse-1"}

    async def __call__(self, ldap_config: LDAPConfig, username: str, password: str) -> dict[str, Any]:
        if self.users.get(username) != password:
            raise RuntimeError("invalid credentials")
        return {"id": f"uid={username}", "email": f"{username}@example.com", "groups": ["engineering"]}
