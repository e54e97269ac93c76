from __future__ import annotations

import logging
import threading
from typing import Any, Protocol, runtime_checkable

import httpx

from gatekeep.core.config import get_settings
from gatekeep.domain.models import LDAPConfig, SAMLConfig, SubjectGrants


logger = logging.getLogger(__name__)


class TokenClient(Protocol):
    async def __call__(self, token_endpoint: str, form: dict[str, str]) -> dict[str, Any]: ...


class UserInfoClient(Protocol):
    async def __call__(self, user_info_endpoint: str, token: str) -> dict[str, Any]: ...


class RevokeClient(Protocol):
    async def __call__(self, revoke_endpoint: str, token: str, client_id: str) -> None: ...


class SAMLValidator(Protocol):
    # Verifies signature, audience and validity window; returns the assertion attributes.
    async def __call__(self, saml_response: str, saml_config: SAMLConfig) -> dict[str, Any]: ...


class LDAPAuthenticator(Protocol):
    # Binds as the user and returns the directory entry (including group memberships).
    async def __call__(self, ldap_config: LDAPConfig, username: str, password: str) -> dict[str, Any]: ...


class IdentityStore(Protocol):
    def get_grants(self, user_id: str) -> SubjectGrants: ...


@runtime_checkable
class GrantWriter(Protocol):
    # Stores that accept grants for newly registered local accounts.
    def set_grants(
        self,
        user_id: str,
        *,
        roles: tuple[str, ...] | list[str] = (),
        permissions: tuple[str, ...] | list[str] = (),
        attributes: dict[str, Any] | None = None,
    ) -> SubjectGrants: ...


def _timeout_seconds(timeout_ms: int | None) -> float:
    return (timeout_ms if timeout_ms is not None else get_settings().ext_call_timeout_ms) / 1000


class _HttpxClient:
    def __init__(
        self,
        *,
        timeout_ms: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._timeout = _timeout_seconds(timeout_ms)
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)


class HttpxTokenClient(_HttpxClient):
    async def __call__(self, token_endpoint: str, form: dict[str, str]) -> dict[str, Any]:
        # Some providers answer form-encoded unless JSON is requested explicitly.
        async with self._client() as client:
            response = await client.post(token_endpoint, data=form, headers={"Accept": "application/json"})
        if response.status_code >= 400:
            logger.warning("token_endpoint_error status=%s endpoint=%s", response.status_code, token_endpoint)
        response.raise_for_status()
        body = response.json()
        if not isinstance(body, dict):
            raise ValueError("Token endpoint returned a non-object body")
        return body


class HttpxUserInfoClient(_HttpxClient):
    async def __call__(self, user_info_endpoint: str, token: str) -> dict[str, Any]:
        async with self._client() as client:
            response = await client.get(
                user_info_endpoint,
                headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
            )
        if response.status_code >= 400:
            logger.warning("user_info_endpoint_error status=%s endpoint=%s", response.status_code, user_info_endpoint)
        response.raise_for_status()
        body = response.json()
        if not isinstance(body, dict):
            raise ValueError("User-info endpoint returned a non-object body")
        return body


class HttpxRevokeClient(_HttpxClient):
    async def __call__(self, revoke_endpoint: str, token: str, client_id: str) -> None:
        url = revoke_endpoint.replace("{client_id}", client_id)
        async with self._client() as client:
            response = await client.post(url, data={"token": token, "client_id": client_id})
        if response.status_code >= 400:
            logger.warning("revoke_endpoint_error status=%s endpoint=%s", response.status_code, url)
        response.raise_for_status()


class InMemoryIdentityStore:
    def __init__(self, grants: dict[str, SubjectGrants] | None = None) -> None:
        self._grants: dict[str, SubjectGrants] = dict(grants or {})
        self._lock = threading.Lock()

    def get_grants(self, user_id: str) -> SubjectGrants:
        with self._lock:
            return self._grants.get(user_id, SubjectGrants())

    def set_grants(
        self,
        user_id: str,
        *,
        roles: tuple[str, ...] | list[str] = (),
        permissions: tuple[str, ...] | list[str] = (),
        attributes: dict[str, Any] | None = None,
    ) -> SubjectGrants:
        grants = SubjectGrants(roles=tuple(roles), permissions=tuple(permissions), attributes=dict(attributes or {}))
        with self._lock:
            self._grants[user_id] = grants
        return grants

    def remove(self, user_id: str) -> bool:
        with self._lock:
            return self._grants.pop(user_id, None) is not None
