from __future__ import annotations

import pytest

from gatekeep.core.config import Settings, get_settings
from gatekeep.domain.config import SecurityConfig
from gatekeep.services.security import SecurityService
from gatekeep.tests.utils.fakes import (
    FakeLDAPAuthenticator,
    FakeRevokeClient,
    FakeSAMLValidator,
    FakeTokenClient,
    FakeUserInfoClient,
)


@pytest.fixture(autouse=True)
def reset_settings_cache() -> None:
    # Keep environment-driven settings from leaking between tests.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        password_bcrypt_rounds=4,
        crypto_pbkdf2_iterations=1_000,
        lockout_max_attempts=3,
    )


@pytest.fixture
def token_client() -> FakeTokenClient:
    return FakeTokenClient()


@pytest.fixture
def user_info_client() -> FakeUserInfoClient:
    return FakeUserInfoClient()


@pytest.fixture
def revoke_client() -> FakeRevokeClient:
    return FakeRevokeClient()


@pytest.fixture
def service(settings, token_client, user_info_client, revoke_client) -> SecurityService:
    return SecurityService(
        SecurityConfig.from_settings(settings),
        settings=settings,
        token_client=token_client,
        user_info_client=user_info_client,
        revoke_client=revoke_client,
        saml_validator=FakeSAMLValidator(),
        ldap_authenticator=FakeLDAPAuthenticator(),
    )
