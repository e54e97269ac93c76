from __future__ import annotations

from dataclasses import replace
import logging
import threading
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field, RootModel

from gatekeep.core.errors import ProviderNotFoundError
from gatekeep.domain.models import ClaimMapping, OAuthConfig, Provider, ProviderEndpoints


logger = logging.getLogger(__name__)

DEFAULT_REDIRECT_URI = "http://localhost:3000/auth/callback"

ConfigT = TypeVar("ConfigT")


class ProviderCredentials(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    client_id: str = Field(alias="clientId")
    client_secret: str = Field(default="", alias="clientSecret", repr=False)
    redirect_uri: str | None = Field(default=None, alias="redirectUri")


class CredentialsDocument(RootModel[dict[str, ProviderCredentials]]):
    pass


def default_providers() -> list[Provider]:
    google = Provider(
        id="google",
        type="oauth",
        name="google",
        display_name="Google",
        config=OAuthConfig(redirect_uri=DEFAULT_REDIRECT_URI),
        scopes=("openid", "email", "profile"),
        endpoints=ProviderEndpoints(
            authorization="https://accounts.google.com/o/oauth2/v2/auth",
            token="https://oauth2.googleapis.com/token",
            user_info="https://www.googleapis.com/oauth2/v2/userinfo",
            revoke="https://oauth2.googleapis.com/revoke",
        ),
        mapping=ClaimMapping(verified="verified_email"),
    )
    github = Provider(
        id="github",
        type="oauth",
        name="github",
        display_name="GitHub",
        config=OAuthConfig(redirect_uri=DEFAULT_REDIRECT_URI),
        scopes=("user:email", "read:user"),
        endpoints=ProviderEndpoints(
            authorization="https://github.com/login/oauth/authorize",
            token="https://github.com/login/oauth/access_token",
            user_info="https://api.github.com/user",
            revoke="https://api.github.com/applications/{client_id}/token",
        ),
        mapping=ClaimMapping(
            first_name="name",
            last_name="name",
            avatar="avatar_url",
            locale="location",
            custom={
                "login": "login",
                "bio": "bio",
                "company": "company",
                "blog": "blog",
                "public_repos": "public_repos",
                "followers": "followers",
            },
        ),
    )
    microsoft = Provider(
        id="microsoft",
        type="oauth",
        name="microsoft",
        display_name="Microsoft",
        config=OAuthConfig(redirect_uri=DEFAULT_REDIRECT_URI),
        scopes=("openid", "email", "profile"),
        endpoints=ProviderEndpoints(
            authorization="https://login.microsoftonline.com/common/oauth2/v2.0/authorize",
            token="https://login.microsoftonline.com/common/oauth2/v2.0/token",
            user_info="https://graph.microsoft.com/v1.0/me",
        ),
        mapping=ClaimMapping(
            email="mail",
            name="displayName",
            first_name="givenName",
            last_name="surname",
            avatar="photo",
            locale="preferredLanguage",
            verified="verified",
            custom={
                "job_title": "jobTitle",
                "department": "department",
                "office_location": "officeLocation",
                "user_principal_name": "userPrincipalName",
            },
        ),
    )
    return [google, github, microsoft]


class ProviderRegistry:
    # Providers are immutable values; changes replace the stored entry wholesale.

    def __init__(self, providers: list[Provider] | None = None) -> None:
        self._providers: dict[str, Provider] = {}
        self._lock = threading.Lock()
        for provider in providers or []:
            self.add_provider(provider)

    def add_provider(self, provider: Provider) -> None:
        with self._lock:
            replaced = provider.id in self._providers
            self._providers[provider.id] = provider
        logger.info("provider_registered provider=%s type=%s replaced=%s", provider.id, provider.type, replaced)

    def remove_provider(self, provider_id: str) -> bool:
        with self._lock:
            removed = self._providers.pop(provider_id, None) is not None
        if removed:
            logger.info("provider_removed provider=%s", provider_id)
        return removed

    def get_provider(self, provider_id: str) -> Provider | None:
        with self._lock:
            return self._providers.get(provider_id)

    def require_provider(self, provider_id: str, *, type: str | None = None) -> Provider:
        provider = self.get_provider(provider_id)
        if provider is None or not provider.enabled:
            raise ProviderNotFoundError(f"Provider {provider_id} not found", provider=provider_id)
        if type is not None and provider.type != type:
            raise ProviderNotFoundError(
                f"Provider {provider_id} is not a {type} provider",
                provider=provider_id,
                type=provider.type,
            )
        return provider

    def require_config(self, provider_id: str, config_type: type[ConfigT], *, kind: str) -> tuple[Provider, ConfigT]:
        provider = self.require_provider(provider_id, type=kind)
        if not isinstance(provider.config, config_type):
            raise ProviderNotFoundError(
                f"Provider {provider_id} has no {kind} configuration",
                provider=provider_id,
                config=provider.config.__class__.__name__,
            )
        return provider, provider.config

    def get_providers(self) -> list[Provider]:
        with self._lock:
            return list(self._providers.values())

    def reconfigure(self, provider_id: str, **changes: Any) -> Provider:
        # Top-level Provider fields only; config changes pass a whole new config value.
        with self._lock:
            current = self._providers.get(provider_id)
            if current is None:
                raise ProviderNotFoundError(f"Provider {provider_id} not found", provider=provider_id)
            updated = replace(current, **changes)
            self._providers[provider_id] = updated
        logger.info("provider_reconfigured provider=%s fields=%s", provider_id, ",".join(sorted(changes)))
        return updated

    def load_credentials(self, document: dict[str, Any]) -> list[str]:
        # Apply {providerId: {clientId, clientSecret, redirectUri}}; unknown ids are skipped.
        parsed = CredentialsDocument.model_validate(document).root
        applied: list[str] = []
        for provider_id, credentials in parsed.items():
            provider = self.get_provider(provider_id)
            if provider is None or not isinstance(provider.config, OAuthConfig):
                logger.warning("provider_credentials_skipped provider=%s", provider_id)
                continue
            config = replace(
                provider.config,
                client_id=credentials.client_id,
                client_secret=credentials.client_secret,
                redirect_uri=credentials.redirect_uri or provider.config.redirect_uri,
            )
            self.reconfigure(provider_id, config=config)
            applied.append(provider_id)
        return applied
