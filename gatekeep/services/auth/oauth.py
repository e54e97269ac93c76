from __future__ import annotations

from datetime import datetime, timedelta, timezone
import base64
import hashlib
import logging
import secrets
import threading
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from gatekeep.core.config import get_settings
from gatekeep.core.errors import (
    PKCEVerificationError,
    TokenExchangeError,
    UnsupportedOperationError,
    UserInfoFetchError,
)
from gatekeep.domain.models import Identity, OAuthConfig, Provider, Token
from gatekeep.domain.state import LoginFlow
from gatekeep.services.auth.claims import map_claims
from gatekeep.services.auth.clients import (
    HttpxRevokeClient,
    HttpxTokenClient,
    HttpxUserInfoClient,
    RevokeClient,
    TokenClient,
    UserInfoClient,
)
from gatekeep.services.auth.providers import ProviderRegistry


logger = logging.getLogger(__name__)

# Owned by the flow itself; custom authorization params never replace these.
RESERVED_AUTHORIZATION_PARAMS = frozenset(
    {"client_id", "redirect_uri", "response_type", "state", "nonce", "code_challenge", "code_challenge_method"}
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _base64url_encode(raw: bytes) -> str:
    # base64url without padding, as PKCE requires.
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("utf-8")


def generate_state() -> str:
    return _base64url_encode(secrets.token_bytes(32))


def generate_nonce() -> str:
    return _base64url_encode(secrets.token_bytes(32))


def generate_pkce_verifier() -> str:
    return _base64url_encode(secrets.token_bytes(32))


def build_code_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("utf-8")).digest()
    return _base64url_encode(digest)


def append_query_params(url: str, params: dict[str, str]) -> str:
    # Preserve query parameters already present on the endpoint.
    parsed = urlparse(url)
    query = dict(parse_qsl(parsed.query))
    query.update(params)
    return urlunparse(parsed._replace(query=urlencode(query)))


class OAuthFlowEngine:
    """Authorization-code flow with PKCE against registered OAuth providers.

    Verifiers are kept per ``state`` for ``oauth_state_ttl_seconds`` and are
    removed from the store before the token endpoint is awaited, so a state can
    be exchanged at most once even when callbacks race. This engine never
    writes audit events; callers record the outcome.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        *,
        token_client: TokenClient | None = None,
        user_info_client: UserInfoClient | None = None,
        revoke_client: RevokeClient | None = None,
        state_ttl_seconds: int | None = None,
    ) -> None:
        settings = get_settings()
        self._registry = registry
        self._token_client = token_client or HttpxTokenClient()
        self._user_info_client = user_info_client or HttpxUserInfoClient()
        self._revoke_client = revoke_client or HttpxRevokeClient()
        self._state_ttl = timedelta(seconds=state_ttl_seconds or settings.oauth_state_ttl_seconds)
        self._default_token_type = settings.oauth_default_token_type
        self._default_expires_in = settings.oauth_default_expires_in
        self._challenges: dict[str, tuple[str, datetime]] = {}
        self._flows: dict[str, tuple[LoginFlow, datetime]] = {}
        self._tokens: dict[str, Token] = {}
        self._challenge_lock = threading.Lock()
        self._token_lock = threading.Lock()

    def _oauth_provider(self, provider_id: str) -> tuple[Provider, OAuthConfig]:
        return self._registry.require_config(provider_id, OAuthConfig, kind="oauth")

    def generate_authorization_url(
        self,
        provider_id: str,
        *,
        state: str | None = None,
        nonce: str | None = None,
        scopes: list[str] | tuple[str, ...] | None = None,
        custom_params: dict[str, str] | None = None,
    ) -> str:
        provider, config = self._oauth_provider(provider_id)
        state = state or generate_state()
        nonce = nonce or generate_nonce()
        params = {
            "client_id": config.client_id,
            "redirect_uri": config.redirect_uri,
            "response_type": config.response_type,
            "scope": " ".join(scopes if scopes is not None else provider.scopes),
            "state": state,
            "nonce": nonce,
        }
        extra = custom_params or {}
        ignored = sorted(RESERVED_AUTHORIZATION_PARAMS.intersection(extra))
        if ignored:
            logger.warning("oauth_custom_params_ignored provider=%s params=%s", provider_id, ",".join(ignored))
        params.update({key: value for key, value in extra.items() if key not in RESERVED_AUTHORIZATION_PARAMS})
        expires_at = _utc_now() + self._state_ttl
        if config.pkce:
            verifier = generate_pkce_verifier()
            params["code_challenge"] = build_code_challenge(verifier)
            params["code_challenge_method"] = "S256"
        flow = LoginFlow(provider_id=provider_id, state_token=state)
        flow.advance("url_issued")
        with self._challenge_lock:
            if config.pkce:
                self._challenges[state] = (verifier, expires_at)
            self._flows[state] = (flow, expires_at)
        logger.info("oauth_authorization_url_issued provider=%s pkce=%s", provider_id, config.pkce)
        return append_query_params(provider.endpoints.authorization, params)

    def take_flow(self, provider_id: str, state: str) -> LoginFlow:
        # Callbacks for URLs issued elsewhere start a fresh flow.
        with self._challenge_lock:
            entry = self._flows.pop(state, None)
        if entry is not None and entry[0].provider_id == provider_id:
            return entry[0]
        return LoginFlow(provider_id=provider_id, state_token=state)

    def _pop_verifier(self, state: str) -> str | None:
        with self._challenge_lock:
            entry = self._challenges.pop(state, None)
        if entry is None:
            return None
        verifier, expires_at = entry
        if expires_at <= _utc_now():
            return None
        return verifier

    async def exchange_code_for_token(self, provider_id: str, code: str, state: str) -> Token:
        provider, config = self._oauth_provider(provider_id)
        form = {
            "grant_type": config.grant_type,
            "client_id": config.client_id,
            "client_secret": config.client_secret,
            "code": code,
            "redirect_uri": config.redirect_uri,
        }
        if config.pkce:
            verifier = self._pop_verifier(state)
            if verifier is None:
                logger.warning("oauth_pkce_verifier_missing provider=%s", provider_id)
                raise PKCEVerificationError(
                    "PKCE verifier missing, expired or already used",
                    provider=provider_id,
                )
            form["code_verifier"] = verifier
        try:
            payload = await self._token_client(provider.endpoints.token, form)
        except Exception as exc:
            logger.warning("oauth_token_exchange_failed provider=%s", provider_id, exc_info=True)
            raise TokenExchangeError("Token exchange failed", provider=provider_id) from exc
        token = self._build_token(provider_id, payload)
        self._store_token(token)
        logger.info("oauth_token_exchanged provider=%s expires_in=%s", provider_id, token.expires_in)
        return token

    async def refresh_token(self, provider_id: str, refresh_token: str) -> Token:
        provider, config = self._oauth_provider(provider_id)
        form = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": config.client_id,
            "client_secret": config.client_secret,
        }
        try:
            payload = await self._token_client(provider.endpoints.token, form)
        except Exception as exc:
            logger.warning("oauth_token_refresh_failed provider=%s", provider_id, exc_info=True)
            raise TokenExchangeError("Token refresh failed", provider=provider_id) from exc
        token = self._build_token(provider_id, payload, fallback_refresh_token=refresh_token)
        self._store_token(token)
        logger.info("oauth_token_refreshed provider=%s", provider_id)
        return token

    async def revoke_token(self, provider_id: str, token: str) -> None:
        provider, config = self._oauth_provider(provider_id)
        if not provider.endpoints.revoke:
            raise UnsupportedOperationError(
                f"Provider {provider_id} does not support token revocation",
                provider=provider_id,
            )
        try:
            await self._revoke_client(provider.endpoints.revoke, token, config.client_id)
        except Exception as exc:
            logger.warning("oauth_token_revoke_failed provider=%s", provider_id, exc_info=True)
            raise TokenExchangeError("Token revocation failed", provider=provider_id) from exc
        with self._token_lock:
            self._tokens.pop(token, None)
        logger.info("oauth_token_revoked provider=%s", provider_id)

    async def get_user_info(self, provider_id: str, token: Token | str) -> Identity:
        provider, _ = self._oauth_provider(provider_id)
        access_token = token.access_token if isinstance(token, Token) else token
        try:
            payload = await self._user_info_client(provider.endpoints.user_info, access_token)
        except Exception as exc:
            logger.warning("oauth_user_info_failed provider=%s", provider_id, exc_info=True)
            raise UserInfoFetchError("User info fetch failed", provider=provider_id) from exc
        identity = map_claims(payload, provider.mapping, provider=provider_id)
        if not identity.id:
            raise UserInfoFetchError("User info payload missing subject", provider=provider_id)
        return identity

    def get_token(self, access_token: str) -> Token | None:
        with self._token_lock:
            return self._tokens.get(access_token)

    def purge_expired_challenges(self) -> int:
        now = _utc_now()
        with self._challenge_lock:
            expired = [state for state, (_, expires_at) in self._challenges.items() if expires_at <= now]
            for state in expired:
                del self._challenges[state]
            stale_flows = [state for state, (_, expires_at) in self._flows.items() if expires_at <= now]
            for state in stale_flows:
                del self._flows[state]
        if expired:
            logger.info("oauth_pkce_challenges_purged count=%s", len(expired))
        return len(expired)

    def purge_expired_tokens(self) -> int:
        now = _utc_now()
        with self._token_lock:
            expired = [key for key, token in self._tokens.items() if token.expires_at <= now]
            for key in expired:
                del self._tokens[key]
        return len(expired)

    def pending_challenges(self) -> int:
        with self._challenge_lock:
            return len(self._challenges)

    def _store_token(self, token: Token) -> None:
        with self._token_lock:
            self._tokens[token.access_token] = token

    def _build_token(
        self,
        provider_id: str,
        payload: dict[str, Any],
        *,
        fallback_refresh_token: str | None = None,
    ) -> Token:
        access_token = payload.get("access_token")
        if not access_token:
            raise TokenExchangeError("Token response missing access_token", provider=provider_id)
        try:
            expires_in = int(payload.get("expires_in") or self._default_expires_in)
        except (TypeError, ValueError):
            expires_in = self._default_expires_in
        issued_at = _utc_now()
        return Token(
            access_token=str(access_token),
            token_type=str(payload.get("token_type") or self._default_token_type),
            expires_in=expires_in,
            scope=str(payload.get("scope") or ""),
            issued_at=issued_at,
            expires_at=issued_at + timedelta(seconds=expires_in),
            refresh_token=payload.get("refresh_token") or fallback_refresh_token,
        )
