from __future__ import annotations

import asyncio
import base64
from dataclasses import replace
from datetime import datetime, timedelta, timezone
import hashlib
from urllib.parse import parse_qs, urlparse

import pytest

from gatekeep.core.errors import (
    PKCEVerificationError,
    ProviderNotFoundError,
    TokenExchangeError,
    UnsupportedOperationError,
    UserInfoFetchError,
)
from gatekeep.domain.models import OAuthConfig, Provider, ProviderEndpoints, SAMLConfig
from gatekeep.domain.state import LoginFlow
from gatekeep.services.auth import oauth
from gatekeep.services.auth.oauth import OAuthFlowEngine, build_code_challenge
from gatekeep.services.auth.providers import ProviderRegistry, default_providers
from gatekeep.tests.utils.fakes import FakeRevokeClient, FakeTokenClient, FakeUserInfoClient


def _engine(token_client=None, user_info_client=None, revoke_client=None) -> OAuthFlowEngine:
    registry = ProviderRegistry(default_providers())
    google = registry.get_provider("google")
    registry.reconfigure("google", config=replace(google.config, client_id="X", client_secret="shh"))
    return OAuthFlowEngine(
        registry,
        token_client=token_client or FakeTokenClient(),
        user_info_client=user_info_client or FakeUserInfoClient(),
        revoke_client=revoke_client or FakeRevokeClient(),
    )


def _query(url: str) -> dict[str, str]:
    return {key: values[0] for key, values in parse_qs(urlparse(url).query).items()}


def test_authorization_url_carries_s256_challenge() -> None:
    engine = _engine()
    url = engine.generate_authorization_url("google", state="state-1", nonce="nonce-1")
    params = _query(url)
    assert url.startswith("https://accounts.google.com/o/oauth2/v2/auth?")
    assert params["client_id"] == "X"
    assert params["state"] == "state-1"
    assert params["nonce"] == "nonce-1"
    assert params["scope"] == "openid email profile"
    assert params["code_challenge_method"] == "S256"
    assert len(params["code_challenge"]) >= 43
    assert "=" not in params["code_challenge"]


def test_authorization_url_generates_state_and_custom_params() -> None:
    engine = _engine()
    url = engine.generate_authorization_url("google", scopes=["openid"], custom_params={"prompt": "consent"})
    params = _query(url)
    assert params["state"]
    assert params["nonce"]
    assert params["scope"] == "openid"
    assert params["prompt"] == "consent"
    assert engine.pending_challenges() == 1


@pytest.mark.asyncio
async def test_custom_params_cannot_replace_flow_params() -> None:
    token_client = FakeTokenClient()
    engine = _engine(token_client=token_client)
    url = engine.generate_authorization_url(
        "google",
        state="s1",
        custom_params={"state": "forged", "client_id": "evil", "code_challenge": "x", "login_hint": "ada"},
    )
    params = _query(url)
    assert params["state"] == "s1"
    assert params["client_id"] == "X"
    assert params["code_challenge"] != "x"
    assert params["login_hint"] == "ada"

    await engine.exchange_code_for_token("google", "code-1", params["state"])
    _, form = token_client.calls[0]
    assert build_code_challenge(form["code_verifier"]) == params["code_challenge"]


def test_unknown_provider_raises() -> None:
    engine = _engine()
    with pytest.raises(ProviderNotFoundError):
        engine.generate_authorization_url("gitlab")


def test_provider_with_mismatched_config_is_rejected() -> None:
    registry = ProviderRegistry(
        [Provider(id="broken", type="oauth", config=SAMLConfig(entity_id="urn:sp", sso_url="https://idp/sso"))]
    )
    engine = OAuthFlowEngine(registry, token_client=FakeTokenClient())
    with pytest.raises(ProviderNotFoundError) as excinfo:
        engine.generate_authorization_url("broken")
    assert excinfo.value.details["config"] == "SAMLConfig"


@pytest.mark.asyncio
async def test_exchange_sends_verifier_matching_challenge() -> None:
    token_client = FakeTokenClient()
    engine = _engine(token_client=token_client)
    params = _query(engine.generate_authorization_url("google", state="s1"))

    token = await engine.exchange_code_for_token("google", "code-1", "s1")

    endpoint, form = token_client.calls[0]
    assert endpoint == "https://oauth2.googleapis.com/token"
    assert form["grant_type"] == "authorization_code"
    assert form["code"] == "code-1"
    assert form["client_id"] == "X"
    digest = hashlib.sha256(form["code_verifier"].encode("utf-8")).digest()
    assert base64.urlsafe_b64encode(digest).rstrip(b"=").decode() == params["code_challenge"]
    assert build_code_challenge(form["code_verifier"]) == params["code_challenge"]
    assert token.expires_at == token.issued_at + timedelta(seconds=token.expires_in)
    assert engine.get_token(token.access_token) == token


@pytest.mark.asyncio
async def test_state_cannot_be_exchanged_twice() -> None:
    engine = _engine()
    engine.generate_authorization_url("google", state="s1")
    await engine.exchange_code_for_token("google", "code-1", "s1")
    with pytest.raises(PKCEVerificationError):
        await engine.exchange_code_for_token("google", "code-1", "s1")


@pytest.mark.asyncio
async def test_expired_state_is_rejected(monkeypatch) -> None:
    engine = _engine()
    engine.generate_authorization_url("google", state="s1")
    later = datetime.now(timezone.utc) + timedelta(seconds=601)
    monkeypatch.setattr(oauth, "_utc_now", lambda: later)
    with pytest.raises(PKCEVerificationError):
        await engine.exchange_code_for_token("google", "code-1", "s1")


@pytest.mark.asyncio
async def test_concurrent_exchanges_for_one_state_succeed_once() -> None:
    class SlowTokenClient(FakeTokenClient):
        async def __call__(self, token_endpoint, form):
            await asyncio.sleep(0.01)
            return await super().__call__(token_endpoint, form)

    engine = _engine(token_client=SlowTokenClient())
    engine.generate_authorization_url("google", state="race")
    results = await asyncio.gather(
        engine.exchange_code_for_token("google", "code", "race"),
        engine.exchange_code_for_token("google", "code", "race"),
        return_exceptions=True,
    )
    failures = [r for r in results if isinstance(r, PKCEVerificationError)]
    successes = [r for r in results if not isinstance(r, Exception)]
    assert len(successes) == 1
    assert len(failures) == 1


@pytest.mark.asyncio
async def test_token_defaults_applied_when_response_omits_them() -> None:
    engine = _engine(token_client=FakeTokenClient({"access_token": "bare"}))
    engine.generate_authorization_url("google", state="s1")
    token = await engine.exchange_code_for_token("google", "code", "s1")
    assert token.token_type == "Bearer"
    assert token.expires_in == 3600
    assert token.refresh_token is None


@pytest.mark.asyncio
async def test_collaborator_failure_surfaces_as_token_exchange_error() -> None:
    engine = _engine(token_client=FakeTokenClient(error=RuntimeError("boom")))
    engine.generate_authorization_url("google", state="s1")
    with pytest.raises(TokenExchangeError) as excinfo:
        await engine.exchange_code_for_token("google", "code", "s1")
    assert isinstance(excinfo.value.__cause__, RuntimeError)


@pytest.mark.asyncio
async def test_missing_access_token_is_an_exchange_error() -> None:
    engine = _engine(token_client=FakeTokenClient({"token_type": "Bearer"}))
    engine.generate_authorization_url("google", state="s1")
    with pytest.raises(TokenExchangeError):
        await engine.exchange_code_for_token("google", "code", "s1")


@pytest.mark.asyncio
async def test_refresh_keeps_previous_refresh_token() -> None:
    token_client = FakeTokenClient({"access_token": "access-2", "expires_in": 60})
    engine = _engine(token_client=token_client)
    token = await engine.refresh_token("google", "refresh-old")
    assert token_client.calls[0][1]["grant_type"] == "refresh_token"
    assert token_client.calls[0][1]["refresh_token"] == "refresh-old"
    assert token.refresh_token == "refresh-old"
    assert token.expires_in == 60


@pytest.mark.asyncio
async def test_revoke_deletes_local_token() -> None:
    revoke_client = FakeRevokeClient()
    engine = _engine(revoke_client=revoke_client)
    engine.generate_authorization_url("google", state="s1")
    token = await engine.exchange_code_for_token("google", "code", "s1")
    await engine.revoke_token("google", token.access_token)
    assert revoke_client.calls == [("https://oauth2.googleapis.com/revoke", "access-1", "X")]
    assert engine.get_token(token.access_token) is None


@pytest.mark.asyncio
async def test_revoke_requires_revoke_endpoint() -> None:
    engine = _engine()
    with pytest.raises(UnsupportedOperationError):
        await engine.revoke_token("microsoft", "any")


@pytest.mark.asyncio
async def test_user_info_maps_claims() -> None:
    engine = _engine()
    identity = await engine.get_user_info("google", "access-1")
    assert identity.id == "1234"
    assert identity.provider_id == "1234"
    assert identity.email == "ada@example.com"
    assert identity.first_name == "Ada"
    assert identity.verified is True
    assert identity.provider == "google"


@pytest.mark.asyncio
async def test_user_info_failure_is_typed() -> None:
    engine = _engine(user_info_client=FakeUserInfoClient(error=RuntimeError("down")))
    with pytest.raises(UserInfoFetchError):
        await engine.get_user_info("google", "access-1")


def test_purge_expired_challenges(monkeypatch) -> None:
    engine = _engine()
    engine.generate_authorization_url("google", state="old")
    later = datetime.now(timezone.utc) + timedelta(minutes=11)
    monkeypatch.setattr(oauth, "_utc_now", lambda: later)
    engine.generate_authorization_url("google", state="fresh")
    assert engine.purge_expired_challenges() == 1
    assert engine.pending_challenges() == 1


def test_non_pkce_provider_skips_challenge() -> None:
    registry = ProviderRegistry(default_providers())
    github = registry.get_provider("github")
    registry.reconfigure("github", config=OAuthConfig(client_id="gh", pkce=False))
    engine = OAuthFlowEngine(registry, token_client=FakeTokenClient(), user_info_client=FakeUserInfoClient())
    params = _query(engine.generate_authorization_url("github"))
    assert "code_challenge" not in params
    assert github.endpoints == registry.get_provider("github").endpoints


def test_authorization_url_preserves_endpoint_query() -> None:
    registry = ProviderRegistry(default_providers())
    google = registry.get_provider("google")
    registry.reconfigure(
        "google",
        endpoints=replace(google.endpoints, authorization="https://idp.example/auth?tenant=acme"),
        config=replace(google.config, client_id="X"),
    )
    engine = OAuthFlowEngine(registry, token_client=FakeTokenClient(), user_info_client=FakeUserInfoClient())
    params = _query(engine.generate_authorization_url("google"))
    assert params["tenant"] == "acme"
    assert params["client_id"] == "X"


def test_login_flow_transitions() -> None:
    flow = LoginFlow(provider_id="google", state_token="s1")
    flow.advance("url_issued")
    flow.advance("code_received")
    with pytest.raises(ValueError):
        flow.advance("session_created")
    flow.fail(RuntimeError("x"))
    assert flow.state == "failed"
    assert flow.terminal
    with pytest.raises(ValueError):
        flow.fail(RuntimeError("again"))


def test_take_flow_resumes_issued_flow() -> None:
    engine = _engine()
    engine.generate_authorization_url("google", state="s1")
    flow = engine.take_flow("google", "s1")
    assert flow.state == "url_issued"
    fresh = engine.take_flow("google", "s1")
    assert fresh.state == "initiated"


def test_provider_endpoints_default_has_no_revoke() -> None:
    assert ProviderEndpoints().revoke is None
