from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import datetime
import logging
from typing import Any

from pydantic import ValidationError

from gatekeep.core.config import Settings, get_settings
from gatekeep.core.errors import (
    ConfigurationError,
    GatekeepError,
    LDAPAuthenticationError,
    LocalCredentialError,
    LockoutError,
    SAMLValidationError,
    UnsupportedOperationError,
)
from gatekeep.domain.config import SecurityConfig
from gatekeep.domain.models import (
    EncryptionKey,
    EventMetadata,
    Identity,
    LDAPConfig,
    LocalConfig,
    Provider,
    SAMLConfig,
    SecurityAnalyticsSnapshot,
    SecurityEvent,
    Session,
    SessionMetadata,
    Token,
)
from gatekeep.services.analytics import SecurityAnalytics
from gatekeep.services.audit import AuditLog, EventListener
from gatekeep.services.auth.claims import map_claims
from gatekeep.services.auth.clients import (
    GrantWriter,
    IdentityStore,
    InMemoryIdentityStore,
    LDAPAuthenticator,
    RevokeClient,
    SAMLValidator,
    TokenClient,
    UserInfoClient,
)
from gatekeep.services.auth.local import LocalAccount, LocalCredentialStore, LockoutTracker
from gatekeep.services.auth.oauth import OAuthFlowEngine
from gatekeep.services.auth.providers import ProviderRegistry, default_providers
from gatekeep.services.auth.sessions import SessionManager
from gatekeep.services.authz.engine import AuthorizationDecision, AuthorizationEngine
from gatekeep.services.crypto import EncryptionService, KeyRing
from gatekeep.services.housekeeping import Housekeeper


logger = logging.getLogger(__name__)


def _event_metadata(metadata: SessionMetadata | None, *, session_id: str = "") -> EventMetadata:
    if metadata is None:
        return EventMetadata(session_id=session_id)
    return EventMetadata(ip_address=metadata.ip_address, user_agent=metadata.user_agent, session_id=session_id)


class SecurityService:
    """Entry point that wires providers, sessions, authorization, encryption and auditing.

    Every ``authenticate_with_*`` call writes exactly one audit event, whether
    it succeeds or raises: an ``authentication`` event, or a ``lockout`` event
    when the attempt is rejected up front by an active lockout or a blocked
    source address.
    """

    def __init__(
        self,
        config: SecurityConfig | None = None,
        *,
        settings: Settings | None = None,
        registry: ProviderRegistry | None = None,
        token_client: TokenClient | None = None,
        user_info_client: UserInfoClient | None = None,
        revoke_client: RevokeClient | None = None,
        saml_validator: SAMLValidator | None = None,
        ldap_authenticator: LDAPAuthenticator | None = None,
        identity_store: IdentityStore | None = None,
        audit_log: AuditLog | None = None,
        credential_store: LocalCredentialStore | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._config = config or SecurityConfig.from_settings(settings)
        auth = self._config.authentication
        self.audit_log = audit_log or AuditLog(enabled=self._config.audit.enabled, version=settings.app_version)
        self.providers = registry or ProviderRegistry(
            default_providers() if settings.oauth_register_default_providers else []
        )
        self.oauth = OAuthFlowEngine(
            self.providers,
            token_client=token_client,
            user_info_client=user_info_client,
            revoke_client=revoke_client,
            state_ttl_seconds=settings.oauth_state_ttl_seconds,
        )
        self.sessions = SessionManager(
            timeout_minutes=auth.session.timeout_minutes,
            max_concurrent=auth.session.max_concurrent,
        )
        self.lockouts = LockoutTracker(auth.lockout)
        self.credentials = credential_store or LocalCredentialStore(rounds=settings.password_bcrypt_rounds)
        self.identity_store = identity_store or InMemoryIdentityStore()
        self._saml_validator = saml_validator
        self._ldap_authenticator = ldap_authenticator
        self.authorization = AuthorizationEngine(
            self._config.authorization,
            identity_store=self.identity_store,
            audit_log=self.audit_log,
        )
        encryption = self._config.encryption
        self.keyring = KeyRing(
            audit_log=self.audit_log,
            algorithm=encryption.algorithm,
            rotation_enabled=encryption.key_rotation,
            rotation_interval_days=encryption.rotation_interval,
        )
        if encryption.master_key:
            try:
                self.keyring.import_key(encryption.master_key)
            except ValueError as exc:
                raise ConfigurationError("Configured master key is not valid base64 or hex") from exc
        else:
            self.keyring.ensure_default()
        self.encryption = EncryptionService(encryption, keyring=self.keyring, audit_log=self.audit_log)
        self.analytics = SecurityAnalytics(self.audit_log)
        self.housekeeper = Housekeeper(
            oauth=self.oauth,
            sessions=self.sessions,
            keyring=self.keyring,
            lockouts=self.lockouts,
            interval_s=settings.housekeeping_interval_s,
        )

    # Authentication

    async def authenticate_with_oauth(
        self,
        provider_id: str,
        code: str,
        state: str,
        *,
        metadata: SessionMetadata | None = None,
    ) -> Session:
        flow = self.oauth.take_flow(provider_id, state)
        flow.advance("code_received")
        try:
            token = await self.oauth.exchange_code_for_token(provider_id, code, state)
            flow.advance("token_exchanged")
            identity = await self.oauth.get_user_info(provider_id, token)
            flow.advance("user_info_fetched")
            session = self.sessions.create_session(provider_id, identity, token, metadata)
            flow.advance("session_created")
        except Exception as exc:
            failed_at = flow.state
            flow.fail(exc)
            self._record_authentication(
                method="oauth",
                provider_id=provider_id,
                principal=provider_id,
                result="failure",
                metadata=metadata,
                details={"flow_state": failed_at},
                error=exc,
            )
            raise
        self._record_authentication(
            method="oauth",
            provider_id=provider_id,
            principal=identity.id,
            result="success",
            metadata=metadata,
            session_id=session.id,
        )
        return session

    async def authenticate_with_saml(
        self,
        provider_id: str,
        saml_response: str,
        *,
        metadata: SessionMetadata | None = None,
    ) -> Session:
        async def _attempt() -> Session:
            provider, saml_config = self.providers.require_config(provider_id, SAMLConfig, kind="saml")
            if self._saml_validator is None:
                raise UnsupportedOperationError("No SAML validator configured", provider=provider_id)
            try:
                attributes = await self._saml_validator(saml_response, saml_config)
            except GatekeepError:
                raise
            except Exception as exc:
                raise SAMLValidationError("SAML response rejected", provider=provider_id) from exc
            identity = map_claims(attributes, provider.mapping, provider=provider_id)
            if not identity.id:
                raise SAMLValidationError("SAML assertion missing subject", provider=provider_id)
            return self.sessions.create_session(provider_id, identity, None, metadata)

        return await self._authenticate("saml", provider_id, provider_id, metadata, _attempt)

    async def authenticate_with_ldap(
        self,
        provider_id: str,
        username: str,
        password: str,
        *,
        metadata: SessionMetadata | None = None,
    ) -> Session:
        principal = f"{provider_id}:{username.strip().lower()}"

        async def _attempt() -> Session:
            provider, ldap_config = self.providers.require_config(provider_id, LDAPConfig, kind="ldap")
            if self._ldap_authenticator is None:
                raise UnsupportedOperationError("No LDAP authenticator configured", provider=provider_id)
            try:
                entry = await self._ldap_authenticator(ldap_config, username, password)
            except GatekeepError:
                raise
            except Exception as exc:
                raise LDAPAuthenticationError("LDAP bind failed", provider=provider_id) from exc
            identity = map_claims(entry, provider.mapping, provider=provider_id)
            if not identity.id:
                raise LDAPAuthenticationError("LDAP entry missing identifier", provider=provider_id)
            return self.sessions.create_session(provider_id, identity, None, metadata)

        return await self._authenticate(
            "ldap",
            provider_id,
            principal,
            metadata,
            _attempt,
            lockout_errors=(LDAPAuthenticationError,),
        )

    async def authenticate_with_local(
        self,
        email: str,
        password: str,
        *,
        provider_id: str = "local",
        metadata: SessionMetadata | None = None,
    ) -> Session:
        principal = f"{provider_id}:{email.strip().lower()}"

        async def _attempt() -> Session:
            account = self.credentials.verify(email, password)
            local_config = self._local_config(provider_id)
            if local_config.require_email_verification and not account.verified:
                raise LocalCredentialError("Email address not verified", reason="unverified")
            if self._config.authentication.mfa.required and not account.mfa_enabled:
                raise LocalCredentialError("Multi-factor authentication required", reason="mfa_required")
            return self.sessions.create_session(provider_id, _local_identity(account, provider_id), None, metadata)

        return await self._authenticate(
            "local",
            provider_id,
            principal,
            metadata,
            _attempt,
            lockout_errors=(LocalCredentialError,),
        )

    async def _authenticate(
        self,
        method: str,
        provider_id: str,
        principal: str,
        metadata: SessionMetadata | None,
        attempt: Callable[[], Awaitable[Session]],
        *,
        lockout_errors: tuple[type[Exception], ...] = (),
    ) -> Session:
        ip_address = metadata.ip_address if metadata else ""
        if lockout_errors:
            try:
                self.lockouts.check(principal, ip_address)
            except LockoutError as exc:
                self.audit_log.log_security_event(
                    type="lockout",
                    severity="high",
                    source=principal,
                    target=provider_id,
                    action=f"{method}-login",
                    result="blocked",
                    details={"method": method, "reason": exc.details.get("reason"), "error": exc.code},
                    metadata=_event_metadata(metadata),
                )
                raise
        try:
            session = await attempt()
        except Exception as exc:
            locked_out = False
            if isinstance(exc, lockout_errors) and not _is_policy_rejection(exc):
                locked_out = self.lockouts.record_failure(principal, ip_address)
            self._record_authentication(
                method=method,
                provider_id=provider_id,
                principal=principal,
                result="failure",
                metadata=metadata,
                details={"locked_out": locked_out} if lockout_errors else None,
                error=exc,
            )
            raise
        if lockout_errors:
            self.lockouts.record_success(principal)
        self._record_authentication(
            method=method,
            provider_id=provider_id,
            principal=session.user_id,
            result="success",
            metadata=metadata,
            session_id=session.id,
        )
        return session

    def _record_authentication(
        self,
        *,
        method: str,
        provider_id: str,
        principal: str,
        result: str,
        metadata: SessionMetadata | None,
        session_id: str = "",
        details: dict[str, Any] | None = None,
        error: Exception | None = None,
    ) -> None:
        payload: dict[str, Any] = {"method": method, "provider": provider_id}
        payload.update(details or {})
        if error is not None:
            payload["error"] = getattr(error, "code", type(error).__name__)
            logger.warning("authentication_failed method=%s provider=%s error=%s", method, provider_id, payload["error"])
        self.audit_log.log_security_event(
            type="authentication",
            severity="low" if result == "success" else "medium",
            source=principal,
            target=provider_id,
            action=f"{method}-login",
            result=result,
            details=payload,
            metadata=_event_metadata(metadata, session_id=session_id),
        )

    def _local_config(self, provider_id: str) -> LocalConfig:
        provider = self.providers.get_provider(provider_id)
        if provider is not None and isinstance(provider.config, LocalConfig):
            return provider.config
        return LocalConfig()

    # Local credentials

    def register_local_user(
        self,
        email: str,
        password: str,
        *,
        name: str = "",
        roles: tuple[str, ...] = (),
        groups: tuple[str, ...] = (),
        provider_id: str = "local",
    ) -> LocalAccount:
        if not self._local_config(provider_id).allow_registration:
            raise LocalCredentialError("Registration is disabled", provider=provider_id)
        account = self.credentials.register(
            email,
            password,
            policy=self._config.authentication.password,
            name=name,
            roles=roles,
            groups=groups,
        )
        # Authorization reads grants from the identity store, not from the account.
        if isinstance(self.identity_store, GrantWriter):
            self.identity_store.set_grants(account.id, roles=account.roles, attributes={"groups": list(account.groups)})
        elif roles or groups:
            logger.warning("local_grants_not_stored user=%s store=%s", account.id, type(self.identity_store).__name__)
        return account

    def change_password(self, email: str, current_password: str, new_password: str) -> LocalAccount:
        try:
            account = self.credentials.change_password(
                email,
                current_password,
                new_password,
                policy=self._config.authentication.password,
            )
        except LocalCredentialError as exc:
            self.audit_log.log_security_event(
                type="password-change",
                severity="medium",
                source=email.strip().lower(),
                target="local",
                action="change-password",
                result="failure",
                details={"error": exc.code},
            )
            raise
        self.audit_log.log_security_event(
            type="password-change",
            severity="low",
            source=account.id,
            target="local",
            action="change-password",
            result="success",
        )
        return account

    def set_mfa(self, email: str, enabled: bool) -> LocalAccount:
        account = self.credentials.set_mfa(email, enabled)
        self.audit_log.log_security_event(
            type="mfa-enabled" if enabled else "mfa-disabled",
            severity="low" if enabled else "medium",
            source=account.id,
            target="local",
            action="enable-mfa" if enabled else "disable-mfa",
            result="success",
        )
        return account

    def unlock(self, principal: str, *, actor: str = "system") -> bool:
        unlocked = self.lockouts.unlock(principal)
        if unlocked:
            self.audit_log.log_security_event(
                type="unlock",
                severity="medium",
                source=actor,
                target=principal,
                action="unlock",
                result="success",
            )
        return unlocked

    # Authorization

    async def authorize(
        self,
        user_id: str,
        resource: str,
        action: str,
        context: dict[str, Any] | None = None,
        *,
        metadata: EventMetadata | dict[str, Any] | None = None,
    ) -> bool:
        return await self.authorization.authorize(user_id, resource, action, context, metadata=metadata)

    async def explain(
        self,
        user_id: str,
        resource: str,
        action: str,
        context: dict[str, Any] | None = None,
    ) -> AuthorizationDecision:
        return await self.authorization.explain(user_id, resource, action, context)

    # Encryption

    def encrypt(self, plaintext: str, key_id: str | None = None, *, source: str = "system") -> str:
        return self.encryption.encrypt(plaintext, key_id, source=source)

    def decrypt(self, envelope: str | dict[str, Any], *, source: str = "system") -> str:
        return self.encryption.decrypt(envelope, source=source)

    def rotate_key(self, reason: str = "manual", *, actor: str = "system") -> EncryptionKey:
        return self.keyring.rotate(reason, source=actor)

    def delete_key(self, key_id: str) -> None:
        self.keyring.delete(key_id)

    # Audit and analytics

    def get_events(self, date: str | None = None) -> list[SecurityEvent]:
        return self.audit_log.get_events(date)

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        return self.audit_log.subscribe(listener)

    def generate_security_analytics(
        self,
        period: str = "day",
        *,
        now: datetime | None = None,
    ) -> SecurityAnalyticsSnapshot:
        return self.analytics.generate_security_analytics(period, now=now)

    def get_analytics(self, period: str) -> SecurityAnalyticsSnapshot | None:
        return self.analytics.get_analytics(period)

    # Configuration

    def get_config(self) -> SecurityConfig:
        return self._config

    def update_config(self, partial: dict[str, Any], *, actor: str = "system") -> SecurityConfig:
        sections = sorted(partial)
        try:
            updated = self._config.merged(partial)
            self.authorization.configure(updated.authorization)
        except (ValidationError, ConfigurationError) as exc:
            self.audit_log.log_security_event(
                type="configuration-change",
                severity="medium",
                source=actor,
                target="security-config",
                action="update",
                result="failure",
                details={"sections": sections, "error": ConfigurationError.code},
            )
            if isinstance(exc, ConfigurationError):
                raise
            raise ConfigurationError("Invalid security configuration", error_count=exc.error_count()) from exc
        self.encryption.configure(updated.encryption)
        auth = updated.authentication
        self.sessions.configure(timeout_minutes=auth.session.timeout_minutes, max_concurrent=auth.session.max_concurrent)
        self.lockouts.configure(auth.lockout)
        self._config = updated
        self.audit_log.log_security_event(
            type="configuration-change",
            severity="medium",
            source=actor,
            target="security-config",
            action="update",
            result="success",
            details={"sections": sections},
        )
        self.audit_log.enabled = updated.audit.enabled
        logger.info("security_config_updated sections=%s", ",".join(sections))
        return updated

    # OAuth providers and sessions

    def get_provider(self, provider_id: str) -> Provider | None:
        return self.providers.get_provider(provider_id)

    def get_providers(self) -> list[Provider]:
        return self.providers.get_providers()

    def add_provider(self, provider: Provider) -> None:
        self.providers.add_provider(provider)

    def remove_provider(self, provider_id: str) -> bool:
        return self.providers.remove_provider(provider_id)

    def load_credentials(self, document: dict[str, Any]) -> list[str]:
        return self.providers.load_credentials(document)

    def generate_authorization_url(self, provider_id: str, **options: Any) -> str:
        return self.oauth.generate_authorization_url(provider_id, **options)

    async def exchange_code_for_token(self, provider_id: str, code: str, state: str) -> Token:
        return await self.oauth.exchange_code_for_token(provider_id, code, state)

    async def refresh_token(self, provider_id: str, refresh_token: str) -> Token:
        return await self.oauth.refresh_token(provider_id, refresh_token)

    async def revoke_token(self, provider_id: str, token: str) -> None:
        await self.oauth.revoke_token(provider_id, token)

    async def get_user_info(self, provider_id: str, token: Token | str) -> Identity:
        return await self.oauth.get_user_info(provider_id, token)

    def create_session(
        self,
        provider_id: str,
        identity: Identity,
        token: Token | None = None,
        metadata: SessionMetadata | None = None,
    ) -> Session:
        session = self.sessions.create_session(provider_id, identity, token, metadata)
        self.audit_log.log_security_event(
            type="session-created",
            severity="low",
            source=identity.id,
            target=provider_id,
            action="create-session",
            result="success",
            metadata=_event_metadata(metadata, session_id=session.id),
        )
        return session

    def get_session(self, session_id: str) -> Session | None:
        return self.sessions.get_session(session_id)

    def validate_session(self, session_id: str) -> bool:
        return self.sessions.validate_session(session_id)

    def destroy_session(self, session_id: str) -> bool:
        session = self.sessions.get_session(session_id)
        removed = self.sessions.destroy_session(session_id)
        if removed and session is not None:
            self.audit_log.log_security_event(
                type="session-destroyed",
                severity="low",
                source=session.user_id,
                target=session.provider,
                action="destroy-session",
                result="success",
                metadata=EventMetadata(session_id=session_id),
            )
        return removed

    def get_sessions(self) -> list[Session]:
        return self.sessions.get_sessions()

    def get_sessions_by_provider(self, provider_id: str) -> list[Session]:
        return self.sessions.get_sessions_by_provider(provider_id)

    def get_sessions_by_user(self, user_id: str) -> list[Session]:
        return self.sessions.get_sessions_by_user(user_id)

    # Housekeeping

    def start_housekeeping(self) -> None:
        self.housekeeper.start()

    async def stop_housekeeping(self) -> None:
        await self.housekeeper.stop()


def _local_identity(account: LocalAccount, provider_id: str) -> Identity:
    first, _, last = account.name.partition(" ")
    return Identity(
        id=account.id,
        email=account.email,
        name=account.name,
        first_name=first,
        last_name=last,
        verified=account.verified,
        provider=provider_id,
        provider_id=account.id,
        groups=account.groups,
        roles=account.roles,
    )


def _is_policy_rejection(exc: Exception) -> bool:
    # Correct credentials rejected by policy (MFA, verification) do not count toward lockout.
    return isinstance(exc, GatekeepError) and exc.details.get("reason") in {"mfa_required", "unverified"}
