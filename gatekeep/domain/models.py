from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, Union


ProviderType = Literal["oauth", "saml", "ldap", "local"]
KeyStatus = Literal["active", "retired"]
EventResult = Literal["success", "failure", "blocked"]
Severity = Literal["low", "medium", "high", "critical"]

PROVIDER_TYPES = frozenset({"oauth", "saml", "ldap", "local"})
SEVERITIES = ("low", "medium", "high", "critical")
EVENT_RESULTS = frozenset({"success", "failure", "blocked"})
EVENT_TYPES = frozenset(
    {
        "authentication",
        "authorization",
        "data-access",
        "configuration-change",
        "threat-detected",
        "compliance-violation",
        "key-rotation",
        "encryption",
        "decryption",
        "session-created",
        "session-destroyed",
        "password-change",
        "mfa-enabled",
        "mfa-disabled",
        "lockout",
        "unlock",
    }
)


@dataclass(frozen=True)
class ProviderEndpoints:
    authorization: str = ""
    token: str = ""
    user_info: str = ""
    revoke: str | None = None
    introspect: str | None = None


@dataclass(frozen=True)
class ClaimMapping:
    # Canonical field -> source path in the provider payload (dotted paths allowed).
    id: str = "id"
    email: str = "email"
    name: str = "name"
    first_name: str = "given_name"
    last_name: str = "family_name"
    avatar: str = "picture"
    locale: str = "locale"
    timezone: str = "timezone"
    verified: str = "email_verified"
    groups: str = "groups"
    roles: str = "roles"
    custom: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class OAuthConfig:
    client_id: str = ""
    client_secret: str = ""
    redirect_uri: str = ""
    response_type: str = "code"
    grant_type: str = "authorization_code"
    pkce: bool = True


@dataclass(frozen=True)
class SAMLConfig:
    entity_id: str
    sso_url: str
    slo_url: str = ""
    certificate: str = ""
    private_key: str = ""
    name_id_format: str = "urn:oasis:names:tc:SAML:1.1:nameid-format:emailAddress"
    acs_url: str = ""
    audience: str = ""


@dataclass(frozen=True)
class LDAPConfig:
    server: str
    port: int = 389
    base_dn: str = ""
    bind_dn: str = ""
    bind_password: str = ""
    user_search_filter: str = "(uid={username})"
    group_search_filter: str = "(member={dn})"
    ssl: bool = False
    tls: bool = False


@dataclass(frozen=True)
class LocalConfig:
    allow_registration: bool = True
    require_email_verification: bool = False


ProviderConfig = Union[OAuthConfig, SAMLConfig, LDAPConfig, LocalConfig]


@dataclass(frozen=True)
class Provider:
    id: str
    type: ProviderType
    config: ProviderConfig
    name: str = ""
    display_name: str = ""
    enabled: bool = True
    scopes: tuple[str, ...] = ()
    endpoints: ProviderEndpoints = field(default_factory=ProviderEndpoints)
    mapping: ClaimMapping = field(default_factory=ClaimMapping)


@dataclass(frozen=True)
class Token:
    access_token: str
    token_type: str
    expires_in: int
    scope: str
    issued_at: datetime
    expires_at: datetime
    refresh_token: str | None = None


@dataclass(frozen=True)
class Identity:
    id: str
    email: str
    name: str
    first_name: str
    last_name: str
    verified: bool
    provider: str
    provider_id: str
    avatar: str | None = None
    locale: str | None = None
    timezone: str | None = None
    groups: tuple[str, ...] = ()
    roles: tuple[str, ...] = ()
    custom: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SessionMetadata:
    ip_address: str = ""
    user_agent: str = ""
    device: str = ""
    location: str | None = None
    is_new_user: bool = False
    last_login: datetime | None = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class Session:
    id: str
    provider: str
    user_id: str
    identity: Identity
    created_at: datetime
    expires_at: datetime
    metadata: SessionMetadata
    token: Token | None = None


@dataclass(frozen=True)
class SubjectGrants:
    roles: tuple[str, ...] = ()
    permissions: tuple[str, ...] = ()
    attributes: dict[str, Any] = field(default_factory=dict)


@dataclass
class EncryptionKey:
    id: str
    version: int
    algorithm: str
    material: bytes = field(repr=False)
    created_at: datetime
    status: KeyStatus = "active"
    retired_at: datetime | None = None


@dataclass(frozen=True)
class EventMetadata:
    ip_address: str = ""
    user_agent: str = ""
    session_id: str = ""
    request_id: str = ""
    correlation_id: str = ""
    version: str = ""


@dataclass(frozen=True)
class SecurityEvent:
    id: str
    timestamp: datetime
    type: str
    severity: Severity
    source: str
    target: str
    action: str
    result: EventResult
    details: Mapping[str, Any]
    metadata: EventMetadata

    @property
    def partition(self) -> str:
        return self.timestamp.date().isoformat()


@dataclass(frozen=True)
class AuthenticationMetrics:
    total_logins: int
    successful_logins: int
    failed_logins: int
    mfa_enabled: int
    lockouts: int


@dataclass(frozen=True)
class AuthorizationMetrics:
    total_requests: int
    allowed_requests: int
    denied_requests: int
    policy_violations: int


@dataclass(frozen=True)
class ThreatMetrics:
    total_threats: int
    blocked_threats: int
    investigated_threats: int
    false_positives: int


@dataclass(frozen=True)
class ComplianceMetrics:
    total_violations: int
    critical_violations: int
    resolved_violations: int
    pending_violations: int


@dataclass(frozen=True)
class EncryptionMetrics:
    encrypted_data: int
    decrypted_data: int
    key_rotations: int
    encryption_errors: int


@dataclass(frozen=True)
class SecurityMetrics:
    authentication: AuthenticationMetrics
    authorization: AuthorizationMetrics
    threats: ThreatMetrics
    compliance: ComplianceMetrics
    encryption: EncryptionMetrics


@dataclass(frozen=True)
class SecurityAnalyticsSnapshot:
    period: str
    metrics: SecurityMetrics
    cutoff: datetime
    event_count: int
    generated_at: datetime
