from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from gatekeep.core.config import Settings, split_csv


EvaluationStrategy = Literal["deny-override", "allow-override", "first-match"]
Effect = Literal["allow", "deny"]


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


def find_role_cycle(edges: dict[str, tuple[str, ...]]) -> list[str] | None:
    # Iterative DFS over inheritance edges; returns the first cycle path found.
    visiting: set[str] = set()
    done: set[str] = set()
    for root in edges:
        if root in done:
            continue
        stack: list[tuple[str, int]] = [(root, 0)]
        path: list[str] = [root]
        visiting.add(root)
        while stack:
            node, index = stack[-1]
            parents = edges.get(node, ())
            if index >= len(parents):
                stack.pop()
                path.pop()
                visiting.discard(node)
                done.add(node)
                continue
            stack[-1] = (node, index + 1)
            parent = parents[index]
            if parent in visiting:
                return path[path.index(parent):] + [parent]
            if parent in done:
                continue
            visiting.add(parent)
            path.append(parent)
            stack.append((parent, 0))
    return None


class EncryptionConfig(_Frozen):
    enabled: bool = True
    algorithm: Literal["aes-256-gcm", "chacha20-poly1305"] = "aes-256-gcm"
    key_derivation: Literal["hkdf", "pbkdf2", "scrypt"] = "hkdf"
    pbkdf2_iterations: int = Field(default=210_000, ge=1_000)
    key_rotation: bool = True
    # Days between scheduled rotations.
    rotation_interval: int = Field(default=90, ge=1)
    salt_length: int = Field(default=32, ge=16, le=64)
    iv_length: int = Field(default=12, ge=12, le=16)
    master_key: str | None = Field(default=None, repr=False)

    @model_validator(mode="after")
    def _check_iv_length(self) -> EncryptionConfig:
        if self.algorithm == "chacha20-poly1305" and self.iv_length != 12:
            raise ValueError("chacha20-poly1305 requires a 12 byte IV")
        return self


class SessionConfig(_Frozen):
    timeout_minutes: int = Field(default=480, ge=1)
    max_concurrent: int = Field(default=5, ge=1)


class PasswordConfig(_Frozen):
    min_length: int = Field(default=8, ge=1)
    max_length: int = Field(default=128, ge=1)
    require_uppercase: bool = True
    require_lowercase: bool = True
    require_numbers: bool = True
    require_symbols: bool = True

    @model_validator(mode="after")
    def _check_bounds(self) -> PasswordConfig:
        if self.min_length > self.max_length:
            raise ValueError("password min_length exceeds max_length")
        return self


class LockoutConfig(_Frozen):
    enabled: bool = True
    max_attempts: int = Field(default=5, ge=1)
    lockout_duration_minutes: int = Field(default=30, ge=1)
    reset_after_minutes: int = Field(default=15, ge=1)
    ip_whitelist: tuple[str, ...] = ()
    ip_blacklist: tuple[str, ...] = ()


class MFAConfig(_Frozen):
    enabled: bool = False
    required: bool = False


class AuthenticationConfig(_Frozen):
    session: SessionConfig = Field(default_factory=SessionConfig)
    password: PasswordConfig = Field(default_factory=PasswordConfig)
    lockout: LockoutConfig = Field(default_factory=LockoutConfig)
    mfa: MFAConfig = Field(default_factory=MFAConfig)


class Role(_Frozen):
    id: str
    name: str = ""
    description: str = ""
    # "resource:action" grants; glob patterns such as "docs:*" or "*" are allowed.
    permissions: tuple[str, ...] = ()
    inherited: tuple[str, ...] = ()
    metadata: dict[str, Any] = Field(default_factory=dict)


class AttributeDefinition(_Frozen):
    name: str
    type: Literal["string", "number", "boolean", "date", "array"] = "string"
    source: Literal["user", "resource", "environment", "action"]
    required: bool = False
    default: Any = None


class ABACRule(_Frozen):
    id: str
    name: str = ""
    description: str = ""
    condition: Any = None
    effect: Effect
    priority: int = 0
    enabled: bool = True


class PolicyRule(_Frozen):
    id: str
    # "*", a user id, "role:<name>" or "group:<name>".
    subject: str = "*"
    resource: str = "*"
    action: str = "*"
    condition: Any = None
    # Falls back to the owning policy's effect.
    effect: Effect | None = None


class Policy(_Frozen):
    id: str
    name: str = ""
    description: str = ""
    rules: tuple[PolicyRule, ...] = ()
    effect: Effect = "allow"
    priority: int = 0
    enabled: bool = True


class RBACConfig(_Frozen):
    enabled: bool = True
    roles: tuple[Role, ...] = ()
    inheritance: bool = True
    default_role: str = ""

    @model_validator(mode="after")
    def _check_role_graph(self) -> RBACConfig:
        by_id: dict[str, Role] = {}
        for role in self.roles:
            if role.id in by_id:
                raise ValueError(f"Duplicate role id: {role.id}")
            by_id[role.id] = role
        for role in self.roles:
            for parent in role.inherited:
                if parent not in by_id:
                    raise ValueError(f"Role {role.id} inherits unknown role {parent}")
        cycle = find_role_cycle({role.id: role.inherited for role in self.roles})
        if cycle:
            raise ValueError(f"Role inheritance cycle: {' -> '.join(cycle)}")
        if self.default_role and self.default_role not in by_id:
            raise ValueError(f"Default role {self.default_role} is not defined")
        return self


class ABACConfig(_Frozen):
    enabled: bool = False
    attributes: tuple[AttributeDefinition, ...] = ()
    rules: tuple[ABACRule, ...] = ()


class PolicyConfig(_Frozen):
    policies: tuple[Policy, ...] = ()
    default_policy: Effect = "deny"
    evaluation: EvaluationStrategy = "deny-override"


class AuthorizationConfig(_Frozen):
    rbac: RBACConfig = Field(default_factory=RBACConfig)
    abac: ABACConfig = Field(default_factory=ABACConfig)
    policies: PolicyConfig = Field(default_factory=PolicyConfig)
    max_condition_depth: int = Field(default=8, ge=1)


class AuditConfig(_Frozen):
    enabled: bool = True
    level: Literal["minimal", "standard", "detailed", "comprehensive"] = "standard"
    retention_days: int = Field(default=365, ge=1)


class SecurityConfig(_Frozen):
    encryption: EncryptionConfig = Field(default_factory=EncryptionConfig)
    authentication: AuthenticationConfig = Field(default_factory=AuthenticationConfig)
    authorization: AuthorizationConfig = Field(default_factory=AuthorizationConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)

    @classmethod
    def from_settings(cls, settings: Settings) -> SecurityConfig:
        return cls(
            encryption=EncryptionConfig(
                enabled=settings.crypto_enabled,
                algorithm=settings.crypto_algorithm,
                key_derivation=settings.crypto_key_derivation,
                pbkdf2_iterations=settings.crypto_pbkdf2_iterations,
                key_rotation=settings.crypto_rotation_enabled,
                rotation_interval=settings.crypto_rotation_interval_days,
                salt_length=settings.crypto_salt_length,
                iv_length=settings.crypto_iv_length,
                master_key=settings.crypto_master_key,
            ),
            authentication=AuthenticationConfig(
                session=SessionConfig(
                    timeout_minutes=settings.session_timeout_minutes,
                    max_concurrent=settings.session_max_concurrent,
                ),
                password=PasswordConfig(
                    min_length=settings.password_min_length,
                    max_length=settings.password_max_length,
                    require_uppercase=settings.password_require_uppercase,
                    require_lowercase=settings.password_require_lowercase,
                    require_numbers=settings.password_require_numbers,
                    require_symbols=settings.password_require_symbols,
                ),
                lockout=LockoutConfig(
                    enabled=settings.lockout_enabled,
                    max_attempts=settings.lockout_max_attempts,
                    lockout_duration_minutes=settings.lockout_duration_minutes,
                    reset_after_minutes=settings.lockout_reset_after_minutes,
                    ip_whitelist=tuple(split_csv(settings.lockout_ip_whitelist)),
                    ip_blacklist=tuple(split_csv(settings.lockout_ip_blacklist)),
                ),
                mfa=MFAConfig(enabled=settings.mfa_enabled, required=settings.mfa_required),
            ),
            authorization=AuthorizationConfig(
                rbac=RBACConfig(
                    enabled=settings.authz_rbac_enabled,
                    inheritance=settings.authz_role_inheritance,
                ),
                abac=ABACConfig(enabled=settings.authz_abac_enabled),
                policies=PolicyConfig(
                    default_policy=settings.authz_default_policy,
                    evaluation=settings.authz_evaluation,
                ),
                max_condition_depth=settings.authz_max_condition_depth,
            ),
            audit=AuditConfig(
                enabled=settings.audit_enabled,
                level=settings.audit_level,
                retention_days=settings.audit_retention_days,
            ),
        )

    def merged(self, partial: dict[str, Any]) -> SecurityConfig:
        # Deep-merge a partial update and re-run every validator on the result.
        return SecurityConfig.model_validate(_deep_merge(self.model_dump(), partial))


def _deep_merge(base: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged
