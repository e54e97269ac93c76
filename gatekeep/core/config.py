from __future__ import annotations

from functools import lru_cache
import logging

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "gatekeep"
    app_version: str = "0.1.0"
    log_level: str = "INFO"

    # Centralize external call timeouts for token/user-info/revoke clients (ms).
    ext_call_timeout_ms: int = 8000
    # Bound PKCE verifier lifetime between URL issue and code exchange.
    oauth_state_ttl_seconds: int = 600
    # Fallbacks when the token endpoint omits token_type/expires_in.
    oauth_default_token_type: str = "Bearer"
    oauth_default_expires_in: int = 3600
    # Register google/github/microsoft with empty credentials at startup.
    oauth_register_default_providers: bool = True

    # Toggle audit writes; when disabled log_security_event is a no-op.
    audit_enabled: bool = True
    audit_level: str = "standard"
    # Retention contract for external housekeeping; the core never purges.
    audit_retention_days: int = 365

    crypto_enabled: bool = True
    # aes-256-gcm or chacha20-poly1305.
    crypto_algorithm: str = "aes-256-gcm"
    # hkdf, pbkdf2 or scrypt; salt from the envelope feeds the derivation.
    crypto_key_derivation: str = "hkdf"
    crypto_pbkdf2_iterations: int = 210_000
    crypto_salt_length: int = 32
    crypto_iv_length: int = 12
    crypto_rotation_enabled: bool = True
    crypto_rotation_interval_days: int = 90
    # Optional base64/hex master key imported as the first key version.
    crypto_master_key: str | None = None

    session_timeout_minutes: int = 480
    session_max_concurrent: int = 5

    lockout_enabled: bool = True
    lockout_max_attempts: int = 5
    lockout_duration_minutes: int = 30
    # Failed-attempt counters reset after this many quiet minutes.
    lockout_reset_after_minutes: int = 15
    # Comma-delimited source addresses.
    lockout_ip_whitelist: str = ""
    lockout_ip_blacklist: str = ""

    password_min_length: int = 8
    password_max_length: int = 128
    password_require_uppercase: bool = True
    password_require_lowercase: bool = True
    password_require_numbers: bool = True
    password_require_symbols: bool = True
    # bcrypt work factor for local credentials.
    password_bcrypt_rounds: int = 12

    mfa_enabled: bool = False
    mfa_required: bool = False

    authz_rbac_enabled: bool = True
    authz_abac_enabled: bool = False
    authz_role_inheritance: bool = True
    # deny-override, allow-override or first-match.
    authz_evaluation: str = "deny-override"
    # Decision when no role, rule or policy matches.
    authz_default_policy: str = "deny"
    authz_max_condition_depth: int = 8

    # Cadence of the session/PKCE sweep and rotation check.
    housekeeping_interval_s: int = 60


@lru_cache
def get_settings() -> Settings:
    return Settings()


def split_csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def configure_logging(settings: Settings | None = None) -> None:
    # Apply the configured level to the package logger tree only.
    resolved = settings or get_settings()
    level = logging.getLevelName(resolved.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    logger = logging.getLogger("gatekeep")
    logger.setLevel(level)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
        logger.addHandler(handler)
