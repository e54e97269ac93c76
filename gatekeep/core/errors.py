from __future__ import annotations


class GatekeepError(Exception):
    """Base error for gatekeep."""

    code = "GATEKEEP_ERROR"

    def __init__(self, message: str = "", **details: object) -> None:
        super().__init__(message)
        self.message = message
        self.details = dict(details)


class ConfigurationError(GatekeepError):
    """Invalid security configuration (role cycles, unsupported algorithms)."""

    code = "CONFIG_INVALID"


class ProviderNotFoundError(GatekeepError):
    """No provider registered under the requested id, or of the wrong type."""

    code = "PROVIDER_NOT_FOUND"


class UnsupportedOperationError(GatekeepError):
    """The provider does not expose the endpoint an operation needs."""

    code = "UNSUPPORTED_OPERATION"


class PKCEVerificationError(GatekeepError):
    """PKCE verifier missing, expired, or already consumed for a state."""

    code = "PKCE_VERIFICATION_FAILED"


class TokenExchangeError(GatekeepError):
    """Token endpoint call failed or returned an unusable payload."""

    code = "TOKEN_EXCHANGE_FAILED"


class UserInfoFetchError(GatekeepError):
    """User-info endpoint call failed."""

    code = "USER_INFO_FETCH_FAILED"


class SAMLValidationError(GatekeepError):
    """SAML response rejected by the assertion validator."""

    code = "SAML_VALIDATION_FAILED"


class LDAPAuthenticationError(GatekeepError):
    """LDAP bind or user search failed."""

    code = "LDAP_AUTH_FAILED"


class LocalCredentialError(GatekeepError):
    """Local email/password credentials rejected."""

    code = "LOCAL_CREDENTIALS_INVALID"


class PasswordPolicyError(LocalCredentialError):
    """Password does not satisfy the configured password policy."""

    code = "PASSWORD_POLICY_VIOLATION"


class LockoutError(GatekeepError):
    """Principal or source address is locked out."""

    code = "ACCOUNT_LOCKED"


class AuthorizationEvaluationError(GatekeepError):
    """A rule or policy condition could not be evaluated."""

    code = "AUTHZ_EVALUATION_FAILED"


class EncryptionError(GatekeepError):
    """Encryption failed or is disabled."""

    code = "ENCRYPTION_FAILED"


class DecryptionError(GatekeepError):
    """Envelope could not be parsed, authenticated, or decrypted."""

    code = "DECRYPTION_FAILED"


class KeyNotFoundError(GatekeepError):
    """No key with the requested id (or no default key)."""

    code = "KEY_NOT_FOUND"


class KeyInUseError(GatekeepError):
    """Key cannot be deleted while it is the default key."""

    code = "KEY_IN_USE"


class SessionExpiredError(GatekeepError):
    """Session is unknown or past its expiry."""

    code = "SESSION_EXPIRED"
