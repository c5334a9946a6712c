"""Domain exceptions for the authentication core."""

from datetime import datetime


class AuthError(Exception):
    """Base class for expected authentication and MFA failures."""

    code = "AUTH_ERROR"
    default_message = "Authentication failed"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidCredentialsError(AuthError):
    """Wrong password or unknown email. Both are reported identically."""

    code = "INVALID_CREDENTIALS"
    default_message = "Invalid email or password"

    def __init__(self, message: str | None = None, remaining_attempts: int | None = None):
        self.remaining_attempts = remaining_attempts
        super().__init__(message)


class AccountLockedError(AuthError):
    code = "ACCOUNT_LOCKED"
    default_message = "Too many failed login attempts"

    def __init__(self, retry_after_seconds: int, message: str | None = None):
        self.retry_after_seconds = retry_after_seconds
        super().__init__(message)


class MfaCodeInvalidError(AuthError):
    code = "MFA_CODE_INVALID"
    default_message = "Invalid verification code"

    def __init__(self, message: str | None = None, remaining_attempts: int | None = None):
        self.remaining_attempts = remaining_attempts
        super().__init__(message)


class MfaCodeExpiredError(AuthError):
    code = "MFA_CODE_EXPIRED"
    default_message = "Verification code has expired. Please request a new code."


class MfaAttemptsExhaustedError(AuthError):
    code = "MFA_ATTEMPTS_EXHAUSTED"
    default_message = "Too many failed attempts. Please request a new code."


class MfaSendRateLimitedError(AuthError):
    code = "MFA_SEND_RATE_LIMITED"
    default_message = "Too many verification codes requested"

    def __init__(self, retry_after: datetime, message: str | None = None):
        self.retry_after = retry_after
        super().__init__(message)


class ReauthenticationRequiredError(AuthError):
    """Password re-check failed for a sensitive MFA-management action."""

    code = "REAUTHENTICATION_REQUIRED"
    default_message = "Current password is incorrect"


class MfaStateError(AuthError):
    """The requested MFA transition is not valid from the current state."""

    code = "MFA_STATE_CONFLICT"
    default_message = "MFA is not in a valid state for this operation"


class PasswordPolicyError(AuthError):
    code = "PASSWORD_POLICY"
    default_message = "Password does not meet the complexity requirements"


class IdentityNotFoundError(AuthError):
    code = "IDENTITY_NOT_FOUND"
    default_message = "Account not found"


class IdentityExistsError(AuthError):
    code = "IDENTITY_EXISTS"
    default_message = "An account with this email already exists"


class ConfigurationError(Exception):
    """Raised when the credential store is unreachable or misconfigured.

    Deliberately not an AuthError: callers must fail the request rather
    than treat it as an authentication failure.
    """

    def __init__(self, reason: str = "unknown"):
        self.reason = reason
        super().__init__(f"Credential store unavailable: {reason}")
