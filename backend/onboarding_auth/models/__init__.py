from onboarding_auth.models.audit_log import AuditLog
from onboarding_auth.models.backup_code import BackupCode
from onboarding_auth.models.email_otp import EmailOtpState
from onboarding_auth.models.identity import Identity
from onboarding_auth.models.login_attempt import LoginAttempt

__all__ = [
    "AuditLog",
    "BackupCode",
    "EmailOtpState",
    "Identity",
    "LoginAttempt",
]
