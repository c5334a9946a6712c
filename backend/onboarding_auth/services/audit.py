"""
Audit logging service for security-relevant authentication events.

Usage:
    from onboarding_auth.services.audit import audit_log
    await audit_log(store, identity.id, "mfa.totp_enabled", {"backup_codes": 10})
"""
import logging
from typing import Any
from uuid import UUID

from onboarding_auth.repositories.base import AuditEvent, CredentialStore

logger = logging.getLogger(__name__)

# Action names
LOGIN_SUCCEEDED = "auth.login_succeeded"
LOGIN_FAILED = "auth.login_failed"
LOCKOUT = "auth.lockout"
UNLOCK = "auth.unlock"
PASSWORD_CHANGED = "auth.password_changed"
IDENTITY_REGISTERED = "auth.registered"
MFA_VERIFIED = "mfa.verified"
MFA_FAILED = "mfa.failed"
TOTP_ENABLED = "mfa.totp_enabled"
TOTP_DISABLED = "mfa.totp_disabled"
BACKUP_CODE_USED = "mfa.backup_code_used"
BACKUP_CODES_REGENERATED = "mfa.backup_codes_regenerated"
EMAIL_OTP_SENT = "mfa.email_otp_sent"
EMAIL_OTP_ENABLED = "mfa.email_otp_enabled"
EMAIL_OTP_DISABLED = "mfa.email_otp_disabled"
EMAIL_RATE_LIMITED = "mfa.email_rate_limited"


async def audit_log(
    store: CredentialStore,
    identity_id: UUID | None,
    action: str,
    details: dict[str, Any] | None = None,
    origin: str | None = None,
) -> AuditEvent:
    """
    Create an audit log entry.

    Args:
        store: Credential store the event is persisted through
        identity_id: Account the event concerns (None when the email is unknown)
        action: Action type (e.g., "auth.lockout", "mfa.backup_code_used")
        details: Additional context. Never codes, secrets or passwords.
        origin: Client address the request came from

    Returns:
        The persisted AuditEvent
    """
    event = AuditEvent(
        action=action,
        identity_id=identity_id,
        origin=origin,
        details=details.copy() if details else {},
    )
    await store.add_audit_event(event)
    logger.info(f"Audit: {action} identity={identity_id} origin={origin}")
    return event
