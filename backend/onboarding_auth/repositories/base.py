"""
Credential store interface.

The authentication core only talks to persistence through this narrow,
async, store-agnostic protocol. Records are plain dataclasses so services
never hold ORM objects across calls.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol


@dataclass
class Identity:
    id: uuid.UUID
    email: str
    password_hash: str | None
    password_salt: str | None
    is_active: bool = True
    mfa_required: bool = True
    totp_enabled: bool = False
    email_otp_enabled: bool = False
    created_at: datetime | None = None

    @property
    def has_mfa(self) -> bool:
        return self.totp_enabled or self.email_otp_enabled


@dataclass
class LoginAttemptRecord:
    """Failed-login counter for one (lower-cased email, origin) bucket."""

    email: str
    origin: str
    attempt_count: int = 0
    last_attempt_at: datetime | None = None
    lockout_until: datetime | None = None
    identity_id: uuid.UUID | None = None


@dataclass
class TotpConfiguration:
    identity_id: uuid.UUID
    secret: str
    enabled: bool
    setup_at: datetime | None = None
    last_used_at: datetime | None = None
    backup_codes_remaining: int = 0


@dataclass
class BackupCode:
    id: int
    code_hash: str


@dataclass
class EmailOtpState:
    identity_id: uuid.UUID
    enabled: bool = False
    enabled_at: datetime | None = None
    otp_hash: str | None = None
    otp_expires_at: datetime | None = None
    otp_attempts: int = 0
    send_count: int = 0
    last_sent_at: datetime | None = None
    rate_limit_reset_at: datetime | None = None

    def clear_pending(self) -> None:
        self.otp_hash = None
        self.otp_expires_at = None
        self.otp_attempts = 0


@dataclass
class AuditEvent:
    action: str
    identity_id: uuid.UUID | None = None
    origin: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None


class CredentialStore(Protocol):
    """Persistence operations required by the authentication core."""

    # Identities
    async def get_identity(self, identity_id: uuid.UUID) -> Identity | None: ...

    async def get_identity_by_email(self, email: str) -> Identity | None: ...

    async def create_identity(
        self,
        email: str,
        password_hash: str,
        password_salt: str,
        mfa_required: bool,
    ) -> Identity: ...

    async def update_password(
        self, identity_id: uuid.UUID, password_hash: str, password_salt: str
    ) -> None: ...

    # Login attempts
    async def get_login_attempt(self, email: str, origin: str) -> LoginAttemptRecord | None: ...

    async def save_login_attempt(self, record: LoginAttemptRecord) -> None: ...

    async def delete_login_attempts(self, email: str, origin: str | None = None) -> int: ...

    async def delete_expired_login_attempts(self, now: datetime) -> int: ...

    # TOTP
    async def get_totp_config(self, identity_id: uuid.UUID) -> TotpConfiguration | None: ...

    async def enable_totp(
        self,
        identity_id: uuid.UUID,
        secret: str,
        backup_code_hashes: list[str],
        enabled_at: datetime,
    ) -> None:
        """Persist secret, enabled flag and backup codes in one unit of work."""
        ...

    async def touch_totp_last_used(self, identity_id: uuid.UUID, used_at: datetime) -> None: ...

    async def disable_totp(self, identity_id: uuid.UUID) -> None: ...

    async def list_backup_codes(self, identity_id: uuid.UUID) -> list[BackupCode]: ...

    async def replace_backup_codes(self, identity_id: uuid.UUID, code_hashes: list[str]) -> None: ...

    async def consume_backup_code(self, identity_id: uuid.UUID, code_id: int) -> bool:
        """Remove a backup code only if it is still present.

        Returns True for exactly one caller per code.
        """
        ...

    # Email OTP
    async def get_email_otp_state(self, identity_id: uuid.UUID) -> EmailOtpState: ...

    async def save_email_otp_state(self, state: EmailOtpState) -> None: ...

    async def reserve_email_otp_attempt(
        self, identity_id: uuid.UUID, otp_hash: str, max_attempts: int
    ) -> int | None:
        """Count one verification attempt against the pending code.

        Returns the new attempt count, or None when that code is no longer
        pending or has already used up max_attempts.
        """
        ...

    async def consume_email_otp_code(self, identity_id: uuid.UUID, otp_hash: str) -> bool:
        """Clear the pending code only if it is still otp_hash.

        Returns True for exactly one caller per code.
        """
        ...

    async def clear_email_otp_state(self, identity_id: uuid.UUID) -> None:
        """Drop every email OTP field, send counters included."""
        ...

    # Audit
    async def add_audit_event(self, event: AuditEvent) -> None: ...
