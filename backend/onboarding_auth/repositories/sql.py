"""
SQLAlchemy-backed credential store.

Every mutating method commits its own unit of work. Driver and connection
failures surface as ConfigurationError so they are never mistaken for an
authentication failure.
"""

import functools
import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import ParamSpec, TypeVar

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from onboarding_auth.core.exceptions import (
    ConfigurationError,
    IdentityExistsError,
    IdentityNotFoundError,
)
from onboarding_auth.models.audit_log import AuditLog
from onboarding_auth.models.backup_code import BackupCode as BackupCodeRow
from onboarding_auth.models.email_otp import EmailOtpState as EmailOtpRow
from onboarding_auth.models.identity import Identity as IdentityRow
from onboarding_auth.models.login_attempt import LoginAttempt
from onboarding_auth.repositories.base import (
    AuditEvent,
    BackupCode,
    EmailOtpState,
    Identity,
    LoginAttemptRecord,
    TotpConfiguration,
)
from onboarding_auth.utils.clock import as_utc, utcnow

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


def _store_call(func_: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
    """Roll back and re-raise database failures as ConfigurationError."""

    @functools.wraps(func_)
    async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
        store = args[0]
        try:
            return await func_(*args, **kwargs)
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"Credential store call {func_.__name__} failed: {type(e).__name__}")
            try:
                await store.session.rollback()
            except (SQLAlchemyError, OSError):
                pass
            raise ConfigurationError(type(e).__name__) from e

    return wrapper


class SqlAlchemyCredentialStore:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def _email_otp_row(self, identity_id: uuid.UUID) -> EmailOtpRow | None:
        result = await self.session.execute(
            select(EmailOtpRow).where(EmailOtpRow.identity_id == identity_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _to_identity(self, row: IdentityRow) -> Identity:
        email_row = await self._email_otp_row(row.id)
        return Identity(
            id=row.id,
            email=row.email,
            password_hash=row.password_hash,
            password_salt=row.password_salt,
            is_active=row.is_active,
            mfa_required=row.mfa_required,
            totp_enabled=row.totp_enabled,
            email_otp_enabled=bool(email_row and email_row.enabled),
            created_at=as_utc(row.created_at),
        )

    async def _require_row(self, identity_id: uuid.UUID) -> IdentityRow:
        row = await self.session.get(IdentityRow, identity_id, populate_existing=True)
        if row is None:
            raise IdentityNotFoundError()
        return row

    # Identities

    @_store_call
    async def get_identity(self, identity_id: uuid.UUID) -> Identity | None:
        row = await self.session.get(IdentityRow, identity_id, populate_existing=True)
        return await self._to_identity(row) if row else None

    @_store_call
    async def get_identity_by_email(self, email: str) -> Identity | None:
        result = await self.session.execute(
            select(IdentityRow).where(IdentityRow.email == email.lower())
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        return await self._to_identity(row) if row else None

    @_store_call
    async def create_identity(
        self,
        email: str,
        password_hash: str,
        password_salt: str,
        mfa_required: bool,
    ) -> Identity:
        row = IdentityRow(
            email=email.lower(),
            password_hash=password_hash,
            password_salt=password_salt,
            mfa_required=mfa_required,
        )
        self.session.add(row)
        try:
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            raise IdentityExistsError()
        await self.session.refresh(row)
        return await self._to_identity(row)

    @_store_call
    async def update_password(self, identity_id: uuid.UUID, password_hash: str, password_salt: str) -> None:
        row = await self._require_row(identity_id)
        row.password_hash = password_hash
        row.password_salt = password_salt
        await self.session.commit()

    # Login attempts

    async def _attempt_row(self, email: str, origin: str) -> LoginAttempt | None:
        result = await self.session.execute(
            select(LoginAttempt).where(
                LoginAttempt.email == email,
                LoginAttempt.ip_address == origin,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @_store_call
    async def get_login_attempt(self, email: str, origin: str) -> LoginAttemptRecord | None:
        row = await self._attempt_row(email, origin)
        if row is None:
            return None
        return LoginAttemptRecord(
            email=row.email,
            origin=row.ip_address,
            attempt_count=row.attempt_count,
            last_attempt_at=as_utc(row.last_attempt_at),
            lockout_until=as_utc(row.lockout_until),
            identity_id=row.identity_id,
        )

    @_store_call
    async def save_login_attempt(self, record: LoginAttemptRecord) -> None:
        row = await self._attempt_row(record.email, record.origin)
        if row is None:
            row = LoginAttempt(email=record.email, ip_address=record.origin)
            self.session.add(row)
            try:
                await self.session.flush()
            except IntegrityError:
                # A concurrent failure created the bucket first
                await self.session.rollback()
                row = await self._attempt_row(record.email, record.origin)
                if row is None:
                    raise
        row.attempt_count = record.attempt_count
        row.last_attempt_at = record.last_attempt_at
        row.lockout_until = record.lockout_until
        row.identity_id = record.identity_id
        await self.session.commit()

    @_store_call
    async def delete_login_attempts(self, email: str, origin: str | None = None) -> int:
        stmt = delete(LoginAttempt).where(LoginAttempt.email == email)
        if origin is not None:
            stmt = stmt.where(LoginAttempt.ip_address == origin)
        result = await self.session.execute(stmt)
        await self.session.commit()
        return result.rowcount

    @_store_call
    async def delete_expired_login_attempts(self, now: datetime) -> int:
        result = await self.session.execute(
            delete(LoginAttempt).where(
                LoginAttempt.lockout_until.is_not(None),
                LoginAttempt.lockout_until <= now,
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return result.rowcount

    # TOTP

    @_store_call
    async def get_totp_config(self, identity_id: uuid.UUID) -> TotpConfiguration | None:
        row = await self.session.get(IdentityRow, identity_id, populate_existing=True)
        if row is None or not row.totp_secret:
            return None
        remaining = await self.session.scalar(
            select(func.count()).select_from(BackupCodeRow).where(
                BackupCodeRow.identity_id == identity_id
            )
        )
        return TotpConfiguration(
            identity_id=identity_id,
            secret=row.totp_secret,
            enabled=row.totp_enabled,
            setup_at=as_utc(row.totp_setup_at),
            last_used_at=as_utc(row.totp_last_used_at),
            backup_codes_remaining=remaining or 0,
        )

    @_store_call
    async def enable_totp(
        self,
        identity_id: uuid.UUID,
        secret: str,
        backup_code_hashes: list[str],
        enabled_at: datetime,
    ) -> None:
        row = await self._require_row(identity_id)
        row.totp_secret = secret
        row.totp_enabled = True
        row.totp_setup_at = enabled_at
        row.totp_last_used_at = None
        await self.session.execute(
            delete(BackupCodeRow).where(BackupCodeRow.identity_id == identity_id)
        )
        self.session.add_all(
            BackupCodeRow(identity_id=identity_id, code_hash=h) for h in backup_code_hashes
        )
        await self.session.commit()

    @_store_call
    async def touch_totp_last_used(self, identity_id: uuid.UUID, used_at: datetime) -> None:
        await self.session.execute(
            update(IdentityRow)
            .where(IdentityRow.id == identity_id)
            .values(totp_last_used_at=used_at)
        )
        await self.session.commit()

    @_store_call
    async def disable_totp(self, identity_id: uuid.UUID) -> None:
        await self.session.execute(
            update(IdentityRow)
            .where(IdentityRow.id == identity_id)
            .values(
                totp_secret=None,
                totp_enabled=False,
                totp_setup_at=None,
                totp_last_used_at=None,
            )
        )
        await self.session.execute(
            delete(BackupCodeRow).where(BackupCodeRow.identity_id == identity_id)
        )
        await self.session.commit()

    @_store_call
    async def list_backup_codes(self, identity_id: uuid.UUID) -> list[BackupCode]:
        result = await self.session.execute(
            select(BackupCodeRow.id, BackupCodeRow.code_hash)
            .where(BackupCodeRow.identity_id == identity_id)
            .order_by(BackupCodeRow.id)
        )
        return [BackupCode(id=code_id, code_hash=code_hash) for code_id, code_hash in result.all()]

    @_store_call
    async def replace_backup_codes(self, identity_id: uuid.UUID, code_hashes: list[str]) -> None:
        await self.session.execute(
            delete(BackupCodeRow).where(BackupCodeRow.identity_id == identity_id)
        )
        self.session.add_all(
            BackupCodeRow(identity_id=identity_id, code_hash=h) for h in code_hashes
        )
        await self.session.commit()

    @_store_call
    async def consume_backup_code(self, identity_id: uuid.UUID, code_id: int) -> bool:
        # Only one concurrent DELETE can match the row
        result = await self.session.execute(
            delete(BackupCodeRow).where(
                BackupCodeRow.id == code_id,
                BackupCodeRow.identity_id == identity_id,
            )
        )
        await self.session.commit()
        return result.rowcount == 1

    # Email OTP

    @_store_call
    async def get_email_otp_state(self, identity_id: uuid.UUID) -> EmailOtpState:
        row = await self._email_otp_row(identity_id)
        if row is None:
            return EmailOtpState(identity_id=identity_id)
        return EmailOtpState(
            identity_id=identity_id,
            enabled=row.enabled,
            enabled_at=as_utc(row.enabled_at),
            otp_hash=row.otp_hash,
            otp_expires_at=as_utc(row.otp_expires_at),
            otp_attempts=row.otp_attempts,
            send_count=row.send_count,
            last_sent_at=as_utc(row.last_sent_at),
            rate_limit_reset_at=as_utc(row.rate_limit_reset_at),
        )

    @_store_call
    async def save_email_otp_state(self, state: EmailOtpState) -> None:
        await self._require_row(state.identity_id)
        row = await self._email_otp_row(state.identity_id)
        if row is None:
            row = EmailOtpRow(identity_id=state.identity_id)
            self.session.add(row)
            try:
                await self.session.flush()
            except IntegrityError:
                await self.session.rollback()
                row = await self._email_otp_row(state.identity_id)
                if row is None:
                    raise
        row.enabled = state.enabled
        row.enabled_at = state.enabled_at
        row.otp_hash = state.otp_hash
        row.otp_expires_at = state.otp_expires_at
        row.otp_attempts = state.otp_attempts
        row.send_count = state.send_count
        row.last_sent_at = state.last_sent_at
        row.rate_limit_reset_at = state.rate_limit_reset_at
        await self.session.commit()

    @_store_call
    async def reserve_email_otp_attempt(
        self, identity_id: uuid.UUID, otp_hash: str, max_attempts: int
    ) -> int | None:
        # The cap lives in the WHERE clause so parallel guesses cannot overshoot it
        result = await self.session.execute(
            update(EmailOtpRow)
            .where(
                EmailOtpRow.identity_id == identity_id,
                EmailOtpRow.otp_hash == otp_hash,
                EmailOtpRow.otp_attempts < max_attempts,
            )
            .values(otp_attempts=EmailOtpRow.otp_attempts + 1)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        if result.rowcount != 1:
            return None
        attempts = await self.session.scalar(
            select(EmailOtpRow.otp_attempts).where(EmailOtpRow.identity_id == identity_id)
        )
        return attempts or max_attempts

    @_store_call
    async def consume_email_otp_code(self, identity_id: uuid.UUID, otp_hash: str) -> bool:
        result = await self.session.execute(
            update(EmailOtpRow)
            .where(
                EmailOtpRow.identity_id == identity_id,
                EmailOtpRow.otp_hash == otp_hash,
            )
            .values(otp_hash=None, otp_expires_at=None, otp_attempts=0)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return result.rowcount == 1

    @_store_call
    async def clear_email_otp_state(self, identity_id: uuid.UUID) -> None:
        await self.session.execute(
            delete(EmailOtpRow).where(EmailOtpRow.identity_id == identity_id)
        )
        await self.session.commit()

    # Audit

    @_store_call
    async def add_audit_event(self, event: AuditEvent) -> None:
        self.session.add(
            AuditLog(
                identity_id=event.identity_id,
                action=event.action,
                origin=event.origin,
                details=event.details,
                created_at=event.created_at or utcnow(),
            )
        )
        await self.session.commit()
