"""
Login orchestration.

Ties the lockout tracker, password verification and the two MFA engines into
one login flow:

    CHECK_CREDENTIALS -> LOCKED | INVALID_CREDENTIALS
                       | MFA_REQUIRED | MFA_SETUP_REQUIRED | AUTHENTICATED

MFA_REQUIRED is a suspend point. The caller resumes it with verify_mfa once
the user has a code. MFA failures never count against the login lockout;
each engine bounds guessing on its own.
"""

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID

from onboarding_auth.core.config import settings
from onboarding_auth.core.exceptions import (
    MfaAttemptsExhaustedError,
    MfaCodeExpiredError,
    MfaCodeInvalidError,
    MfaStateError,
    PasswordPolicyError,
)
from onboarding_auth.core.security import (
    get_password_hash,
    validate_password_complexity,
    verify_password,
)
from onboarding_auth.repositories.base import CredentialStore, Identity
from onboarding_auth.services import audit
from onboarding_auth.services.email_otp import EmailOtpService, EmailOtpStatus, OtpDispatch
from onboarding_auth.services.identity import get_identity_or_raise, reauthenticate
from onboarding_auth.services.lockout import LockoutTracker, normalize_identity_key
from onboarding_auth.services.notification import NotificationDispatcher
from onboarding_auth.services.totp import (
    TotpEnrollment,
    TotpService,
    TotpStatus,
    TotpVerification,
    looks_like_backup_code,
)
from onboarding_auth.utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)


class LoginStatus(str, enum.Enum):
    AUTHENTICATED = "authenticated"
    MFA_REQUIRED = "mfa_required"
    MFA_SETUP_REQUIRED = "mfa_setup_required"
    INVALID_CREDENTIALS = "invalid_credentials"
    LOCKED = "locked"


class MfaMethod(str, enum.Enum):
    TOTP = "totp"
    EMAIL = "email"


class MfaFailureReason(str, enum.Enum):
    INVALID_CODE = "invalid_code"
    CODE_EXPIRED = "code_expired"
    ATTEMPTS_EXHAUSTED = "attempts_exhausted"
    METHOD_REQUIRED = "method_required"
    METHOD_NOT_ENABLED = "method_not_enabled"
    NOT_FOUND = "not_found"


@dataclass
class LoginChallenge:
    """Transient hand-off between the password check and verify_mfa."""

    identity_id: UUID
    methods: frozenset[MfaMethod]
    issued_at: datetime


@dataclass
class LoginResult:
    status: LoginStatus
    identity_id: UUID | None = None
    challenge: LoginChallenge | None = None
    retry_after_seconds: int | None = None
    remaining_attempts: int | None = None

    @property
    def available_methods(self) -> list[MfaMethod]:
        if self.challenge is None:
            return []
        return sorted(self.challenge.methods, key=lambda m: m.value)


@dataclass
class MfaVerificationResult:
    success: bool
    identity_id: UUID
    method: MfaMethod | None = None
    used_backup_code: bool = False
    backup_codes_remaining: int | None = None
    failure: MfaFailureReason | None = None
    remaining_attempts: int | None = None


@dataclass
class MfaStatus:
    mfa_required: bool
    setup_required: bool
    totp: TotpStatus
    email: EmailOtpStatus
    methods: list[MfaMethod] = field(default_factory=list)


def enabled_methods(identity: Identity) -> frozenset[MfaMethod]:
    methods = set()
    if identity.totp_enabled:
        methods.add(MfaMethod.TOTP)
    if identity.email_otp_enabled:
        methods.add(MfaMethod.EMAIL)
    return frozenset(methods)


class AuthService:
    def __init__(
        self,
        store: CredentialStore,
        notifier: NotificationDispatcher,
        clock: Clock = utcnow,
        lockout: LockoutTracker | None = None,
        totp: TotpService | None = None,
        email_otp: EmailOtpService | None = None,
    ):
        self.store = store
        self.notifier = notifier
        self.clock = clock
        self.lockout = lockout or LockoutTracker(store, clock=clock)
        self.totp = totp or TotpService(store, notifier, clock=clock)
        self.email_otp = email_otp or EmailOtpService(store, notifier, clock=clock)

    async def login(self, email: str, password: str, origin: str) -> LoginResult:
        key = normalize_identity_key(email)

        # Locked buckets fail fast without paying for a hash
        retry_after = await self.lockout.lockout_remaining_seconds(key, origin)
        if retry_after:
            logger.info(f"Rejected login for locked bucket from {origin}")
            return LoginResult(status=LoginStatus.LOCKED, retry_after_seconds=retry_after)

        identity = await self.store.get_identity_by_email(key)
        if identity is None:
            # Same cost as a real check so unknown emails are not distinguishable
            verify_password(password, None, None)
            valid = False
        else:
            valid = verify_password(password, identity.password_hash, identity.password_salt)
            valid = valid and identity.is_active

        if not valid:
            return await self._login_failed(key, origin, identity)

        await self.lockout.record_success(key, origin)
        methods = enabled_methods(identity)

        if methods:
            logger.info(f"Password accepted for {identity.id}, MFA challenge issued")
            return LoginResult(
                status=LoginStatus.MFA_REQUIRED,
                identity_id=identity.id,
                challenge=LoginChallenge(identity.id, methods, issued_at=self.clock()),
            )

        if identity.mfa_required:
            await audit.audit_log(
                self.store, identity.id, audit.LOGIN_SUCCEEDED, {"mfa_setup_required": True}, origin
            )
            return LoginResult(status=LoginStatus.MFA_SETUP_REQUIRED, identity_id=identity.id)

        await audit.audit_log(self.store, identity.id, audit.LOGIN_SUCCEEDED, {"mfa": False}, origin)
        return LoginResult(status=LoginStatus.AUTHENTICATED, identity_id=identity.id)

    async def _login_failed(self, key: str, origin: str, identity: Identity | None) -> LoginResult:
        identity_id = identity.id if identity else None
        record = await self.lockout.record_failure(key, origin, identity_id=identity_id)
        remaining = max(0, self.lockout.max_attempts - record.attempt_count)

        await audit.audit_log(
            self.store,
            identity_id,
            audit.LOGIN_FAILED,
            {"email": key, "attempt_count": record.attempt_count},
            origin,
        )

        # This failure is the one that tripped the lockout
        if record.lockout_until is not None and record.attempt_count == self.lockout.max_attempts:
            await audit.audit_log(
                self.store,
                identity_id,
                audit.LOCKOUT,
                {"email": key, "lockout_until": record.lockout_until.isoformat()},
                origin,
            )
            if identity is not None:
                self.notifier.send_security_alert(
                    identity.email, "your account was locked after repeated failed sign-ins", origin
                )

        return LoginResult(status=LoginStatus.INVALID_CREDENTIALS, remaining_attempts=remaining)

    def _select_method(self, identity: Identity, method: MfaMethod | None) -> MfaMethod | MfaFailureReason:
        methods = enabled_methods(identity)
        if not methods:
            return MfaFailureReason.METHOD_NOT_ENABLED
        if method is None:
            if len(methods) > 1:
                return MfaFailureReason.METHOD_REQUIRED
            return next(iter(methods))
        if method not in methods:
            return MfaFailureReason.METHOD_NOT_ENABLED
        return method

    async def verify_mfa(
        self,
        identity_id: UUID,
        code: str,
        method: MfaMethod | None = None,
    ) -> MfaVerificationResult:
        """
        Complete a login that stopped at MFA_REQUIRED.

        The method must be named when both are enabled. Failures come back as
        a result with a reason and never touch the login lockout counters.
        """
        identity = await self.store.get_identity(identity_id)
        if identity is None or not identity.is_active:
            return MfaVerificationResult(False, identity_id, failure=MfaFailureReason.NOT_FOUND)

        selected = self._select_method(identity, method)
        if isinstance(selected, MfaFailureReason):
            return MfaVerificationResult(False, identity_id, method=method, failure=selected)

        try:
            if selected is MfaMethod.TOTP:
                verification = await self.totp.verify_for_login(identity_id, code)
            elif identity.totp_enabled and looks_like_backup_code(code):
                # Backup codes are accepted whichever method was chosen
                verification = await self.totp.redeem_backup_code(identity_id, code)
            else:
                await self.email_otp.verify_login_otp(identity_id, code)
                verification = TotpVerification()
            result = MfaVerificationResult(
                True,
                identity_id,
                method=selected,
                used_backup_code=verification.used_backup_code,
                backup_codes_remaining=verification.backup_codes_remaining,
            )
        except MfaCodeInvalidError as e:
            result = MfaVerificationResult(
                False,
                identity_id,
                method=selected,
                failure=MfaFailureReason.INVALID_CODE,
                remaining_attempts=e.remaining_attempts,
            )
        except MfaCodeExpiredError:
            result = MfaVerificationResult(
                False, identity_id, method=selected, failure=MfaFailureReason.CODE_EXPIRED
            )
        except MfaAttemptsExhaustedError:
            result = MfaVerificationResult(
                False, identity_id, method=selected, failure=MfaFailureReason.ATTEMPTS_EXHAUSTED
            )
        except MfaStateError:
            result = MfaVerificationResult(
                False, identity_id, method=selected, failure=MfaFailureReason.METHOD_NOT_ENABLED
            )

        if result.success:
            await audit.audit_log(
                self.store,
                identity_id,
                audit.MFA_VERIFIED,
                {"method": selected.value, "backup_code": result.used_backup_code},
            )
        else:
            await audit.audit_log(
                self.store,
                identity_id,
                audit.MFA_FAILED,
                {"method": selected.value, "reason": result.failure.value},
            )
        return result

    async def send_login_otp(self, identity_id: UUID) -> OtpDispatch:
        identity = await get_identity_or_raise(self.store, identity_id)
        return await self.email_otp.send_login_otp(identity)

    # MFA management

    async def enroll_totp(self, identity_id: UUID) -> TotpEnrollment:
        identity = await get_identity_or_raise(self.store, identity_id)
        if identity.totp_enabled:
            raise MfaStateError("Two-factor authentication is already enabled. Disable it first to set up again.")
        return self.totp.generate_enrollment(identity.email)

    async def confirm_totp(self, identity_id: UUID, secret: str, code: str) -> list[str]:
        return await self.totp.enable_with_verification(identity_id, secret, code)

    async def enroll_email_otp(self, identity_id: UUID, password: str) -> OtpDispatch:
        identity = await reauthenticate(self.store, identity_id, password)
        return await self.email_otp.send_setup_otp(identity)

    async def confirm_email_otp(self, identity_id: UUID, code: str, password: str) -> None:
        identity = await get_identity_or_raise(self.store, identity_id)
        await self.email_otp.verify_setup_otp(identity, code, password)

    async def disable_totp(self, identity_id: UUID, password: str) -> None:
        await self.totp.disable(identity_id, password)

    async def disable_email_otp(self, identity_id: UUID, password: str) -> None:
        await self.email_otp.disable(identity_id, password)

    async def regenerate_backup_codes(self, identity_id: UUID, password: str) -> list[str]:
        return await self.totp.regenerate_backup_codes(identity_id, password)

    async def mfa_status(self, identity_id: UUID) -> MfaStatus:
        identity = await get_identity_or_raise(self.store, identity_id)
        methods = enabled_methods(identity)
        return MfaStatus(
            mfa_required=identity.mfa_required,
            setup_required=identity.mfa_required and not methods,
            totp=await self.totp.status(identity_id),
            email=await self.email_otp.status(identity_id),
            methods=sorted(methods, key=lambda m: m.value),
        )

    # Account management

    async def register(self, email: str, password: str, mfa_required: bool | None = None) -> Identity:
        """Create an identity. Password policy is enforced by the outer signup flow."""
        password_hash, password_salt = get_password_hash(password)
        identity = await self.store.create_identity(
            normalize_identity_key(email),
            password_hash,
            password_salt,
            mfa_required=settings.MFA_REQUIRED_FOR_NEW_ACCOUNTS if mfa_required is None else mfa_required,
        )
        await audit.audit_log(self.store, identity.id, audit.IDENTITY_REGISTERED)
        return identity

    async def change_password(self, identity_id: UUID, current_password: str, new_password: str) -> None:
        identity = await reauthenticate(self.store, identity_id, current_password)

        is_valid, error_msg = validate_password_complexity(new_password, user_email=identity.email)
        if not is_valid:
            raise PasswordPolicyError(error_msg)

        if verify_password(new_password, identity.password_hash, identity.password_salt):
            raise PasswordPolicyError("New password must be different from your current password")

        password_hash, password_salt = get_password_hash(new_password)
        await self.store.update_password(identity_id, password_hash, password_salt)
        await audit.audit_log(self.store, identity_id, audit.PASSWORD_CHANGED)
        self.notifier.send_security_alert(identity.email, "your password was changed")

    async def unlock(self, email: str, origin: str | None = None) -> int:
        deleted = await self.lockout.unlock(email, origin)
        await audit.audit_log(
            self.store, None, audit.UNLOCK, {"email": normalize_identity_key(email), "cleared": deleted}, origin
        )
        return deleted
