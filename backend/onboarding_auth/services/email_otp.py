"""
Email one-time-code second factor.

A numeric code is emailed, stored only as a hash, and accepted once before
it expires. Each pending code tolerates a fixed number of wrong guesses and
each account may only request a limited number of codes per window.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

from onboarding_auth.core.config import settings
from onboarding_auth.core.exceptions import (
    MfaAttemptsExhaustedError,
    MfaCodeExpiredError,
    MfaCodeInvalidError,
    MfaSendRateLimitedError,
    MfaStateError,
)
from onboarding_auth.core.security import hash_code, verify_code
from onboarding_auth.repositories.base import CredentialStore, EmailOtpState, Identity
from onboarding_auth.services import audit
from onboarding_auth.services.identity import get_identity_or_raise, reauthenticate
from onboarding_auth.services.notification import METHOD_EMAIL, NotificationDispatcher
from onboarding_auth.utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)

PURPOSE_SETUP = "setup"
PURPOSE_LOGIN = "login"


@dataclass
class OtpDispatch:
    expires_at: datetime
    sends_remaining: int


@dataclass
class EmailOtpStatus:
    enabled: bool
    enabled_at: datetime | None = None
    code_pending: bool = False
    code_expires_at: datetime | None = None


def generate_otp(length: int | None = None) -> str:
    return "".join(secrets.choice("0123456789") for _ in range(length or settings.EMAIL_OTP_LENGTH))


class EmailOtpService:
    def __init__(
        self,
        store: CredentialStore,
        notifier: NotificationDispatcher,
        clock: Clock = utcnow,
    ):
        self.store = store
        self.notifier = notifier
        self.clock = clock
        self.expiry = timedelta(minutes=settings.EMAIL_OTP_EXPIRY_MINUTES)
        self.max_attempts = settings.EMAIL_OTP_MAX_ATTEMPTS
        self.max_sends = settings.EMAIL_OTP_RATE_LIMIT_MAX_SENDS
        self.send_window = timedelta(minutes=settings.EMAIL_OTP_RATE_LIMIT_WINDOW_MINUTES)

    async def _issue(self, identity: Identity, state: EmailOtpState, purpose: str) -> OtpDispatch:
        now = self.clock()

        # Fixed window: opens on the first send, resets once its reset time passes
        if state.rate_limit_reset_at is None or now >= state.rate_limit_reset_at:
            state.send_count = 0
            state.rate_limit_reset_at = now + self.send_window

        if state.send_count >= self.max_sends:
            await audit.audit_log(
                self.store,
                identity.id,
                audit.EMAIL_RATE_LIMITED,
                {"purpose": purpose, "retry_after": state.rate_limit_reset_at.isoformat()},
            )
            logger.warning(f"Email OTP send rate limit hit for {identity.id}")
            raise MfaSendRateLimitedError(retry_after=state.rate_limit_reset_at)

        code = generate_otp()
        state.otp_hash = hash_code(code)
        state.otp_expires_at = now + self.expiry
        state.otp_attempts = 0
        state.send_count += 1
        state.last_sent_at = now
        await self.store.save_email_otp_state(state)

        self.notifier.send_verification_code(
            identity.email,
            code,
            purpose=purpose,
            expires_minutes=settings.EMAIL_OTP_EXPIRY_MINUTES,
        )
        await audit.audit_log(self.store, identity.id, audit.EMAIL_OTP_SENT, {"purpose": purpose})
        return OtpDispatch(
            expires_at=state.otp_expires_at,
            sends_remaining=self.max_sends - state.send_count,
        )

    async def _redeem_code(self, state: EmailOtpState, code: str) -> None:
        """
        Check a submitted code against the pending one and use it up.

        Order: presence, expiry, attempt cap, then the hash comparison. The
        attempt is reserved in the store before comparing, and a matching
        code is only accepted by the request that clears it.
        """
        now = self.clock()

        if not state.otp_hash or state.otp_expires_at is None:
            raise MfaCodeExpiredError()

        if now >= state.otp_expires_at:
            await self.store.consume_email_otp_code(state.identity_id, state.otp_hash)
            raise MfaCodeExpiredError()

        attempts = await self.store.reserve_email_otp_attempt(
            state.identity_id, state.otp_hash, self.max_attempts
        )
        if attempts is None:
            # Exhausted codes stay rejected even if the guess is right
            if await self.store.consume_email_otp_code(state.identity_id, state.otp_hash):
                raise MfaAttemptsExhaustedError()
            # Used or replaced since it was read
            raise MfaCodeExpiredError()

        if not verify_code((code or "").strip(), state.otp_hash):
            raise MfaCodeInvalidError(remaining_attempts=max(0, self.max_attempts - attempts))

        if not await self.store.consume_email_otp_code(state.identity_id, state.otp_hash):
            # Lost race: another request used the same code first
            raise MfaCodeInvalidError()

    async def send_setup_otp(self, identity: Identity) -> OtpDispatch:
        state = await self.store.get_email_otp_state(identity.id)
        if state.enabled:
            raise MfaStateError("Email verification is already enabled")
        return await self._issue(identity, state, PURPOSE_SETUP)

    async def send_login_otp(self, identity: Identity) -> OtpDispatch:
        state = await self.store.get_email_otp_state(identity.id)
        if not state.enabled:
            raise MfaStateError("Email verification is not enabled")
        return await self._issue(identity, state, PURPOSE_LOGIN)

    async def verify_setup_otp(self, identity: Identity, code: str, password: str) -> None:
        await reauthenticate(self.store, identity.id, password)

        state = await self.store.get_email_otp_state(identity.id)
        if state.enabled:
            raise MfaStateError("Email verification is already enabled")

        await self._redeem_code(state, code)

        # Re-read so the send window counted by concurrent requests is kept
        state = await self.store.get_email_otp_state(identity.id)
        state.enabled = True
        state.enabled_at = self.clock()
        await self.store.save_email_otp_state(state)
        await audit.audit_log(self.store, identity.id, audit.EMAIL_OTP_ENABLED)
        self.notifier.send_mfa_method_changed(identity.email, METHOD_EMAIL, "enabled")
        logger.info(f"Email OTP enabled for {identity.id}")

    async def verify_login_otp(self, identity_id: UUID, code: str) -> None:
        state = await self.store.get_email_otp_state(identity_id)
        if not state.enabled:
            raise MfaStateError("Email verification is not enabled")

        await self._redeem_code(state, code)

    async def disable(self, identity_id: UUID, password: str) -> None:
        """
        Turn email verification off.

        Clears every email OTP field, send counters included. Refused when
        it is the only enabled method on an account that must keep MFA.
        """
        identity = await reauthenticate(self.store, identity_id, password)
        if not identity.email_otp_enabled:
            raise MfaStateError("Email verification is not enabled")
        if identity.mfa_required and not identity.totp_enabled:
            raise MfaStateError(
                "Email verification is your only MFA method. Enable an authenticator app first."
            )

        await self.store.clear_email_otp_state(identity_id)
        await audit.audit_log(self.store, identity_id, audit.EMAIL_OTP_DISABLED)
        self.notifier.send_mfa_method_changed(identity.email, METHOD_EMAIL, "disabled")
        logger.info(f"Email OTP disabled for {identity_id}")

    async def status(self, identity_id: UUID) -> EmailOtpStatus:
        await get_identity_or_raise(self.store, identity_id)
        state = await self.store.get_email_otp_state(identity_id)
        pending = bool(state.otp_hash) and state.otp_expires_at is not None and state.otp_expires_at > self.clock()
        return EmailOtpStatus(
            enabled=state.enabled,
            enabled_at=state.enabled_at,
            code_pending=pending,
            code_expires_at=state.otp_expires_at if pending else None,
        )
