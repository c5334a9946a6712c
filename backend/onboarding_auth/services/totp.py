"""
TOTP (Time-based One-Time Password) service.

Handles authenticator-app enrollment, login verification, and backup code
management.
"""

import logging
import re
import secrets
import string
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

import pyotp

from onboarding_auth.core.config import settings
from onboarding_auth.core.exceptions import MfaCodeInvalidError, MfaStateError
from onboarding_auth.core.security import hash_code, verify_code
from onboarding_auth.repositories.base import CredentialStore
from onboarding_auth.services import audit
from onboarding_auth.services.identity import get_identity_or_raise, reauthenticate
from onboarding_auth.services.notification import METHOD_TOTP, NotificationDispatcher
from onboarding_auth.utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)

SECRET_LENGTH = 32
BACKUP_CODE_LENGTH = 8
BACKUP_CODE_ALPHABET = string.ascii_uppercase + string.digits

_BASE32_RE = re.compile(r"^[A-Z2-7]+=*$")


@dataclass
class TotpEnrollment:
    secret: str
    provisioning_uri: str
    manual_key: str


@dataclass
class TotpVerification:
    used_backup_code: bool = False
    backup_codes_remaining: int | None = None


@dataclass
class TotpStatus:
    enabled: bool
    setup_at: datetime | None = None
    last_used_at: datetime | None = None
    backup_codes_remaining: int = 0


def generate_totp_secret() -> str:
    """
    Generate a new TOTP secret.

    Returns:
        32-character base32 encoded secret (160 bits)
    """
    return pyotp.random_base32(length=SECRET_LENGTH)


def is_valid_totp_secret(secret: str) -> bool:
    return bool(secret) and len(secret.rstrip("=")) >= SECRET_LENGTH and bool(_BASE32_RE.match(secret))


def format_manual_key(secret: str) -> str:
    """Group the secret in blocks of four for manual entry."""
    return " ".join(secret[i:i + 4] for i in range(0, len(secret), 4))


def generate_qr_uri(secret: str, email: str, issuer: str | None = None) -> str:
    """
    Generate an otpauth:// URI for QR code display.

    Args:
        secret: TOTP secret
        email: Account label shown in the authenticator app
        issuer: Application name (defaults to MFA_ISSUER)

    Returns:
        otpauth:// URI string
    """
    totp = pyotp.TOTP(secret)
    return totp.provisioning_uri(name=email, issuer_name=issuer or settings.MFA_ISSUER)


def verify_totp_code(secret: str, code: str, for_time: datetime | None = None) -> bool:
    """
    Verify a TOTP code.

    Args:
        secret: Account's TOTP secret
        code: 6-digit code to verify
        for_time: Moment to verify against (defaults to now)

    Returns:
        True if code matches the current step or one step either side
    """
    code = (code or "").strip()
    if len(code) != 6 or not code.isdigit():
        return False

    totp = pyotp.TOTP(secret)
    return totp.verify(code, for_time=for_time or utcnow(), valid_window=settings.TOTP_VALID_WINDOW)


def generate_backup_codes(count: int | None = None) -> list[str]:
    """
    Generate backup codes for 2FA recovery.

    Args:
        count: Number of codes to generate (defaults to BACKUP_CODE_COUNT)

    Returns:
        List of 8-character alphanumeric codes formatted as XXXX-XXXX
    """
    codes = []
    for _ in range(count or settings.BACKUP_CODE_COUNT):
        raw = "".join(secrets.choice(BACKUP_CODE_ALPHABET) for _ in range(BACKUP_CODE_LENGTH))
        codes.append(f"{raw[:4]}-{raw[4:]}")
    return codes


def normalize_backup_code(code: str) -> str:
    """Uppercase and drop dashes and whitespace."""
    return re.sub(r"[\s-]", "", code or "").upper()


def hash_backup_code(code: str) -> str:
    return hash_code(normalize_backup_code(code))


def verify_backup_code(code: str, hashed: str) -> bool:
    return verify_code(normalize_backup_code(code), hashed)


def looks_like_backup_code(code: str) -> bool:
    """Eight characters, with a dash or at least one letter."""
    normalized = normalize_backup_code(code)
    return len(normalized) == BACKUP_CODE_LENGTH and ("-" in (code or "") or not normalized.isdigit())


class TotpService:
    """
    Authenticator-app second factor.

    The enrollment secret is not persisted until the first code has been
    verified: generate_enrollment hands it to the client, and
    enable_with_verification receives it back.
    """

    def __init__(self, store: CredentialStore, notifier: NotificationDispatcher, clock: Clock = utcnow):
        self.store = store
        self.notifier = notifier
        self.clock = clock

    def generate_enrollment(self, account_label: str) -> TotpEnrollment:
        secret = generate_totp_secret()
        return TotpEnrollment(
            secret=secret,
            provisioning_uri=generate_qr_uri(secret, account_label),
            manual_key=format_manual_key(secret),
        )

    async def enable_with_verification(self, identity_id: UUID, secret: str, code: str) -> list[str]:
        """
        Verify the first code from a new authenticator and enable TOTP.

        Returns:
            Backup codes in clear text. They are not retrievable afterwards.
        """
        identity = await get_identity_or_raise(self.store, identity_id)
        if identity.totp_enabled:
            raise MfaStateError("Two-factor authentication is already enabled")

        secret = (secret or "").strip().upper()
        if not is_valid_totp_secret(secret):
            raise MfaStateError("Invalid setup secret. Please start setup again.")

        if not verify_totp_code(secret, code, for_time=self.clock()):
            raise MfaCodeInvalidError()

        backup_codes = generate_backup_codes()
        await self.store.enable_totp(
            identity_id,
            secret,
            [hash_backup_code(c) for c in backup_codes],
            enabled_at=self.clock(),
        )
        await audit.audit_log(
            self.store, identity_id, audit.TOTP_ENABLED, {"backup_codes": len(backup_codes)}
        )
        self.notifier.send_mfa_method_changed(identity.email, METHOD_TOTP, "enabled")
        logger.info(f"TOTP enabled for {identity_id}")
        return backup_codes

    async def verify_for_login(self, identity_id: UUID, code: str) -> TotpVerification:
        """Accept a current TOTP code, or fall back to a single-use backup code."""
        config = await self.store.get_totp_config(identity_id)
        if config is None or not config.enabled:
            raise MfaStateError("Two-factor authentication is not enabled")

        now = self.clock()
        if verify_totp_code(config.secret, code, for_time=now):
            await self.store.touch_totp_last_used(identity_id, now)
            return TotpVerification()

        return await self.redeem_backup_code(identity_id, code)

    async def redeem_backup_code(self, identity_id: UUID, code: str) -> TotpVerification:
        normalized = normalize_backup_code(code)
        if len(normalized) != BACKUP_CODE_LENGTH:
            raise MfaCodeInvalidError()

        now = self.clock()
        for backup in await self.store.list_backup_codes(identity_id):
            if not verify_code(normalized, backup.code_hash):
                continue
            # Lost race: another request consumed the same code first
            if not await self.store.consume_backup_code(identity_id, backup.id):
                break
            await self.store.touch_totp_last_used(identity_id, now)
            remaining = len(await self.store.list_backup_codes(identity_id))
            await audit.audit_log(
                self.store, identity_id, audit.BACKUP_CODE_USED, {"remaining": remaining}
            )
            logger.warning(f"Backup code used for {identity_id}, {remaining} remaining")
            return TotpVerification(used_backup_code=True, backup_codes_remaining=remaining)

        raise MfaCodeInvalidError()

    async def disable(self, identity_id: UUID, password: str) -> None:
        identity = await reauthenticate(self.store, identity_id, password)
        if not identity.totp_enabled:
            raise MfaStateError("Two-factor authentication is not enabled")

        await self.store.disable_totp(identity_id)
        await audit.audit_log(self.store, identity_id, audit.TOTP_DISABLED)
        self.notifier.send_mfa_method_changed(identity.email, METHOD_TOTP, "disabled")
        logger.info(f"TOTP disabled for {identity_id}")

    async def regenerate_backup_codes(self, identity_id: UUID, password: str) -> list[str]:
        identity = await reauthenticate(self.store, identity_id, password)
        if not identity.totp_enabled:
            raise MfaStateError("Two-factor authentication is not enabled")

        backup_codes = generate_backup_codes()
        await self.store.replace_backup_codes(identity_id, [hash_backup_code(c) for c in backup_codes])
        await audit.audit_log(
            self.store, identity_id, audit.BACKUP_CODES_REGENERATED, {"backup_codes": len(backup_codes)}
        )
        return backup_codes

    async def status(self, identity_id: UUID) -> TotpStatus:
        config = await self.store.get_totp_config(identity_id)
        if config is None or not config.enabled:
            return TotpStatus(enabled=False)
        return TotpStatus(
            enabled=True,
            setup_at=config.setup_at,
            last_used_at=config.last_used_at,
            backup_codes_remaining=config.backup_codes_remaining,
        )
