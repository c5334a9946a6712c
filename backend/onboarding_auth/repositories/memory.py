"""
In-memory credential store.

Used by the test suite and for local development without a database.
Records are copied on the way in and out so callers cannot mutate stored
state without going through the store.
"""

import itertools
import uuid
from dataclasses import replace
from datetime import datetime

from onboarding_auth.core.exceptions import IdentityExistsError, IdentityNotFoundError
from onboarding_auth.repositories.base import (
    AuditEvent,
    BackupCode,
    EmailOtpState,
    Identity,
    LoginAttemptRecord,
    TotpConfiguration,
)
from onboarding_auth.utils.clock import utcnow


class InMemoryCredentialStore:
    def __init__(self) -> None:
        self.identities: dict[uuid.UUID, Identity] = {}
        self.login_attempts: dict[tuple[str, str], LoginAttemptRecord] = {}
        self.totp_configs: dict[uuid.UUID, TotpConfiguration] = {}
        self.backup_codes: dict[uuid.UUID, dict[int, str]] = {}
        self.email_otp_states: dict[uuid.UUID, EmailOtpState] = {}
        self.audit_events: list[AuditEvent] = []
        self._code_ids = itertools.count(1)

    def _require_identity(self, identity_id: uuid.UUID) -> Identity:
        identity = self.identities.get(identity_id)
        if identity is None:
            raise IdentityNotFoundError()
        return identity

    def _project(self, identity: Identity) -> Identity:
        totp = self.totp_configs.get(identity.id)
        email_state = self.email_otp_states.get(identity.id)
        return replace(
            identity,
            totp_enabled=bool(totp and totp.enabled),
            email_otp_enabled=bool(email_state and email_state.enabled),
        )

    # Identities

    async def get_identity(self, identity_id: uuid.UUID) -> Identity | None:
        identity = self.identities.get(identity_id)
        return self._project(identity) if identity else None

    async def get_identity_by_email(self, email: str) -> Identity | None:
        email = email.lower()
        for identity in self.identities.values():
            if identity.email == email:
                return self._project(identity)
        return None

    async def create_identity(
        self,
        email: str,
        password_hash: str,
        password_salt: str,
        mfa_required: bool,
    ) -> Identity:
        email = email.lower()
        if await self.get_identity_by_email(email):
            raise IdentityExistsError()
        identity = Identity(
            id=uuid.uuid4(),
            email=email,
            password_hash=password_hash,
            password_salt=password_salt,
            mfa_required=mfa_required,
            created_at=utcnow(),
        )
        self.identities[identity.id] = identity
        return self._project(identity)

    async def update_password(self, identity_id: uuid.UUID, password_hash: str, password_salt: str) -> None:
        identity = self._require_identity(identity_id)
        identity.password_hash = password_hash
        identity.password_salt = password_salt

    # Login attempts

    async def get_login_attempt(self, email: str, origin: str) -> LoginAttemptRecord | None:
        record = self.login_attempts.get((email, origin))
        return replace(record) if record else None

    async def save_login_attempt(self, record: LoginAttemptRecord) -> None:
        self.login_attempts[(record.email, record.origin)] = replace(record)

    async def delete_login_attempts(self, email: str, origin: str | None = None) -> int:
        keys = [
            key for key in self.login_attempts
            if key[0] == email and (origin is None or key[1] == origin)
        ]
        for key in keys:
            del self.login_attempts[key]
        return len(keys)

    async def delete_expired_login_attempts(self, now: datetime) -> int:
        keys = [
            key for key, record in self.login_attempts.items()
            if record.lockout_until is not None and record.lockout_until <= now
        ]
        for key in keys:
            del self.login_attempts[key]
        return len(keys)

    # TOTP

    async def get_totp_config(self, identity_id: uuid.UUID) -> TotpConfiguration | None:
        config = self.totp_configs.get(identity_id)
        if config is None:
            return None
        return replace(config, backup_codes_remaining=len(self.backup_codes.get(identity_id, {})))

    async def enable_totp(
        self,
        identity_id: uuid.UUID,
        secret: str,
        backup_code_hashes: list[str],
        enabled_at: datetime,
    ) -> None:
        self._require_identity(identity_id)
        self.totp_configs[identity_id] = TotpConfiguration(
            identity_id=identity_id,
            secret=secret,
            enabled=True,
            setup_at=enabled_at,
        )
        self.backup_codes[identity_id] = {next(self._code_ids): h for h in backup_code_hashes}

    async def touch_totp_last_used(self, identity_id: uuid.UUID, used_at: datetime) -> None:
        config = self.totp_configs.get(identity_id)
        if config is not None:
            config.last_used_at = used_at

    async def disable_totp(self, identity_id: uuid.UUID) -> None:
        self.totp_configs.pop(identity_id, None)
        self.backup_codes.pop(identity_id, None)

    async def list_backup_codes(self, identity_id: uuid.UUID) -> list[BackupCode]:
        codes = self.backup_codes.get(identity_id, {})
        return [BackupCode(id=code_id, code_hash=h) for code_id, h in codes.items()]

    async def replace_backup_codes(self, identity_id: uuid.UUID, code_hashes: list[str]) -> None:
        self.backup_codes[identity_id] = {next(self._code_ids): h for h in code_hashes}

    async def consume_backup_code(self, identity_id: uuid.UUID, code_id: int) -> bool:
        # dict.pop is the compare-and-delete: no await between check and removal
        return self.backup_codes.get(identity_id, {}).pop(code_id, None) is not None

    # Email OTP

    async def get_email_otp_state(self, identity_id: uuid.UUID) -> EmailOtpState:
        state = self.email_otp_states.get(identity_id)
        return replace(state) if state else EmailOtpState(identity_id=identity_id)

    async def save_email_otp_state(self, state: EmailOtpState) -> None:
        self._require_identity(state.identity_id)
        self.email_otp_states[state.identity_id] = replace(state)

    async def reserve_email_otp_attempt(
        self, identity_id: uuid.UUID, otp_hash: str, max_attempts: int
    ) -> int | None:
        state = self.email_otp_states.get(identity_id)
        if state is None or state.otp_hash != otp_hash or state.otp_attempts >= max_attempts:
            return None
        state.otp_attempts += 1
        return state.otp_attempts

    async def consume_email_otp_code(self, identity_id: uuid.UUID, otp_hash: str) -> bool:
        state = self.email_otp_states.get(identity_id)
        if state is None or state.otp_hash is None or state.otp_hash != otp_hash:
            return False
        state.clear_pending()
        return True

    async def clear_email_otp_state(self, identity_id: uuid.UUID) -> None:
        self.email_otp_states.pop(identity_id, None)

    # Audit

    async def add_audit_event(self, event: AuditEvent) -> None:
        self.audit_events.append(replace(event, created_at=event.created_at or utcnow()))
