"""
Brute-force lockout tracking for password login.

Failed attempts are counted per (lower-cased email, origin address). Once the
threshold is reached the bucket is locked for a fixed window; a success
clears it. Lockout is per origin: the same email from another address keeps
its own counter.
"""

import logging
import math
from datetime import datetime, timedelta
from uuid import UUID

from onboarding_auth.core.config import settings
from onboarding_auth.repositories.base import CredentialStore, LoginAttemptRecord
from onboarding_auth.utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)


def normalize_identity_key(email: str) -> str:
    return email.strip().lower()


class LockoutTracker:
    def __init__(
        self,
        store: CredentialStore,
        max_attempts: int | None = None,
        lockout_minutes: int | None = None,
        clock: Clock = utcnow,
    ):
        self.store = store
        self.max_attempts = max_attempts or settings.LOCKOUT_MAX_ATTEMPTS
        self.lockout_window = timedelta(minutes=lockout_minutes or settings.LOCKOUT_MINUTES)
        self.clock = clock

    def _is_active_lockout(self, record: LoginAttemptRecord, now: datetime) -> bool:
        return record.lockout_until is not None and record.lockout_until > now

    async def _current(self, identity_key: str, origin: str, now: datetime) -> LoginAttemptRecord | None:
        """Fetch the bucket, treating one whose lockout has elapsed as absent."""
        record = await self.store.get_login_attempt(normalize_identity_key(identity_key), origin)
        if record is None:
            return None
        if record.lockout_until is not None and record.lockout_until <= now:
            return None
        return record

    async def record_failure(
        self,
        identity_key: str,
        origin: str,
        identity_id: UUID | None = None,
    ) -> LoginAttemptRecord:
        """
        Count a failed attempt.

        Starts a fresh cycle when no record exists or the previous lockout has
        elapsed. Reaching the threshold sets lockout_until. While locked the
        record is returned unchanged.
        """
        now = self.clock()
        email = normalize_identity_key(identity_key)
        record = await self._current(email, origin, now)

        if record is not None and self._is_active_lockout(record, now):
            return record

        if record is None:
            record = LoginAttemptRecord(email=email, origin=origin)

        record.attempt_count += 1
        record.last_attempt_at = now
        if identity_id is not None:
            record.identity_id = identity_id

        if record.attempt_count >= self.max_attempts:
            record.lockout_until = now + self.lockout_window
            logger.warning(
                f"Login locked for {self.lockout_window} after {record.attempt_count} "
                f"failed attempts from {origin}"
            )

        await self.store.save_login_attempt(record)
        return record

    async def record_success(self, identity_key: str, origin: str) -> None:
        await self.store.delete_login_attempts(normalize_identity_key(identity_key), origin)

    async def is_locked(self, identity_key: str, origin: str) -> bool:
        now = self.clock()
        record = await self._current(identity_key, origin, now)
        return record is not None and self._is_active_lockout(record, now)

    async def remaining_attempts(self, identity_key: str, origin: str) -> int:
        now = self.clock()
        record = await self._current(identity_key, origin, now)
        if record is None:
            return self.max_attempts
        if self._is_active_lockout(record, now):
            return 0
        return max(0, self.max_attempts - record.attempt_count)

    async def lockout_remaining_seconds(self, identity_key: str, origin: str) -> int:
        """Seconds until the bucket unlocks, 0 when it is not locked."""
        now = self.clock()
        record = await self._current(identity_key, origin, now)
        if record is None or not self._is_active_lockout(record, now):
            return 0
        return max(1, math.ceil((record.lockout_until - now).total_seconds()))

    async def unlock(self, identity_key: str, origin: str | None = None) -> int:
        """Clear one origin bucket, or every bucket for the email when origin is None."""
        deleted = await self.store.delete_login_attempts(normalize_identity_key(identity_key), origin)
        if deleted:
            logger.info(f"Cleared {deleted} lockout record(s)")
        return deleted

    async def cleanup_expired(self) -> int:
        """Remove records whose lockout window has passed. Returns count deleted."""
        return await self.store.delete_expired_login_attempts(self.clock())
