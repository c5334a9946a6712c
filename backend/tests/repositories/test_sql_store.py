"""Tests for the SQLAlchemy credential store (SQLite in memory)."""

import uuid
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pyotp
import pytest
import pytest_asyncio
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from onboarding_auth import models  # noqa: F401
from onboarding_auth.core.exceptions import ConfigurationError, IdentityExistsError, IdentityNotFoundError
from onboarding_auth.db.base import Base
from onboarding_auth.repositories.base import AuditEvent, EmailOtpState, LoginAttemptRecord
from onboarding_auth.repositories.sql import SqlAlchemyCredentialStore
from onboarding_auth.services.auth import AuthService, LoginStatus

NOW = datetime(2026, 1, 15, 12, 0, 0, tzinfo=UTC)


@pytest_asyncio.fixture
async def test_session() -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with async_session() as session:
        yield session

    await engine.dispose()


@pytest.fixture
def sql_store(test_session) -> SqlAlchemyCredentialStore:
    return SqlAlchemyCredentialStore(test_session)


@pytest_asyncio.fixture
async def sql_identity(sql_store):
    return await sql_store.create_identity("User@Example.com", "aa" * 32, "bb" * 16, mfa_required=True)


class TestIdentities:
    @pytest.mark.asyncio
    async def test_create_and_fetch(self, sql_store, sql_identity):
        assert sql_identity.email == "user@example.com"
        assert sql_identity.mfa_required is True
        assert sql_identity.created_at is not None

        by_id = await sql_store.get_identity(sql_identity.id)
        by_email = await sql_store.get_identity_by_email("USER@example.com")
        assert by_id.id == by_email.id == sql_identity.id
        assert by_id.totp_enabled is False
        assert by_id.email_otp_enabled is False

    @pytest.mark.asyncio
    async def test_duplicate_email(self, sql_store, sql_identity):
        with pytest.raises(IdentityExistsError):
            await sql_store.create_identity("user@EXAMPLE.com", "aa", "bb", mfa_required=False)

    @pytest.mark.asyncio
    async def test_missing_identity(self, sql_store):
        assert await sql_store.get_identity(uuid.uuid4()) is None
        assert await sql_store.get_identity_by_email("nobody@example.com") is None
        with pytest.raises(IdentityNotFoundError):
            await sql_store.update_password(uuid.uuid4(), "cc", "dd")

    @pytest.mark.asyncio
    async def test_update_password(self, sql_store, sql_identity):
        await sql_store.update_password(sql_identity.id, "cc" * 32, "dd" * 16)
        identity = await sql_store.get_identity(sql_identity.id)
        assert identity.password_hash == "cc" * 32
        assert identity.password_salt == "dd" * 16


class TestLoginAttempts:
    @pytest.mark.asyncio
    async def test_save_and_update(self, sql_store):
        record = LoginAttemptRecord(email="a@x.com", origin="1.2.3.4", attempt_count=1, last_attempt_at=NOW)
        await sql_store.save_login_attempt(record)

        record.attempt_count = 5
        record.lockout_until = NOW + timedelta(hours=1)
        await sql_store.save_login_attempt(record)

        loaded = await sql_store.get_login_attempt("a@x.com", "1.2.3.4")
        assert loaded.attempt_count == 5
        assert loaded.lockout_until == NOW + timedelta(hours=1)
        assert loaded.last_attempt_at.tzinfo is not None
        assert await sql_store.get_login_attempt("a@x.com", "5.6.7.8") is None

    @pytest.mark.asyncio
    async def test_bucket_created_concurrently_is_updated(self, sql_store):
        await sql_store.save_login_attempt(LoginAttemptRecord(email="a@x.com", origin="1.2.3.4", attempt_count=1))
        real_lookup = sql_store._attempt_row
        lookups = []

        async def miss_first(email, origin):
            # The other request's row is not visible on the first lookup
            lookups.append(email)
            return None if len(lookups) == 1 else await real_lookup(email, origin)

        with patch.object(sql_store, "_attempt_row", side_effect=miss_first):
            await sql_store.save_login_attempt(
                LoginAttemptRecord(email="a@x.com", origin="1.2.3.4", attempt_count=2, last_attempt_at=NOW)
            )

        assert len(lookups) == 2
        loaded = await sql_store.get_login_attempt("a@x.com", "1.2.3.4")
        assert loaded.attempt_count == 2
        assert loaded.last_attempt_at == NOW

    @pytest.mark.asyncio
    async def test_delete_by_origin_and_all(self, sql_store):
        for origin in ("1.2.3.4", "5.6.7.8", "9.9.9.9"):
            await sql_store.save_login_attempt(LoginAttemptRecord(email="a@x.com", origin=origin, attempt_count=1))

        assert await sql_store.delete_login_attempts("a@x.com", "1.2.3.4") == 1
        assert await sql_store.delete_login_attempts("a@x.com") == 2
        assert await sql_store.get_login_attempt("a@x.com", "5.6.7.8") is None

    @pytest.mark.asyncio
    async def test_delete_expired(self, sql_store):
        await sql_store.save_login_attempt(
            LoginAttemptRecord(email="old@x.com", origin="1.2.3.4", attempt_count=5, lockout_until=NOW - timedelta(minutes=1))
        )
        await sql_store.save_login_attempt(
            LoginAttemptRecord(email="new@x.com", origin="1.2.3.4", attempt_count=5, lockout_until=NOW + timedelta(minutes=30))
        )
        await sql_store.save_login_attempt(LoginAttemptRecord(email="open@x.com", origin="1.2.3.4", attempt_count=2))

        assert await sql_store.delete_expired_login_attempts(NOW) == 1
        assert await sql_store.get_login_attempt("old@x.com", "1.2.3.4") is None
        assert await sql_store.get_login_attempt("new@x.com", "1.2.3.4") is not None


class TestTotp:
    @pytest.mark.asyncio
    async def test_enable_and_disable(self, sql_store, sql_identity):
        await sql_store.enable_totp(sql_identity.id, "S" * 32, ["h1", "h2", "h3"], enabled_at=NOW)

        config = await sql_store.get_totp_config(sql_identity.id)
        assert config.enabled is True
        assert config.setup_at == NOW
        assert config.backup_codes_remaining == 3
        assert (await sql_store.get_identity(sql_identity.id)).totp_enabled is True

        await sql_store.disable_totp(sql_identity.id)
        assert await sql_store.get_totp_config(sql_identity.id) is None
        assert await sql_store.list_backup_codes(sql_identity.id) == []
        assert (await sql_store.get_identity(sql_identity.id)).totp_enabled is False

    @pytest.mark.asyncio
    async def test_consume_backup_code_once(self, sql_store, sql_identity):
        await sql_store.enable_totp(sql_identity.id, "S" * 32, ["h1", "h2"], enabled_at=NOW)
        codes = await sql_store.list_backup_codes(sql_identity.id)

        assert await sql_store.consume_backup_code(sql_identity.id, codes[0].id) is True
        assert await sql_store.consume_backup_code(sql_identity.id, codes[0].id) is False
        assert [c.code_hash for c in await sql_store.list_backup_codes(sql_identity.id)] == ["h2"]

    @pytest.mark.asyncio
    async def test_consume_requires_owner(self, sql_store, sql_identity):
        other = await sql_store.create_identity("other@example.com", "aa", "bb", mfa_required=False)
        await sql_store.enable_totp(sql_identity.id, "S" * 32, ["h1"], enabled_at=NOW)
        code = (await sql_store.list_backup_codes(sql_identity.id))[0]

        assert await sql_store.consume_backup_code(other.id, code.id) is False

    @pytest.mark.asyncio
    async def test_replace_backup_codes(self, sql_store, sql_identity):
        await sql_store.enable_totp(sql_identity.id, "S" * 32, ["h1", "h2"], enabled_at=NOW)
        await sql_store.replace_backup_codes(sql_identity.id, ["n1", "n2", "n3"])
        hashes = [c.code_hash for c in await sql_store.list_backup_codes(sql_identity.id)]
        assert hashes == ["n1", "n2", "n3"]

    @pytest.mark.asyncio
    async def test_touch_last_used(self, sql_store, sql_identity):
        await sql_store.enable_totp(sql_identity.id, "S" * 32, [], enabled_at=NOW)
        await sql_store.touch_totp_last_used(sql_identity.id, NOW + timedelta(minutes=5))
        config = await sql_store.get_totp_config(sql_identity.id)
        assert config.last_used_at == NOW + timedelta(minutes=5)


class TestEmailOtp:
    @pytest.mark.asyncio
    async def test_default_state(self, sql_store, sql_identity):
        state = await sql_store.get_email_otp_state(sql_identity.id)
        assert state.enabled is False
        assert state.otp_hash is None

    @pytest.mark.asyncio
    async def test_save_increment_and_clear(self, sql_store, sql_identity):
        state = EmailOtpState(
            identity_id=sql_identity.id,
            enabled=True,
            enabled_at=NOW,
            otp_hash="hash",
            otp_expires_at=NOW + timedelta(minutes=10),
            send_count=1,
            last_sent_at=NOW,
            rate_limit_reset_at=NOW + timedelta(hours=1),
        )
        await sql_store.save_email_otp_state(state)

        assert await sql_store.reserve_email_otp_attempt(sql_identity.id, "hash", 5) == 1
        assert await sql_store.reserve_email_otp_attempt(sql_identity.id, "hash", 5) == 2
        assert await sql_store.reserve_email_otp_attempt(sql_identity.id, "other", 5) is None
        assert await sql_store.reserve_email_otp_attempt(sql_identity.id, "hash", 2) is None

        loaded = await sql_store.get_email_otp_state(sql_identity.id)
        assert loaded.otp_attempts == 2
        assert loaded.otp_expires_at == NOW + timedelta(minutes=10)
        assert (await sql_store.get_identity(sql_identity.id)).email_otp_enabled is True

        assert await sql_store.consume_email_otp_code(sql_identity.id, "other") is False
        assert await sql_store.consume_email_otp_code(sql_identity.id, "hash") is True
        assert await sql_store.consume_email_otp_code(sql_identity.id, "hash") is False
        consumed = await sql_store.get_email_otp_state(sql_identity.id)
        assert consumed.otp_hash is None
        assert consumed.otp_attempts == 0
        assert consumed.enabled is True
        assert consumed.send_count == 1

        await sql_store.clear_email_otp_state(sql_identity.id)
        cleared = await sql_store.get_email_otp_state(sql_identity.id)
        assert cleared.enabled is False
        assert cleared.send_count == 0

    @pytest.mark.asyncio
    async def test_save_requires_identity(self, sql_store):
        with pytest.raises(IdentityNotFoundError):
            await sql_store.save_email_otp_state(EmailOtpState(identity_id=uuid.uuid4()))


class TestAudit:
    @pytest.mark.asyncio
    async def test_add_audit_event(self, sql_store, test_session, sql_identity):
        from sqlalchemy import select

        from onboarding_auth.models.audit_log import AuditLog

        await sql_store.add_audit_event(
            AuditEvent(action="auth.lockout", identity_id=sql_identity.id, origin="1.2.3.4", details={"n": 5})
        )
        row = (await test_session.execute(select(AuditLog))).scalar_one()
        assert row.action == "auth.lockout"
        assert row.details == {"n": 5}


class TestStoreFailures:
    @pytest.mark.asyncio
    async def test_database_errors_become_configuration_errors(self, sql_store, test_session):
        error = OperationalError("SELECT 1", {}, Exception("connection lost"))
        with patch.object(test_session, "execute", AsyncMock(side_effect=error)):
            with pytest.raises(ConfigurationError) as exc_info:
                await sql_store.get_identity_by_email("a@x.com")
        assert exc_info.value.reason == "OperationalError"

    @pytest.mark.asyncio
    async def test_login_propagates_store_outage(self, sql_store, test_session, notifier):
        service = AuthService(sql_store, notifier)
        error = OperationalError("SELECT 1", {}, Exception("connection lost"))
        with patch.object(test_session, "execute", AsyncMock(side_effect=error)):
            with pytest.raises(ConfigurationError):
                await service.login("a@x.com", "Correct1!", "1.2.3.4")


class TestAuthFlowOnSql:
    @pytest.mark.asyncio
    async def test_totp_login_with_backup_code(self, sql_store, notifier, clock):
        service = AuthService(sql_store, notifier, clock=clock)
        identity = await service.register("a@x.com", "Correct1!", mfa_required=True)

        assert (await service.login("a@x.com", "Correct1!", "1.2.3.4")).status == LoginStatus.MFA_SETUP_REQUIRED

        enrollment = await service.enroll_totp(identity.id)
        code = pyotp.TOTP(enrollment.secret).at(clock.now)
        backup_codes = await service.confirm_totp(identity.id, enrollment.secret, code)

        result = await service.login("a@x.com", "Correct1!", "1.2.3.4")
        assert result.status == LoginStatus.MFA_REQUIRED

        first = await service.verify_mfa(identity.id, backup_codes[0])
        second = await service.verify_mfa(identity.id, backup_codes[0])
        assert first.success is True
        assert second.success is False
        assert (await service.mfa_status(identity.id)).totp.backup_codes_remaining == 9

    @pytest.mark.asyncio
    async def test_lockout_on_sql(self, sql_store, notifier, clock):
        service = AuthService(sql_store, notifier, clock=clock)
        await service.register("a@x.com", "Correct1!", mfa_required=False)

        for _ in range(5):
            await service.login("a@x.com", "Wrong1!", "1.2.3.4")

        assert (await service.login("a@x.com", "Correct1!", "1.2.3.4")).status == LoginStatus.LOCKED
        assert (await service.login("a@x.com", "Correct1!", "5.6.7.8")).status == LoginStatus.AUTHENTICATED
