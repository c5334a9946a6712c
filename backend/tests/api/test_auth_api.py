"""Tests for the authentication and MFA HTTP endpoints."""

import time

import pyotp
import pytest

TEST_EMAIL = "a@x.com"
TEST_PASSWORD = "Correct1!"


def wrong_totp_code(secret: str) -> str:
    """A six digit code outside the accepted window."""
    totp = pyotp.TOTP(secret)
    now = time.time()
    accepted = {totp.at(now + offset) for offset in (-60, -30, 0, 30, 60)}
    return next(c for c in (f"{n:06d}" for n in range(1000)) if c not in accepted)


async def enable_totp(client) -> tuple[str, list[str]]:
    setup = await client.post("/api/auth/mfa/totp/setup")
    assert setup.status_code == 200
    secret = setup.json()["secret"]

    response = await client.post(
        "/api/auth/mfa/totp/verify",
        json={"secret": secret, "code": pyotp.TOTP(secret).now()},
    )
    assert response.status_code == 200
    return secret, response.json()["backup_codes"]


class TestLogin:
    @pytest.mark.asyncio
    async def test_login_success(self, client, identity):
        response = await client.post(
            "/api/auth/login",
            json={"email": TEST_EMAIL, "password": TEST_PASSWORD},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "authenticated"
        assert data["identity_id"] == str(identity.id)
        assert "X-Request-ID" in response.headers

    @pytest.mark.asyncio
    async def test_login_wrong_password(self, client, identity):
        response = await client.post(
            "/api/auth/login",
            json={"email": TEST_EMAIL, "password": "Wrong1!"},
        )

        assert response.status_code == 401
        error = response.json()["error"]
        assert error["code"] == "INVALID_CREDENTIALS"
        assert error["details"]["remaining_attempts"] == 4
        assert "identity_id" not in response.json()

    @pytest.mark.asyncio
    async def test_unknown_email_looks_like_wrong_password(self, client, identity):
        response = await client.post(
            "/api/auth/login",
            json={"email": "nobody@x.com", "password": TEST_PASSWORD},
        )

        assert response.status_code == 401
        error = response.json()["error"]
        assert error["code"] == "INVALID_CREDENTIALS"
        assert error["message"] == "Invalid email or password"

    @pytest.mark.asyncio
    async def test_invalid_email_rejected(self, client):
        response = await client.post(
            "/api/auth/login",
            json={"email": "not-an-email", "password": TEST_PASSWORD},
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_lockout_returns_429_with_retry_after(self, client, identity):
        headers = {"X-Forwarded-For": "203.0.113.9"}
        for _ in range(5):
            await client.post(
                "/api/auth/login",
                json={"email": TEST_EMAIL, "password": "Wrong1!"},
                headers=headers,
            )

        response = await client.post(
            "/api/auth/login",
            json={"email": TEST_EMAIL, "password": TEST_PASSWORD},
            headers=headers,
        )

        assert response.status_code == 429
        error = response.json()["error"]
        assert error["code"] == "ACCOUNT_LOCKED"
        retry_after = int(response.headers["Retry-After"])
        assert error["details"]["retry_after_seconds"] == retry_after
        assert 0 < retry_after <= 3600

        # Same account from another address is unaffected
        other = await client.post(
            "/api/auth/login",
            json={"email": TEST_EMAIL, "password": TEST_PASSWORD},
            headers={"X-Forwarded-For": "198.51.100.7"},
        )
        assert other.status_code == 200

    @pytest.mark.asyncio
    async def test_login_mfa_setup_required(self, client, auth_service):
        await auth_service.register("new@x.com", TEST_PASSWORD, mfa_required=True)

        response = await client.post(
            "/api/auth/login",
            json={"email": "new@x.com", "password": TEST_PASSWORD},
        )

        assert response.status_code == 200
        assert response.json()["status"] == "mfa_setup_required"


class TestMfaLogin:
    @pytest.mark.asyncio
    async def test_totp_login(self, authenticated_client, identity):
        secret, _ = await enable_totp(authenticated_client)

        login = await authenticated_client.post(
            "/api/auth/login",
            json={"email": TEST_EMAIL, "password": TEST_PASSWORD},
        )
        assert login.json()["status"] == "mfa_required"
        assert login.json()["available_methods"] == ["totp"]

        response = await authenticated_client.post(
            "/api/auth/login/mfa",
            json={"identity_id": str(identity.id), "code": pyotp.TOTP(secret).now()},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "authenticated"
        assert data["method"] == "totp"
        assert data["used_backup_code"] is False

    @pytest.mark.asyncio
    async def test_wrong_code(self, authenticated_client, identity):
        secret, _ = await enable_totp(authenticated_client)

        response = await authenticated_client.post(
            "/api/auth/login/mfa",
            json={"identity_id": str(identity.id), "code": wrong_totp_code(secret)},
        )

        assert response.status_code == 401
        error = response.json()["error"]
        assert error["code"] == "INVALID_CODE"
        assert error["details"]["reason"] == "invalid_code"

    @pytest.mark.asyncio
    async def test_backup_code_is_single_use(self, authenticated_client, identity):
        _, backup_codes = await enable_totp(authenticated_client)
        payload = {"identity_id": str(identity.id), "code": backup_codes[0]}

        first = await authenticated_client.post("/api/auth/login/mfa", json=payload)
        second = await authenticated_client.post("/api/auth/login/mfa", json=payload)

        assert first.status_code == 200
        assert first.json()["used_backup_code"] is True
        assert first.json()["backup_codes_remaining"] == 9
        assert second.status_code == 401

    @pytest.mark.asyncio
    async def test_no_method_enabled(self, client, identity):
        response = await client.post(
            "/api/auth/login/mfa",
            json={"identity_id": str(identity.id), "code": "123456"},
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "METHOD_NOT_ENABLED"

    @pytest.mark.asyncio
    async def test_email_login_code(self, authenticated_client, identity, notifier, sender):
        await authenticated_client.post("/api/auth/mfa/email/enable", json={"password": TEST_PASSWORD})
        await notifier.drain()
        await authenticated_client.post(
            "/api/auth/mfa/email/verify",
            json={"code": sender.last_code(), "password": TEST_PASSWORD},
        )

        sent = await authenticated_client.post(
            "/api/auth/mfa/email/send-login-otp",
            json={"identity_id": str(identity.id)},
        )
        assert sent.status_code == 200
        await notifier.drain()

        response = await authenticated_client.post(
            "/api/auth/login/mfa",
            json={"identity_id": str(identity.id), "code": sender.last_code(), "method": "email"},
        )

        assert response.status_code == 200
        assert response.json()["method"] == "email"


class TestTotpManagement:
    @pytest.mark.asyncio
    async def test_requires_principal(self, client, identity):
        response = await client.post("/api/auth/mfa/totp/setup")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "UNAUTHORIZED"

    @pytest.mark.asyncio
    async def test_setup_returns_uri(self, authenticated_client):
        response = await authenticated_client.post("/api/auth/mfa/totp/setup")

        assert response.status_code == 200
        data = response.json()
        assert len(data["secret"]) == 32
        assert data["provisioning_uri"].startswith("otpauth://totp/")
        assert data["manual_key"].replace(" ", "") == data["secret"]

    @pytest.mark.asyncio
    async def test_verify_rejects_wrong_code(self, authenticated_client):
        setup = await authenticated_client.post("/api/auth/mfa/totp/setup")
        secret = setup.json()["secret"]

        response = await authenticated_client.post(
            "/api/auth/mfa/totp/verify",
            json={"secret": secret, "code": wrong_totp_code(secret)},
        )

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "MFA_CODE_INVALID"

    @pytest.mark.asyncio
    async def test_setup_when_enabled_conflicts(self, authenticated_client):
        await enable_totp(authenticated_client)

        response = await authenticated_client.post("/api/auth/mfa/totp/setup")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "MFA_STATE_CONFLICT"

    @pytest.mark.asyncio
    async def test_disable_requires_password(self, authenticated_client):
        await enable_totp(authenticated_client)

        wrong = await authenticated_client.post("/api/auth/mfa/totp/disable", json={"password": "nope"})
        assert wrong.status_code == 401
        assert wrong.json()["error"]["code"] == "REAUTHENTICATION_REQUIRED"

        ok = await authenticated_client.post("/api/auth/mfa/totp/disable", json={"password": TEST_PASSWORD})
        assert ok.status_code == 200

        status_response = await authenticated_client.get("/api/auth/mfa/status")
        assert status_response.json()["totp"]["enabled"] is False

    @pytest.mark.asyncio
    async def test_regenerate_backup_codes(self, authenticated_client):
        _, old_codes = await enable_totp(authenticated_client)

        response = await authenticated_client.post(
            "/api/auth/mfa/backup-codes/regenerate",
            json={"password": TEST_PASSWORD},
        )

        assert response.status_code == 200
        new_codes = response.json()["backup_codes"]
        assert len(new_codes) == 10
        assert not set(new_codes) & set(old_codes)


class TestEmailOtpManagement:
    @pytest.mark.asyncio
    async def test_enable_and_verify(self, authenticated_client, notifier, sender):
        response = await authenticated_client.post("/api/auth/mfa/email/enable", json={"password": TEST_PASSWORD})
        assert response.status_code == 200
        assert response.json()["sends_remaining"] == 4

        await notifier.drain()
        verify = await authenticated_client.post(
            "/api/auth/mfa/email/verify",
            json={"code": sender.last_code(), "password": TEST_PASSWORD},
        )
        assert verify.status_code == 200

        status_response = await authenticated_client.get("/api/auth/mfa/status")
        data = status_response.json()
        assert data["email"]["enabled"] is True
        assert data["methods"] == ["email"]

    @pytest.mark.asyncio
    async def test_enable_requires_password(self, authenticated_client, sender, notifier):
        response = await authenticated_client.post("/api/auth/mfa/email/enable", json={"password": "nope"})
        await notifier.drain()

        assert response.status_code == 401
        assert sender.messages == []

    @pytest.mark.asyncio
    async def test_send_rate_limit(self, authenticated_client, identity, notifier, sender):
        await authenticated_client.post("/api/auth/mfa/email/enable", json={"password": TEST_PASSWORD})
        await notifier.drain()
        await authenticated_client.post(
            "/api/auth/mfa/email/verify",
            json={"code": sender.last_code(), "password": TEST_PASSWORD},
        )

        payload = {"identity_id": str(identity.id)}
        for _ in range(4):
            ok = await authenticated_client.post("/api/auth/mfa/email/send-login-otp", json=payload)
            assert ok.status_code == 200

        limited = await authenticated_client.post("/api/auth/mfa/email/send-login-otp", json=payload)

        assert limited.status_code == 429
        assert limited.json()["error"]["code"] == "MFA_SEND_RATE_LIMITED"
        assert int(limited.headers["Retry-After"]) > 0

    @pytest.mark.asyncio
    async def test_disable_when_not_enabled(self, authenticated_client):
        response = await authenticated_client.post("/api/auth/mfa/email/disable", json={"password": TEST_PASSWORD})
        assert response.status_code == 409


class TestChangePassword:
    @pytest.mark.asyncio
    async def test_change_password(self, authenticated_client, notifier, sender):
        response = await authenticated_client.post(
            "/api/auth/change-password",
            json={"current_password": TEST_PASSWORD, "new_password": "Brand-New-Passw0rd"},
        )
        assert response.status_code == 200

        await notifier.drain()
        assert "password was changed" in sender.messages[-1].text

        login = await authenticated_client.post(
            "/api/auth/login",
            json={"email": TEST_EMAIL, "password": "Brand-New-Passw0rd"},
        )
        assert login.status_code == 200

    @pytest.mark.asyncio
    async def test_weak_password_rejected(self, authenticated_client):
        response = await authenticated_client.post(
            "/api/auth/change-password",
            json={"current_password": TEST_PASSWORD, "new_password": "short"},
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "PASSWORD_POLICY"

    @pytest.mark.asyncio
    async def test_wrong_current_password(self, authenticated_client):
        response = await authenticated_client.post(
            "/api/auth/change-password",
            json={"current_password": "nope", "new_password": "Brand-New-Passw0rd"},
        )

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "REAUTHENTICATION_REQUIRED"
        assert "request_id" in response.json()["error"]
