"""Tests for domain error to HTTP response mapping."""

import json
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest

from onboarding_auth.core.errors import auth_error_handler, configuration_error_handler
from onboarding_auth.core.exceptions import (
    AccountLockedError,
    ConfigurationError,
    IdentityNotFoundError,
    InvalidCredentialsError,
    MfaAttemptsExhaustedError,
    MfaCodeExpiredError,
    MfaCodeInvalidError,
    MfaSendRateLimitedError,
    MfaStateError,
    PasswordPolicyError,
    ReauthenticationRequiredError,
)


def _request():
    request = MagicMock()
    request.state.request_id = "req-1"
    return request


class TestAuthErrorHandler:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "exc, expected_status",
        [
            (InvalidCredentialsError(), 401),
            (MfaCodeInvalidError(), 401),
            (MfaCodeExpiredError(), 401),
            (ReauthenticationRequiredError(), 401),
            (MfaAttemptsExhaustedError(), 429),
            (MfaStateError(), 409),
            (PasswordPolicyError("too short"), 400),
            (IdentityNotFoundError(), 404),
        ],
    )
    async def test_status_mapping(self, exc, expected_status):
        response = await auth_error_handler(_request(), exc)
        assert response.status_code == expected_status
        body = json.loads(response.body)
        assert body["error"]["code"] == exc.code
        assert body["error"]["request_id"] == "req-1"

    @pytest.mark.asyncio
    async def test_locked_sets_retry_after(self):
        response = await auth_error_handler(_request(), AccountLockedError(retry_after_seconds=120))
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "120"
        assert json.loads(response.body)["error"]["details"] == {"retry_after_seconds": 120}

    @pytest.mark.asyncio
    async def test_rate_limited_sets_retry_after(self):
        retry_after = datetime.now(UTC) + timedelta(minutes=30)
        response = await auth_error_handler(_request(), MfaSendRateLimitedError(retry_after=retry_after))
        assert response.status_code == 429
        assert 1 <= int(response.headers["Retry-After"]) <= 1800
        assert json.loads(response.body)["error"]["details"]["retry_after"] == retry_after.isoformat()

    @pytest.mark.asyncio
    async def test_invalid_code_reports_remaining_attempts(self):
        response = await auth_error_handler(_request(), MfaCodeInvalidError(remaining_attempts=3))
        assert json.loads(response.body)["error"]["details"] == {"remaining_attempts": 3}

    @pytest.mark.asyncio
    async def test_invalid_credentials_report_remaining_attempts(self):
        response = await auth_error_handler(_request(), InvalidCredentialsError(remaining_attempts=4))
        assert response.status_code == 401
        assert json.loads(response.body)["error"]["details"] == {"remaining_attempts": 4}

    @pytest.mark.asyncio
    async def test_invalid_credentials_without_count_has_no_details(self):
        response = await auth_error_handler(_request(), InvalidCredentialsError())
        assert "details" not in json.loads(response.body)["error"]


class TestConfigurationErrorHandler:
    @pytest.mark.asyncio
    async def test_store_outage_is_503(self):
        response = await configuration_error_handler(_request(), ConfigurationError("OperationalError"))
        assert response.status_code == 503
        assert json.loads(response.body)["error"]["code"] == "SERVICE_UNAVAILABLE"

    def test_configuration_error_is_not_an_auth_error(self):
        from onboarding_auth.core.exceptions import AuthError

        assert not isinstance(ConfigurationError(), AuthError)
