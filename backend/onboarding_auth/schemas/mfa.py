"""Schemas for MFA management endpoints."""

from datetime import datetime

from pydantic import BaseModel, Field

from onboarding_auth.services.auth import MfaMethod


class TotpSetupResponse(BaseModel):
    """Response from TOTP setup initiation. The secret comes back on verify."""

    secret: str
    provisioning_uri: str
    manual_key: str


class TotpVerifyRequest(BaseModel):
    secret: str = Field(..., min_length=32, max_length=64)
    code: str = Field(..., min_length=6, max_length=6)


class BackupCodesResponse(BaseModel):
    message: str
    backup_codes: list[str]


class PasswordConfirmRequest(BaseModel):
    """Sensitive MFA changes re-check the current password."""

    password: str = Field(..., min_length=1)


class EmailOtpVerifyRequest(BaseModel):
    code: str = Field(..., min_length=6, max_length=10)
    password: str = Field(..., min_length=1)


class OtpSentResponse(BaseModel):
    message: str = "Verification code sent"
    expires_at: datetime
    sends_remaining: int


class TotpStatusResponse(BaseModel):
    enabled: bool
    setup_at: datetime | None = None
    last_used_at: datetime | None = None
    backup_codes_remaining: int = 0


class EmailOtpStatusResponse(BaseModel):
    enabled: bool
    enabled_at: datetime | None = None
    code_pending: bool = False
    code_expires_at: datetime | None = None


class MfaStatusResponse(BaseModel):
    mfa_required: bool
    setup_required: bool
    methods: list[MfaMethod]
    totp: TotpStatusResponse
    email: EmailOtpStatusResponse


class MessageResponse(BaseModel):
    message: str
