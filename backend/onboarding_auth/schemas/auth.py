from uuid import UUID

from pydantic import BaseModel, EmailStr, Field

from onboarding_auth.services.auth import LoginStatus, MfaMethod


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1, max_length=256)


class LoginResponse(BaseModel):
    status: LoginStatus
    identity_id: UUID | None = None
    available_methods: list[MfaMethod] = []


class MfaLoginRequest(BaseModel):
    """Second step of a login that returned mfa_required."""

    identity_id: UUID
    # 6-digit TOTP/email code or a XXXX-XXXX backup code
    code: str = Field(..., min_length=6, max_length=16)
    method: MfaMethod | None = None


class MfaLoginResponse(BaseModel):
    status: LoginStatus = LoginStatus.AUTHENTICATED
    identity_id: UUID
    method: MfaMethod
    used_backup_code: bool = False
    backup_codes_remaining: int | None = None


class SendLoginOtpRequest(BaseModel):
    identity_id: UUID


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=1)
