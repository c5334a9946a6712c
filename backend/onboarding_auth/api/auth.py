from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Request, status

from onboarding_auth.api.deps import get_auth_service, get_current_identity_id
from onboarding_auth.core.errors import ErrorResponse
from onboarding_auth.core.exceptions import AccountLockedError, InvalidCredentialsError
from onboarding_auth.schemas.auth import (
    ChangePasswordRequest,
    LoginRequest,
    LoginResponse,
    MfaLoginRequest,
    MfaLoginResponse,
    SendLoginOtpRequest,
)
from onboarding_auth.schemas.mfa import (
    BackupCodesResponse,
    EmailOtpStatusResponse,
    EmailOtpVerifyRequest,
    MessageResponse,
    MfaStatusResponse,
    OtpSentResponse,
    PasswordConfirmRequest,
    TotpSetupResponse,
    TotpStatusResponse,
    TotpVerifyRequest,
)
from onboarding_auth.services.auth import AuthService, LoginStatus, MfaFailureReason
from onboarding_auth.utils.request import get_client_ip

router = APIRouter(prefix="/auth", tags=["auth"])

Service = Annotated[AuthService, Depends(get_auth_service)]
CurrentIdentity = Annotated[UUID, Depends(get_current_identity_id)]

# MFA verification failure -> HTTP status
MFA_FAILURE_STATUS = {
    MfaFailureReason.INVALID_CODE: status.HTTP_401_UNAUTHORIZED,
    MfaFailureReason.CODE_EXPIRED: status.HTTP_401_UNAUTHORIZED,
    MfaFailureReason.ATTEMPTS_EXHAUSTED: status.HTTP_429_TOO_MANY_REQUESTS,
    MfaFailureReason.METHOD_REQUIRED: status.HTTP_400_BAD_REQUEST,
    MfaFailureReason.METHOD_NOT_ENABLED: status.HTTP_400_BAD_REQUEST,
    MfaFailureReason.NOT_FOUND: status.HTTP_401_UNAUTHORIZED,
}

MFA_FAILURE_MESSAGES = {
    MfaFailureReason.INVALID_CODE: "Invalid verification code",
    MfaFailureReason.CODE_EXPIRED: "Verification code has expired. Please request a new code.",
    MfaFailureReason.ATTEMPTS_EXHAUSTED: "Too many failed attempts. Please request a new code.",
    MfaFailureReason.METHOD_REQUIRED: "Choose which verification method to use",
    MfaFailureReason.METHOD_NOT_ENABLED: "That verification method is not enabled",
    MfaFailureReason.NOT_FOUND: "Invalid or expired login. Please login again.",
}


@router.post("/login", response_model=LoginResponse)
async def login(
    body: LoginRequest,
    http_request: Request,
    service: Service,
):
    """
    Password step of the login.

    Locked buckets answer 429 with Retry-After and bad credentials answer 401,
    both in the standard error envelope.
    """
    result = await service.login(body.email, body.password, get_client_ip(http_request))

    if result.status == LoginStatus.LOCKED:
        raise AccountLockedError(retry_after_seconds=result.retry_after_seconds)
    if result.status == LoginStatus.INVALID_CREDENTIALS:
        raise InvalidCredentialsError(remaining_attempts=result.remaining_attempts)

    return LoginResponse(
        status=result.status,
        identity_id=result.identity_id,
        available_methods=result.available_methods,
    )


@router.post("/login/mfa", response_model=MfaLoginResponse)
async def login_mfa(body: MfaLoginRequest, http_request: Request, service: Service):
    """Complete a login that returned mfa_required."""
    result = await service.verify_mfa(body.identity_id, body.code, body.method)
    if not result.success:
        details = {"reason": result.failure.value}
        if result.remaining_attempts is not None:
            details["remaining_attempts"] = result.remaining_attempts
        return ErrorResponse.create(
            code=result.failure.value.upper(),
            message=MFA_FAILURE_MESSAGES[result.failure],
            status_code=MFA_FAILURE_STATUS[result.failure],
            details=details,
            request_id=getattr(http_request.state, "request_id", None),
        )

    return MfaLoginResponse(
        identity_id=result.identity_id,
        method=result.method,
        used_backup_code=result.used_backup_code,
        backup_codes_remaining=result.backup_codes_remaining,
    )


@router.post("/mfa/email/send-login-otp", response_model=OtpSentResponse)
async def send_login_otp(body: SendLoginOtpRequest, service: Service):
    dispatch = await service.send_login_otp(body.identity_id)
    return OtpSentResponse(expires_at=dispatch.expires_at, sends_remaining=dispatch.sends_remaining)


@router.get("/mfa/status", response_model=MfaStatusResponse)
async def mfa_status(identity_id: CurrentIdentity, service: Service):
    mfa = await service.mfa_status(identity_id)
    return MfaStatusResponse(
        mfa_required=mfa.mfa_required,
        setup_required=mfa.setup_required,
        methods=mfa.methods,
        totp=TotpStatusResponse(
            enabled=mfa.totp.enabled,
            setup_at=mfa.totp.setup_at,
            last_used_at=mfa.totp.last_used_at,
            backup_codes_remaining=mfa.totp.backup_codes_remaining,
        ),
        email=EmailOtpStatusResponse(
            enabled=mfa.email.enabled,
            enabled_at=mfa.email.enabled_at,
            code_pending=mfa.email.code_pending,
            code_expires_at=mfa.email.code_expires_at,
        ),
    )


@router.post("/mfa/totp/setup", response_model=TotpSetupResponse)
async def setup_totp(identity_id: CurrentIdentity, service: Service):
    """Start TOTP setup. Returns the secret and otpauth URI for the authenticator app."""
    enrollment = await service.enroll_totp(identity_id)
    return TotpSetupResponse(
        secret=enrollment.secret,
        provisioning_uri=enrollment.provisioning_uri,
        manual_key=enrollment.manual_key,
    )


@router.post("/mfa/totp/verify", response_model=BackupCodesResponse)
async def verify_totp_setup(body: TotpVerifyRequest, identity_id: CurrentIdentity, service: Service):
    """Confirm TOTP setup with the first code from the authenticator app."""
    backup_codes = await service.confirm_totp(identity_id, body.secret, body.code)
    return BackupCodesResponse(message="Two-factor authentication enabled", backup_codes=backup_codes)


@router.post("/mfa/totp/disable", response_model=MessageResponse)
async def disable_totp(body: PasswordConfirmRequest, identity_id: CurrentIdentity, service: Service):
    await service.disable_totp(identity_id, body.password)
    return MessageResponse(message="Two-factor authentication disabled")


@router.post("/mfa/backup-codes/regenerate", response_model=BackupCodesResponse)
async def regenerate_backup_codes(body: PasswordConfirmRequest, identity_id: CurrentIdentity, service: Service):
    backup_codes = await service.regenerate_backup_codes(identity_id, body.password)
    return BackupCodesResponse(message="Backup codes regenerated", backup_codes=backup_codes)


@router.post("/mfa/email/enable", response_model=OtpSentResponse)
async def enable_email_otp(body: PasswordConfirmRequest, identity_id: CurrentIdentity, service: Service):
    """Send a setup code to the account email."""
    dispatch = await service.enroll_email_otp(identity_id, body.password)
    return OtpSentResponse(expires_at=dispatch.expires_at, sends_remaining=dispatch.sends_remaining)


@router.post("/mfa/email/verify", response_model=MessageResponse)
async def verify_email_otp_setup(body: EmailOtpVerifyRequest, identity_id: CurrentIdentity, service: Service):
    await service.confirm_email_otp(identity_id, body.code, body.password)
    return MessageResponse(message="Email verification enabled")


@router.post("/mfa/email/disable", response_model=MessageResponse)
async def disable_email_otp(body: PasswordConfirmRequest, identity_id: CurrentIdentity, service: Service):
    await service.disable_email_otp(identity_id, body.password)
    return MessageResponse(message="Email verification disabled")


@router.post("/change-password", response_model=MessageResponse)
async def change_password(body: ChangePasswordRequest, identity_id: CurrentIdentity, service: Service):
    await service.change_password(identity_id, body.current_password, body.new_password)
    return MessageResponse(message="Password changed successfully")
