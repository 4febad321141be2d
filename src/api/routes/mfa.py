"""
MFA Endpoints.

Provides enrollment, code verification, MFA session management and
administrative disable. Primary login happens elsewhere; every route
here needs a primary-login bearer token.
"""
import logging
from typing import Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, status

from ..models import (
    MFASetupRequest,
    MFASetupResponse,
    MFAVerifyRequest,
    BackupCodeVerifyRequest,
    MFAVerifyResponse,
    MFASessionResponse,
    MFAStatusResponse,
    BackupCodesResponse,
    ErrorResponse,
)
from ..deps import (
    get_current_user,
    get_mfa_service,
    get_mfa_session_token,
    require_admin,
    require_mfa_session,
)
from ...auth.service import MFAService, VerificationResult, VerificationStatus

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/mfa", tags=["MFA"])


def _verification_response(result: VerificationResult, service: MFAService) -> MFAVerifyResponse:
    """Turn a VerificationResult into a response or the matching HTTP error."""
    if result.status == VerificationStatus.LOCKED_OUT:
        lockout_seconds = service.settings.lockout_minutes * 60
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=f"Too many failed MFA attempts. Try again in {service.settings.lockout_minutes} minutes.",
            headers={"Retry-After": str(lockout_seconds), "X-MFA-Remaining-Attempts": "0"},
        )

    if not result.success:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid MFA code",
            headers={"X-MFA-Remaining-Attempts": str(result.remaining_attempts)},
        )

    session = result.session
    return MFAVerifyResponse(
        session_token=session.session_token,
        expires_at=session.expires_at,
        phi_access_enabled=session.phi_access_enabled,
        mfa_activated=result.activated,
    )


# ============================================
# Enrollment
# ============================================

@router.post(
    "/setup",
    response_model=MFASetupResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        409: {"model": ErrorResponse, "description": "MFA already enabled"},
        503: {"model": ErrorResponse, "description": "Credential store unavailable"},
    },
)
async def setup_mfa(
    request: Optional[MFASetupRequest] = None,
    user: Dict = Depends(get_current_user),
    service: MFAService = Depends(get_mfa_service),
):
    """
    Start MFA enrollment.

    Returns the secret, provisioning URI and backup codes. They are shown
    once. MFA stays pending until the first code is verified.
    """
    label = (request.account_label if request else None) or user.get("email") or user["user_id"]
    enrollment = service.generate_secret(user["user_id"], label)

    logger.info(f"MFA setup initiated for user: {user['user_id']}")

    return MFASetupResponse(
        secret=enrollment.secret,
        provisioning_uri=enrollment.provisioning_uri,
        backup_codes=enrollment.backup_codes,
    )


# ============================================
# Verification
# ============================================

@router.post(
    "/verify",
    response_model=MFAVerifyResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid code"},
        404: {"model": ErrorResponse, "description": "MFA not set up"},
        409: {"model": ErrorResponse, "description": "Credential unusable, re-enroll"},
        429: {"model": ErrorResponse, "description": "Too many failed attempts"},
        503: {"model": ErrorResponse, "description": "Credential store unavailable"},
    },
)
async def verify_code(
    verification: MFAVerifyRequest,
    user: Dict = Depends(get_current_user),
    service: MFAService = Depends(get_mfa_service),
):
    """
    Verify a TOTP code and open an MFA session.

    The first valid code after setup activates MFA.
    """
    result = service.verify_code(user["user_id"], verification.code, phi_access=verification.phi_access)
    return _verification_response(result, service)


@router.post(
    "/verify/backup",
    response_model=MFAVerifyResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid or used backup code"},
        404: {"model": ErrorResponse, "description": "MFA not enabled"},
        429: {"model": ErrorResponse, "description": "Too many failed attempts"},
    },
)
async def verify_backup_code(
    verification: BackupCodeVerifyRequest,
    user: Dict = Depends(get_current_user),
    service: MFAService = Depends(get_mfa_service),
):
    """
    Spend a backup code and open an MFA session.

    Each backup code works exactly once.
    """
    result = service.verify_backup_code(user["user_id"], verification.code, phi_access=verification.phi_access)
    return _verification_response(result, service)


# ============================================
# Status & Sessions
# ============================================

@router.get("/status", response_model=MFAStatusResponse)
async def get_status(
    user: Dict = Depends(get_current_user),
    service: MFAService = Depends(get_mfa_service),
):
    """Get MFA enrollment status for the current user."""
    mfa_status = service.get_status(user["user_id"])
    return MFAStatusResponse(
        has_setup=mfa_status.has_setup,
        is_enabled=mfa_status.is_enabled,
        created_at=mfa_status.created_at,
        last_verified_at=mfa_status.last_verified_at,
        remaining_backup_codes=mfa_status.remaining_backup_codes,
    )


@router.get("/session", response_model=MFASessionResponse)
async def get_session(
    user: Dict = Depends(get_current_user),
    session_token: Optional[str] = Depends(get_mfa_session_token),
    service: MFAService = Depends(get_mfa_service),
):
    """
    Check whether this device holds a live MFA session.

    Answered from the server-side registry for the X-MFA-Session token;
    sessions opened on the user's other devices are not reported.
    """
    session = service.get_session_by_token(user["user_id"], session_token) if session_token else None
    if session is None:
        return MFASessionResponse(valid=False)
    return MFASessionResponse(
        valid=True,
        expires_at=session.expires_at,
        phi_access_enabled=session.phi_access_enabled,
    )


@router.post(
    "/session/extend",
    response_model=MFASessionResponse,
    responses={401: {"model": ErrorResponse, "description": "Session missing or expired"}},
)
async def extend_session(
    user: Dict = Depends(get_current_user),
    session_token: Optional[str] = Depends(get_mfa_session_token),
    service: MFAService = Depends(get_mfa_service),
):
    """
    Slide the session expiry forward on user activity.

    An expired session is never revived; verify again instead.
    """
    session = service.extend_session(user["user_id"], session_token) if session_token else None
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="MFA session missing or expired",
            headers={"X-MFA-Required": "true"},
        )

    return MFASessionResponse(
        valid=True,
        expires_at=session.expires_at,
        phi_access_enabled=session.phi_access_enabled,
    )


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
async def logout(
    user: Dict = Depends(get_current_user),
    session_token: Optional[str] = Depends(get_mfa_session_token),
    service: MFAService = Depends(get_mfa_service),
):
    """
    End the current MFA session.

    Idempotent: an unknown or expired token is not an error.
    """
    if session_token and service.get_session_by_token(user["user_id"], session_token) is not None:
        service.logout(session_token)
    logger.info(f"MFA session ended for user: {user['user_id']}")

    return None


@router.post("/logout/all", status_code=status.HTTP_204_NO_CONTENT)
async def logout_all(
    user: Dict = Depends(get_current_user),
    service: MFAService = Depends(get_mfa_service),
):
    """
    End MFA sessions on all devices.
    """
    count = service.logout_all(user["user_id"])
    logger.info(f"User {user['user_id']} ended {count} MFA sessions")

    return None


# ============================================
# MFA Management (requires a live MFA session)
# ============================================

@router.post(
    "/backup-codes/regenerate",
    response_model=BackupCodesResponse,
    responses={
        401: {"model": ErrorResponse, "description": "MFA session required"},
        404: {"model": ErrorResponse, "description": "MFA not enabled"},
    },
)
async def regenerate_backup_codes(
    user: Dict = Depends(require_mfa_session),
    service: MFAService = Depends(get_mfa_service),
):
    """
    Replace all backup codes with a fresh set.

    Every previous code stops working immediately.
    """
    codes = service.regenerate_backup_codes(user["user_id"])
    return BackupCodesResponse(backup_codes=codes, remaining=len(codes))


@router.delete(
    "",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={
        401: {"model": ErrorResponse, "description": "MFA session required"},
        404: {"model": ErrorResponse, "description": "MFA not set up"},
    },
)
async def disable_mfa(
    user: Dict = Depends(require_mfa_session),
    service: MFAService = Depends(get_mfa_service),
):
    """
    Disable MFA for the current user.

    Removes the credential and backup codes and ends every MFA session.
    """
    if not service.disable(user["user_id"]):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="MFA is not set up",
        )

    logger.info(f"MFA disabled by user: {user['user_id']}")

    return None


@router.delete(
    "/admin/{user_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={
        403: {"model": ErrorResponse, "description": "Administrator role required"},
        404: {"model": ErrorResponse, "description": "MFA not set up"},
    },
)
async def admin_disable_mfa(
    user_id: str,
    admin: Dict = Depends(require_admin),
    service: MFAService = Depends(get_mfa_service),
):
    """
    Administrative MFA removal for a locked-out user.
    """
    if not service.admin_disable(user_id, actor_id=admin["user_id"]):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="MFA is not set up",
        )

    return None
