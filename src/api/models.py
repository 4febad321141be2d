"""
Pydantic Models for CareXPS MFA API.

Request and response models for all API endpoints.
"""
from datetime import datetime
from typing import Optional, List, Dict
from pydantic import BaseModel, EmailStr, Field, ConfigDict


# ============================================
# Enrollment Models
# ============================================

class MFASetupRequest(BaseModel):
    """
    MFA setup request.

    The account label defaults to the email from the access token.
    """
    account_label: Optional[EmailStr] = Field(None, description="Label shown in the authenticator app")


class MFASetupResponse(BaseModel):
    """
    MFA setup response.

    The secret and backup codes are shown exactly once. MFA is not
    active until the first code is verified with /mfa/verify.
    """
    secret: str
    provisioning_uri: str
    backup_codes: List[str] = Field(..., description="One-time backup codes for account recovery (store securely!)")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "secret": "JBSWY3DPEHPK3PXPJBSWY3DPEHPK3PXP",
                "provisioning_uri": (
                    "otpauth://totp/CareXPS%20Healthcare%20CRM:nurse@clinic.ca"
                    "?secret=JBSWY3DPEHPK3PXPJBSWY3DPEHPK3PXP&issuer=CareXPS%20Healthcare%20CRM"
                    "&algorithm=SHA1&digits=6&period=30"
                ),
                "backup_codes": ["04811937", "55120386"],
            }
        }
    )


# ============================================
# Verification Models
# ============================================

class MFAVerifyRequest(BaseModel):
    """TOTP verification request."""
    code: str = Field(..., min_length=6, max_length=12, description="6-digit code from authenticator app")
    phi_access: bool = Field(False, description="Request a PHI-scoped session (shorter TTL)")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "code": "123456",
                "phi_access": False
            }
        }
    )


class BackupCodeVerifyRequest(BaseModel):
    """Backup code verification request."""
    code: str = Field(..., min_length=8, max_length=12, description="One-time backup code (format: XXXX-XXXX)")
    phi_access: bool = False


class MFAVerifyResponse(BaseModel):
    """Successful verification: a fresh MFA session."""
    verified: bool = True
    session_token: str
    expires_at: datetime
    phi_access_enabled: bool = False
    mfa_activated: bool = Field(False, description="True when this code completed enrollment")


class MFASessionResponse(BaseModel):
    """Route-guard view of the current MFA session."""
    valid: bool
    expires_at: Optional[datetime] = None
    phi_access_enabled: bool = False


class MFAStatusResponse(BaseModel):
    """MFA enrollment overview (never contains the secret)."""
    has_setup: bool
    is_enabled: bool
    created_at: Optional[datetime] = None
    last_verified_at: Optional[datetime] = None
    remaining_backup_codes: int = 0


class BackupCodesResponse(BaseModel):
    """Freshly generated backup codes."""
    backup_codes: List[str]
    remaining: int


# ============================================
# Health Models
# ============================================

class HealthStatus(BaseModel):
    """Health check response."""
    status: str = Field(..., description="healthy or unhealthy")
    version: str
    services: Dict[str, str]
    timestamp: datetime


# ============================================
# Error Models
# ============================================

class ErrorResponse(BaseModel):
    """
    Standard error response.

    All API errors return this format with an error message,
    optional detail, and error code for programmatic handling.
    """
    error: str = Field(..., description="Error type/summary")
    detail: Optional[str] = Field(None, description="Detailed error message")
    code: Optional[str] = Field(None, description="Error code for programmatic handling")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "error": "MFA Required",
                "detail": "A valid MFA session is required",
                "code": "MFA_REQUIRED"
            }
        }
    )
