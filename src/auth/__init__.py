"""
Multi-factor authentication for CareXPS.

This package provides:
- TOTP verification (RFC 6238)
- Secret provisioning and backup codes
- In-memory MFA session registry
- Failed-attempt limiting

The orchestrating MFAService lives in src.auth.service.
"""
from .errors import (
    MFAError,
    NotEnrolled,
    AlreadyEnrolled,
    PersistenceUnavailable,
    CorruptCredential,
    ProvisioningFailed,
    MalformedSecret,
)
from .config import MFASettings, get_mfa_settings
from .sessions import MFASession, SessionRegistry, SessionSweeper

__all__ = [
    "MFAError",
    "NotEnrolled",
    "AlreadyEnrolled",
    "PersistenceUnavailable",
    "CorruptCredential",
    "ProvisioningFailed",
    "MalformedSecret",
    "MFASettings",
    "get_mfa_settings",
    "MFASession",
    "SessionRegistry",
    "SessionSweeper",
]
