"""
Security utilities for CareXPS MFA.

This package provides:
- Encryption of TOTP secrets at rest
- MFA audit trail
"""
from .encryption import SecretEncryptor, DecryptionError, get_secret_encryptor
from .audit import AuditEvent, AuditSink, LoggingAuditSink, record_event

__all__ = [
    "SecretEncryptor",
    "DecryptionError",
    "get_secret_encryptor",
    "AuditEvent",
    "AuditSink",
    "LoggingAuditSink",
    "record_event",
]
