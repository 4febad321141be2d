"""
Audit trail for MFA events.

The transport is pluggable: anything implementing AuditSink.record() can
receive events. The default sink writes structured records to the
"carexps.audit" logger.

Audit is best-effort. record_event() never raises, so a broken sink can
neither block nor fail a verification.
"""
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("carexps.audit")

SENSITIVE_FIELDS = ("secret", "code", "token", "password", "key")


class AuditEvent(str, Enum):
    """MFA audit event types."""
    MFA_SETUP = "mfa:setup"
    MFA_ENABLED = "mfa:enabled"
    MFA_VERIFY_SUCCESS = "mfa:verify:success"
    MFA_VERIFY_FAILURE = "mfa:verify:failure"
    MFA_BACKUP_CODE_USED = "mfa:backup_code:used"
    MFA_BACKUP_CODES_REGENERATED = "mfa:backup_codes:regenerated"
    MFA_RATE_LIMITED = "mfa:rate_limited"
    MFA_DISABLED = "mfa:disabled"
    MFA_SESSION_ENDED = "mfa:session:ended"
    MFA_PHI_ACCESS = "mfa:phi_access"


def mask_sensitive(metadata: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Replace values whose key names a secret-like field."""
    if not metadata:
        return {}
    masked = {}
    for key, value in metadata.items():
        if any(field in key.lower() for field in SENSITIVE_FIELDS):
            masked[key] = "***MASKED***"
        else:
            masked[key] = value
    return masked


class AuditSink(ABC):
    """Append-only audit transport."""

    @abstractmethod
    def record(self, event: AuditEvent, user_id: str, success: bool, metadata: Dict[str, Any]) -> None:
        """Append one event."""


class LoggingAuditSink(AuditSink):
    """Writes audit events to the carexps.audit logger."""

    def record(self, event: AuditEvent, user_id: str, success: bool, metadata: Dict[str, Any]) -> None:
        audit_logger.info(
            f"{event.value} user={user_id} success={success}",
            extra={"audit_event": event.value, "user_id": user_id, "success": success, "metadata": metadata},
        )


def record_event(
    sink: Optional[AuditSink],
    event: AuditEvent,
    user_id: str,
    success: bool,
    metadata: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Record an audit event without ever raising.

    Args:
        sink: Audit transport (None disables auditing).
        event: Event type.
        user_id: Subject of the event.
        success: Outcome.
        metadata: Extra context; secret-like keys are masked.
    """
    if sink is None:
        return
    try:
        sink.record(event, user_id, success, mask_sensitive(metadata))
    except Exception as e:
        logger.warning(f"Audit logging failed for {event.value}: {e}")
