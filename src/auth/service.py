"""
MFA service: the public façade for enrollment, verification and sessions.

Every operation takes the authenticated user ID explicitly; nothing here
infers identity from storage or trusts a client-supplied "verified" flag.
Session validity always comes from a SessionRegistry lookup.

Outcomes:
- Expected failures (wrong code, lockout) -> VerificationResult
- Infrastructure faults -> PersistenceUnavailable (retryable)
- Unusable stored secret -> CorruptCredential (re-enroll)
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, List, Optional

from . import totp
from .attempts import AttemptLimiter
from .backup_codes import BackupCodeVault
from .config import MFASettings, get_mfa_settings
from .errors import AlreadyEnrolled, CorruptCredential, MalformedSecret, NotEnrolled, PersistenceUnavailable
from .locks import UserLocks
from .provisioning import Enrollment, SecretProvisioner
from .sessions import MFASession, SessionRegistry
from ..security.audit import AuditEvent, AuditSink, LoggingAuditSink, record_event
from ..utils.secrets import mask_secret

logger = logging.getLogger(__name__)


class VerificationStatus(str, Enum):
    VERIFIED = "verified"
    INVALID_CODE = "invalid_code"
    LOCKED_OUT = "locked_out"


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of a TOTP or backup-code check."""
    status: VerificationStatus
    session: Optional[MFASession] = None
    remaining_attempts: Optional[int] = None
    activated: bool = False

    @property
    def success(self) -> bool:
        return self.status == VerificationStatus.VERIFIED

    @property
    def session_token(self) -> Optional[str]:
        return self.session.session_token if self.session else None


@dataclass(frozen=True)
class SessionStatus:
    """Route-guard view of a user's MFA session."""
    valid: bool
    expires_at: Optional[datetime] = None
    phi_access_enabled: bool = False


@dataclass(frozen=True)
class MFAStatus:
    """Enrollment overview for settings screens (never includes the secret)."""
    has_setup: bool
    is_enabled: bool
    created_at: Optional[datetime] = None
    last_verified_at: Optional[datetime] = None
    remaining_backup_codes: int = 0


class StatusEventKind(str, Enum):
    ENABLED = "enabled"
    DISABLED = "disabled"
    SESSION_CREATED = "session_created"
    SESSION_ENDED = "session_ended"


@dataclass(frozen=True)
class MFAStatusEvent:
    user_id: str
    kind: StatusEventKind


class MFAService:
    """
    Enrollment, verification and session management for TOTP MFA.

    Example usage:
        service = MFAService(store, SessionRegistry())

        enrollment = service.generate_secret(user_id, "nurse@clinic.ca")
        result = service.verify_code(user_id, "123456")
        if result.success:
            token = result.session_token

        service.get_session(user_id).valid   # registry lookup, never a cached flag
    """

    def __init__(
        self,
        store,
        registry: SessionRegistry,
        settings: Optional[MFASettings] = None,
        limiter: Optional[AttemptLimiter] = None,
        audit: Optional[AuditSink] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.settings = settings or get_mfa_settings()
        self.store = store
        self.registry = registry
        self._clock = clock or registry.now
        self.locks = UserLocks()
        self.limiter = limiter if limiter is not None else AttemptLimiter(
            max_attempts=self.settings.max_attempts,
            window_seconds=self.settings.lockout_minutes * 60,
            clock=self._clock,
        )
        self.audit = audit if audit is not None else LoggingAuditSink()
        self.vault = BackupCodeVault(
            store, self.locks, rounds=self.settings.backup_code_rounds, clock=self._clock,
        )
        self.provisioner = SecretProvisioner(
            store, self.vault, issuer=self.settings.issuer, locks=self.locks, clock=self._clock,
        )
        self._subscribers: List[Callable[[MFAStatusEvent], None]] = []

    # ==========================================
    # Status subscriptions
    # ==========================================

    def subscribe(self, callback: Callable[[MFAStatusEvent], None]) -> Callable[[], None]:
        """
        Register a callback for MFA status changes.

        Returns:
            Function that removes the subscription.
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _notify(self, user_id: str, kind: StatusEventKind) -> None:
        event = MFAStatusEvent(user_id=user_id, kind=kind)
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as e:
                logger.warning(f"MFA status subscriber failed on {kind.value}: {e}")

    # ==========================================
    # Enrollment
    # ==========================================

    def generate_secret(self, user_id: str, account_label: str) -> Enrollment:
        """
        Start (or restart) enrollment: Unenrolled/Pending/Disabled -> Pending.

        Raises:
            AlreadyEnrolled: If the user has an active credential.
            ProvisioningFailed: If nothing could be stored.
            PersistenceUnavailable: If the store could not be read.
        """
        with self.locks.hold(user_id):
            credential = self.store.get_credential(user_id)
            if credential is not None and credential.enabled:
                raise AlreadyEnrolled(user_id)

            enrollment = self.provisioner.enroll(user_id, account_label)
            # A restarted enrollment must not leave sessions from an older secret
            self.registry.invalidate_user(user_id)

        record_event(self.audit, AuditEvent.MFA_SETUP, user_id, True, {"label": account_label})
        return enrollment

    def _load_secret(self, user_id: str, require_enabled: bool):
        credential = self.store.get_credential(user_id)
        if credential is None or (require_enabled and not credential.enabled):
            raise NotEnrolled(user_id)
        return credential, self.store.reveal_secret(credential)

    # ==========================================
    # Verification
    # ==========================================

    def _locked_out(self, user_id: str) -> Optional[VerificationResult]:
        allowed, remaining = self.limiter.check(user_id)
        if allowed:
            return None
        record_event(self.audit, AuditEvent.MFA_RATE_LIMITED, user_id, False, {"remaining": remaining})
        return VerificationResult(status=VerificationStatus.LOCKED_OUT, remaining_attempts=0)

    def _failed(self, user_id: str, method: str) -> VerificationResult:
        remaining = self.limiter.record_failure(user_id)
        record_event(
            self.audit, AuditEvent.MFA_VERIFY_FAILURE, user_id, False,
            {"method": method, "remaining": remaining},
        )
        status = VerificationStatus.LOCKED_OUT if remaining == 0 else VerificationStatus.INVALID_CODE
        return VerificationResult(status=status, remaining_attempts=remaining)

    def _succeeded(self, user_id: str, phi_access: bool, method: str, activated: bool) -> VerificationResult:
        self.limiter.clear(user_id)
        session = self.registry.create_session(user_id, phi_access=phi_access)

        if activated:
            record_event(self.audit, AuditEvent.MFA_ENABLED, user_id, True)
            self._notify(user_id, StatusEventKind.ENABLED)
        record_event(
            self.audit, AuditEvent.MFA_VERIFY_SUCCESS, user_id, True,
            {"method": method, "phi_access": phi_access, "session": mask_secret(session.session_token)},
        )
        self._notify(user_id, StatusEventKind.SESSION_CREATED)
        return VerificationResult(status=VerificationStatus.VERIFIED, session=session, activated=activated)

    def verify_code(self, user_id: str, code: str, phi_access: bool = False) -> VerificationResult:
        """
        Verify a TOTP code and issue an MFA session on success.

        A Pending credential becomes Active on its first valid code. A wrong
        code keeps it Pending (the secret is not regenerated).

        Args:
            user_id: Authenticated user identifier.
            code: 6-digit code from the authenticator app.
            phi_access: Request a PHI-scoped session.

        Raises:
            NotEnrolled: If the user has no credential.
            CorruptCredential: If the stored secret is unusable.
            PersistenceUnavailable: If the store fails; no session is created.
        """
        with self.locks.hold(user_id):
            locked = self._locked_out(user_id)
            if locked is not None:
                return locked

            _, secret = self._load_secret(user_id, require_enabled=False)
            try:
                valid = totp.verify(secret, code, self._clock())
            except MalformedSecret as e:
                logger.error(f"Stored TOTP secret for user {user_id} is malformed")
                raise CorruptCredential(user_id, "stored secret is not valid base32") from e

            if not valid:
                return self._failed(user_id, "totp")
            activated = self.store.mark_verified(user_id, self._clock())
            return self._succeeded(user_id, phi_access, "totp", activated)

    def verify_backup_code(self, user_id: str, code: str, phi_access: bool = False) -> VerificationResult:
        """
        Spend a backup code and issue an MFA session on success.

        Only available once MFA is Active.

        Raises:
            NotEnrolled: If the user has no active credential.
            PersistenceUnavailable: If the store fails before the code is
                spent; the code stays usable and no session is created.
        """
        with self.locks.hold(user_id):
            locked = self._locked_out(user_id)
            if locked is not None:
                return locked

            credential = self.store.get_credential(user_id)
            if credential is None or not credential.enabled:
                raise NotEnrolled(user_id)

            # Spending the code also stamps last_verified_at in the same commit
            if not self.vault.consume(user_id, code):
                return self._failed(user_id, "backup_code")
            result = self._succeeded(user_id, phi_access, "backup_code", activated=False)

        try:
            remaining = self.vault.remaining(user_id)
        except PersistenceUnavailable as e:
            logger.warning(f"Could not count remaining backup codes for user {user_id}: {e}")
            remaining = None
        record_event(self.audit, AuditEvent.MFA_BACKUP_CODE_USED, user_id, True, {"remaining": remaining})
        return result

    # ==========================================
    # Status
    # ==========================================

    def has_mfa_enabled(self, user_id: str) -> bool:
        """True only for an Active credential (pending enrollment does not count)."""
        credential = self.store.get_credential(user_id)
        return credential is not None and credential.enabled

    def get_status(self, user_id: str) -> MFAStatus:
        """Enrollment overview for the user."""
        credential = self.store.get_credential(user_id)
        if credential is None:
            return MFAStatus(has_setup=False, is_enabled=False)

        return MFAStatus(
            has_setup=True,
            is_enabled=credential.enabled,
            created_at=credential.created_at,
            last_verified_at=credential.last_verified_at,
            remaining_backup_codes=self.vault.remaining(user_id),
        )

    def regenerate_backup_codes(self, user_id: str) -> List[str]:
        """
        Replace the user's backup codes with a fresh set of 10.

        Raises:
            NotEnrolled: If MFA is not Active.
        """
        with self.locks.hold(user_id):
            if not self.has_mfa_enabled(user_id):
                raise NotEnrolled(user_id)
            codes = self.vault.generate(user_id)

        record_event(self.audit, AuditEvent.MFA_BACKUP_CODES_REGENERATED, user_id, True)
        return codes

    def remaining_backup_codes(self, user_id: str) -> int:
        return self.vault.remaining(user_id)

    # ==========================================
    # Sessions
    # ==========================================

    def get_session(self, user_id: str) -> SessionStatus:
        """
        Route-guard check. Always a live registry lookup.

        Returns:
            SessionStatus(valid=False) when no unexpired session exists.
        """
        session = self.registry.lookup(user_id)
        if session is None:
            return SessionStatus(valid=False)
        return SessionStatus(
            valid=True,
            expires_at=session.expires_at,
            phi_access_enabled=session.phi_access_enabled,
        )

    def get_session_by_token(self, user_id: str, session_token: str) -> Optional[MFASession]:
        """Live session for this token, only if it belongs to user_id."""
        session = self.registry.get(session_token)
        if session is None or session.user_id != user_id:
            return None
        return session

    def extend_session(self, user_id: str, session_token: str) -> Optional[MFASession]:
        """
        Sliding expiration on user activity. Never revives an expired session.
        """
        with self.locks.hold(user_id):
            if self.get_session_by_token(user_id, session_token) is None:
                return None
            return self.registry.extend(session_token)

    def verify_phi_access(self, user_id: str, session_token: str) -> bool:
        """Check that the token is live, belongs to the user and carries PHI scope."""
        session = self.get_session_by_token(user_id, session_token)
        granted = session is not None and session.phi_access_enabled
        record_event(self.audit, AuditEvent.MFA_PHI_ACCESS, user_id, granted)
        return granted

    def logout(self, session_token: str) -> bool:
        """
        Invalidate one MFA session. Idempotent.

        Returns:
            True if a session was removed.
        """
        session = self.registry.invalidate(session_token)
        if session is None:
            return False
        record_event(self.audit, AuditEvent.MFA_SESSION_ENDED, session.user_id, True, {"reason": "logout"})
        self._notify(session.user_id, StatusEventKind.SESSION_ENDED)
        return True

    def logout_all(self, user_id: str) -> int:
        """Invalidate every MFA session of the user (logout from all devices)."""
        with self.locks.hold(user_id):
            removed = self.registry.invalidate_user(user_id)
        if removed:
            record_event(
                self.audit, AuditEvent.MFA_SESSION_ENDED, user_id, True,
                {"reason": "logout_all", "count": len(removed)},
            )
            self._notify(user_id, StatusEventKind.SESSION_ENDED)
        return len(removed)

    # ==========================================
    # Disable
    # ==========================================

    def disable(self, user_id: str, actor_id: Optional[str] = None) -> bool:
        """
        Active -> Disabled: delete credential and backup codes, end all sessions.

        Sessions are invalidated before the store is touched, so even a
        failing delete cannot leave a usable session behind.

        Args:
            user_id: User whose MFA is removed.
            actor_id: Administrator performing the action (None for self-service).

        Returns:
            True if a credential existed.

        Raises:
            PersistenceUnavailable: If the credential could not be deleted.
        """
        with self.locks.hold(user_id):
            self.registry.invalidate_user(user_id)
            existed = self.store.delete_credential(user_id)
            self.limiter.clear(user_id)

        metadata = {"actor": actor_id} if actor_id else {}
        record_event(self.audit, AuditEvent.MFA_DISABLED, user_id, existed, metadata)
        if existed:
            self._notify(user_id, StatusEventKind.DISABLED)
        return existed

    def admin_disable(self, user_id: str, actor_id: str) -> bool:
        """
        Administrative MFA removal. Authorization of actor_id is the caller's
        job and must be a server-side check.
        """
        if not actor_id:
            raise PermissionError("Administrative disable requires an authorized actor")
        logger.warning(f"MFA disabled for user {user_id} by administrator {actor_id}")
        return self.disable(user_id, actor_id=actor_id)


def build_mfa_service(store, settings: Optional[MFASettings] = None, redis_client=None, audit=None) -> MFAService:
    """
    Wire a service from settings.

    Args:
        store: MFAStore (or any object with the same interface).
        settings: Policy (default: environment).
        redis_client: Optional Redis for attempt counters.
        audit: Optional audit sink (default: logging sink).
    """
    settings = settings or get_mfa_settings()
    registry = SessionRegistry(
        ttl=timedelta(minutes=settings.session_ttl_minutes),
        phi_ttl=timedelta(minutes=settings.phi_session_ttl_minutes),
    )
    limiter = AttemptLimiter(
        redis_client=redis_client,
        max_attempts=settings.max_attempts,
        window_seconds=settings.lockout_minutes * 60,
    )
    return MFAService(store, registry, settings=settings, limiter=limiter, audit=audit)
