"""
Credential store for MFA secrets and backup codes.

This module provides persistence for:
- MFA credentials (one per user, secret encrypted at rest)
- Backup code hashes (replace-set per enrollment, single-use)

SECURITY NOTE: TOTP secrets are only ever written encrypted and are
decrypted transiently through reveal_secret(). Backup codes are stored as
bcrypt hashes; plaintext codes never reach this module.

Every database fault (connection refused, pool exhausted, statement
timeout) surfaces as PersistenceUnavailable so callers can tell
"service down" apart from "not found".
"""
import os
import uuid
import logging
from dataclasses import dataclass
from typing import Optional, List
from datetime import datetime, timezone
from contextlib import contextmanager

from sqlalchemy import (
    create_engine, text, Column, String, Text, DateTime, Boolean, ForeignKey, Index,
)
from sqlalchemy.exc import OperationalError, InterfaceError, TimeoutError as PoolTimeoutError
from sqlalchemy.orm import sessionmaker, declarative_base

from ..auth.errors import PersistenceUnavailable, CorruptCredential
from ..security.encryption import SecretEncryptor, DecryptionError, get_secret_encryptor
from ..utils.secrets import get_secret

logger = logging.getLogger(__name__)

Base = declarative_base()


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive timestamps (SQLite drops tzinfo)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# =============================================================================
# DATABASE MODELS
# =============================================================================

class MFACredentialRecord(Base):
    """One MFA credential per user."""
    __tablename__ = "mfa_credentials"

    user_id = Column(String(255), primary_key=True)

    # Encrypted field
    secret_encrypted = Column(Text, nullable=False)

    enabled = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    last_verified_at = Column(DateTime(timezone=True), nullable=True)


class BackupCodeRecord(Base):
    """Hashed single-use recovery code."""
    __tablename__ = "mfa_backup_codes"

    code_id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(
        String(255),
        ForeignKey("mfa_credentials.user_id", ondelete="CASCADE"),
        nullable=False,
    )
    code_hash = Column(String(255), nullable=False)
    used_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("idx_backup_codes_user_used", "user_id", "used_at"),
    )


# =============================================================================
# VALUE OBJECTS
# =============================================================================

@dataclass(frozen=True)
class MFACredential:
    """Stored credential. The secret stays encrypted until reveal_secret()."""
    user_id: str
    secret_encrypted: str
    enabled: bool
    created_at: datetime
    last_verified_at: Optional[datetime] = None


@dataclass(frozen=True)
class StoredBackupCode:
    """An unused backup code hash."""
    code_id: str
    code_hash: str


# =============================================================================
# STORE
# =============================================================================

class MFAStore:
    """
    SQLAlchemy-backed store for MFA credentials and backup codes.

    Example usage:
        store = MFAStore("sqlite:///mfa.db", encryptor=SecretEncryptor(key))
        store.init_schema()

        store.save_enrollment(user_id, secret, code_hashes, now)
        credential = store.get_credential(user_id)
        secret = store.reveal_secret(credential)
    """

    def __init__(
        self,
        connection_string: Optional[str] = None,
        encryptor: Optional[SecretEncryptor] = None,
        timeout_seconds: int = 5,
    ):
        """
        Initialize database connection.

        Args:
            connection_string: SQLAlchemy URL. Uses MFA_DATABASE_URL or
                             POSTGRES_* environment variables if not provided.
            encryptor: Encryption collaborator for secrets at rest.
            timeout_seconds: Bound for connects, pool checkout and statements.
        """
        if connection_string is None:
            connection_string = os.getenv("MFA_DATABASE_URL") or self._build_database_url()

        self.timeout_seconds = timeout_seconds
        self._encryptor = encryptor

        if connection_string.startswith("sqlite"):
            self.engine = create_engine(
                connection_string,
                connect_args={"timeout": timeout_seconds, "check_same_thread": False},
            )
        else:
            self.engine = create_engine(
                connection_string,
                pool_size=10,
                max_overflow=20,
                pool_timeout=timeout_seconds,
                pool_pre_ping=True,  # Test connections before use (detect stale)
                pool_recycle=300,    # Recycle connections every 5 minutes
                connect_args={
                    "connect_timeout": timeout_seconds,
                    "options": f"-c statement_timeout={timeout_seconds * 1000}",
                },
            )
        self.Session = sessionmaker(bind=self.engine)

    def _build_database_url(self) -> str:
        """Build database URL from environment variables."""
        host = os.getenv("POSTGRES_HOST", "localhost")
        port = os.getenv("POSTGRES_PORT", "5432")
        db = os.getenv("POSTGRES_DB", "carexps")
        user = os.getenv("POSTGRES_USER", "carexps_user")
        password = get_secret("POSTGRES_PASSWORD", "")
        return f"postgresql://{user}:{password}@{host}:{port}/{db}"

    @property
    def encryptor(self) -> SecretEncryptor:
        if self._encryptor is None:
            self._encryptor = get_secret_encryptor()
        return self._encryptor

    @contextmanager
    def get_session(self):
        """
        Get a database session with automatic cleanup.

        Commits on success, rolls back on any error. Connectivity and
        timeout faults are re-raised as PersistenceUnavailable.

        Usage:
            with store.get_session() as session:
                session.execute(query)
        """
        session = self.Session()
        try:
            yield session
            session.commit()
        except (OperationalError, InterfaceError, PoolTimeoutError) as e:
            session.rollback()
            logger.error(f"MFA store unavailable: {e.__class__.__name__}")
            raise PersistenceUnavailable("MFA credential store is unavailable") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ==========================================
    # Schema
    # ==========================================

    def init_schema(self) -> None:
        """
        Initialize database schema (create tables if not exist).

        Call this once during application setup.
        """
        try:
            Base.metadata.create_all(self.engine)
        except (OperationalError, InterfaceError, PoolTimeoutError) as e:
            raise PersistenceUnavailable("MFA credential store is unavailable") from e
        logger.info("MFA store schema initialized")

    def ping(self) -> None:
        """Run a trivial query; raises PersistenceUnavailable when unreachable."""
        with self.get_session() as session:
            session.execute(text("SELECT 1"))

    # ==========================================
    # Credentials
    # ==========================================

    def get_credential(self, user_id: str) -> Optional[MFACredential]:
        """
        Get the user's credential.

        Args:
            user_id: Authenticated user identifier.

        Returns:
            MFACredential or None if the user never enrolled (or disabled).
        """
        with self.get_session() as session:
            record = session.get(MFACredentialRecord, user_id)
            if record is None:
                return None

            return MFACredential(
                user_id=record.user_id,
                secret_encrypted=record.secret_encrypted,
                enabled=bool(record.enabled),
                created_at=_utc(record.created_at),
                last_verified_at=_utc(record.last_verified_at),
            )

    def has_credential(self, user_id: str) -> bool:
        """Check whether any credential (pending or active) exists."""
        with self.get_session() as session:
            return session.get(MFACredentialRecord, user_id) is not None

    def reveal_secret(self, credential: MFACredential) -> str:
        """
        Decrypt a credential's secret for transient use.

        Raises:
            CorruptCredential: If the ciphertext cannot be decrypted.
        """
        try:
            return self.encryptor.decrypt(credential.secret_encrypted)
        except DecryptionError as e:
            raise CorruptCredential(credential.user_id, "secret could not be decrypted") from e

    def save_enrollment(
        self,
        user_id: str,
        secret: str,
        code_hashes: List[str],
        now: datetime,
    ) -> None:
        """
        Store a new pending credential and its backup codes in one transaction.

        Any previous credential and backup codes for the user are replaced.

        Args:
            user_id: Authenticated user identifier.
            secret: Plain base32 secret (encrypted before it is written).
            code_hashes: bcrypt hashes of the fresh backup codes.
            now: Enrollment timestamp.
        """
        secret_encrypted = self.encryptor.encrypt(secret)

        with self.get_session() as session:
            session.query(BackupCodeRecord).filter(
                BackupCodeRecord.user_id == user_id
            ).delete(synchronize_session=False)

            record = session.get(MFACredentialRecord, user_id)
            if record is None:
                record = MFACredentialRecord(user_id=user_id)
                session.add(record)

            record.secret_encrypted = secret_encrypted
            record.enabled = False
            record.created_at = now
            record.last_verified_at = None
            session.flush()

            session.add_all([
                BackupCodeRecord(
                    code_id=str(uuid.uuid4()),
                    user_id=user_id,
                    code_hash=code_hash,
                    created_at=now,
                )
                for code_hash in code_hashes
            ])

        logger.info(f"Stored pending MFA enrollment for user {user_id} with {len(code_hashes)} backup codes")

    def mark_verified(self, user_id: str, now: datetime) -> bool:
        """
        Flip the credential to enabled and stamp last_verified_at.

        Returns:
            True if this call activated a pending credential.
        """
        with self.get_session() as session:
            record = session.get(MFACredentialRecord, user_id)
            if record is None:
                return False

            activated = not record.enabled
            record.enabled = True
            record.last_verified_at = now
            return activated

    def delete_credential(self, user_id: str) -> bool:
        """
        Delete the credential and all backup codes.

        Returns:
            True if a credential existed.
        """
        with self.get_session() as session:
            session.query(BackupCodeRecord).filter(
                BackupCodeRecord.user_id == user_id
            ).delete(synchronize_session=False)
            deleted = session.query(MFACredentialRecord).filter(
                MFACredentialRecord.user_id == user_id
            ).delete(synchronize_session=False)

        logger.info(f"Deleted MFA credential for user {user_id}: existed={bool(deleted)}")
        return bool(deleted)

    # ==========================================
    # Backup Codes
    # ==========================================

    def replace_backup_codes(self, user_id: str, code_hashes: List[str], now: datetime) -> None:
        """
        Atomically replace the user's backup-code set.

        Every previous code, used or unused, is removed.
        """
        with self.get_session() as session:
            if session.get(MFACredentialRecord, user_id) is None:
                raise LookupError(f"No MFA credential for user {user_id}")

            session.query(BackupCodeRecord).filter(
                BackupCodeRecord.user_id == user_id
            ).delete(synchronize_session=False)

            session.add_all([
                BackupCodeRecord(
                    code_id=str(uuid.uuid4()),
                    user_id=user_id,
                    code_hash=code_hash,
                    created_at=now,
                )
                for code_hash in code_hashes
            ])

        logger.info(f"Replaced backup codes for user {user_id} ({len(code_hashes)} codes)")

    def get_unused_backup_codes(self, user_id: str) -> List[StoredBackupCode]:
        """Get hashes of the user's unused backup codes."""
        with self.get_session() as session:
            records = session.query(BackupCodeRecord).filter(
                BackupCodeRecord.user_id == user_id,
                BackupCodeRecord.used_at.is_(None),
            ).all()

            return [StoredBackupCode(code_id=r.code_id, code_hash=r.code_hash) for r in records]

    def consume_backup_code(self, user_id: str, code_id: str, now: datetime) -> bool:
        """
        Spend a backup code and stamp the credential's last_verified_at.

        Both writes share one transaction. The code update is conditional
        on used_at still being NULL, so of two racing callers at most one
        sees True, and a failed commit leaves the code unused.

        Returns:
            True if this call transitioned the code from unused to used.
        """
        with self.get_session() as session:
            updated = session.query(BackupCodeRecord).filter(
                BackupCodeRecord.code_id == code_id,
                BackupCodeRecord.user_id == user_id,
                BackupCodeRecord.used_at.is_(None),
            ).update({"used_at": now}, synchronize_session=False)
            if updated != 1:
                return False

            session.query(MFACredentialRecord).filter(
                MFACredentialRecord.user_id == user_id,
            ).update({"last_verified_at": now}, synchronize_session=False)

        return True

    def count_unused_backup_codes(self, user_id: str) -> int:
        """Count the user's remaining backup codes."""
        with self.get_session() as session:
            return session.query(BackupCodeRecord).filter(
                BackupCodeRecord.user_id == user_id,
                BackupCodeRecord.used_at.is_(None),
            ).count()


# Singleton instance
_mfa_store_instance: Optional[MFAStore] = None


def get_mfa_store() -> MFAStore:
    """
    Get singleton MFAStore instance.

    Returns:
        MFAStore instance.
    """
    global _mfa_store_instance
    if _mfa_store_instance is None:
        from ..auth.config import get_mfa_settings
        _mfa_store_instance = MFAStore(timeout_seconds=get_mfa_settings().store_timeout_seconds)
    return _mfa_store_instance
