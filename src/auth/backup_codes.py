"""
Backup codes for MFA account recovery.

Each enrollment cycle issues exactly 10 single-use codes of 8 random
decimal digits. Only bcrypt hashes are persisted; the plaintext list is
returned once for display/export and cannot be re-derived afterwards.
"""
import logging
import secrets
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

import bcrypt

from .config import BACKUP_CODE_COUNT, BACKUP_CODE_LENGTH
from .locks import UserLocks

logger = logging.getLogger(__name__)


def generate_backup_codes(count: int = BACKUP_CODE_COUNT, length: int = BACKUP_CODE_LENGTH) -> List[str]:
    """
    Generate backup codes for account recovery.

    Args:
        count: Number of backup codes to generate.
        length: Digits per code.

    Returns:
        List of zero-padded decimal codes (e.g. "04811937").

    Raises:
        NotImplementedError, OSError: If the OS entropy source is unavailable.
    """
    upper = 10 ** length
    return [str(secrets.randbelow(upper)).zfill(length) for _ in range(count)]


def normalize_backup_code(code: str) -> Optional[str]:
    """
    Strip spaces and dashes; return None unless exactly 8 digits remain.

    Users often type codes as "1234-5678" or "1234 5678".
    """
    if code is None:
        return None
    normalized = str(code).replace("-", "").replace(" ", "").strip()
    if len(normalized) != BACKUP_CODE_LENGTH or not normalized.isdigit():
        return None
    return normalized


def hash_backup_code(code: str, rounds: int = 10) -> str:
    """
    Hash a backup code for secure storage.

    Args:
        code: Plain text backup code.
        rounds: bcrypt cost factor.

    Returns:
        Bcrypt hash of the normalized code.
    """
    normalized = normalize_backup_code(code)
    if normalized is None:
        raise ValueError("Backup codes must be 8 digits")
    salt = bcrypt.gensalt(rounds=rounds)
    return bcrypt.hashpw(normalized.encode("utf-8"), salt).decode("utf-8")


def verify_backup_code(code: str, hashed_code: str) -> bool:
    """
    Verify a backup code against its hash.

    Args:
        code: Normalized backup code.
        hashed_code: Stored bcrypt hash.

    Returns:
        True if code matches, False otherwise (including unreadable hashes).
    """
    try:
        return bcrypt.checkpw(code.encode("utf-8"), hashed_code.encode("utf-8"))
    except ValueError:
        logger.warning("Skipping unreadable backup code hash")
        return False


class BackupCodeVault:
    """
    Issues and consumes backup codes on top of the credential store.

    Consumption is serialized per user through the shared lock table and
    additionally guarded by a conditional update in the store, so two
    concurrent attempts with the same code consume it at most once.

    Example usage:
        vault = BackupCodeVault(store, locks)
        codes = vault.generate(user_id)      # replaces previous set
        vault.consume(user_id, codes[0])      # True
        vault.consume(user_id, codes[0])      # False
    """

    def __init__(
        self,
        store,
        locks: Optional[UserLocks] = None,
        rounds: int = 10,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.locks = locks if locks is not None else UserLocks()
        self.rounds = rounds
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def issue(self) -> Tuple[List[str], List[str]]:
        """
        Create a fresh code set without persisting it.

        Returns:
            Tuple of (plaintext_codes, bcrypt_hashes).
        """
        codes = generate_backup_codes()
        hashes = [hash_backup_code(code, rounds=self.rounds) for code in codes]
        return codes, hashes

    def generate(self, user_id: str) -> List[str]:
        """
        Generate and store a new code set, invalidating every previous code.

        Returns:
            Plaintext codes (shown once).
        """
        codes, hashes = self.issue()
        with self.locks.hold(user_id):
            self.store.replace_backup_codes(user_id, hashes, self._clock())
        logger.info(f"Generated {len(codes)} backup codes for user {user_id}")
        return codes

    def consume(self, user_id: str, candidate_code: str) -> bool:
        """
        Spend a backup code.

        Args:
            user_id: Authenticated user identifier.
            candidate_code: Code entered by the user.

        Returns:
            True exactly once per code; False for unknown, malformed or
            already used codes.

        Raises:
            PersistenceUnavailable: If the store cannot be reached.
        """
        normalized = normalize_backup_code(candidate_code)
        if normalized is None:
            return False

        with self.locks.hold(user_id):
            for stored in self.store.get_unused_backup_codes(user_id):
                if verify_backup_code(normalized, stored.code_hash):
                    consumed = self.store.consume_backup_code(user_id, stored.code_id, self._clock())
                    if consumed:
                        logger.info(f"Backup code consumed for user {user_id}")
                    return consumed
        return False

    def remaining(self, user_id: str) -> int:
        """Number of unused codes left for the user."""
        return self.store.count_unused_backup_codes(user_id)
