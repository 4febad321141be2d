"""
MFA enrollment: secret generation and provisioning URI.

The provisioning URI always spells out algorithm, digits and period so
any standard authenticator app configures itself identically.
"""
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional
from urllib.parse import quote, urlencode

from . import totp
from .backup_codes import BackupCodeVault
from .config import SECRET_BYTES, TOTP_ALGORITHM, TOTP_DIGITS, TOTP_PERIOD, DEFAULT_ISSUER
from .errors import MalformedSecret, PersistenceUnavailable, ProvisioningFailed
from .locks import UserLocks

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Enrollment:
    """Result of a successful enrollment. Shown to the user once."""
    secret: str
    provisioning_uri: str
    backup_codes: List[str] = field(default_factory=list)


def generate_totp_secret(num_bytes: int = SECRET_BYTES) -> str:
    """
    Generate a new TOTP secret for MFA enrollment.

    Args:
        num_bytes: Raw secret size (20 bytes = 160 bits).

    Returns:
        Base32-encoded secret without padding (32 characters for 20 bytes).

    Raises:
        ProvisioningFailed: If the OS entropy source is unavailable.
    """
    try:
        raw = secrets.token_bytes(num_bytes)
    except (NotImplementedError, OSError) as e:
        raise ProvisioningFailed("Secure random source unavailable") from e
    return totp.secret_from_bytes(raw)


def get_totp_provisioning_uri(secret: str, account_label: str, issuer: str = DEFAULT_ISSUER) -> str:
    """
    Generate a provisioning URI for TOTP apps.

    Shape:
        otpauth://totp/{issuer}:{label}?secret=..&issuer=..&algorithm=SHA1&digits=6&period=30

    Args:
        secret: Base32-encoded TOTP secret.
        account_label: Label shown in the authenticator (usually email).
        issuer: Application name shown in the authenticator.

    Returns:
        otpauth:// URI string, suitable for QR encoding.
    """
    label = f"{quote(issuer, safe='')}:{quote(account_label, safe='@')}"
    query = urlencode(
        {
            "secret": secret,
            "issuer": issuer,
            "algorithm": TOTP_ALGORITHM,
            "digits": TOTP_DIGITS,
            "period": TOTP_PERIOD,
        },
        quote_via=quote,
    )
    return f"otpauth://totp/{label}?{query}"


class SecretProvisioner:
    """
    Creates pending MFA credentials.

    The secret and the fresh backup-code set are written in one store
    transaction with enabled=False; the credential only becomes active on
    the first successful verification.
    """

    def __init__(
        self,
        store,
        vault: BackupCodeVault,
        issuer: str = DEFAULT_ISSUER,
        locks: Optional[UserLocks] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.vault = vault
        self.issuer = issuer
        self.locks = locks if locks is not None else vault.locks
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def enroll(self, user_id: str, account_label: str) -> Enrollment:
        """
        Generate secret, backup codes and provisioning URI; persist as pending.

        Args:
            user_id: Authenticated user identifier.
            account_label: Label for the authenticator app (user's email).

        Returns:
            Enrollment with secret, URI and plaintext backup codes.

        Raises:
            ProvisioningFailed: On entropy failure, a failing self-check,
                when the encryption key is unusable or when the store rejects
                the write. Nothing is stored.
        """
        now = self._clock()
        secret = generate_totp_secret()

        # Self-check: the fresh secret must round-trip through the verifier
        try:
            if not totp.verify(secret, totp.code_at(secret, now), now):
                raise ProvisioningFailed("Generated secret failed self-check")
        except MalformedSecret as e:
            raise ProvisioningFailed("Generated secret is malformed") from e

        try:
            codes, hashes = self.vault.issue()
        except (NotImplementedError, OSError) as e:
            raise ProvisioningFailed("Secure random source unavailable") from e

        try:
            with self.locks.hold(user_id):
                self.store.save_enrollment(user_id, secret, hashes, now)
        except PersistenceUnavailable as e:
            raise ProvisioningFailed("Could not store MFA enrollment, please retry") from e
        except ValueError as e:
            # Encryption key missing or invalid
            logger.error(f"MFA secret encryption unavailable: {e}")
            raise ProvisioningFailed("MFA secret encryption is not configured") from e

        uri = get_totp_provisioning_uri(secret, account_label, self.issuer)
        logger.info(f"MFA enrollment pending for user {user_id}")

        return Enrollment(secret=secret, provisioning_uri=uri, backup_codes=codes)
