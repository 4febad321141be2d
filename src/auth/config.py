"""
MFA configuration.

Policy values come from MFA_* environment variables. Algorithm parameters
that authenticator apps depend on are constants, not settings.
"""
import os
from dataclasses import dataclass
from functools import lru_cache

# Fixed for authenticator-app compatibility
TOTP_ALGORITHM = "SHA1"
TOTP_DIGITS = 6
TOTP_PERIOD = 30
TOTP_WINDOW = 1  # one step either side (+-30s)

# Secret size in bytes (160 bits)
SECRET_BYTES = 20

BACKUP_CODE_COUNT = 10
BACKUP_CODE_LENGTH = 8

DEFAULT_ISSUER = "CareXPS Healthcare CRM"


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return int(value)


@dataclass(frozen=True)
class MFASettings:
    """Runtime MFA policy."""
    issuer: str = DEFAULT_ISSUER
    session_ttl_minutes: int = 15
    phi_session_ttl_minutes: int = 5
    max_attempts: int = 3
    lockout_minutes: int = 15
    backup_code_rounds: int = 10
    store_timeout_seconds: int = 5
    sweep_interval_seconds: int = 60

    @classmethod
    def from_env(cls) -> "MFASettings":
        """Build settings from MFA_* environment variables."""
        return cls(
            issuer=os.getenv("MFA_ISSUER", DEFAULT_ISSUER),
            session_ttl_minutes=_int_env("MFA_SESSION_TTL_MINUTES", 15),
            phi_session_ttl_minutes=_int_env("MFA_PHI_SESSION_TTL_MINUTES", 5),
            max_attempts=_int_env("MFA_MAX_ATTEMPTS", 3),
            lockout_minutes=_int_env("MFA_LOCKOUT_MINUTES", 15),
            backup_code_rounds=_int_env("MFA_BACKUP_CODE_ROUNDS", 10),
            store_timeout_seconds=_int_env("MFA_STORE_TIMEOUT_SECONDS", 5),
            sweep_interval_seconds=_int_env("MFA_SWEEP_INTERVAL_SECONDS", 60),
        )


@lru_cache(maxsize=1)
def get_mfa_settings() -> MFASettings:
    """Get cached settings (read once per process)."""
    return MFASettings.from_env()
