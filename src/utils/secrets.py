"""
Configuration secrets for CareXPS MFA.

A secret NAME is looked up, in order, in the file named by NAME_FILE,
the NAME environment variable and /run/secrets/<name>.
"""
import os
import logging
from typing import Optional
from functools import lru_cache

logger = logging.getLogger(__name__)

SECRETS_DIR = "/run/secrets"


def _read_secret_file(path: str) -> Optional[str]:
    try:
        with open(path, "r") as f:
            return f.read().strip()
    except OSError as e:
        logger.warning(f"Could not read secret file {path}: {e}")
        return None


@lru_cache(maxsize=32)
def get_secret(name: str, default: Optional[str] = None) -> Optional[str]:
    """
    Resolve a secret such as MFA_ENCRYPTION_KEY or POSTGRES_PASSWORD.

    Returns:
        The first value found, else default.
    """
    file_path = os.environ.get(f"{name}_FILE")
    if file_path and os.path.isfile(file_path):
        value = _read_secret_file(file_path)
        if value is not None:
            return value

    if os.environ.get(name):
        return os.environ[name]

    mounted = os.path.join(SECRETS_DIR, name.lower())
    if os.path.isfile(mounted):
        value = _read_secret_file(mounted)
        if value is not None:
            return value

    if default is None:
        logger.warning(f"Secret {name} is not configured")
    return default


def get_jwt_secret() -> str:
    """
    Key that verifies primary-login access tokens.

    Raises:
        ValueError: If PRIMARY_AUTH_JWT_SECRET is not configured.
    """
    value = get_secret("PRIMARY_AUTH_JWT_SECRET")
    if not value:
        raise ValueError("PRIMARY_AUTH_JWT_SECRET (or PRIMARY_AUTH_JWT_SECRET_FILE) must be set")
    return value


def mask_secret(secret: str, visible_chars: int = 4) -> str:
    """Shorten a token for logs, e.g. "3f9a...c21d"."""
    if not secret or len(secret) <= visible_chars * 2:
        return "***"
    return f"{secret[:visible_chars]}...{secret[-visible_chars:]}"
