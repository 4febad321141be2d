"""
TOTP verification (RFC 6238).

Pure functions only: no I/O and no shared state, so every call is
deterministic for a given (secret, code, reference_time).

Compatible with Google Authenticator, Authy, and other TOTP apps:
HMAC-SHA1, 6 digits, 30-second steps, one step of skew tolerance.
"""
import base64
import binascii
import hmac
import logging
import time
from datetime import datetime
from typing import Optional, Union

import pyotp

from .config import TOTP_DIGITS, TOTP_PERIOD, TOTP_WINDOW
from .errors import MalformedSecret

logger = logging.getLogger(__name__)

ReferenceTime = Union[int, float, datetime]


def _to_unix(reference_time: Optional[ReferenceTime]) -> int:
    if reference_time is None:
        return int(time.time())
    if isinstance(reference_time, datetime):
        return int(reference_time.timestamp())
    return int(reference_time)


def normalize_secret(secret: str) -> str:
    """
    Validate a base32 secret and return it uppercased without padding or spaces.

    Raises:
        MalformedSecret: If the secret is empty or not decodable base32.
    """
    if not secret or not isinstance(secret, str):
        raise MalformedSecret("TOTP secret is empty")

    cleaned = secret.replace(" ", "").upper().rstrip("=")
    padded = cleaned + "=" * (-len(cleaned) % 8)
    try:
        raw = base64.b32decode(padded, casefold=True)
    except (binascii.Error, ValueError) as e:
        raise MalformedSecret(f"TOTP secret is not valid base32: {e}") from e

    if not raw:
        raise MalformedSecret("TOTP secret decodes to zero bytes")
    return cleaned


def secret_from_bytes(raw: bytes) -> str:
    """Encode raw secret bytes as unpadded base32."""
    return base64.b32encode(raw).decode("ascii").rstrip("=")


def code_at(secret: str, reference_time: Optional[ReferenceTime] = None) -> str:
    """
    Compute the 6-digit code for the step containing reference_time.

    Args:
        secret: Base32-encoded TOTP secret.
        reference_time: Unix seconds or datetime (default: now).

    Returns:
        Zero-padded 6-digit code.
    """
    totp = pyotp.TOTP(normalize_secret(secret), digits=TOTP_DIGITS, interval=TOTP_PERIOD)
    return totp.at(_to_unix(reference_time))


def _clean_candidate(code: str) -> Optional[str]:
    if code is None:
        return None
    candidate = "".join(ch for ch in str(code) if not ch.isspace())
    if len(candidate) != TOTP_DIGITS or not candidate.isdigit():
        return None
    return candidate


def verify(
    secret: str,
    candidate_code: str,
    reference_time: Optional[ReferenceTime] = None,
) -> bool:
    """
    Verify a TOTP code against the secret.

    Accepts the code for step T, T-1 or T+1 where T = floor(unix / 30).
    Each comparison is constant-time.

    Args:
        secret: Base32-encoded TOTP secret.
        candidate_code: Code entered by the user (whitespace ignored).
        reference_time: Unix seconds or datetime (default: now).

    Returns:
        True if the code matches one of the three accepted steps.

    Raises:
        MalformedSecret: If the secret is not valid base32 material.
    """
    totp = pyotp.TOTP(normalize_secret(secret), digits=TOTP_DIGITS, interval=TOTP_PERIOD)

    candidate = _clean_candidate(candidate_code)
    if candidate is None:
        return False

    now = _to_unix(reference_time)
    matched = False
    # Compare against every step in the window so timing does not reveal which one matched
    for offset in range(-TOTP_WINDOW, TOTP_WINDOW + 1):
        expected = totp.at(now + offset * TOTP_PERIOD)
        if hmac.compare_digest(expected.encode("ascii"), candidate.encode("ascii")):
            matched = True
    return matched
