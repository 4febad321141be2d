"""
Error taxonomy for the MFA subsystem.

Expected verification outcomes (wrong code, lockout) are NOT exceptions;
they are reported through VerificationResult. The classes below cover
enrollment state violations and infrastructure faults only.
"""


class MFAError(Exception):
    """Base class for all MFA errors."""


class NotEnrolled(MFAError):
    """No MFA credential exists for the user."""

    def __init__(self, user_id: str):
        super().__init__(f"MFA is not set up for user {user_id}")
        self.user_id = user_id


class AlreadyEnrolled(MFAError):
    """The user already has an active MFA credential."""

    def __init__(self, user_id: str):
        super().__init__(f"MFA is already enabled for user {user_id}")
        self.user_id = user_id


class PersistenceUnavailable(MFAError):
    """
    The credential store could not be reached or timed out.

    Retryable. Must never be read as "code accepted" or "not found".
    """

    retryable = True


class CorruptCredential(MFAError):
    """
    Stored secret could not be decrypted or is structurally invalid.

    Fatal for that credential: the user has to enroll again.
    """

    def __init__(self, user_id: str, reason: str = ""):
        message = f"MFA credential for user {user_id} is unusable"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.user_id = user_id


class ProvisioningFailed(MFAError):
    """Secret generation or enrollment persistence failed; nothing was stored."""


class MalformedSecret(ValueError):
    """Raised by the TOTP verifier when the secret is not valid base32 material."""
