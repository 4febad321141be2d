"""
CareXPS MFA - second-factor authentication for the CareXPS Healthcare CRM.

TOTP enrollment and verification, single-use backup codes, and
server-side MFA sessions gating PHI access.
"""

__version__ = "0.1.0"
__author__ = "CareXPS Team"
