"""
Database layer for CareXPS MFA.

This package provides:
- mfa_store: SQLAlchemy store for MFA credentials and backup codes
"""
