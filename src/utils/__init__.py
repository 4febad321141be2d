"""
Shared utilities for CareXPS MFA.

This package provides:
- Secrets management
"""
from .secrets import get_secret, get_jwt_secret, mask_secret

__all__ = ["get_secret", "get_jwt_secret", "mask_secret"]
