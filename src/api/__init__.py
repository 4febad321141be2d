"""
CareXPS MFA REST API.

FastAPI-based REST API for second-factor authentication.
"""
from .main import app, create_app

__all__ = ["app", "create_app"]
