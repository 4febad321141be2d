"""
FastAPI Dependencies for CareXPS MFA API.

Provides:
- Authentication dependencies (primary-login JWT)
- MFA service and route guard
- Redis client
"""
import os
import logging
from typing import Optional, Dict

import redis
from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt

from ..auth.service import MFAService, build_mfa_service
from ..database.mfa_store import get_mfa_store
from ..utils.secrets import get_jwt_secret

logger = logging.getLogger(__name__)

JWT_ALGORITHM = os.getenv("PRIMARY_AUTH_JWT_ALGORITHM", "HS256")
MFA_SESSION_HEADER = "X-MFA-Session"


# ============================================
# Redis Client
# ============================================

_redis_client: Optional[redis.Redis] = None


def get_redis_client() -> Optional[redis.Redis]:
    """
    Get Redis client singleton.

    Returns None if Redis is not configured or unavailable.
    """
    global _redis_client

    if _redis_client is not None:
        return _redis_client

    host = os.getenv("REDIS_HOST", "localhost")
    port = int(os.getenv("REDIS_PORT", "6379"))
    password = os.getenv("REDIS_PASSWORD", "") or None
    db = int(os.getenv("REDIS_DB", "0"))

    try:
        _redis_client = redis.Redis(
            host=host,
            port=port,
            password=password,
            db=db,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
        )
        # Test connection
        _redis_client.ping()
        logger.info(f"Redis connected: {host}:{port}")
        return _redis_client
    except redis.ConnectionError as e:
        logger.warning(f"Redis connection failed: {e}. MFA attempt limiting will use in-memory fallback.")
        _redis_client = None
        return None

# Security scheme
security = HTTPBearer(auto_error=False)


# ============================================
# MFA Service
# ============================================

_mfa_service: Optional[MFAService] = None


def get_mfa_service() -> MFAService:
    """Get the process-wide MFA service (one session registry per process)."""
    global _mfa_service
    if _mfa_service is None:
        _mfa_service = build_mfa_service(get_mfa_store(), redis_client=get_redis_client())
    return _mfa_service


# ============================================
# Authentication Dependencies
# ============================================

def decode_access_token(token: str) -> Optional[Dict]:
    """
    Verify a primary-login access token.

    Returns:
        Token claims, or None if the signature, expiry or format is invalid.
    """
    try:
        return jwt.decode(token, get_jwt_secret(), algorithms=[JWT_ALGORITHM])
    except JWTError:
        return None


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Dict:
    """
    Validate bearer token and return current user.

    Raises:
        HTTPException: If token is missing, invalid, or expired.
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    claims = decode_access_token(credentials.credentials)

    if claims is None or not claims.get("sub"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return {
        "user_id": str(claims["sub"]),
        "email": claims.get("email"),
        "role": claims.get("role", "user"),
    }


async def require_admin(user: Dict = Depends(get_current_user)) -> Dict:
    """
    Require the administrator role (checked server-side from the token).

    Raises:
        HTTPException: 403 for any other role.
    """
    if user.get("role") != "admin":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Administrator role required",
        )
    return user


def get_mfa_session_token(
    mfa_session: Optional[str] = Header(None, alias=MFA_SESSION_HEADER),
) -> Optional[str]:
    """Read the MFA session token from the X-MFA-Session header."""
    return mfa_session or None


# ============================================
# MFA Route Guard
# ============================================

async def require_mfa_session(
    user: Dict = Depends(get_current_user),
    session_token: Optional[str] = Depends(get_mfa_session_token),
    service: MFAService = Depends(get_mfa_service),
) -> Dict:
    """
    Route guard for protected resources.

    The caller's own X-MFA-Session token is looked up in the registry on
    every call and must belong to the authenticated user. A session that
    another device of the same user opened does not count.

    Raises:
        HTTPException: 401 with X-MFA-Required when the token is missing,
            unknown, expired or issued to someone else.
    """
    session = service.get_session_by_token(user["user_id"], session_token) if session_token else None
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="A valid MFA session is required",
            headers={"X-MFA-Required": "true"},
        )

    user["mfa_session_token"] = session.session_token
    user["mfa_session_expires_at"] = session.expires_at
    return user
