"""
Authentication helper utilities.

Requests carry the Supabase session JWT; the ``sub`` claim is the tenant's
``user_id``.
"""

import os
import logging
from datetime import datetime, timezone
from typing import Optional

import jwt
from fastapi import HTTPException, Request, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

logger = logging.getLogger(__name__)

# ==================== CONFIGURATION ====================
JWT_SECRET = (
    os.getenv("SUPABASE_JWT_SECRET")
    or os.getenv("JWT_SECRET")
    or ""
).strip()

# Security bearer for FastAPI
security = HTTPBearer(auto_error=False)


def _jwt_secret() -> str:
    secret = (os.getenv("SUPABASE_JWT_SECRET") or os.getenv("JWT_SECRET") or JWT_SECRET).strip()
    if not secret:
        logger.error("JWT secret not configured (SUPABASE_JWT_SECRET / JWT_SECRET)")
        raise HTTPException(status_code=503, detail="Autenticação não configurada")
    return secret


# ==================== TOKEN FUNCTIONS ====================
def create_token(user_id: str, email: Optional[str] = None, expires_in_s: int = 3600) -> str:
    """
    Create a Supabase-compatible access token.

    Used by the scheduler and by local tooling; end users get theirs from
    Supabase Auth.
    """
    payload = {
        "sub": user_id,
        "role": "authenticated",
        "aud": "authenticated",
        "exp": int(datetime.now(timezone.utc).timestamp()) + int(expires_in_s),
    }
    if email:
        payload["email"] = email
    return jwt.encode(payload, _jwt_secret(), algorithm="HS256")


def verify_token(http_request: Request, credentials: HTTPAuthorizationCredentials = Depends(security)) -> dict:
    """
    Verify a JWT token from the request.

    Args:
        http_request: The FastAPI Request object
        credentials: The HTTP bearer credentials

    Returns:
        The decoded token payload

    Raises:
        HTTPException: If token is missing, expired, or invalid
    """
    token = credentials.credentials if credentials else None
    if not token:
        token = http_request.cookies.get("access_token")
    if not token:
        raise HTTPException(status_code=401, detail="Token não fornecido")
    try:
        payload = jwt.decode(
            token,
            _jwt_secret(),
            algorithms=["HS256"],
            options={"verify_aud": False},
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expirado")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Token inválido")
    if not get_user_id(payload):
        raise HTTPException(status_code=401, detail="Token sem usuário")
    return payload


def get_user_id(payload: dict) -> str:
    """Tenant id carried by the token."""
    return str(payload.get("sub") or payload.get("user_id") or "").strip()


# ==================== NORMALIZATION ====================
def normalize_email(value) -> str:
    """Normalize an email address to lowercase."""
    return str(value or "").strip().lower()
