"""
Auth utilities for the PromptForge API.

Validates Supabase-issued access tokens (HS256, signed with the project's
JWT secret) and extracts the user id. Outside production an X-User-Id
header is accepted as well.
"""
import logging
from typing import Optional

import jwt
from fastapi import Depends, Header, Request

from promptforge.core.config import Settings, get_settings, settings
from promptforge.core.errors import AuthenticationError

logger = logging.getLogger(__name__)

SUPABASE_AUDIENCE = "authenticated"


def verify_supabase_jwt(token: str, cfg: Optional[Settings] = None) -> Optional[str]:
    """
    Verify a Supabase access token and return its subject.

    Returns None when no JWT secret is configured (verification disabled).

    Raises:
        AuthenticationError: expired, malformed or wrongly signed token
    """
    secret = (cfg or settings).SUPABASE_JWT_SECRET
    if not secret:
        logger.debug("No SUPABASE_JWT_SECRET configured, skipping JWT validation")
        return None

    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=["HS256"],
            audience=SUPABASE_AUDIENCE,
            options={"verify_signature": True, "verify_exp": True},
        )
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise AuthenticationError("Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise AuthenticationError("Invalid token")
    return user_id


def header_fallback_allowed(cfg: Optional[Settings] = None) -> bool:
    return ((cfg or settings).ENV or "development").lower() != "production"


def _bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization", "")
    return auth_header[7:] if auth_header.startswith("Bearer ") else None


def identify_caller(request: Request, cfg: Optional[Settings] = None) -> Optional[str]:
    """Verified user id for ``request``, or None. Never raises."""
    token = _bearer_token(request)
    if token:
        try:
            user_id = verify_supabase_jwt(token, cfg)
        except AuthenticationError:
            return None
        if user_id:
            return user_id
    x_user_id = request.headers.get("X-User-Id")
    if x_user_id and header_fallback_allowed(cfg):
        return x_user_id
    return None


async def get_current_user_id(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Development/test user ID"),
    cfg: Settings = Depends(get_settings),
) -> str:
    """
    Extract current user ID from the request.

    Priority:
    1. Supabase JWT from the Authorization header
    2. X-User-Id header (non-production only)
    3. 401 Unauthorized
    """
    token = _bearer_token(request)
    if token:
        user_id = verify_supabase_jwt(token, cfg)
        if user_id:
            return user_id

    if x_user_id and header_fallback_allowed(cfg):
        return x_user_id

    raise AuthenticationError("Missing Authorization (Bearer JWT) or X-User-Id header")
