"""
Auth utilities for the billing API.

Validates bearer JWTs issued by the identity provider and extracts the user
identity (user_id + email) from the request.
Falls back to X-User-Id / X-User-Email headers outside production (tests,
local development).
"""
from dataclasses import dataclass
from typing import Optional
import logging

import jwt
from fastapi import Header, Request

from botbilling.core.config import settings
from botbilling.core.errors import AuthenticationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthUser:
    """Authenticated caller."""
    user_id: str
    email: Optional[str] = None


def verify_jwt(token: str) -> AuthUser:
    """
    Verify an HS256 JWT and extract the caller identity.

    Args:
        token: JWT from Authorization header (Bearer {token})

    Returns:
        AuthUser built from the 'sub' and 'email' claims

    Raises:
        AuthenticationError: Invalid, expired or unverifiable token
    """
    if not settings.AUTH_JWT_SECRET:
        logger.warning("AUTH_JWT_SECRET not configured, rejecting bearer token")
        raise AuthenticationError("Token verification unavailable")

    decode_kwargs = {
        "algorithms": ["HS256"],
        "options": {"verify_signature": True, "verify_exp": True},
    }
    if settings.AUTH_JWT_AUDIENCE:
        decode_kwargs["audience"] = settings.AUTH_JWT_AUDIENCE

    try:
        payload = jwt.decode(token, settings.AUTH_JWT_SECRET, **decode_kwargs)
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise AuthenticationError("Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise AuthenticationError("Invalid token")

    return AuthUser(user_id=user_id, email=payload.get("email"))


async def get_current_user(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Non-production: test user ID"),
    x_user_email: Optional[str] = Header(None, description="Non-production: test user email"),
) -> AuthUser:
    """
    Extract the current user from request context.

    Priority:
    1. Bearer JWT from Authorization header
    2. X-User-Id header (only outside production)
    3. Raise AuthenticationError (401)
    """
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        user = verify_jwt(auth_header[7:].strip())
        request.state.user_id = user.user_id
        return user

    if x_user_id and settings.AUTH_ALLOW_USER_HEADER and not settings.is_production:
        request.state.user_id = x_user_id
        return AuthUser(user_id=x_user_id, email=x_user_email)

    raise AuthenticationError("Missing Authorization (Bearer JWT) or X-User-Id header")

