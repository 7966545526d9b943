"""
Auth utilities for the AnyGym API.

Validates bearer JWTs from the identity provider and extracts the caller's
external identity. Session management lives with the identity provider; this
module only establishes who is calling.
Falls back to the X-User-Id header when AUTH_ALLOW_HEADER_FALLBACK is set
(development and tests).
"""
from fastapi import Header, Request
from typing import Optional
import jwt
import logging

from anygym.core.config import settings
from anygym.core.errors import UnauthorizedError
from anygym.models.identity import Identity

logger = logging.getLogger("anygym.auth")


def verify_jwt(token: str) -> Identity:
    """
    Verify a bearer JWT and build the caller's Identity.

    Args:
        token: JWT from Authorization header (Bearer {token})

    Returns:
        Identity built from the 'sub', 'email' and 'name' claims

    Raises:
        UnauthorizedError: Invalid, expired, or unverifiable token
    """
    if not settings.AUTH_JWT_SECRET:
        raise UnauthorizedError("Token verification is not configured")

    options = {"verify_signature": True, "verify_exp": True, "verify_aud": bool(settings.AUTH_JWT_AUDIENCE)}
    try:
        payload = jwt.decode(
            token,
            settings.AUTH_JWT_SECRET,
            algorithms=["HS256"],
            audience=settings.AUTH_JWT_AUDIENCE,
            issuer=settings.AUTH_JWT_ISSUER,
            options=options,
        )
    except jwt.ExpiredSignatureError:
        raise UnauthorizedError("Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise UnauthorizedError("Invalid token")

    subject = (payload.get("sub") or "").strip()
    if not subject:
        raise UnauthorizedError("Token has no subject")

    return Identity(
        external_id=subject,
        email=payload.get("email"),
        name=payload.get("name"),
    )


async def get_current_identity(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Dev/test user ID"),
) -> Identity:
    """
    Establish the caller's identity.

    Priority:
    1. Bearer JWT from Authorization header
    2. X-User-Id header (only when AUTH_ALLOW_HEADER_FALLBACK is enabled)
    3. Raise 401 Unauthorized
    """
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        identity = verify_jwt(auth_header[7:].strip())
        request.state.external_id = identity.external_id
        return identity

    if x_user_id and x_user_id.strip() and settings.AUTH_ALLOW_HEADER_FALLBACK:
        identity = Identity(external_id=x_user_id.strip())
        request.state.external_id = identity.external_id
        return identity

    raise UnauthorizedError("Missing Authorization (Bearer JWT)")
