"""
Auth utilities for the PlanPilot API.

Validates Clerk session JWTs and extracts the user id (``sub`` claim).
Falls back to the X-User-Id header outside production (local dev, tests).
"""
from functools import lru_cache
from typing import Optional
import logging

import jwt
from fastapi import Header, Request

from planpilot.core.config import Settings, settings
from planpilot.core.errors import UnauthorizedError

logger = logging.getLogger(__name__)


@lru_cache(maxsize=4)
def _jwks_client(jwks_url: str) -> jwt.PyJWKClient:
    # PyJWKClient caches fetched signing keys itself.
    return jwt.PyJWKClient(jwks_url, cache_keys=True, lifespan=86400)


def _jwks_url(cfg: Settings) -> Optional[str]:
    if cfg.CLERK_JWKS_URL:
        return cfg.CLERK_JWKS_URL
    if cfg.CLERK_ISSUER:
        return f"{cfg.CLERK_ISSUER.rstrip('/')}/.well-known/jwks.json"
    return None


def verify_clerk_jwt(token: str, settings_obj: Optional[Settings] = None) -> Optional[str]:
    """
    Verify a Clerk JWT and return its user id.

    RS256 tokens are checked against Clerk's JWKS when an issuer or JWKS URL
    is configured; otherwise HS256 against CLERK_SECRET_KEY.

    Returns:
        user_id, or None when no verification key is configured.

    Raises:
        UnauthorizedError: invalid, expired or subject-less token.
    """
    cfg = settings_obj or settings
    jwks_url = _jwks_url(cfg)
    if not jwks_url and not cfg.CLERK_SECRET_KEY:
        logger.debug("No Clerk verification key configured, skipping JWT validation")
        return None

    try:
        if jwks_url:
            signing_key = _jwks_client(jwks_url).get_signing_key_from_jwt(token).key
            payload = jwt.decode(
                token,
                signing_key,
                algorithms=["RS256"],
                issuer=cfg.CLERK_ISSUER or None,
                options={"verify_aud": False},
            )
        else:
            payload = jwt.decode(
                token,
                cfg.CLERK_SECRET_KEY,
                algorithms=["HS256"],
                options={"verify_aud": False},
            )
    except jwt.ExpiredSignatureError:
        raise UnauthorizedError("Token expired")
    except jwt.PyJWTError as e:
        logger.debug(f"Invalid token: {e}")
        raise UnauthorizedError("Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise UnauthorizedError("Token has no subject")
    return user_id


async def get_current_user_id(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Dev/test user id"),
) -> str:
    """
    Resolve the caller's user id.

    Priority:
    1. Clerk JWT from the Authorization header
    2. X-User-Id header (not honoured in production)
    3. 401
    """
    cfg = getattr(request.app.state, "settings", None) or settings

    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        user_id = verify_clerk_jwt(auth_header[7:], cfg)
        if user_id:
            request.state.user_id = user_id
            return user_id

    if x_user_id and cfg.ENV.lower() != "production":
        request.state.user_id = x_user_id
        return x_user_id

    raise UnauthorizedError("Authentication required")
