"""Authentication utilities.

Identity is resolved from a static bearer-token table; the resulting user id
is opaque to the rest of the service.
"""
from typing import Optional
from fastapi import Depends, Header, HTTPException
import logging

from config import ADMIN_TOKENS, VALID_TOKENS
from monitoring import auth_failures_counter, auth_attempts_counter

logger = logging.getLogger(__name__)


def _reject(status_code: int, reason: str, detail: str, **context) -> HTTPException:
    auth_failures_counter.add(1, {"reason": reason})
    logger.warning(f"Authentication failed: {detail}", extra={"reason": reason, **context})
    return HTTPException(status_code=status_code, detail=detail)


def verify_token(authorization: Optional[str] = Header(None)) -> str:
    """
    Verify the bearer token of a request.

    Args:
        authorization: Authorization header value

    Returns:
        Valid token

    Raises:
        HTTPException: 401 if token is invalid or missing
    """
    auth_attempts_counter.add(1, {"type": "bearer_token"})

    if authorization is None:
        raise _reject(401, "missing_header", "Missing authorization header")

    scheme, _, token = authorization.partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token or " " in token:
        raise _reject(401, "invalid_format", "Invalid authorization header format",
                      auth_header=authorization[:20])

    if token not in VALID_TOKENS:
        raise _reject(401, "invalid_token", "Invalid token", token_prefix=token[:8])

    return token


def get_current_user_id(token: str = Depends(verify_token)) -> str:
    """Resolve the authenticated caller to a user id."""
    return get_user_id_from_token(token)


def require_admin(token: str = Depends(verify_token)) -> str:
    """
    Allow only admin tokens through.

    Raises:
        HTTPException: 403 if the caller is authenticated but not an admin
    """
    if token not in ADMIN_TOKENS:
        raise _reject(403, "not_admin", "Admin access required",
                      user_id=get_user_id_from_token(token))
    return token


def get_user_id_from_token(token: str) -> str:
    """
    Extract user ID from token.

    Args:
        token: Authentication token

    Returns:
        User ID
    """
    return f"user_{token[:10]}"
