"""Authentication utilities."""
from typing import Optional
from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session
import logging

from config import API_TOKENS
from database import get_db
from models import User
from monitoring import auth_failures_counter, auth_attempts_counter

logger = logging.getLogger(__name__)

STAFF_ROLES = ("admin", "manager")


def _extract_token(authorization: str) -> str:
    # Extract token (Bearer <token>)
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        auth_failures_counter.add(1, {"reason": "invalid_format"})
        logger.warning("Authentication failed: Invalid authorization header format", extra={
            "auth_header": authorization[:20] + "..." if len(authorization) > 20 else authorization
        })
        raise HTTPException(status_code=401, detail="Invalid authorization header format")

    token = parts[1]
    if token not in API_TOKENS:
        auth_failures_counter.add(1, {"reason": "invalid_token"})
        logger.warning("Authentication failed: Invalid token", extra={
            "token_prefix": token[:8] + "..." if len(token) > 8 else token
        })
        raise HTTPException(status_code=401, detail="Invalid token")
    return token


def verify_token(authorization: Optional[str] = Header(None)) -> str:
    """
    Verify authentication token.

    Args:
        authorization: Authorization header value

    Returns:
        Valid token

    Raises:
        HTTPException: If token is invalid or missing
    """
    auth_attempts_counter.add(1, {"type": "bearer_token"})

    if authorization is None:
        auth_failures_counter.add(1, {"reason": "missing_header"})
        logger.warning("Authentication failed: Missing authorization header")
        raise HTTPException(status_code=401, detail="Not authenticated")

    token = _extract_token(authorization)
    logger.debug("Authentication successful", extra={
        "user_id": get_user_id_from_token(token)
    })
    return token


def get_user_id_from_token(token: str) -> str:
    """
    Resolve the user a token was issued to.

    Args:
        token: Authentication token

    Returns:
        User ID
    """
    return API_TOKENS[token]


def get_current_user_id(token: str = Depends(verify_token)) -> str:
    """User id of the authenticated session; 401 when there is none."""
    return get_user_id_from_token(token)


def get_optional_user_id(authorization: Optional[str] = Header(None)) -> Optional[str]:
    """
    User id of the session if one is presented.

    Guests send no Authorization header. A header that is present but
    invalid is still rejected rather than downgraded to a guest session.
    """
    if authorization is None:
        return None
    auth_attempts_counter.add(1, {"type": "bearer_token"})
    return get_user_id_from_token(_extract_token(authorization))


def require_staff(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
) -> User:
    """Allow only admin and manager accounts."""
    user = db.get(User, user_id)
    if user is None or user.role not in STAFF_ROLES:
        auth_failures_counter.add(1, {"reason": "forbidden"})
        logger.warning("Authorization failed: staff role required", extra={"user_id": user_id})
        raise HTTPException(status_code=403, detail="Forbidden")
    return user
