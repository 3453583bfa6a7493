"""Authentication API router."""
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session
import logging

from auth import get_user_id_from_token
from database import get_db
from models import User
from monitoring import auth_attempts_counter, auth_failures_counter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["authentication"])


class LoginRequest(BaseModel):
    username: str
    password: str


class LoginResponse(BaseModel):
    """Bearer token plus the profile the storefront header shows."""
    token: str
    token_type: str = "bearer"
    user_id: str
    name: Optional[str] = None
    role: str = "customer"


# Demo accounts; phone OTP and OAuth sign-in are handled by the auth provider
DEMO_ACCOUNTS = {
    "customer": ("customer123", "customer-token-123"),
    "admin": ("admin123", "admin-token-456"),
    "test": ("test123", "test-token-789"),
}


@router.post("/login", response_model=LoginResponse)
async def login(request: LoginRequest, db: Session = Depends(get_db)):
    """
    Exchange demo credentials for a bearer token.

    Demo credentials:
    - customer / customer123
    - admin / admin123 (staff, can use /admin)
    - test / test123
    """
    auth_attempts_counter.add(1, {"type": "login"})

    password, token = DEMO_ACCOUNTS.get(request.username, (None, None))
    if token is None or request.password != password:
        auth_failures_counter.add(1, {"reason": "invalid_credentials"})
        logger.warning("Login failed: Invalid credentials", extra={"username": request.username})
        raise HTTPException(status_code=401, detail="Invalid username or password")

    user_id = get_user_id_from_token(token)
    user = db.get(User, user_id)
    if user is None:
        # Token configured for an account that was never provisioned
        auth_failures_counter.add(1, {"reason": "unknown_user"})
        logger.error("Login failed: no user for token", extra={"user_id": user_id})
        raise HTTPException(status_code=401, detail="Invalid username or password")

    logger.info("User logged in", extra={"user_id": user_id, "role": user.role})

    return LoginResponse(token=token, user_id=user_id, name=user.name, role=user.role)
