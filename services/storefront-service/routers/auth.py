"""Authentication API router."""
from fastapi import APIRouter, HTTPException
from pydantic import BaseModel
import logging

from auth import get_user_id_from_token
from config import ADMIN_TOKENS
from monitoring import auth_attempts_counter, auth_failures_counter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["authentication"])


class LoginRequest(BaseModel):
    """Login request model."""
    username: str
    password: str


class LoginResponse(BaseModel):
    """Login response model."""
    token: str
    token_type: str = "bearer"
    user_id: str
    is_admin: bool


# Demo accounts: username -> (password, token)
USER_CREDENTIALS = {
    "user123": ("password123", "user-token-123"),
    "admin": ("admin123", "admin-token-456"),
    "test": ("test123", "test-token-789"),
}


@router.post("/login", response_model=LoginResponse)
async def login(request: LoginRequest):
    """Exchange demo credentials for a bearer token."""
    auth_attempts_counter.add(1, {"type": "login"})

    password, token = USER_CREDENTIALS.get(request.username, (None, None))
    if token is None or request.password != password:
        auth_failures_counter.add(1, {"reason": "invalid_credentials"})
        logger.warning("Login failed", extra={"username": request.username})
        raise HTTPException(status_code=401, detail="Invalid username or password")

    user_id = get_user_id_from_token(token)
    logger.info("User logged in", extra={"username": request.username, "user_id": user_id})

    return LoginResponse(token=token, user_id=user_id, is_admin=token in ADMIN_TOKENS)
