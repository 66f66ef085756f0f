"""
Authentication endpoints.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from mcpchat.api.deps import get_current_user
from mcpchat.services.auth import create_token, verify_password
from mcpchat.services.store import StoreError, store

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/auth", tags=["auth"])


class LoginRequest(BaseModel):
    username: str
    password: str


class UserResponse(BaseModel):
    id: int
    username: str
    role: str


class LoginResponse(BaseModel):
    token: str
    user: UserResponse


@router.post("/login", response_model=LoginResponse)
async def login(body: LoginRequest) -> LoginResponse:
    """Exchange username and password for a bearer token."""
    if not body.username or not body.password:
        raise HTTPException(status_code=400, detail="Username and password are required")

    try:
        user = await store.get_user_by_name(body.username)
    except StoreError as e:
        raise HTTPException(status_code=e.status_code or 500, detail=e.message)

    if user is None or not verify_password(body.password, user.password_hash):
        logger.info("Failed login for %s", body.username)
        raise HTTPException(status_code=401, detail="Invalid credentials")

    logger.info("User %s logged in", user.username)
    return LoginResponse(
        token=create_token(user.id, user.username, user.role),
        user=UserResponse(id=user.id, username=user.username, role=user.role),
    )


@router.get("/me", response_model=UserResponse)
async def me(user: dict = Depends(get_current_user)) -> UserResponse:
    return UserResponse(id=user["id"], username=user["username"], role=user["role"])


@router.post("/logout")
async def logout(user: dict = Depends(get_current_user)) -> dict:
    # Tokens are stateless; the client drops its copy
    return {"success": True}
