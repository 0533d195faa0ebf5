# routers/auth.py — Authentication endpoints
from typing import List

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import (
    ACCESS_TOKEN_EXPIRE_MINUTES, AuthService, CurrentUser, RefreshRequest,
    TokenResponse, UserLogin, UserRegister, get_current_user, require_role,
)
from database import get_db_session, transaction
from deadline import with_deadline
from exceptions import NotFoundError
from logging_system import log_audit
from models import User, UserRole

router = APIRouter(prefix="/api/v1/auth", tags=["Authentication"])


class UserSummary(BaseModel):
    id: int
    email: str
    display_name: str
    role: str
    is_active: bool


class RoleUpdate(BaseModel):
    role: UserRole


def _summary(user_obj: User) -> UserSummary:
    return UserSummary(
        id=user_obj.id,
        email=user_obj.email,
        display_name=user_obj.display_name or "",
        role=UserRole(user_obj.role).value,
        is_active=user_obj.is_active,
    )


async def _set_role(db: AsyncSession, user_id: int, role: UserRole) -> User:
    user_obj = (await db.execute(select(User).where(User.id == user_id))).scalar_one_or_none()
    if user_obj is None:
        raise NotFoundError(f"user {user_id} not found", user_id=user_id)

    async with transaction(db):
        user_obj.role = role
    return user_obj


def _build_token_response(user_obj: User) -> TokenResponse:
    """Build token response from a user ORM instance"""
    claims = AuthService.token_claims(user_obj)
    return TokenResponse(
        access_token=AuthService.create_access_token(claims),
        refresh_token=AuthService.create_refresh_token(claims),
        expires_in=ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user=_summary(user_obj).model_dump(),
    )


@router.post("/register", response_model=TokenResponse)
async def register(
    user_data: UserRegister,
    db: AsyncSession = Depends(get_db_session),
):
    """Register a new user account"""
    user = await with_deadline(AuthService.register_user(user_data, db))
    log_audit("user.register", f"user:{user.id}")
    return _build_token_response(user)


@router.post("/login", response_model=TokenResponse)
async def login(
    credentials: UserLogin,
    db: AsyncSession = Depends(get_db_session),
):
    """Authenticate and receive tokens"""
    user = await with_deadline(AuthService.authenticate_user(credentials.email, credentials.password, db))
    if not user:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return _build_token_response(user)


@router.post("/refresh", response_model=TokenResponse)
async def refresh_token(
    refresh_req: RefreshRequest,
    db: AsyncSession = Depends(get_db_session),
):
    """Exchange a refresh token for a new token pair"""
    payload = AuthService.verify_token(refresh_req.refresh_token, expected_type="refresh")
    user = await with_deadline(AuthService.load_active_user(db, payload))
    return _build_token_response(user)


@router.get("/me", response_model=CurrentUser)
async def get_current_user_info(user: CurrentUser = Depends(get_current_user)):
    return user


@router.get("/users", response_model=List[UserSummary])
async def list_users(
    _: CurrentUser = Depends(require_role(UserRole.ADMIN)),
    db: AsyncSession = Depends(get_db_session),
):
    result = await with_deadline(db.execute(select(User).order_by(User.id)))
    return [_summary(u) for u in result.scalars().all()]


@router.patch("/users/{user_id}/role", response_model=UserSummary)
async def change_role(
    user_id: int,
    update: RoleUpdate,
    admin: CurrentUser = Depends(require_role(UserRole.ADMIN)),
    db: AsyncSession = Depends(get_db_session),
):
    """Promote or demote a user (admin only)"""
    user_obj = await with_deadline(_set_role(db, user_id, update.role))
    log_audit("user.role_change", f"user:{user_id}", metadata={"role": update.role.value, "by": admin.id})
    return _summary(user_obj)
