"""
Ops Desk - Authentication API
=============================

Login, signup, current user and founder-only user management.
"""

from datetime import datetime, timezone
from uuid import UUID

import structlog
from fastapi import APIRouter, HTTPException, status
from passlib.hash import bcrypt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from opsdesk.api.deps import Bus, CurrentUser, DbSession, FounderUser, create_access_token
from opsdesk.core.config import settings
from opsdesk.core.events import EventType
from opsdesk.core.models import User
from opsdesk.core.schemas import (
    SignupResponse,
    TokenResponse,
    UserApprove,
    UserCreate,
    UserLogin,
    UserResponse,
    UserSignup,
    UserUpdate,
)

logger = structlog.get_logger()

router = APIRouter(prefix="/auth", tags=["Authentication"])


# ==========================================================================
# Helper Functions
# ==========================================================================

def hash_password(password: str) -> str:
    """Hash a password using bcrypt."""
    return bcrypt.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against a hash."""
    return bcrypt.verify(password, password_hash)


# ==========================================================================
# Login
# ==========================================================================

@router.post(
    "/login",
    response_model=TokenResponse,
    summary="Login and get an access token",
    responses={
        200: {"description": "Login successful"},
        401: {"description": "Invalid credentials"},
    },
)
async def login(
    data: UserLogin,
    db: DbSession,
) -> TokenResponse:
    """
    Authenticate by username/password.

    Unknown user, wrong password and deactivated account all return the
    same 401.
    """
    result = await db.execute(select(User).where(User.username == data.username.lower()))
    user = result.scalar_one_or_none()

    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid credentials",
    )

    if not user or not verify_password(data.password, user.password_hash):
        raise credentials_exception

    if not user.is_active:
        raise credentials_exception

    user.last_login = datetime.now(timezone.utc)
    await db.commit()

    return TokenResponse(
        access_token=create_access_token(user.id),
        token_type="bearer",
        expires_in=settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
    )


@router.post(
    "/signup",
    response_model=SignupResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Request an account",
    responses={
        201: {"description": "Account created, awaiting approval"},
        409: {"description": "Username already taken"},
    },
)
async def signup(
    data: UserSignup,
    db: DbSession,
    bus: Bus,
) -> SignupResponse:
    """
    Create an inactive account. It cannot log in until a founder approves
    it through ``POST /auth/users/{id}/approve``.
    """
    result = await db.execute(select(User).where(User.username == data.username))
    if result.scalar_one_or_none():
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Username already taken",
        )

    user = User(
        username=data.username,
        display_name=data.display_name,
        role=data.role,
        password_hash=hash_password(data.password),
        is_active=False,
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)

    bus.emit(
        EventType.USER_CREATED,
        id=str(user.id),
        username=user.username,
        display_name=user.display_name,
        role=user.role.value,
        pending=True,
    )
    logger.info("signup_pending", user_id=str(user.id), username=user.username)
    return SignupResponse(id=user.id, username=user.username)


@router.get(
    "/me",
    response_model=UserResponse,
    summary="Get current user",
    responses={
        200: {"description": "Current user data"},
        401: {"description": "Not authenticated"},
    },
)
async def get_me(
    current_user: CurrentUser,
) -> UserResponse:
    """Get the authenticated user's profile."""
    return UserResponse.model_validate(current_user)


# ==========================================================================
# User Management (founder only)
# ==========================================================================

@router.get(
    "/users",
    response_model=list[UserResponse],
    summary="List users",
)
async def list_users(
    current_user: FounderUser,
    db: DbSession,
) -> list[UserResponse]:
    result = await db.execute(select(User).order_by(User.created_at.asc()))
    return [UserResponse.model_validate(u) for u in result.scalars().all()]


@router.get(
    "/users/pending",
    response_model=list[UserResponse],
    summary="List accounts awaiting approval",
)
async def list_pending_users(
    current_user: FounderUser,
    db: DbSession,
) -> list[UserResponse]:
    result = await db.execute(
        select(User).where(User.is_active.is_(False)).order_by(User.created_at.asc())
    )
    return [UserResponse.model_validate(u) for u in result.scalars().all()]


@router.post(
    "/users",
    response_model=UserResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a user",
    responses={
        201: {"description": "User created"},
        403: {"description": "Founder access required"},
        409: {"description": "Username already taken"},
    },
)
async def create_user(
    data: UserCreate,
    current_user: FounderUser,
    db: DbSession,
    bus: Bus,
) -> UserResponse:
    """Create a dashboard account with a role."""
    result = await db.execute(select(User).where(User.username == data.username))
    if result.scalar_one_or_none():
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Username already taken",
        )

    user = User(
        username=data.username,
        display_name=data.display_name,
        role=data.role,
        password_hash=hash_password(data.password),
        is_active=True,
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)

    bus.emit(EventType.USER_CREATED, id=str(user.id), username=user.username, role=user.role.value)
    return UserResponse.model_validate(user)


@router.patch(
    "/users/{user_id}",
    response_model=UserResponse,
    summary="Update a user",
    responses={
        200: {"description": "User updated"},
        403: {"description": "Founder access required"},
        404: {"description": "User not found"},
    },
)
async def update_user(
    user_id: UUID,
    data: UserUpdate,
    current_user: FounderUser,
    db: DbSession,
    bus: Bus,
) -> UserResponse:
    """Change a user's display name, role or active flag."""
    user = await db.get(User, user_id)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found",
        )

    if user.id == current_user.id and data.is_active is False:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="You cannot deactivate your own account",
        )

    for field, value in data.model_dump(exclude_unset=True).items():
        setattr(user, field, value)

    await db.commit()
    await db.refresh(user)

    bus.emit(EventType.USER_UPDATED, id=str(user.id), role=user.role.value, is_active=user.is_active)
    return UserResponse.model_validate(user)


# ==========================================================================
# Signup Approval (founder only)
# ==========================================================================

async def _get_inactive_user(db: AsyncSession, user_id: UUID) -> User:
    user = await db.get(User, user_id)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found",
        )
    if user.is_active:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="User is already active",
        )
    return user


@router.post(
    "/users/{user_id}/approve",
    response_model=UserResponse,
    summary="Approve a pending account",
    responses={
        200: {"description": "Account activated"},
        403: {"description": "Founder access required"},
        404: {"description": "User not found"},
        409: {"description": "User is already active"},
    },
)
async def approve_user(
    user_id: UUID,
    data: UserApprove,
    current_user: FounderUser,
    db: DbSession,
    bus: Bus,
) -> UserResponse:
    """Activate a signup, optionally assigning a different role."""
    user = await _get_inactive_user(db, user_id)

    user.is_active = True
    if data.role is not None:
        user.role = data.role
    await db.commit()
    await db.refresh(user)

    bus.emit(
        EventType.USER_UPDATED,
        id=str(user.id),
        username=user.username,
        role=user.role.value,
        is_active=True,
    )
    logger.info("signup_approved", user_id=str(user.id), approved_by=current_user.username)
    return UserResponse.model_validate(user)


@router.post(
    "/users/{user_id}/reject",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Reject a pending account",
    responses={
        204: {"description": "Account removed"},
        403: {"description": "Founder access required"},
        404: {"description": "User not found"},
        409: {"description": "User is already active"},
    },
)
async def reject_user(
    user_id: UUID,
    current_user: FounderUser,
    db: DbSession,
    bus: Bus,
) -> None:
    """Delete an inactive account."""
    user = await _get_inactive_user(db, user_id)
    username = user.username

    await db.delete(user)
    await db.commit()

    bus.emit(EventType.USER_REMOVED, id=str(user_id), username=username)
    logger.info("signup_rejected", user_id=str(user_id), rejected_by=current_user.username)
