from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..database import get_db
from ..models import User
from ..schemas import LoginRequest, LoginResponse, SignupRequest, UserResponse
from ..utils.passwords import hash_password, is_valid_email, password_problem, verify_password
from ..utils.session_token import issue_token
from .deps import get_current_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


def _normalize_email(email: str) -> str:
    return (email or "").strip().lower()


@router.post("/signup", response_model=UserResponse, status_code=201)
async def signup(body: SignupRequest, db: AsyncSession = Depends(get_db)):
    """注册账号（邮箱唯一）"""
    email = _normalize_email(body.email)
    if not is_valid_email(email):
        raise HTTPException(status_code=422, detail="INVALID_EMAIL")

    problem = password_problem(body.password)
    if problem:
        raise HTTPException(status_code=422, detail={"code": "WEAK_PASSWORD", "message": problem})

    existing = await db.scalar(select(User.id).where(User.email == email))
    if existing is not None:
        raise HTTPException(status_code=409, detail="EMAIL_TAKEN")

    display_name = (body.display_name or "").strip() or email.split("@")[0]
    user = User(
        email=email,
        display_name=display_name,
        password_hash=hash_password(body.password, iterations=settings.password_hash_iterations),
    )
    db.add(user)
    try:
        await db.flush()
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        raise HTTPException(status_code=409, detail="EMAIL_TAKEN") from e

    await db.refresh(user)
    logger.info("[AUTH] User signed up user_id=%s", user.id)
    return user


@router.post("/login", response_model=LoginResponse)
async def login(body: LoginRequest, db: AsyncSession = Depends(get_db)):
    email = _normalize_email(body.email)
    result = await db.execute(select(User).where(User.email == email))
    user = result.scalar_one_or_none()

    # 用户不存在与密码错误返回同一个错误码，避免被用来探测邮箱是否注册
    if user is None or not verify_password(body.password, str(user.password_hash or "")):
        raise HTTPException(status_code=401, detail="INVALID_CREDENTIALS")

    token, exp = issue_token(
        user_id=int(user.id),
        secret=settings.auth_token_secret or "",
        days=settings.auth_token_days,
    )
    logger.info("[AUTH] User logged in user_id=%s", user.id)
    return LoginResponse(
        access_token=token,
        expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
        user=UserResponse.model_validate(user),
    )


@router.get("/me", response_model=UserResponse)
async def me(user: User = Depends(get_current_user)):
    """当前登录用户（含 partner_id）"""
    return user
