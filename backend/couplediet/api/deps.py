"""Identity Verifier：Authorization: Bearer <token> -> 当前用户"""

from __future__ import annotations

import logging

from fastapi import Depends, Header
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..database import get_db
from ..models import User
from ..utils.errors import Unauthenticated
from ..utils.session_token import UserIdentity, extract_bearer_token, verify_token

logger = logging.getLogger(__name__)


def verify_credential(credential: str | None) -> UserIdentity:
    """verify(credential) -> UserIdentity，失败抛 Unauthenticated。"""
    identity, reason = verify_token(credential, secret=settings.auth_token_secret or "")
    if identity is None:
        logger.info("[AUTH] Rejected bearer token: %s", reason)
        raise Unauthenticated(reason=reason)
    return identity


async def get_current_user(
    authorization: str | None = Header(default=None),
    db: AsyncSession = Depends(get_db),
) -> User:
    identity = verify_credential(extract_bearer_token(authorization))

    result = await db.execute(select(User).where(User.id == identity.user_id))
    user = result.scalar_one_or_none()
    if user is None:
        # token 合法但用户已不存在（例如库被重建）
        raise Unauthenticated(reason="unknown_user")
    return user
