from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from .couple_store import CoupleStore

logger = logging.getLogger(__name__)


async def reconcile_partner_references(db: AsyncSession) -> int:
    """清理“悬挂”的 partner_id：指向的对象与自己之间已经没有 active 关系。

    disconnect 先把关系置为 inactive 再清理双方 partner_id；若清理阶段失败
    （PartialDisconnect），这里负责最终修复。返回修复的用户数。
    """
    store = CoupleStore(db, timeout_seconds=settings.store_timeout_seconds)
    users = await store.list_users_with_partner()

    # 先把需要检查的 (user_id, partner_id) 取出来，后续写入会 commit，避免依赖旧对象
    refs = [(int(u.id), int(u.partner_id)) for u in users if u.partner_id is not None]

    repaired = 0
    for user_id, partner_id in refs:
        active = await store.find_active_couple_between(user_id, partner_id)
        if active is not None:
            continue

        changed = await store.clear_partner_reference(user_id, expected_partner_id=partner_id)
        if changed:
            repaired += 1
            logger.warning(
                "[RECONCILE] Cleared dangling partner_id user_id=%s partner_id=%s",
                user_id,
                partner_id,
            )

    if repaired:
        logger.info("[RECONCILE] Repaired %s dangling partner reference(s)", repaired)
    return repaired
