from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from ..models import COUPLE_ACTIVE, COUPLE_PENDING, Couple, User
from ..utils.errors import NotFound, Transient, exception_summary
from .couple_store import CoupleStore, StoreUnavailable

logger = logging.getLogger(__name__)

STATUS_NONE = "none"
STATUS_PENDING_SENT = "pending_sent"
STATUS_PENDING_RECEIVED = "pending_received"
STATUS_ACTIVE = "active"


@dataclass
class CoupleStatusView:
    """前端展示用的配对状态（none / pending_sent / pending_received / active）。"""

    status: str
    couple: Couple | None = None
    partner: User | None = None


def _as_utc(value: datetime | None) -> datetime:
    # SQLite 读回来的是 naive datetime（按 UTC 存），与 aware 值混用时统一补齐时区再比较
    if value is None:
        return datetime.min.replace(tzinfo=timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _latest_requested(couples: list[Couple]) -> Couple:
    return max(couples, key=lambda c: (_as_utc(c.requested_at), int(c.id)))


def project_status(
    user: User,
    couples: list[Couple],
    users_by_id: dict[int, User],
    *,
    log: logging.Logger | None = None,
) -> CoupleStatusView:
    """由 partner_id + 用户参与的关系推导配对状态（纯函数，不访问存储）。

    - partner_id 不为空 -> active（附带与该对象之间的 active 关系，若存在）
    - 否则看 pending 关系：请求方是自己 -> pending_sent，否则 pending_received
    - 都没有 -> none

    正常情况下一个用户最多只会参与一条 pending 关系；若出现多条（并发 send 抢跑留下的
    异常数据），取 requested_at 最新的一条（相同则取 id 更大的），并记录 WARNING。
    """
    log = log or logger
    uid = int(user.id)

    if user.partner_id is not None:
        partner_id = int(user.partner_id)
        active = [
            c
            for c in couples
            if c.status == COUPLE_ACTIVE and c.involves(uid) and c.other_party(uid) == partner_id
        ]
        return CoupleStatusView(
            status=STATUS_ACTIVE,
            couple=_latest_requested(active) if active else None,
            partner=users_by_id.get(partner_id),
        )

    pending = [c for c in couples if c.status == COUPLE_PENDING and c.involves(uid)]
    if not pending:
        return CoupleStatusView(status=STATUS_NONE)

    chosen = _latest_requested(pending)
    if len(pending) > 1:
        log.warning(
            "[COUPLE_STATUS] anomaly: user_id=%s has %s pending couples %s, showing couple_id=%s",
            uid,
            len(pending),
            sorted(int(c.id) for c in pending),
            chosen.id,
        )

    status = STATUS_PENDING_SENT if int(chosen.requested_by) == uid else STATUS_PENDING_RECEIVED
    return CoupleStatusView(
        status=status,
        couple=chosen,
        partner=users_by_id.get(chosen.other_party(uid)),
    )


async def load_couple_status(store: CoupleStore, user_id: int) -> CoupleStatusView:
    """读取存储中的当前状态并投影成 CoupleStatusView。"""
    try:
        user = await store.find_user_by_id(user_id)
        if user is None:
            raise NotFound("用户不存在", target="user")

        couples = await store.list_couples_for_user(int(user.id))
        related_ids = {c.other_party(int(user.id)) for c in couples}
        if user.partner_id is not None:
            related_ids.add(int(user.partner_id))
        users_by_id = await store.find_users_by_ids(related_ids)
    except StoreUnavailable as e:
        logger.warning("[COUPLE_STATUS] transient store failure user_id=%s: %s", user_id, exception_summary(e))
        raise Transient() from e

    return project_status(user, couples, users_by_id)
