"""配对状态机依赖的存储契约（SQLAlchemy 实现）

约定：
- 只提供“点查 + 条件更新”两类操作；所有前置条件判断都在 PairingEngine 里做。
- 条件更新（compare-and-set）没有命中行时抛 StoreConflict，由调用方归类为
  NotPending / AlreadyPaired 等业务失败。
- 超时、连接中断等基础设施异常统一抛 StoreUnavailable，不把原始 DB 异常暴露给上层。

注意：
- 每个写操作自己 commit / rollback；rollback 会让 session 里已加载的对象全部过期，
  调用方在冲突之后不要再访问旧对象的属性，而是重新调用 find_*。
- 所有读取都带 populate_existing，保证拿到的是最新一行而不是 identity map 里的旧值。
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, cast

from sqlalchemy import Select, or_, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import (
    COUPLE_ACTIVE,
    COUPLE_PENDING,
    OPEN_COUPLE_STATUSES,
    Couple,
    User,
    ordered_pair,
)

logger = logging.getLogger(__name__)


class StoreConflict(Exception):
    """条件更新未命中（状态已被并发请求改变）或唯一约束冲突。"""


class StoreUnavailable(Exception):
    """存储超时或连接级故障，调用方可以在重新读取状态后重试。"""

    attempts: int | None = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _rowcount(result: Any) -> int:
    return int(getattr(cast(Any, result), "rowcount", 0) or 0)


class CoupleStore:
    """Relationship Store：用户与配对关系的读写。"""

    def __init__(self, db: AsyncSession, *, timeout_seconds: float | None = None):
        self.db = db
        self.timeout_seconds = timeout_seconds

    async def _bounded(self, awaitable):
        try:
            if self.timeout_seconds and self.timeout_seconds > 0:
                return await asyncio.wait_for(awaitable, timeout=self.timeout_seconds)
            return await awaitable
        except TimeoutError as e:
            raise StoreUnavailable(f"store call timed out after {self.timeout_seconds}s") from e
        except IntegrityError:
            raise
        except (OperationalError, InterfaceError) as e:
            raise StoreUnavailable(str(e.orig or e)) from e
        except DBAPIError as e:
            if e.connection_invalidated:
                raise StoreUnavailable(str(e.orig or e)) from e
            raise

    async def _execute(self, stmt):
        return await self._bounded(self.db.execute(stmt))

    async def _commit(self) -> None:
        await self._bounded(self.db.commit())

    async def _rollback(self) -> None:
        # rollback 失败时连接已经不可用，这里不再包装成 StoreUnavailable 之外的异常
        await self._bounded(self.db.rollback())

    async def _discard_failed_transaction(self, intent: str) -> None:
        """写入中途失败后尽力回滚，让同一个 session 还能继续用（PostgreSQL 事务出错后必须先回滚）。"""
        try:
            await self.db.rollback()
        except Exception:
            logger.debug("[PAIRING] rollback after failed %s also failed", intent, exc_info=True)

    async def _scalar_one_or_none(self, query: Select):
        result = await self._execute(query.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def _scalars(self, query: Select) -> list:
        result = await self._execute(query.execution_options(populate_existing=True))
        return list(result.scalars().all())

    # ---- users ----

    async def find_user_by_email(self, email: str) -> User | None:
        normalized = (email or "").strip().lower()
        if not normalized:
            return None
        return await self._scalar_one_or_none(select(User).where(User.email == normalized))

    async def find_user_by_id(self, user_id: int) -> User | None:
        return await self._scalar_one_or_none(select(User).where(User.id == int(user_id)))

    async def find_users_by_ids(self, user_ids: set[int]) -> dict[int, User]:
        if not user_ids:
            return {}
        users = await self._scalars(select(User).where(User.id.in_(sorted(user_ids))))
        return {int(u.id): u for u in users}

    async def list_users_with_partner(self) -> list[User]:
        return await self._scalars(
            select(User).where(User.partner_id.is_not(None)).order_by(User.id.asc())
        )

    async def clear_partner_reference(
        self, user_id: int, *, expected_partner_id: int | None = None
    ) -> bool:
        """清空 partner_id；返回是否真的改了一行（已经是 NULL 时返回 False）。"""
        cond = User.partner_id.is_not(None)
        if expected_partner_id is not None:
            cond = User.partner_id == int(expected_partner_id)

        try:
            result = await self._execute(
                update(User)
                .where(User.id == int(user_id), cond)
                .values(partner_id=None)
                .execution_options(synchronize_session=False)
            )
            changed = _rowcount(result) > 0
            await self._commit()
        except (StoreUnavailable, DBAPIError):
            # 调用方会在同一个 session 上重试/清理下一个用户
            await self._discard_failed_transaction("clear_partner_reference")
            raise
        return changed

    # ---- couples ----

    async def find_couple(self, couple_id: int) -> Couple | None:
        return await self._scalar_one_or_none(select(Couple).where(Couple.id == int(couple_id)))

    async def find_open_couple_between(self, user_a: int, user_b: int) -> Couple | None:
        low, high = ordered_pair(user_a, user_b)
        couples = await self._scalars(
            select(Couple)
            .where(
                Couple.user_low_id == low,
                Couple.user_high_id == high,
                Couple.status.in_(OPEN_COUPLE_STATUSES),
            )
            .order_by(Couple.id.desc())
        )
        return couples[0] if couples else None

    async def find_active_couple_between(self, user_a: int, user_b: int) -> Couple | None:
        couple = await self.find_open_couple_between(user_a, user_b)
        if couple is not None and couple.status == COUPLE_ACTIVE:
            return couple
        return None

    async def list_couples_for_user(
        self, user_id: int, *, statuses: tuple[str, ...] = OPEN_COUPLE_STATUSES
    ) -> list[Couple]:
        """按 requested_at 倒序返回用户参与的关系（两个位置都查）。"""
        uid = int(user_id)
        return await self._scalars(
            select(Couple)
            .where(
                or_(Couple.user_low_id == uid, Couple.user_high_id == uid),
                Couple.status.in_(statuses),
            )
            .order_by(Couple.requested_at.desc(), Couple.id.desc())
        )

    async def list_pending_couples_for_user(self, user_id: int) -> list[Couple]:
        return await self.list_couples_for_user(user_id, statuses=(COUPLE_PENDING,))

    async def create_couple(self, user_a: int, user_b: int, *, requested_by: int) -> Couple:
        low, high = ordered_pair(user_a, user_b)
        now = _utcnow()
        couple = Couple(
            user_low_id=low,
            user_high_id=high,
            status=COUPLE_PENDING,
            requested_by=int(requested_by),
            requested_at=now,
        )
        self.db.add(couple)
        try:
            await self._bounded(self.db.flush())
            await self._commit()
        except IntegrityError as e:
            await self._rollback()
            raise StoreConflict(f"open couple already exists for pair ({low}, {high})") from e
        return couple

    async def transition_couple_status(
        self, couple_id: int, *, expected: str, new: str
    ) -> None:
        """乐观并发：只有当前状态仍等于 expected 时才写入 new。"""
        result = await self._execute(
            update(Couple)
            .where(Couple.id == int(couple_id), Couple.status == expected)
            .values(status=new)
            .execution_options(synchronize_session=False)
        )
        if _rowcount(result) != 1:
            await self._rollback()
            raise StoreConflict(f"couple {couple_id} is no longer {expected}")
        await self._commit()

    async def accept_and_link(self, couple_id: int, user_a: int, user_b: int) -> None:
        """原子地：关系 pending -> active，并把双方 partner_id 互相指向对方。

        三条条件更新在同一个事务里执行，任一条没命中就整体回滚并抛 StoreConflict：
        - 关系仍是 pending 且确实是这两个人的关系
        - 双方 partner_id 仍为空（并发接受另一条请求的一方会在这里失败）
        UPDATE 会持有行锁，并发的另一个事务要等锁释放后按最新值重新判断 WHERE。
        """
        low, high = ordered_pair(user_a, user_b)
        now = _utcnow()

        steps = (
            update(Couple)
            .where(
                Couple.id == int(couple_id),
                Couple.user_low_id == low,
                Couple.user_high_id == high,
                Couple.status == COUPLE_PENDING,
            )
            .values(status=COUPLE_ACTIVE, accepted_at=now),
            update(User)
            .where(User.id == low, User.partner_id.is_(None))
            .values(partner_id=high),
            update(User)
            .where(User.id == high, User.partner_id.is_(None))
            .values(partner_id=low),
        )

        try:
            for stmt in steps:
                result = await self._execute(
                    stmt.execution_options(synchronize_session=False)
                )
                if _rowcount(result) != 1:
                    await self._rollback()
                    raise StoreConflict(f"accept of couple {couple_id} lost a race")
            await self._commit()
        except StoreUnavailable:
            logger.warning("[PAIRING] accept_and_link aborted couple_id=%s, rolling back", couple_id)
            await self._discard_failed_transaction("accept_and_link")
            raise
