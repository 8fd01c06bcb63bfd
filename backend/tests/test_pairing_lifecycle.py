from __future__ import annotations

import sys
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import cast
from typing_extensions import override
from unittest.mock import patch

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeMeta
from sqlalchemy.pool import StaticPool

sys.path.insert(0, str(Path(__file__).resolve().parents[2]))

from backend.couplediet.database import Base as _Base  # pyright: ignore[reportAny]
from backend.couplediet.models import Couple, User, ordered_pair
from backend.couplediet.services import CoupleStore, PairingEngine, load_couple_status
from backend.couplediet.services import pairing as pairing_module
from backend.couplediet.utils.errors import AlreadyPaired, DuplicatePending, NotPending

Base = cast(DeclarativeMeta, _Base)


class PairingLifecycleTests(unittest.IsolatedAsyncioTestCase):
    engine: AsyncEngine | None = None
    session_factory: async_sessionmaker[AsyncSession] | None = None

    @override
    async def asyncSetUp(self):
        engine = create_async_engine(
            "sqlite+aiosqlite:///:memory:",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        self.engine = engine
        self.session_factory = async_sessionmaker(
            engine, class_=AsyncSession, expire_on_commit=False
        )

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    @override
    async def asyncTearDown(self):
        if self.engine is not None:
            await self.engine.dispose()

    async def _seed_users(self, *emails: str) -> list[int]:
        assert self.session_factory is not None
        async with self.session_factory() as session:
            users = [
                User(email=email, display_name=email.split("@")[0], password_hash="x")
                for email in emails
            ]
            session.add_all(users)
            await session.commit()
            return [int(u.id) for u in users]

    async def _seed_pending(self, requester_id: int, target_id: int, *, minutes_ago: int = 0) -> int:
        """直接写入一条 pending 关系（模拟并发 send 都通过了前置检查）。"""
        assert self.session_factory is not None
        low, high = ordered_pair(requester_id, target_id)
        async with self.session_factory() as session:
            couple = Couple(
                user_low_id=low,
                user_high_id=high,
                status="pending",
                requested_by=requester_id,
                requested_at=datetime.now(timezone.utc) - timedelta(minutes=minutes_ago),
            )
            session.add(couple)
            await session.commit()
            return int(couple.id)

    async def _user(self, user_id: int) -> User:
        assert self.session_factory is not None
        async with self.session_factory() as session:
            user = await session.get(User, user_id)
            assert user is not None
            return user

    async def _couple(self, couple_id: int) -> Couple:
        assert self.session_factory is not None
        async with self.session_factory() as session:
            couple = await session.get(Couple, couple_id)
            assert couple is not None
            return couple

    async def _status(self, user_id: int) -> str:
        assert self.session_factory is not None
        async with self.session_factory() as session:
            view = await load_couple_status(CoupleStore(session), user_id)
            return view.status

    def _engine(self, session: AsyncSession) -> PairingEngine:
        return PairingEngine(CoupleStore(session), cleanup_backoff_seconds=0)

    async def test_full_lifecycle_send_accept_disconnect(self):
        a_id, b_id = await self._seed_users("alice@example.com", "bob@example.com")
        assert self.session_factory is not None

        async with self.session_factory() as session:
            sent = await self._engine(session).send_request(a_id, "Bob@Example.com")
            couple_id = int(sent.couple.id)

        self.assertEqual(sent.action, "send")
        self.assertEqual(sent.couple.status, "pending")
        self.assertEqual(int(sent.couple.requested_by), a_id)
        assert sent.counterpart is not None
        self.assertEqual(int(sent.counterpart.id), b_id)
        self.assertEqual(await self._status(a_id), "pending_sent")
        self.assertEqual(await self._status(b_id), "pending_received")

        async with self.session_factory() as session:
            accepted = await self._engine(session).respond_to_request(b_id, couple_id, "accept")

        self.assertEqual(accepted.couple.status, "active")
        self.assertIsNotNone(accepted.couple.accepted_at)
        self.assertEqual((await self._user(a_id)).partner_id, b_id)
        self.assertEqual((await self._user(b_id)).partner_id, a_id)
        self.assertEqual(await self._status(a_id), "active")
        self.assertEqual(await self._status(b_id), "active")

        # 任意一方都可以解除（这里用接收方）
        async with self.session_factory() as session:
            done = await self._engine(session).disconnect(b_id)

        self.assertEqual(done.action, "disconnect")
        self.assertEqual(int(done.couple.id), couple_id)
        self.assertEqual((await self._couple(couple_id)).status, "inactive")
        self.assertIsNone((await self._user(a_id)).partner_id)
        self.assertIsNone((await self._user(b_id)).partner_id)
        self.assertEqual(await self._status(a_id), "none")
        self.assertEqual(await self._status(b_id), "none")

    async def test_fresh_send_after_terminal_state_creates_new_row(self):
        a_id, b_id = await self._seed_users("alice@example.com", "bob@example.com")
        assert self.session_factory is not None

        async with self.session_factory() as session:
            first = await self._engine(session).send_request(a_id, "bob@example.com")
            first_id = int(first.couple.id)
        async with self.session_factory() as session:
            await self._engine(session).cancel_request(a_id, first_id)
        async with self.session_factory() as session:
            second = await self._engine(session).send_request(a_id, "bob@example.com")
            second_id = int(second.couple.id)

        self.assertNotEqual(first_id, second_id)
        self.assertEqual((await self._couple(first_id)).status, "cancelled")
        self.assertEqual((await self._couple(second_id)).status, "pending")

        async with self.session_factory() as session:
            total = await session.scalar(select(func.count(Couple.id)))
        self.assertEqual(total, 2)

    async def test_reject_then_reverse_send(self):
        a_id, b_id = await self._seed_users("alice@example.com", "bob@example.com")
        assert self.session_factory is not None

        async with self.session_factory() as session:
            sent = await self._engine(session).send_request(a_id, "bob@example.com")
            couple_id = int(sent.couple.id)
        async with self.session_factory() as session:
            rejected = await self._engine(session).respond_to_request(b_id, couple_id, "reject")

        self.assertEqual(rejected.couple.status, "inactive")
        self.assertEqual(await self._status(a_id), "none")

        async with self.session_factory() as session:
            reverse = await self._engine(session).send_request(b_id, "alice@example.com")

        self.assertNotEqual(int(reverse.couple.id), couple_id)
        self.assertEqual(int(reverse.couple.requested_by), b_id)
        self.assertEqual(await self._status(a_id), "pending_received")
        self.assertEqual(await self._status(b_id), "pending_sent")

    async def test_double_accept_second_is_not_pending(self):
        a_id, b_id = await self._seed_users("alice@example.com", "bob@example.com")
        assert self.session_factory is not None

        async with self.session_factory() as session:
            sent = await self._engine(session).send_request(a_id, "bob@example.com")
            couple_id = int(sent.couple.id)
        async with self.session_factory() as session:
            await self._engine(session).respond_to_request(b_id, couple_id, "accept")

        async with self.session_factory() as session:
            with self.assertRaises(NotPending):
                await self._engine(session).respond_to_request(b_id, couple_id, "accept")

        self.assertEqual((await self._user(a_id)).partner_id, b_id)

    async def test_cancel_after_accept_is_not_pending(self):
        a_id, b_id = await self._seed_users("alice@example.com", "bob@example.com")
        assert self.session_factory is not None

        async with self.session_factory() as session:
            sent = await self._engine(session).send_request(a_id, "bob@example.com")
            couple_id = int(sent.couple.id)
        async with self.session_factory() as session:
            await self._engine(session).respond_to_request(b_id, couple_id, "accept")

        async with self.session_factory() as session:
            with self.assertRaises(NotPending):
                await self._engine(session).cancel_request(a_id, couple_id)

        self.assertEqual((await self._couple(couple_id)).status, "active")

    async def test_double_send_is_duplicate_pending(self):
        a_id, _ = await self._seed_users("alice@example.com", "bob@example.com")
        assert self.session_factory is not None

        async with self.session_factory() as session:
            await self._engine(session).send_request(a_id, "bob@example.com")

        async with self.session_factory() as session:
            with self.assertRaises(DuplicatePending) as ctx:
                await self._engine(session).send_request(a_id, "bob@example.com")

        self.assertEqual(ctx.exception.extra.get("direction"), "sent")

    async def test_concurrent_sender_loses_after_target_accepts_other(self):
        """A->B 与 C->B 同时通过前置检查：B 接受 A 之后，C 那条只能失败。"""
        a_id, b_id, c_id = await self._seed_users(
            "alice@example.com", "bob@example.com", "carol@example.com"
        )
        ab_id = await self._seed_pending(a_id, b_id, minutes_ago=2)
        cb_id = await self._seed_pending(c_id, b_id, minutes_ago=1)
        assert self.session_factory is not None

        async with self.session_factory() as session:
            await self._engine(session).respond_to_request(b_id, ab_id, "accept")

        async with self.session_factory() as session:
            with self.assertRaises(AlreadyPaired) as ctx:
                await self._engine(session).respond_to_request(b_id, cb_id, "accept")
        self.assertEqual(ctx.exception.extra.get("party"), "self")

        # C 之后再发请求：目标已经有配对对象
        async with self.session_factory() as session:
            with self.assertRaises(AlreadyPaired) as ctx:
                await self._engine(session).send_request(c_id, "bob@example.com")
        self.assertEqual(ctx.exception.extra.get("party"), "partner")

        self.assertEqual((await self._user(a_id)).partner_id, b_id)
        self.assertEqual((await self._user(b_id)).partner_id, a_id)
        self.assertIsNone((await self._user(c_id)).partner_id)
        self.assertEqual((await self._couple(cb_id)).status, "pending")

    async def test_accept_race_on_stale_read_maps_to_already_paired(self):
        """前置检查读到的是旧状态（对方刚被别人接受）：条件更新落空，归类为 AlreadyPaired。"""
        a_id, b_id, c_id = await self._seed_users(
            "alice@example.com", "bob@example.com", "carol@example.com"
        )
        ab_id = await self._seed_pending(a_id, b_id, minutes_ago=2)
        cb_id = await self._seed_pending(c_id, b_id, minutes_ago=1)
        assert self.session_factory is not None

        async with self.session_factory() as session:
            await self._engine(session).respond_to_request(b_id, ab_id, "accept")

        async with self.session_factory() as session:
            with patch.object(pairing_module, "check_can_respond"):
                with self.assertRaises(AlreadyPaired) as ctx:
                    await self._engine(session).respond_to_request(b_id, cb_id, "accept")

        self.assertEqual(ctx.exception.extra.get("party"), "either")
        self.assertEqual((await self._couple(cb_id)).status, "pending")
        self.assertEqual((await self._user(b_id)).partner_id, a_id)
        self.assertIsNone((await self._user(c_id)).partner_id)

    async def test_symmetry_reverse_side_sees_the_same_pair(self):
        """无论谁是 low/high，双方看到的都是同一条关系。"""
        # 让请求方的 id 更大，确保 requested_by == user_high_id 的路径也被覆盖
        b_id, a_id = await self._seed_users("bob@example.com", "alice@example.com")
        assert self.session_factory is not None

        async with self.session_factory() as session:
            sent = await self._engine(session).send_request(a_id, "bob@example.com")
            couple_id = int(sent.couple.id)

        couple = await self._couple(couple_id)
        self.assertEqual(int(couple.user_high_id), a_id)
        self.assertEqual(int(couple.user_low_id), b_id)
        self.assertEqual(couple.other_party(a_id), b_id)
        self.assertEqual(couple.other_party(b_id), a_id)

        async with self.session_factory() as session:
            await self._engine(session).respond_to_request(b_id, couple_id, "accept")
        async with self.session_factory() as session:
            await self._engine(session).disconnect(a_id)

        self.assertIsNone((await self._user(a_id)).partner_id)
        self.assertIsNone((await self._user(b_id)).partner_id)


if __name__ == "__main__":
    unittest.main()
