from __future__ import annotations

import sys
import unittest
from datetime import datetime, timezone
from pathlib import Path
from typing import cast
from typing_extensions import override

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
from backend.couplediet.services import CoupleStore, PairingEngine
from backend.couplediet.services.pairing import (
    check_can_cancel,
    check_can_disconnect,
    check_can_respond,
    check_can_send,
)
from backend.couplediet.utils.errors import (
    AlreadyPaired,
    DuplicatePending,
    Forbidden,
    InvalidDecision,
    NoActiveRelationship,
    NotFound,
    NotPending,
    SelfPairing,
)

Base = cast(DeclarativeMeta, _Base)


def _user(user_id: int, partner_id: int | None = None) -> User:
    return User(id=user_id, email=f"u{user_id}@example.com", password_hash="x", partner_id=partner_id)


def _couple(couple_id: int, requester: int, target: int, status: str = "pending") -> Couple:
    low, high = ordered_pair(requester, target)
    return Couple(
        id=couple_id,
        user_low_id=low,
        user_high_id=high,
        status=status,
        requested_by=requester,
        requested_at=datetime.now(timezone.utc),
    )


class SendGuardTests(unittest.TestCase):
    def _check(self, requester, target, *, pair=None, requester_pending=(), target_pending=()):
        return check_can_send(
            requester,
            target,
            pair_couple=pair,
            requester_pending=list(requester_pending),
            target_pending=list(target_pending),
        )

    def test_unknown_target(self):
        with self.assertRaises(NotFound) as ctx:
            self._check(_user(1), None)
        self.assertEqual(ctx.exception.extra, {"target": "user"})

    def test_self_pairing(self):
        with self.assertRaises(SelfPairing):
            self._check(_user(1), _user(1))

    def test_requester_already_paired(self):
        with self.assertRaises(AlreadyPaired) as ctx:
            self._check(_user(1, partner_id=3), _user(2))
        self.assertEqual(ctx.exception.extra["party"], "self")

    def test_target_already_paired(self):
        with self.assertRaises(AlreadyPaired) as ctx:
            self._check(_user(1), _user(2, partner_id=3))
        self.assertEqual(ctx.exception.extra["party"], "partner")

    def test_requester_checked_before_target(self):
        with self.assertRaises(AlreadyPaired) as ctx:
            self._check(_user(1, partner_id=5), _user(2, partner_id=6))
        self.assertEqual(ctx.exception.extra["party"], "self")

    def test_pair_already_active(self):
        # partner_id 已被清掉但关系仍是 active（清理中途），依旧拒绝
        with self.assertRaises(AlreadyPaired) as ctx:
            self._check(_user(1), _user(2), pair=_couple(7, 1, 2, status="active"))
        self.assertEqual(ctx.exception.extra["party"], "both")

    def test_pair_pending_sent_by_requester(self):
        with self.assertRaises(DuplicatePending) as ctx:
            self._check(_user(1), _user(2), pair=_couple(7, 1, 2))
        self.assertEqual(ctx.exception.extra, {"direction": "sent", "request_id": 7})

    def test_pair_pending_sent_by_target(self):
        with self.assertRaises(DuplicatePending) as ctx:
            self._check(_user(1), _user(2), pair=_couple(7, 2, 1))
        self.assertEqual(ctx.exception.extra, {"direction": "received", "request_id": 7})

    def test_requester_has_outstanding_request_to_someone_else(self):
        with self.assertRaises(DuplicatePending) as ctx:
            self._check(_user(1), _user(2), requester_pending=[_couple(8, 1, 3)])
        self.assertEqual(ctx.exception.extra["direction"], "sent")

    def test_requester_has_unanswered_incoming_request(self):
        with self.assertRaises(DuplicatePending) as ctx:
            self._check(_user(1), _user(2), requester_pending=[_couple(8, 3, 1)])
        self.assertEqual(ctx.exception.extra["direction"], "received")

    def test_target_has_pending_request(self):
        with self.assertRaises(DuplicatePending) as ctx:
            self._check(_user(1), _user(2), target_pending=[_couple(9, 3, 2)])
        self.assertEqual(ctx.exception.extra, {"direction": "partner_pending"})

    def test_clean_send_returns_target(self):
        target = _user(2)
        self.assertIs(self._check(_user(1), target), target)


class RespondCancelDisconnectGuardTests(unittest.TestCase):
    def test_third_party_cannot_respond(self):
        with self.assertRaises(Forbidden):
            check_can_respond(_couple(1, 1, 2), _user(3), "accept")

    def test_third_party_sees_forbidden_even_when_not_pending(self):
        with self.assertRaises(Forbidden):
            check_can_respond(_couple(1, 1, 2, status="inactive"), _user(3), "reject")

    def test_requester_cannot_accept_own_request(self):
        with self.assertRaises(Forbidden):
            check_can_respond(_couple(1, 1, 2), _user(1), "accept")

    def test_respond_to_terminal_couple(self):
        for status in ("active", "inactive", "cancelled"):
            with self.subTest(status=status):
                with self.assertRaises(NotPending) as ctx:
                    check_can_respond(_couple(1, 1, 2, status=status), _user(2), "accept")
                self.assertEqual(ctx.exception.extra["status"], status)

    def test_paired_responder_cannot_accept_but_can_reject(self):
        with self.assertRaises(AlreadyPaired):
            check_can_respond(_couple(1, 1, 2), _user(2, partner_id=9), "accept")
        check_can_respond(_couple(1, 1, 2), _user(2, partner_id=9), "reject")

    def test_cancel_is_requester_only(self):
        with self.assertRaises(Forbidden):
            check_can_cancel(_couple(1, 1, 2), 2)
        with self.assertRaises(Forbidden):
            check_can_cancel(_couple(1, 1, 2), 3)
        check_can_cancel(_couple(1, 1, 2), 1)

    def test_cancel_terminal_couple(self):
        with self.assertRaises(NotPending):
            check_can_cancel(_couple(1, 1, 2, status="cancelled"), 1)

    def test_disconnect_without_partner(self):
        with self.assertRaises(NoActiveRelationship):
            check_can_disconnect(_user(1), None)

    def test_disconnect_partner_without_active_couple(self):
        with self.assertRaises(NoActiveRelationship):
            check_can_disconnect(_user(1, partner_id=2), None)
        with self.assertRaises(NoActiveRelationship):
            check_can_disconnect(_user(1, partner_id=2), _couple(5, 1, 2, status="inactive"))

    def test_disconnect_active_couple_with_someone_else(self):
        with self.assertRaises(NoActiveRelationship):
            check_can_disconnect(_user(1, partner_id=2), _couple(5, 1, 3, status="active"))

    def test_disconnect_passes_for_either_side(self):
        couple = _couple(5, 1, 2, status="active")
        self.assertIs(check_can_disconnect(_user(1, partner_id=2), couple), couple)
        self.assertIs(check_can_disconnect(_user(2, partner_id=1), couple), couple)


class EngineGuardTests(unittest.IsolatedAsyncioTestCase):
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

        async with self.session_factory() as session:
            users = [
                User(email=f"{name}@example.com", display_name=name, password_hash="x")
                for name in ("alice", "bob", "carol")
            ]
            session.add_all(users)
            await session.commit()
            self.a_id, self.b_id, self.c_id = (int(u.id) for u in users)

    @override
    async def asyncTearDown(self):
        if self.engine is not None:
            await self.engine.dispose()

    async def _send(self, requester_id: int, email: str) -> int:
        assert self.session_factory is not None
        async with self.session_factory() as session:
            result = await PairingEngine(CoupleStore(session)).send_request(requester_id, email)
            return int(result.couple.id)

    async def test_send_to_unknown_email(self):
        with self.assertRaises(NotFound):
            await self._send(self.a_id, "nobody@example.com")

    async def test_send_to_self(self):
        with self.assertRaises(SelfPairing):
            await self._send(self.a_id, "ALICE@example.com")

    async def test_reverse_send_while_pending_is_received(self):
        couple_id = await self._send(self.a_id, "bob@example.com")
        with self.assertRaises(DuplicatePending) as ctx:
            await self._send(self.b_id, "alice@example.com")
        self.assertEqual(ctx.exception.extra, {"direction": "received", "request_id": couple_id})

    async def test_third_party_send_to_pending_target(self):
        await self._send(self.a_id, "bob@example.com")
        with self.assertRaises(DuplicatePending) as ctx:
            await self._send(self.c_id, "bob@example.com")
        self.assertEqual(ctx.exception.extra["direction"], "partner_pending")

    async def test_pending_requester_cannot_send_elsewhere(self):
        await self._send(self.a_id, "bob@example.com")
        with self.assertRaises(DuplicatePending) as ctx:
            await self._send(self.a_id, "carol@example.com")
        self.assertEqual(ctx.exception.extra["direction"], "sent")

    async def test_respond_to_missing_couple(self):
        assert self.session_factory is not None
        async with self.session_factory() as session:
            with self.assertRaises(NotFound) as ctx:
                await PairingEngine(CoupleStore(session)).respond_to_request(self.b_id, 999, "accept")
        self.assertEqual(ctx.exception.extra["target"], "couple")

    async def test_unknown_decision_is_rejected_before_any_read(self):
        assert self.session_factory is not None
        async with self.session_factory() as session:
            with self.assertRaises(InvalidDecision) as ctx:
                await PairingEngine(CoupleStore(session)).respond_to_request(self.b_id, 1, "maybe")
        self.assertEqual(ctx.exception.status_code, 422)
        self.assertEqual(ctx.exception.to_payload()["detail"], "INVALID_DECISION")
        self.assertEqual(ctx.exception.extra["decision"], "maybe")

    async def test_requester_cannot_accept_or_cancel_as_recipient(self):
        couple_id = await self._send(self.a_id, "bob@example.com")
        assert self.session_factory is not None
        async with self.session_factory() as session:
            engine = PairingEngine(CoupleStore(session))
            with self.assertRaises(Forbidden):
                await engine.respond_to_request(self.a_id, couple_id, "accept")
            with self.assertRaises(Forbidden):
                await engine.cancel_request(self.b_id, couple_id)
            with self.assertRaises(Forbidden):
                await engine.cancel_request(self.c_id, couple_id)

            couple = await CoupleStore(session).find_couple(couple_id)
            assert couple is not None
            self.assertEqual(couple.status, "pending")

    async def test_disconnect_without_relationship(self):
        assert self.session_factory is not None
        async with self.session_factory() as session:
            with self.assertRaises(NoActiveRelationship):
                await PairingEngine(CoupleStore(session)).disconnect(self.a_id)

    async def test_disconnect_twice(self):
        couple_id = await self._send(self.a_id, "bob@example.com")
        assert self.session_factory is not None
        async with self.session_factory() as session:
            engine = PairingEngine(CoupleStore(session), cleanup_backoff_seconds=0)
            await engine.respond_to_request(self.b_id, couple_id, "accept")
            await engine.disconnect(self.a_id)
            with self.assertRaises(NoActiveRelationship):
                await engine.disconnect(self.b_id)


if __name__ == "__main__":
    unittest.main()
