"""配对（情侣关系）状态机

状态流转：
    (none) --send--> pending --accept--> active --disconnect--> inactive
                      |  \\
                      |   --reject--> inactive
                      --cancel（仅请求方）--> cancelled

设计要点：
- check_* 是纯函数：只根据当前读到的状态判断意图是否合法，不做任何写入。
- PairingEngine 负责“读 -> 判断 -> 写”，所有前置条件都在第一次写入之前检查完。
- 写入一律走 CoupleStore 的条件更新；条件没命中（并发请求抢先）时重新归类为
  NotPending / AlreadyPaired 这类预期内的业务失败，而不是系统错误。
- 唯一允许的“部分写入”是 disconnect：先把关系改成 inactive（fencing），再清理双方
  partner_id；清理失败会重试，仍失败则抛 PartialDisconnect 并记录 ERROR 日志，
  由定时修复任务兜底。
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..models import (
    COUPLE_ACTIVE,
    COUPLE_CANCELLED,
    COUPLE_INACTIVE,
    COUPLE_PENDING,
    Couple,
    User,
)
from ..utils.errors import (
    AlreadyPaired,
    DuplicatePending,
    Forbidden,
    InvalidDecision,
    NoActiveRelationship,
    NotFound,
    NotPending,
    PartialDisconnect,
    SelfPairing,
    Transient,
    exception_summary,
)
from .couple_store import CoupleStore, StoreConflict, StoreUnavailable
from .retry import call_with_retry

DECISION_ACCEPT = "accept"
DECISION_REJECT = "reject"
DECISIONS = (DECISION_ACCEPT, DECISION_REJECT)


@dataclass
class PairingResult:
    """一次成功的状态迁移：迁移后的关系 + 对方用户。"""

    action: str
    couple: Couple
    counterpart: User | None


# ---------------------------------------------------------------------------
# 纯判断（不访问存储）
# ---------------------------------------------------------------------------


def check_can_send(
    requester: User,
    target: User | None,
    *,
    pair_couple: Couple | None,
    requester_pending: list[Couple],
    target_pending: list[Couple],
) -> User:
    """send 的前置条件，通过时返回目标用户。

    pair_couple：这对用户之间现存的 pending/active 关系（没有则为 None）。
    requester_pending / target_pending：双方各自参与的 pending 关系（任意对象）。
    """
    if target is None:
        raise NotFound("该邮箱对应的用户不存在", target="user")

    requester_id = int(requester.id)
    target_id = int(target.id)
    if requester_id == target_id:
        raise SelfPairing()

    if requester.partner_id is not None:
        raise AlreadyPaired("你已经有配对对象了，请先解除当前配对", party="self")
    if target.partner_id is not None:
        raise AlreadyPaired("对方已经有配对对象了", party="partner")

    if pair_couple is not None:
        if pair_couple.status == COUPLE_ACTIVE:
            raise AlreadyPaired("你们已经是配对关系了", party="both")
        if int(pair_couple.requested_by) == requester_id:
            raise DuplicatePending(
                "你已向对方发送过请求，请等待对方处理",
                direction="sent",
                request_id=pair_couple.id,
            )
        raise DuplicatePending(
            "对方已向你发送了请求，请直接接受",
            direction="received",
            request_id=pair_couple.id,
        )

    # 每个用户同一时间最多参与一条 pending 关系
    for couple in requester_pending:
        if int(couple.requested_by) == requester_id:
            raise DuplicatePending(
                "你已有一个等待对方处理的请求，请先取消",
                direction="sent",
                request_id=couple.id,
            )
        raise DuplicatePending(
            "你有一个待处理的配对请求，请先接受或拒绝",
            direction="received",
            request_id=couple.id,
        )

    if target_pending:
        raise DuplicatePending("对方还有未处理的配对请求", direction="partner_pending")

    return target


def check_can_respond(couple: Couple, responder: User, decision: str) -> None:
    responder_id = int(responder.id)
    if not couple.involves(responder_id):
        raise Forbidden("无权响应该配对请求")
    if couple.status != COUPLE_PENDING:
        raise NotPending(status=couple.status)
    if int(couple.requested_by) == responder_id:
        raise Forbidden("不能响应自己发出的请求")
    if decision == DECISION_ACCEPT and responder.partner_id is not None:
        raise AlreadyPaired("你已经有配对对象了", party="self")


def check_can_cancel(couple: Couple, caller_id: int) -> None:
    caller_id = int(caller_id)
    if not couple.involves(caller_id):
        raise Forbidden("无权取消该配对请求")
    if couple.status != COUPLE_PENDING:
        raise NotPending(status=couple.status)
    if int(couple.requested_by) != caller_id:
        # 接收方要走 reject，而不是 cancel
        raise Forbidden("只能取消自己发出的请求，收到的请求请使用拒绝")


def check_can_disconnect(caller: User, active_couple: Couple | None) -> Couple:
    """disconnect 的前置条件，通过时返回要解除的 active 关系。"""
    if caller.partner_id is None:
        raise NoActiveRelationship()
    if active_couple is None or active_couple.status != COUPLE_ACTIVE:
        raise NoActiveRelationship("找不到与当前配对对象之间已生效的关系")
    if active_couple.other_party(int(caller.id)) != int(caller.partner_id):
        raise NoActiveRelationship("已生效的关系与当前配对对象不一致")
    return active_couple


# ---------------------------------------------------------------------------
# 状态机编排
# ---------------------------------------------------------------------------


class PairingEngine:
    """无状态、可重入；所有状态都在 CoupleStore 背后的数据库里。"""

    def __init__(
        self,
        store: CoupleStore,
        *,
        logger: logging.Logger | None = None,
        cleanup_attempts: int = 3,
        cleanup_backoff_seconds: float = 0.2,
    ):
        self.store = store
        self.logger = logger or logging.getLogger(__name__)
        self.cleanup_attempts = max(1, int(cleanup_attempts or 1))
        self.cleanup_backoff_seconds = max(0.0, float(cleanup_backoff_seconds or 0.0))

    @classmethod
    def for_session(cls, db: AsyncSession) -> "PairingEngine":
        store = CoupleStore(db, timeout_seconds=settings.store_timeout_seconds)
        return cls(
            store,
            cleanup_attempts=settings.disconnect_cleanup_attempts,
            cleanup_backoff_seconds=settings.disconnect_cleanup_backoff_seconds,
        )

    @asynccontextmanager
    async def _classified(self, intent: str) -> AsyncIterator[None]:
        try:
            yield
        except StoreUnavailable as e:
            self.logger.warning(
                "[PAIRING] %s hit a transient store failure: %s", intent, exception_summary(e)
            )
            raise Transient() from e

    async def _require_user(self, user_id: int) -> User:
        user = await self.store.find_user_by_id(user_id)
        if user is None:
            raise NotFound("用户不存在", target="user")
        return user

    async def _require_couple(self, couple_id: int) -> Couple:
        couple = await self.store.find_couple(couple_id)
        if couple is None:
            raise NotFound("配对请求不存在", target="couple")
        return couple

    async def _result(self, action: str, couple_id: int, counterpart_id: int) -> PairingResult:
        couple = await self._require_couple(couple_id)
        counterpart = await self.store.find_user_by_id(counterpart_id)
        return PairingResult(action=action, couple=couple, counterpart=counterpart)

    async def send_request(self, requester_id: int, partner_email: str) -> PairingResult:
        async with self._classified("send"):
            requester = await self._require_user(requester_id)
            target = await self.store.find_user_by_email(partner_email)

            pair_couple = None
            requester_pending: list[Couple] = []
            target_pending: list[Couple] = []
            if target is not None and int(target.id) != int(requester.id):
                pair_couple = await self.store.find_open_couple_between(requester.id, target.id)
                requester_pending = await self.store.list_pending_couples_for_user(requester.id)
                target_pending = await self.store.list_pending_couples_for_user(target.id)

            target = check_can_send(
                requester,
                target,
                pair_couple=pair_couple,
                requester_pending=requester_pending,
                target_pending=target_pending,
            )

            uid, tid = int(requester.id), int(target.id)
            try:
                couple = await self.store.create_couple(uid, tid, requested_by=uid)
            except StoreConflict:
                # 并发 send 抢先建了同一对的 pending/active 行（唯一索引兜底）
                existing = await self.store.find_open_couple_between(uid, tid)
                direction = "sent"
                if existing is not None and int(existing.requested_by) != uid:
                    direction = "received"
                self.logger.info("[PAIRING] send lost a race requester=%s target=%s", uid, tid)
                raise DuplicatePending(direction=direction)

            couple_id = int(couple.id)
            self.logger.info(
                "[PAIRING] send couple_id=%s requester=%s target=%s", couple_id, uid, tid
            )
            return await self._result("send", couple_id, tid)

    async def respond_to_request(
        self, responder_id: int, couple_id: int, decision: str
    ) -> PairingResult:
        if decision not in DECISIONS:
            raise InvalidDecision(decision=decision)

        async with self._classified(decision):
            couple = await self._require_couple(couple_id)
            responder = await self._require_user(responder_id)
            check_can_respond(couple, responder, decision)

            rid = int(responder.id)
            requester_id = int(couple.requested_by)
            couple_id = int(couple.id)

            if decision == DECISION_REJECT:
                try:
                    await self.store.transition_couple_status(
                        couple_id, expected=COUPLE_PENDING, new=COUPLE_INACTIVE
                    )
                except StoreConflict:
                    self.logger.info("[PAIRING] reject lost a race couple_id=%s", couple_id)
                    raise NotPending()
                self.logger.info("[PAIRING] reject couple_id=%s responder=%s", couple_id, rid)
                return await self._result("reject", couple_id, requester_id)

            requester = await self._require_user(requester_id)
            if requester.partner_id is not None:
                raise AlreadyPaired("对方已经和别人配对了", party="partner")

            try:
                await self.store.accept_and_link(couple_id, requester_id, rid)
            except StoreConflict:
                fresh = await self.store.find_couple(couple_id)
                if fresh is None or fresh.status != COUPLE_PENDING:
                    self.logger.info("[PAIRING] accept found couple no longer pending couple_id=%s", couple_id)
                    raise NotPending()
                self.logger.info(
                    "[PAIRING] accept lost a race couple_id=%s responder=%s", couple_id, rid
                )
                raise AlreadyPaired("你或对方刚刚与其他人完成了配对", party="either")

            # 后置校验：双方 partner_id 必须互相指向对方
            users = await self.store.find_users_by_ids({requester_id, rid})
            linked_requester = users.get(requester_id)
            linked_responder = users.get(rid)
            if (
                linked_requester is None
                or linked_responder is None
                or linked_requester.partner_id != rid
                or linked_responder.partner_id != requester_id
            ):
                self.logger.error(
                    "[PAIRING] accept post-condition failed couple_id=%s requester=%s responder=%s",
                    couple_id,
                    requester_id,
                    rid,
                )
                raise AlreadyPaired("配对状态已被并发修改", party="either")

            self.logger.info(
                "[PAIRING] accept couple_id=%s requester=%s responder=%s",
                couple_id,
                requester_id,
                rid,
            )
            return await self._result("accept", couple_id, requester_id)

    async def cancel_request(self, requester_id: int, couple_id: int) -> PairingResult:
        async with self._classified("cancel"):
            couple = await self._require_couple(couple_id)
            check_can_cancel(couple, requester_id)

            uid = int(requester_id)
            couple_id = int(couple.id)
            counterpart_id = couple.other_party(uid)
            try:
                await self.store.transition_couple_status(
                    couple_id, expected=COUPLE_PENDING, new=COUPLE_CANCELLED
                )
            except StoreConflict:
                self.logger.info("[PAIRING] cancel lost a race couple_id=%s", couple_id)
                raise NotPending()

            self.logger.info("[PAIRING] cancel couple_id=%s requester=%s", couple_id, uid)
            return await self._result("cancel", couple_id, counterpart_id)

    async def disconnect(self, caller_id: int) -> PairingResult:
        async with self._classified("disconnect"):
            caller = await self._require_user(caller_id)
            active_couple = None
            if caller.partner_id is not None:
                active_couple = await self.store.find_active_couple_between(
                    caller.id, caller.partner_id
                )
            active_couple = check_can_disconnect(caller, active_couple)

            uid = int(caller.id)
            partner_id = int(caller.partner_id)
            couple_id = int(active_couple.id)

            # 1) fencing：关系先变成 inactive，之后任何 accept 都不会再和它竞争
            try:
                await self.store.transition_couple_status(
                    couple_id, expected=COUPLE_ACTIVE, new=COUPLE_INACTIVE
                )
            except StoreConflict:
                self.logger.info("[PAIRING] disconnect lost a race couple_id=%s", couple_id)
                raise NoActiveRelationship()

            # 2) 清理双方 partner_id（只清理仍指向对方的那一行）
            failed = await self._clear_partner_references(
                ((uid, partner_id), (partner_id, uid)), couple_id=couple_id
            )
            if failed:
                raise PartialDisconnect(couple_id=couple_id, pending_user_ids=failed)

            self.logger.info(
                "[PAIRING] disconnect couple_id=%s caller=%s partner=%s", couple_id, uid, partner_id
            )
            return await self._result("disconnect", couple_id, partner_id)

    async def _clear_partner_references(
        self, pairs: tuple[tuple[int, int], ...], *, couple_id: int
    ) -> list[int]:
        failed: list[int] = []
        for user_id, expected in pairs:
            try:
                await call_with_retry(
                    lambda u=user_id, p=expected: self.store.clear_partner_reference(
                        u, expected_partner_id=p
                    ),
                    max_attempts=self.cleanup_attempts,
                    backoff_seconds=self.cleanup_backoff_seconds,
                )
            except StoreUnavailable as e:
                failed.append(user_id)
                self.logger.error(
                    "[PAIRING] disconnect left a dangling partner_id couple_id=%s user_id=%s attempts=%s: %s",
                    couple_id,
                    user_id,
                    e.attempts,
                    exception_summary(e),
                )
            except Exception as e:
                # 未归类的存储错误不重试，但另一方仍要清理，最终统一报 PartialDisconnect
                failed.append(user_id)
                self.logger.exception(
                    "[PAIRING] disconnect left a dangling partner_id couple_id=%s user_id=%s: %s",
                    couple_id,
                    user_id,
                    exception_summary(e),
                )
        return failed
