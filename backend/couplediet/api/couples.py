"""配对（情侣关系）API

四个写意图（send / respond / cancel / disconnect）+ 状态查询。
业务失败统一抛 PairingError 子类，由 main.py 的 exception handler 转成
{"detail": <CODE>, "message": ...} 并带上对应 HTTP 状态码。
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..database import get_db
from ..models import COUPLE_STATUSES, User
from ..schemas import (
    CancelCoupleRequest,
    CoupleResponse,
    CoupleStatusRequestInfo,
    CoupleStatusResponse,
    PairingActionResponse,
    RespondCoupleRequest,
    SendCoupleRequest,
    UserSummary,
)
from ..services import (
    CoupleStore,
    PairingEngine,
    PairingResult,
    StoreUnavailable,
    load_couple_status,
)
from ..utils.errors import Transient
from .deps import get_current_user

router = APIRouter(prefix="/couples", tags=["couples"])

_ACTION_MESSAGES = {
    "send": "配对请求已发送",
    "accept": "已接受配对请求",
    "reject": "已拒绝配对请求",
    "cancel": "配对请求已取消",
    "disconnect": "已解除配对关系",
}


def _to_action_response(result: PairingResult) -> PairingActionResponse:
    return PairingActionResponse(
        action=result.action,
        couple=CoupleResponse.model_validate(result.couple),
        partner=UserSummary.model_validate(result.counterpart) if result.counterpart else None,
        message=_ACTION_MESSAGES.get(result.action, "OK"),
    )


@router.post("/send-request", response_model=PairingActionResponse, status_code=201)
async def send_request(
    req: SendCoupleRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """按邮箱向对方发送配对请求"""
    user_id = int(user.id)
    result = await PairingEngine.for_session(db).send_request(user_id, req.partner_email)
    return _to_action_response(result)


@router.post("/respond-request", response_model=PairingActionResponse)
async def respond_request(
    req: RespondCoupleRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """接受或拒绝收到的配对请求"""
    user_id = int(user.id)
    result = await PairingEngine.for_session(db).respond_to_request(
        user_id, req.request_id, req.action
    )
    return _to_action_response(result)


@router.post("/cancel-request", response_model=PairingActionResponse)
async def cancel_request(
    req: CancelCoupleRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """取消自己发出的配对请求（收到的请求请走 respond-request 拒绝）"""
    user_id = int(user.id)
    result = await PairingEngine.for_session(db).cancel_request(user_id, req.request_id)
    return _to_action_response(result)


@router.post("/disconnect", response_model=PairingActionResponse)
async def disconnect(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """解除当前配对关系"""
    user_id = int(user.id)
    result = await PairingEngine.for_session(db).disconnect(user_id)
    return _to_action_response(result)


@router.get("/status", response_model=CoupleStatusResponse)
async def get_couple_status(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """当前配对状态（超时后调用方应先查这里，再决定是否重试写操作）"""
    store = CoupleStore(db, timeout_seconds=settings.store_timeout_seconds)
    view = await load_couple_status(store, int(user.id))
    return CoupleStatusResponse(
        status=view.status,
        partner=UserSummary.model_validate(view.partner) if view.partner else None,
        request=CoupleStatusRequestInfo.model_validate(view.couple) if view.couple else None,
    )


@router.get("/history", response_model=list[CoupleResponse])
async def get_couple_history(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """本人参与过的全部配对记录（含已取消/已解除），按请求时间倒序"""
    store = CoupleStore(db, timeout_seconds=settings.store_timeout_seconds)
    try:
        couples = await store.list_couples_for_user(int(user.id), statuses=COUPLE_STATUSES)
    except StoreUnavailable as e:
        raise Transient() from e
    return [CoupleResponse.model_validate(c) for c in couples]
