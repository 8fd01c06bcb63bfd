from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from .user import UserSummary


class CoupleResponse(BaseModel):
    """配对关系（一行 couples 记录）"""
    id: int
    user_low_id: int
    user_high_id: int
    status: str
    requested_by: int
    requested_at: datetime | None
    accepted_at: datetime | None
    updated_at: datetime | None

    class Config:
        from_attributes = True


class SendCoupleRequest(BaseModel):
    partner_email: str = Field(..., min_length=3, max_length=255, description="对方注册邮箱")


class RespondCoupleRequest(BaseModel):
    request_id: int = Field(..., gt=0, description="配对请求（couples.id）")
    action: Literal["accept", "reject"]


class CancelCoupleRequest(BaseModel):
    """取消自己发出的请求；只认 request_id（couples.id）。"""

    request_id: int = Field(..., gt=0)


class PairingActionResponse(BaseModel):
    action: str
    couple: CoupleResponse
    partner: UserSummary | None = None
    message: str


class CoupleStatusRequestInfo(BaseModel):
    id: int
    requested_at: datetime | None
    accepted_at: datetime | None
    created_at: datetime | None
    updated_at: datetime | None

    class Config:
        from_attributes = True


class CoupleStatusResponse(BaseModel):
    """配对状态：none / pending_sent / pending_received / active"""

    status: Literal["none", "pending_sent", "pending_received", "active"]
    partner: UserSummary | None = None
    request: CoupleStatusRequestInfo | None = None
