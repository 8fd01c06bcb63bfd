from pydantic import BaseModel
from datetime import datetime


class UserResponse(BaseModel):
    """用户响应模型（本人视角，包含 partner_id）"""
    id: int
    email: str
    display_name: str | None
    avatar_url: str | None
    partner_id: int | None
    created_at: datetime | None

    class Config:
        from_attributes = True


class UserSummary(BaseModel):
    """对方用户的简要信息（配对请求/状态里展示）"""
    id: int
    email: str
    display_name: str | None
    avatar_url: str | None = None

    class Config:
        from_attributes = True
