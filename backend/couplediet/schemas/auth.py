from datetime import datetime

from pydantic import BaseModel, Field

from .user import UserResponse


class SignupRequest(BaseModel):
    """注册请求；display_name 不填时取邮箱 @ 前面的部分。"""

    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=1, repr=False)
    display_name: str | None = Field(default=None, max_length=100)


class LoginRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=1, repr=False)


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime
    user: UserResponse
