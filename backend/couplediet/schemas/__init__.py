from .auth import LoginRequest, LoginResponse, SignupRequest
from .couple import (
    CancelCoupleRequest,
    CoupleResponse,
    CoupleStatusRequestInfo,
    CoupleStatusResponse,
    PairingActionResponse,
    RespondCoupleRequest,
    SendCoupleRequest,
)
from .meal import (
    MealCreate,
    MealHistoryDay,
    MealHistoryItem,
    MealHistoryResponse,
    MealListResponse,
    MealResponse,
)
from .user import UserResponse, UserSummary

__all__ = [
    "SignupRequest",
    "LoginRequest",
    "LoginResponse",
    "UserResponse",
    "UserSummary",
    "CoupleResponse",
    "SendCoupleRequest",
    "RespondCoupleRequest",
    "CancelCoupleRequest",
    "PairingActionResponse",
    "CoupleStatusRequestInfo",
    "CoupleStatusResponse",
    "MealCreate",
    "MealResponse",
    "MealListResponse",
    "MealHistoryItem",
    "MealHistoryDay",
    "MealHistoryResponse",
]
