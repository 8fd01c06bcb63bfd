from .user import User
from .couple import (
    COUPLE_ACTIVE,
    COUPLE_CANCELLED,
    COUPLE_INACTIVE,
    COUPLE_PENDING,
    COUPLE_STATUSES,
    OPEN_COUPLE_STATUSES,
    Couple,
    ordered_pair,
)
from .meal import MEAL_TYPES, Meal

__all__ = [
    "User",
    "Couple",
    "Meal",
    "COUPLE_PENDING",
    "COUPLE_ACTIVE",
    "COUPLE_INACTIVE",
    "COUPLE_CANCELLED",
    "COUPLE_STATUSES",
    "OPEN_COUPLE_STATUSES",
    "MEAL_TYPES",
    "ordered_pair",
]
