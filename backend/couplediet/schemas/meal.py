from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, Field


MealType = Literal["breakfast", "lunch", "dinner", "snack"]
# 字段名 date 会遮住同名类型，日历里单独起个别名
CalendarDay = date


class MealCreate(BaseModel):
    """新建食物记录（只能给自己记）"""

    meal_name: str = Field(..., min_length=1, max_length=200)
    calories: int | None = Field(default=None, ge=0)
    meal_type: MealType = "lunch"
    photo_url: str | None = None
    description: str | None = None
    meal_date: date | None = Field(default=None, description="不填则为今天")


class MealResponse(BaseModel):
    id: int
    user_id: int
    meal_name: str
    calories: int | None
    meal_type: str
    photo_url: str | None
    description: str | None
    meal_date: date
    created_at: datetime | None
    updated_at: datetime | None
    is_mine: bool = True

    class Config:
        from_attributes = True


class MealListResponse(BaseModel):
    count: int
    limit: int
    offset: int
    has_more: bool
    partner_connected: bool
    filter: str
    items: list[MealResponse] = Field(default_factory=list)


class MealHistoryItem(BaseModel):
    id: int
    meal_type: str
    meal_name: str
    calories: int
    created_at: datetime | None


class MealHistoryDay(BaseModel):
    date: CalendarDay
    status: Literal["both", "completed", "partner-only"]
    user_meals: list[MealHistoryItem] = Field(default_factory=list)
    partner_meals: list[MealHistoryItem] = Field(default_factory=list)
    user_total_calories: int = 0
    partner_total_calories: int = 0


class MealHistoryResponse(BaseModel):
    year: int
    month: int
    include_partner: bool
    partner_connected: bool
    days: list[MealHistoryDay] = Field(default_factory=list)
