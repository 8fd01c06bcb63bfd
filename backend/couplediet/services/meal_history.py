from __future__ import annotations

import calendar
from datetime import date

from ..models import Meal
from ..schemas import MealHistoryDay, MealHistoryItem


def month_range(year: int, month: int) -> tuple[date, date]:
    """返回某月的第一天与最后一天（闭区间）。"""
    if month < 1 or month > 12:
        raise ValueError("month 必须在 1-12 之间")
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, 1), date(year, month, last_day)


def _day_status(has_user: bool, has_partner: bool) -> str:
    if has_user and has_partner:
        return "both"
    if has_user:
        return "completed"
    return "partner-only"


def group_meals_by_day(meals: list[Meal], *, user_id: int) -> list[MealHistoryDay]:
    """按 meal_date 分组，区分本人与对方的记录，并汇总热量。

    不是本人的记录一律视为对方的（调用方只会传入本人 + 当前配对对象的记录）。
    """
    buckets: dict[date, MealHistoryDay] = {}
    uid = int(user_id)

    for meal in meals:
        meal_day = meal.meal_date
        day = buckets.get(meal_day)
        if day is None:
            day = MealHistoryDay(date=meal_day, status="completed")
            buckets[meal_day] = day

        calories = int(meal.calories or 0)
        item = MealHistoryItem(
            id=int(meal.id),
            meal_type=str(meal.meal_type),
            meal_name=str(meal.meal_name),
            calories=calories,
            created_at=meal.created_at,
        )
        if int(meal.user_id) == uid:
            day.user_meals.append(item)
            day.user_total_calories += calories
        else:
            day.partner_meals.append(item)
            day.partner_total_calories += calories

    days = [buckets[k] for k in sorted(buckets)]
    for day in days:
        day.status = _day_status(bool(day.user_meals), bool(day.partner_meals))
    return days
