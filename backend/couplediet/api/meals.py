"""食物记录 API

可见范围跟随配对关系：本人的记录始终可见；配对生效期间（partner_id 不为空）
对方的记录也可见。写操作（新建/删除）只允许针对本人的记录。
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db
from ..models import Meal, User
from ..schemas import MealCreate, MealHistoryResponse, MealListResponse, MealResponse
from ..services.meal_history import group_meals_by_day, month_range
from .deps import get_current_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/meals", tags=["meals"])


def _visible_user_ids(user: User, scope: str) -> list[int]:
    uid = int(user.id)
    partner_id = int(user.partner_id) if user.partner_id is not None else None
    if scope == "mine":
        return [uid]
    if scope == "partner":
        return [partner_id] if partner_id is not None else []
    return [uid, partner_id] if partner_id is not None else [uid]


def _to_meal_response(meal: Meal, user_id: int) -> MealResponse:
    resp = MealResponse.model_validate(meal)
    resp.is_mine = int(meal.user_id) == int(user_id)
    return resp


@router.post("", response_model=MealResponse, status_code=201)
async def create_meal(
    body: MealCreate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """新建一条本人的食物记录"""
    user_id = int(user.id)
    meal = Meal(
        user_id=user_id,
        meal_name=body.meal_name.strip(),
        calories=body.calories,
        meal_type=body.meal_type,
        photo_url=body.photo_url,
        description=body.description,
        meal_date=body.meal_date or date.today(),
    )
    db.add(meal)
    await db.flush()
    await db.commit()
    await db.refresh(meal)
    logger.info("[MEAL] Created meal_id=%s user_id=%s", meal.id, user_id)
    return _to_meal_response(meal, user_id)


@router.get("", response_model=MealListResponse)
async def list_meals(
    scope: Literal["mine", "partner", "all"] = Query("all", alias="filter"),
    date_from: date | None = None,
    date_to: date | None = None,
    limit: int = 20,
    offset: int = 0,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """本人 / 对方 / 两人的食物记录（按创建时间倒序）"""
    limit = max(1, min(int(limit or 20), 100))
    offset = max(0, int(offset or 0))
    user_id = int(user.id)
    partner_connected = user.partner_id is not None

    user_ids = _visible_user_ids(user, scope)
    if not user_ids:
        return MealListResponse(
            count=0,
            limit=limit,
            offset=offset,
            has_more=False,
            partner_connected=partner_connected,
            filter=scope,
            items=[],
        )

    conds = [Meal.user_id.in_(user_ids)]
    if date_from is not None:
        conds.append(Meal.meal_date >= date_from)
    if date_to is not None:
        conds.append(Meal.meal_date <= date_to)

    total = int(await db.scalar(select(func.count(Meal.id)).where(*conds)) or 0)
    result = await db.execute(
        select(Meal)
        .where(*conds)
        .order_by(Meal.created_at.desc(), Meal.id.desc())
        .limit(limit)
        .offset(offset)
    )
    meals = result.scalars().all()

    return MealListResponse(
        count=total,
        limit=limit,
        offset=offset,
        has_more=(offset + len(meals) < total),
        partner_connected=partner_connected,
        filter=scope,
        items=[_to_meal_response(m, user_id) for m in meals],
    )


@router.get("/history", response_model=MealHistoryResponse)
async def get_meal_history(
    year: int = Query(..., ge=2000, le=2100),
    month: int = Query(..., ge=1, le=12),
    include_partner: bool = False,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """月度日历：按天汇总本人（以及可选的对方）记录"""
    start, end = month_range(year, month)
    user_id = int(user.id)
    partner_connected = user.partner_id is not None

    user_ids = _visible_user_ids(user, "all" if include_partner else "mine")
    result = await db.execute(
        select(Meal)
        .where(
            Meal.user_id.in_(user_ids),
            Meal.meal_date >= start,
            Meal.meal_date <= end,
        )
        .order_by(Meal.meal_date.asc(), Meal.created_at.asc(), Meal.id.asc())
    )
    meals = list(result.scalars().all())

    return MealHistoryResponse(
        year=year,
        month=month,
        include_partner=include_partner,
        partner_connected=partner_connected,
        days=group_meals_by_day(meals, user_id=user_id),
    )


@router.get("/{meal_id}", response_model=MealResponse)
async def get_meal(
    meal_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    meal = await db.get(Meal, meal_id)
    # 不可见与不存在返回同一个 404，避免泄露别人的记录是否存在
    if meal is None or int(meal.user_id) not in _visible_user_ids(user, "all"):
        raise HTTPException(status_code=404, detail="Meal not found")
    return _to_meal_response(meal, int(user.id))


@router.delete("/{meal_id}")
async def delete_meal(
    meal_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    user_id = int(user.id)
    meal = await db.get(Meal, meal_id)
    if meal is None or int(meal.user_id) not in _visible_user_ids(user, "all"):
        raise HTTPException(status_code=404, detail="Meal not found")
    if int(meal.user_id) != user_id:
        raise HTTPException(status_code=403, detail="FORBIDDEN")

    await db.delete(meal)
    await db.commit()
    logger.info("[MEAL] Deleted meal_id=%s user_id=%s", meal_id, user_id)
    return {"id": meal_id, "deleted": True}
