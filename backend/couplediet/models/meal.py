from sqlalchemy import Column, Date, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.sql import func
from ..database import Base


MEAL_TYPES = ("breakfast", "lunch", "dinner", "snack")


class Meal(Base):
    """食物记录表 - 本人可读写，配对成功后对方可读"""
    __tablename__ = "meals"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    meal_name = Column(String(200), nullable=False)
    calories = Column(Integer)
    meal_type = Column(String(16), nullable=False, default="lunch")
    photo_url = Column(Text)
    description = Column(Text)
    meal_date = Column(Date, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
