from sqlalchemy import Column, Integer, String, DateTime, Text, ForeignKey
from sqlalchemy.sql import func
from ..database import Base


class User(Base):
    """用户表 - 账号信息 + 当前配对对象（partner_id）"""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    # 联系地址：配对请求按邮箱查找对方，入库前统一转小写
    email = Column(String(255), unique=True, nullable=False, index=True)
    display_name = Column(String(100))
    avatar_url = Column(Text)
    password_hash = Column(Text, nullable=False)
    # 仅由配对状态机（accept / disconnect）和定时修复任务改写
    partner_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
