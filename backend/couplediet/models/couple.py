from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Index, Integer, String, text
from sqlalchemy.sql import func
from ..database import Base


COUPLE_PENDING = "pending"
COUPLE_ACTIVE = "active"
COUPLE_INACTIVE = "inactive"
COUPLE_CANCELLED = "cancelled"

COUPLE_STATUSES = (COUPLE_PENDING, COUPLE_ACTIVE, COUPLE_INACTIVE, COUPLE_CANCELLED)
OPEN_COUPLE_STATUSES = (COUPLE_PENDING, COUPLE_ACTIVE)


def ordered_pair(user_a: int, user_b: int) -> tuple[int, int]:
    """把无序的一对用户规范成 (low, high)，读写两边都用它，避免到处判断两种顺序。"""
    a, b = int(user_a), int(user_b)
    return (a, b) if a < b else (b, a)


class Couple(Base):
    """配对关系表 - 一行代表一次配对（请求 -> 接受 -> 解除），终态行保留作历史"""
    __tablename__ = "couples"

    id = Column(Integer, primary_key=True, index=True)
    user_low_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    user_high_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    status = Column(String(16), nullable=False, default=COUPLE_PENDING)  # pending/active/inactive/cancelled
    requested_by = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    requested_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    accepted_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint("user_low_id < user_high_id", name="ck_couples_low_lt_high"),
        CheckConstraint(
            "requested_by = user_low_id OR requested_by = user_high_id",
            name="ck_couples_requester_in_pair",
        ),
        # 同一对用户最多一条 pending/active；并发 send 时由这里兜底
        Index(
            "uq_couples_open_pair",
            "user_low_id",
            "user_high_id",
            unique=True,
            sqlite_where=text("status IN ('pending', 'active')"),
            postgresql_where=text("status IN ('pending', 'active')"),
        ),
    )

    def involves(self, user_id: int) -> bool:
        return int(user_id) in (self.user_low_id, self.user_high_id)

    def other_party(self, user_id: int) -> int:
        """给定其中一方，返回另一方的 user id。"""
        uid = int(user_id)
        if uid == self.user_low_id:
            return int(self.user_high_id)
        if uid == self.user_high_id:
            return int(self.user_low_id)
        raise ValueError(f"user {uid} is not a party of couple {self.id}")

    def __repr__(self):
        return (
            f"<Couple(id={self.id}, pair=({self.user_low_id}, {self.user_high_id}), "
            f"status={self.status}, requested_by={self.requested_by})>"
        )
