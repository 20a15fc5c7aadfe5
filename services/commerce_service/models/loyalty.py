"""LoyaltyTransaction model: the immutable points ledger."""

from datetime import datetime
from typing import Optional

from libs.common.datetime_utils import utc_now
from libs.db.base import Base
from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column


class LoyaltyTransaction(Base):
    """Append-only points ledger. users.loyalty_points_balance is its running sum."""

    __tablename__ = "loyalty_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id"), nullable=False, index=True
    )
    order_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("orders.id"), nullable=True, index=True
    )
    points_change: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(String(120), nullable=False)

    # "{user_id}:{order_id or '-'}:{reason}"; at most one row per (user, order, reason)
    idempotency_key: Mapped[str] = mapped_column(
        String(255), unique=True, index=True, nullable=False
    )
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )

    __table_args__ = (
        CheckConstraint("points_change <> 0", name="ck_loyalty_points_non_zero"),
        CheckConstraint("balance_after >= 0", name="ck_loyalty_balance_after_non_negative"),
        Index("ix_loyalty_transactions_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<LoyaltyTransaction {self.id} user={self.user_id} {self.points_change:+d}>"
