from datetime import datetime
from typing import Optional
from sqlalchemy import String, BigInteger, DateTime, ForeignKey, JSON, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship
from payshare.database import Base, utcnow
from payshare.models.base import IntIdMixin


class Payment(Base, IntIdMixin):
    __tablename__ = "payments"

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"))
    amount: Mapped[int] = mapped_column(BigInteger)

    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending, completed, failed
    payment_method: Mapped[str] = mapped_column(String(50))  # mobile_money, bank, ...
    transaction_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    user: Mapped["User"] = relationship(back_populates="payments")

    __table_args__ = (
        Index("ix_payments_user_id", "user_id"),
    )
