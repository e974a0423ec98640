from datetime import datetime
from typing import Optional
from sqlalchemy import String, Integer, DateTime, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column
from payshare.database import Base, utcnow
from payshare.models.base import IntIdMixin


class Download(Base, IntIdMixin):
    __tablename__ = "downloads"

    file_id: Mapped[int] = mapped_column(ForeignKey("files.id", ondelete="CASCADE"))
    user_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    ip_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    earnings: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("ix_downloads_file_id", "file_id"),
        Index("ix_downloads_user_id", "user_id"),
    )
