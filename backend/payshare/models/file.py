from typing import Optional
from sqlalchemy import String, Text, Integer, BigInteger, Float, ForeignKey, JSON, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship
from payshare.database import Base
from payshare.models.base import IntIdMixin, TimestampMixin


class File(Base, IntIdMixin, TimestampMixin):
    __tablename__ = "files"

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"))

    title: Mapped[str] = mapped_column(String(255))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    file_name: Mapped[str] = mapped_column(String(255))
    file_size: Mapped[int] = mapped_column(BigInteger, default=0)
    file_type: Mapped[str] = mapped_column(String(100))
    download_url: Mapped[str] = mapped_column(String(1000))
    share_token: Mapped[str] = mapped_column(String(64), unique=True)
    tags: Mapped[list] = mapped_column(JSON, default=list)

    downloads: Mapped[int] = mapped_column(Integer, default=0)
    rating: Mapped[float] = mapped_column(Float, default=0.0)
    total_ratings: Mapped[int] = mapped_column(Integer, default=0)

    user: Mapped["User"] = relationship(back_populates="files")

    __table_args__ = (
        Index("ix_files_user_id", "user_id"),
        Index("ix_files_created_at", "created_at"),
        Index("ix_files_downloads", "downloads"),
        Index("ix_files_rating", "rating"),
    )
