from datetime import datetime
from sqlalchemy import Text, Integer, DateTime, ForeignKey, Index, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column
from payshare.database import Base, utcnow
from payshare.models.base import IntIdMixin


class Comment(Base, IntIdMixin):
    __tablename__ = "comments"

    file_id: Mapped[int] = mapped_column(ForeignKey("files.id", ondelete="CASCADE"))
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"))

    comment: Mapped[str] = mapped_column(Text)
    rating: Mapped[int] = mapped_column(Integer)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        CheckConstraint("rating BETWEEN 1 AND 5", name="ck_comments_rating_range"),
        Index("ix_comments_file_id", "file_id"),
    )
