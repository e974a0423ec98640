from typing import Optional
from sqlalchemy import String, BigInteger
from sqlalchemy.orm import Mapped, mapped_column, relationship
from payshare.database import Base
from payshare.models.base import IntIdMixin, TimestampMixin


class User(Base, IntIdMixin, TimestampMixin):
    __tablename__ = "users"

    external_id: Mapped[Optional[str]] = mapped_column(String(128), unique=True, nullable=True)
    username: Mapped[Optional[str]] = mapped_column(String(64), unique=True, nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True)
    password_hash: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    display_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    avatar_url: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    balance: Mapped[int] = mapped_column(BigInteger, default=0)

    files: Mapped[list["File"]] = relationship(back_populates="user", passive_deletes=True)
    payments: Mapped[list["Payment"]] = relationship(back_populates="user", passive_deletes=True)
