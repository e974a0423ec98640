"""Records exchanged with the ledger store.

Both store backends return these models, so callers never see ORM rows or the
in-memory store's internal objects.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, Field, model_validator


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_PAYMENT_STATUSES = frozenset({PaymentStatus.COMPLETED, PaymentStatus.FAILED})


class Record(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class User(Record):
    id: int
    external_id: Optional[str] = None
    username: Optional[str] = None
    email: Optional[str] = None
    password_hash: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    balance: int = 0
    created_at: datetime
    updated_at: datetime


class File(Record):
    id: int
    user_id: int
    title: str
    description: Optional[str] = None
    file_name: str
    file_size: int
    file_type: str
    download_url: str
    share_token: str
    tags: list[str] = Field(default_factory=list)
    downloads: int = 0
    rating: float = 0.0
    total_ratings: int = 0
    created_at: datetime
    updated_at: datetime


class Download(Record):
    id: int
    file_id: int
    user_id: Optional[int] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    earnings: int
    created_at: datetime


class Comment(Record):
    id: int
    file_id: int
    user_id: int
    comment: str
    rating: int
    created_at: datetime


class Payment(Record):
    id: int
    user_id: int
    amount: int
    status: PaymentStatus
    payment_method: str
    transaction_id: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    created_at: datetime
    completed_at: Optional[datetime] = None


class UserCreate(BaseModel):
    external_id: Optional[str] = None
    username: Optional[str] = None
    email: Optional[str] = None
    password_hash: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None


class FileCreate(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    file_name: str
    file_size: int = Field(ge=0)
    file_type: str
    download_url: str
    tags: list[str] = Field(default_factory=list)


FILE_REQUIRED_FIELDS = ("title", "file_name", "file_size", "file_type", "download_url", "tags")


class FileUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    file_name: Optional[str] = None
    file_size: Optional[int] = Field(default=None, ge=0)
    file_type: Optional[str] = None
    download_url: Optional[str] = None
    tags: Optional[list[str]] = None

    @model_validator(mode="after")
    def reject_null_required_fields(self) -> "FileUpdate":
        # omitted means unchanged; an explicit null would blank a required column
        nulls = [f for f in FILE_REQUIRED_FIELDS if f in self.model_fields_set and getattr(self, f) is None]
        if nulls:
            raise ValueError(f"{', '.join(nulls)} cannot be null")
        return self


class DownloadCreate(BaseModel):
    file_id: int
    user_id: Optional[int] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    # None means "use the store's configured per-download earnings"
    earnings: Optional[int] = Field(default=None, ge=0)


class CommentCreate(BaseModel):
    file_id: int
    user_id: int
    comment: str = Field(min_length=1)
    rating: int = Field(ge=1, le=5)


class PaymentCreate(BaseModel):
    user_id: int
    amount: int = Field(gt=0)
    payment_method: str
    details: Optional[dict[str, Any]] = None
    # Accepted for compatibility with clients that send it; always ignored.
    status: Optional[str] = None
