import asyncio
import itertools
import logging
import weakref
from typing import Hashable, Iterable, Optional

from payshare.database import utcnow
from payshare.ledger.base import DEFAULT_LIST_LIMIT, SHARE_TOKEN_ATTEMPTS, LedgerStore, next_rating
from payshare.ledger.errors import DanglingReference, DuplicateKey, InsufficientBalance
from payshare.ledger.tokens import generate_share_token
from payshare.schemas import (
    Comment,
    CommentCreate,
    Download,
    DownloadCreate,
    File,
    FileCreate,
    FileUpdate,
    Payment,
    PaymentCreate,
    PaymentStatus,
    User,
    UserCreate,
)

logger = logging.getLogger(__name__)

USER_UNIQUE_FIELDS = ("external_id", "username", "email")


class KeyedLock:
    """One asyncio.Lock per key, alive only while someone holds or awaits it."""

    def __init__(self):
        self._locks: weakref.WeakValueDictionary[Hashable, asyncio.Lock] = weakref.WeakValueDictionary()

    def __call__(self, *key) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def __len__(self) -> int:
        return len(self._locks)


def _newest_first(records):
    return sorted(records, key=lambda r: (r.created_at, r.id), reverse=True)


class MemoryLedgerStore(LedgerStore):
    """Ledger kept in process memory.

    Row mutations are serialized with a lock per (table, id). Locks are always
    taken file before user and payment before user. Records handed out are
    copies, so callers cannot change stored state behind the store's back.
    """

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._users: dict[int, User] = {}
        self._files: dict[int, File] = {}
        self._downloads: dict[int, Download] = {}
        self._comments: dict[int, Comment] = {}
        self._payments: dict[int, Payment] = {}
        self._share_tokens: dict[str, int] = {}
        self._ids = {name: itertools.count(1) for name in ("users", "files", "downloads", "comments", "payments")}
        self._lock = KeyedLock()

    def _next_id(self, table: str) -> int:
        return next(self._ids[table])

    @staticmethod
    def _copy(record):
        return record.model_copy(deep=True) if record is not None else None

    # Users

    async def get_user(self, user_id: int) -> Optional[User]:
        return self._copy(self._users.get(user_id))

    async def get_users(self, user_ids: Iterable[int]) -> list[User]:
        return [self._copy(self._users[i]) for i in set(user_ids) if i in self._users]

    async def get_user_by_external_id(self, external_id: str) -> Optional[User]:
        user = next((u for u in self._users.values() if u.external_id == external_id), None)
        return self._copy(user)

    async def get_user_by_email(self, email: str) -> Optional[User]:
        user = next((u for u in self._users.values() if u.email == email), None)
        return self._copy(user)

    async def create_user(self, data: UserCreate) -> User:
        async with self._lock("users"):
            for field in USER_UNIQUE_FIELDS:
                value = getattr(data, field)
                if value is not None and any(getattr(u, field) == value for u in self._users.values()):
                    raise DuplicateKey(f"User with this {field} already exists")

            now = utcnow()
            user = User(
                **data.model_dump(),
                id=self._next_id("users"),
                balance=0,
                created_at=now,
                updated_at=now,
            )
            self._users[user.id] = user
            return self._copy(user)

    def _apply_balance(self, user_id: int, delta: int) -> Optional[User]:
        # caller holds the user's lock
        user = self._users.get(user_id)
        if user is None:
            return None
        user.balance += delta
        user.updated_at = utcnow()
        return self._copy(user)

    async def adjust_user_balance(self, user_id: int, delta: int) -> Optional[User]:
        async with self._lock("users", user_id):
            return self._apply_balance(user_id, delta)

    def _require_user(self, user_id: int) -> None:
        if user_id not in self._users:
            raise DanglingReference(f"User {user_id} does not exist")

    # Files

    async def get_file(self, file_id: int) -> Optional[File]:
        return self._copy(self._files.get(file_id))

    async def get_file_by_share_token(self, token: str) -> Optional[File]:
        file_id = self._share_tokens.get(token)
        return self._copy(self._files.get(file_id))

    async def list_files_by_owner(self, user_id: int) -> list[File]:
        files = [f for f in self._files.values() if f.user_id == user_id]
        return [self._copy(f) for f in _newest_first(files)]

    def _unique_share_token(self) -> str:
        for _ in range(SHARE_TOKEN_ATTEMPTS):
            token = generate_share_token(self.share_token_length)
            if token not in self._share_tokens:
                return token
            logger.warning("Share token collision, regenerating")
        raise DuplicateKey("Could not allocate a unique share token")

    async def create_file(self, data: FileCreate, owner_id: int) -> File:
        self._require_user(owner_id)
        async with self._lock("files"):
            now = utcnow()
            file = File(
                **data.model_dump(),
                id=self._next_id("files"),
                user_id=owner_id,
                share_token=self._unique_share_token(),
                downloads=0,
                rating=0.0,
                total_ratings=0,
                created_at=now,
                updated_at=now,
            )
            self._files[file.id] = file
            self._share_tokens[file.share_token] = file.id
            return self._copy(file)

    async def update_file(self, file_id: int, data: FileUpdate) -> Optional[File]:
        async with self._lock("files", file_id):
            file = self._files.get(file_id)
            if file is None:
                return None
            for field, value in data.model_dump(exclude_unset=True).items():
                setattr(file, field, value)
            file.updated_at = utcnow()
            return self._copy(file)

    async def delete_file(self, file_id: int) -> bool:
        async with self._lock("files", file_id):
            file = self._files.pop(file_id, None)
            if file is None:
                return False
            self._share_tokens.pop(file.share_token, None)
            for download_id in [d.id for d in self._downloads.values() if d.file_id == file_id]:
                del self._downloads[download_id]
            for comment_id in [c.id for c in self._comments.values() if c.file_id == file_id]:
                del self._comments[comment_id]
            return True

    def _top_files(self, key, limit: int) -> list[File]:
        files = sorted(self._files.values(), key=lambda f: (key(f), f.id), reverse=True)
        return [self._copy(f) for f in files[:limit]]

    async def list_popular_files(self, limit: int = DEFAULT_LIST_LIMIT) -> list[File]:
        return self._top_files(lambda f: f.downloads, limit)

    async def list_recent_files(self, limit: int = DEFAULT_LIST_LIMIT) -> list[File]:
        return self._top_files(lambda f: f.created_at, limit)

    async def list_top_rated_files(self, limit: int = DEFAULT_LIST_LIMIT) -> list[File]:
        return self._top_files(lambda f: f.rating, limit)

    # Downloads

    async def record_download(self, data: DownloadCreate) -> Download:
        async with self._lock("files", data.file_id):
            file = self._files.get(data.file_id)
            if file is None:
                logger.warning(f"Download rejected, file {data.file_id} does not exist")
                raise DanglingReference(f"File {data.file_id} does not exist")
            if data.user_id is not None:
                self._require_user(data.user_id)

            download = Download(
                **data.model_dump(exclude={"earnings"}),
                id=self._next_id("downloads"),
                earnings=self.resolve_earnings(data),
                created_at=utcnow(),
            )
            self._downloads[download.id] = download
            file.downloads += 1

            if download.earnings:
                await self.adjust_user_balance(file.user_id, download.earnings)
                logger.info(f"Credited user {file.user_id} with {download.earnings} for file {file.id}")

            return self._copy(download)

    async def get_download(self, download_id: int) -> Optional[Download]:
        return self._copy(self._downloads.get(download_id))

    async def list_file_downloads(self, file_id: int) -> list[Download]:
        downloads = [d for d in self._downloads.values() if d.file_id == file_id]
        return [self._copy(d) for d in _newest_first(downloads)]

    async def list_user_downloads(self, user_id: int) -> list[Download]:
        file_ids = {f.id for f in self._files.values() if f.user_id == user_id}
        downloads = [d for d in self._downloads.values() if d.file_id in file_ids]
        return [self._copy(d) for d in _newest_first(downloads)]

    # Comments

    async def get_comment(self, comment_id: int) -> Optional[Comment]:
        return self._copy(self._comments.get(comment_id))

    async def list_file_comments(self, file_id: int) -> list[Comment]:
        comments = [c for c in self._comments.values() if c.file_id == file_id]
        return [self._copy(c) for c in _newest_first(comments)]

    async def create_comment(self, data: CommentCreate) -> Comment:
        async with self._lock("files", data.file_id):
            file = self._files.get(data.file_id)
            if file is None:
                raise DanglingReference(f"File {data.file_id} does not exist")
            self._require_user(data.user_id)

            comment = Comment(**data.model_dump(), id=self._next_id("comments"), created_at=utcnow())
            self._comments[comment.id] = comment
            file.rating, file.total_ratings = next_rating(file.rating, file.total_ratings, comment.rating)
            return self._copy(comment)

    # Payments

    def _insert_payment(self, data: PaymentCreate) -> Payment:
        payment = Payment(
            **data.model_dump(exclude={"status"}),
            id=self._next_id("payments"),
            status=PaymentStatus.PENDING,
            transaction_id=None,
            created_at=utcnow(),
            completed_at=None,
        )
        self._payments[payment.id] = payment
        return self._copy(payment)

    async def create_payment(self, data: PaymentCreate) -> Payment:
        self._require_user(data.user_id)
        return self._insert_payment(data)

    async def request_payout(self, data: PaymentCreate) -> Payment:
        async with self._lock("users", data.user_id):
            user = self._users.get(data.user_id)
            if user is None:
                raise DanglingReference(f"User {data.user_id} does not exist")
            pending = sum(
                p.amount
                for p in self._payments.values()
                if p.user_id == data.user_id and p.status == PaymentStatus.PENDING
            )
            if data.amount > user.balance - pending:
                logger.warning(f"Payout of {data.amount} refused for user {user.id}, available {user.balance - pending}")
                raise InsufficientBalance()
            return self._insert_payment(data)

    async def get_payment(self, payment_id: int) -> Optional[Payment]:
        return self._copy(self._payments.get(payment_id))

    async def update_payment_status(
        self,
        payment_id: int,
        status: PaymentStatus,
        transaction_id: Optional[str] = None,
    ) -> Optional[Payment]:
        status = self.parse_status(status)
        async with self._lock("payments", payment_id):
            payment = self._payments.get(payment_id)
            if payment is None:
                return None
            if not self.check_transition(payment, status):
                return self._copy(payment)

            # status and debit change together so payout checks never see one without the other
            async with self._lock("users", payment.user_id):
                payment.status = status
                if transaction_id:
                    payment.transaction_id = transaction_id
                if status == PaymentStatus.COMPLETED:
                    payment.completed_at = utcnow()
                    self._apply_balance(payment.user_id, -payment.amount)
            logger.info(f"Payment {payment.id} moved to {status.value}")
            return self._copy(payment)

    async def list_user_payments(self, user_id: int) -> list[Payment]:
        payments = [p for p in self._payments.values() if p.user_id == user_id]
        return [self._copy(p) for p in _newest_first(payments)]
