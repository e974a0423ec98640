import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterable, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from payshare.database import DatabaseHelper, utcnow
from payshare.ledger.base import DEFAULT_LIST_LIMIT, SHARE_TOKEN_ATTEMPTS, LedgerStore
from payshare.ledger.errors import (
    ConstraintViolation,
    DanglingReference,
    DuplicateKey,
    InsufficientBalance,
    InvalidStateTransition,
    LedgerError,
    StorageUnavailable,
)
from payshare.ledger.tokens import generate_share_token
from payshare.models import Comment as CommentModel
from payshare.models import Download as DownloadModel
from payshare.models import File as FileModel
from payshare.models import Payment as PaymentModel
from payshare.models import User as UserModel
from payshare.schemas import (
    TERMINAL_PAYMENT_STATUSES,
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

# SQLSTATE codes reported by PostgreSQL drivers
UNIQUE_VIOLATION = "23505"
FOREIGN_KEY_VIOLATION = "23503"


def map_integrity_error(error: IntegrityError) -> LedgerError:
    """Classifies a constraint failure; SQLite only reports it in the message."""
    code = getattr(error.orig, "sqlstate", None) or getattr(error.orig, "pgcode", None)
    message = str(error.orig).lower()
    if code == FOREIGN_KEY_VIOLATION or "foreign key" in message:
        return DanglingReference()
    if code == UNIQUE_VIOLATION or "unique" in message:
        return DuplicateKey()
    logger.error(f"Constraint violation: {error.orig}")
    return ConstraintViolation()


class SqlLedgerStore(LedgerStore):
    """Ledger backed by a relational database through async SQLAlchemy.

    Every operation runs in its own transaction. Counters and balances are
    changed with ``UPDATE ... SET col = col + :delta`` so the database
    serializes concurrent writers of the same row, and payment transitions
    only match rows that are still pending.
    """

    def __init__(self, db: DatabaseHelper, **kwargs):
        super().__init__(**kwargs)
        self.db = db

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self.db.session_factory() as session:
                async with session.begin():
                    yield session
        except IntegrityError as e:
            raise map_integrity_error(e) from e
        except (OperationalError, InterfaceError) as e:
            logger.error(f"Ledger storage error: {e}")
            raise StorageUnavailable() from e

    async def close(self) -> None:
        await self.db.dispose()

    # Users

    async def get_user(self, user_id: int) -> Optional[User]:
        async with self._transaction() as session:
            row = await session.get(UserModel, user_id)
            return User.model_validate(row) if row else None

    async def _get_user_by(self, column, value) -> Optional[User]:
        async with self._transaction() as session:
            result = await session.execute(select(UserModel).where(column == value))
            row = result.scalar_one_or_none()
            return User.model_validate(row) if row else None

    async def get_users(self, user_ids: Iterable[int]) -> list[User]:
        ids = set(user_ids)
        if not ids:
            return []
        async with self._transaction() as session:
            result = await session.execute(select(UserModel).where(UserModel.id.in_(ids)))
            return [User.model_validate(row) for row in result.scalars().all()]

    async def get_user_by_external_id(self, external_id: str) -> Optional[User]:
        return await self._get_user_by(UserModel.external_id, external_id)

    async def get_user_by_email(self, email: str) -> Optional[User]:
        return await self._get_user_by(UserModel.email, email)

    async def create_user(self, data: UserCreate) -> User:
        async with self._transaction() as session:
            row = UserModel(**data.model_dump(), balance=0)
            session.add(row)
            await session.flush()
            await session.refresh(row)
            return User.model_validate(row)

    async def _adjust_balance(self, session: AsyncSession, user_id: int, delta: int) -> Optional[User]:
        result = await session.execute(
            update(UserModel)
            .where(UserModel.id == user_id)
            .values(balance=UserModel.balance + delta, updated_at=utcnow())
            .returning(UserModel)
        )
        row = result.scalar_one_or_none()
        return User.model_validate(row) if row else None

    async def adjust_user_balance(self, user_id: int, delta: int) -> Optional[User]:
        async with self._transaction() as session:
            return await self._adjust_balance(session, user_id, delta)

    # Files

    async def get_file(self, file_id: int) -> Optional[File]:
        async with self._transaction() as session:
            row = await session.get(FileModel, file_id)
            return File.model_validate(row) if row else None

    async def get_file_by_share_token(self, token: str) -> Optional[File]:
        async with self._transaction() as session:
            result = await session.execute(select(FileModel).where(FileModel.share_token == token))
            row = result.scalar_one_or_none()
            return File.model_validate(row) if row else None

    async def list_files_by_owner(self, user_id: int) -> list[File]:
        return await self._list_files(
            select(FileModel)
            .where(FileModel.user_id == user_id)
            .order_by(FileModel.created_at.desc(), FileModel.id.desc())
        )

    async def _unique_share_token(self, session: AsyncSession) -> str:
        for _ in range(SHARE_TOKEN_ATTEMPTS):
            token = generate_share_token(self.share_token_length)
            result = await session.execute(select(FileModel.id).where(FileModel.share_token == token))
            if result.scalar_one_or_none() is None:
                return token
            logger.warning("Share token collision, regenerating")
        raise DuplicateKey("Could not allocate a unique share token")

    async def create_file(self, data: FileCreate, owner_id: int) -> File:
        async with self._transaction() as session:
            row = FileModel(
                **data.model_dump(),
                user_id=owner_id,
                share_token=await self._unique_share_token(session),
                downloads=0,
                rating=0.0,
                total_ratings=0,
            )
            session.add(row)
            await session.flush()
            await session.refresh(row)
            return File.model_validate(row)

    async def update_file(self, file_id: int, data: FileUpdate) -> Optional[File]:
        async with self._transaction() as session:
            row = await session.get(FileModel, file_id)
            if row is None:
                return None
            for field, value in data.model_dump(exclude_unset=True).items():
                setattr(row, field, value)
            row.updated_at = utcnow()
            await session.flush()
            await session.refresh(row)
            return File.model_validate(row)

    async def delete_file(self, file_id: int) -> bool:
        async with self._transaction() as session:
            await session.execute(delete(DownloadModel).where(DownloadModel.file_id == file_id))
            await session.execute(delete(CommentModel).where(CommentModel.file_id == file_id))
            result = await session.execute(delete(FileModel).where(FileModel.id == file_id))
            return result.rowcount > 0

    async def _list_files(self, stmt) -> list[File]:
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return [File.model_validate(row) for row in result.scalars().all()]

    async def list_popular_files(self, limit: int = DEFAULT_LIST_LIMIT) -> list[File]:
        return await self._list_files(
            select(FileModel).order_by(FileModel.downloads.desc(), FileModel.id.desc()).limit(limit)
        )

    async def list_recent_files(self, limit: int = DEFAULT_LIST_LIMIT) -> list[File]:
        return await self._list_files(
            select(FileModel).order_by(FileModel.created_at.desc(), FileModel.id.desc()).limit(limit)
        )

    async def list_top_rated_files(self, limit: int = DEFAULT_LIST_LIMIT) -> list[File]:
        return await self._list_files(
            select(FileModel).order_by(FileModel.rating.desc(), FileModel.id.desc()).limit(limit)
        )

    # Downloads

    async def record_download(self, data: DownloadCreate) -> Download:
        async with self._transaction() as session:
            # The counter bump doubles as the existence check and takes the row lock.
            result = await session.execute(
                update(FileModel)
                .where(FileModel.id == data.file_id)
                .values(downloads=FileModel.downloads + 1)
                .returning(FileModel.user_id)
                .execution_options(synchronize_session=False)
            )
            owner_id = result.scalar_one_or_none()
            if owner_id is None:
                logger.warning(f"Download rejected, file {data.file_id} does not exist")
                raise DanglingReference(f"File {data.file_id} does not exist")

            row = DownloadModel(
                **data.model_dump(exclude={"earnings"}),
                earnings=self.resolve_earnings(data),
            )
            session.add(row)
            await session.flush()
            await session.refresh(row)

            if row.earnings:
                await self._adjust_balance(session, owner_id, row.earnings)
                logger.info(f"Credited user {owner_id} with {row.earnings} for file {data.file_id}")

            return Download.model_validate(row)

    async def get_download(self, download_id: int) -> Optional[Download]:
        async with self._transaction() as session:
            row = await session.get(DownloadModel, download_id)
            return Download.model_validate(row) if row else None

    async def _list_downloads(self, stmt) -> list[Download]:
        async with self._transaction() as session:
            result = await session.execute(
                stmt.order_by(DownloadModel.created_at.desc(), DownloadModel.id.desc())
            )
            return [Download.model_validate(row) for row in result.scalars().all()]

    async def list_file_downloads(self, file_id: int) -> list[Download]:
        return await self._list_downloads(
            select(DownloadModel).where(DownloadModel.file_id == file_id)
        )

    async def list_user_downloads(self, user_id: int) -> list[Download]:
        return await self._list_downloads(
            select(DownloadModel)
            .join(FileModel, DownloadModel.file_id == FileModel.id)
            .where(FileModel.user_id == user_id)
        )

    # Comments

    async def get_comment(self, comment_id: int) -> Optional[Comment]:
        async with self._transaction() as session:
            row = await session.get(CommentModel, comment_id)
            return Comment.model_validate(row) if row else None

    async def list_file_comments(self, file_id: int) -> list[Comment]:
        async with self._transaction() as session:
            result = await session.execute(
                select(CommentModel)
                .where(CommentModel.file_id == file_id)
                .order_by(CommentModel.created_at.desc(), CommentModel.id.desc())
            )
            return [Comment.model_validate(row) for row in result.scalars().all()]

    async def create_comment(self, data: CommentCreate) -> Comment:
        async with self._transaction() as session:
            # SET expressions read the pre-update row, so rating uses the old total.
            result = await session.execute(
                update(FileModel)
                .where(FileModel.id == data.file_id)
                .values(
                    rating=(FileModel.rating * FileModel.total_ratings + data.rating)
                    / (FileModel.total_ratings + 1),
                    total_ratings=FileModel.total_ratings + 1,
                )
                .returning(FileModel.id)
                .execution_options(synchronize_session=False)
            )
            if result.scalar_one_or_none() is None:
                raise DanglingReference(f"File {data.file_id} does not exist")

            row = CommentModel(**data.model_dump())
            session.add(row)
            await session.flush()
            await session.refresh(row)
            return Comment.model_validate(row)

    # Payments

    @staticmethod
    async def _insert_payment(session: AsyncSession, data: PaymentCreate) -> Payment:
        row = PaymentModel(
            **data.model_dump(exclude={"status"}),
            status=PaymentStatus.PENDING.value,
            transaction_id=None,
            completed_at=None,
        )
        session.add(row)
        await session.flush()
        await session.refresh(row)
        return Payment.model_validate(row)

    async def create_payment(self, data: PaymentCreate) -> Payment:
        async with self._transaction() as session:
            if await session.get(UserModel, data.user_id) is None:
                raise DanglingReference(f"User {data.user_id} does not exist")
            return await self._insert_payment(session, data)

    async def request_payout(self, data: PaymentCreate) -> Payment:
        async with self._transaction() as session:
            # A no-op write takes the user's row lock, so payout checks for one
            # user run one at a time and wait for in-flight completions.
            result = await session.execute(
                update(UserModel)
                .where(UserModel.id == data.user_id)
                .values(balance=UserModel.balance)
                .returning(UserModel.balance)
                .execution_options(synchronize_session=False)
            )
            balance = result.scalar_one_or_none()
            if balance is None:
                raise DanglingReference(f"User {data.user_id} does not exist")

            pending = await session.scalar(
                select(func.coalesce(func.sum(PaymentModel.amount), 0)).where(
                    PaymentModel.user_id == data.user_id,
                    PaymentModel.status == PaymentStatus.PENDING.value,
                )
            )
            if data.amount > balance - pending:
                logger.warning(f"Payout of {data.amount} refused for user {data.user_id}, available {balance - pending}")
                raise InsufficientBalance()
            return await self._insert_payment(session, data)

    async def get_payment(self, payment_id: int) -> Optional[Payment]:
        async with self._transaction() as session:
            row = await session.get(PaymentModel, payment_id)
            return Payment.model_validate(row) if row else None

    async def update_payment_status(
        self,
        payment_id: int,
        status: PaymentStatus,
        transaction_id: Optional[str] = None,
    ) -> Optional[Payment]:
        status = self.parse_status(status)
        if status not in TERMINAL_PAYMENT_STATUSES:
            raise InvalidStateTransition(f"Payment cannot be moved to '{status.value}'")

        values = {"status": status.value}
        if transaction_id:
            values["transaction_id"] = transaction_id
        if status == PaymentStatus.COMPLETED:
            values["completed_at"] = utcnow()

        async with self._transaction() as session:
            result = await session.execute(
                update(PaymentModel)
                .where(PaymentModel.id == payment_id, PaymentModel.status == PaymentStatus.PENDING.value)
                .values(**values)
                .returning(PaymentModel)
            )
            row = result.scalar_one_or_none()

            if row is None:
                current = await session.get(PaymentModel, payment_id)
                if current is None:
                    return None
                payment = Payment.model_validate(current)
                self.check_transition(payment, status)
                return payment

            payment = Payment.model_validate(row)
            if status == PaymentStatus.COMPLETED:
                await self._adjust_balance(session, payment.user_id, -payment.amount)
            logger.info(f"Payment {payment.id} moved to {status.value}")
            return payment

    async def list_user_payments(self, user_id: int) -> list[Payment]:
        async with self._transaction() as session:
            result = await session.execute(
                select(PaymentModel)
                .where(PaymentModel.user_id == user_id)
                .order_by(PaymentModel.created_at.desc(), PaymentModel.id.desc())
            )
            return [Payment.model_validate(row) for row in result.scalars().all()]
