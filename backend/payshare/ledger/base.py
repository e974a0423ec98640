import logging
from abc import ABC, abstractmethod
from typing import Iterable, Optional

from payshare.ledger.errors import InvalidStateTransition
from payshare.ledger.tokens import DEFAULT_TOKEN_LENGTH, MIN_TOKEN_LENGTH
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

DEFAULT_LIST_LIMIT = 10
SHARE_TOKEN_ATTEMPTS = 5


def next_rating(rating: float, total_ratings: int, new_rating: int) -> tuple[float, int]:
    """Folds one more rating into a running average."""
    count = total_ratings + 1
    return (rating * total_ratings + new_rating) / count, count


class LedgerStore(ABC):
    """Sole owner of users, files, downloads, comments and payments.

    Aggregates (``File.downloads``, ``File.rating``, ``File.total_ratings`` and
    ``User.balance``) only change as side effects of the operations below, and
    every balance change goes through one balance-adjust path per backend.

    Lookups return ``None`` (or an empty list) when nothing matches; failures
    are raised as :class:`~payshare.ledger.errors.LedgerError` subclasses.
    """

    def __init__(
        self,
        download_earnings: int = 450,
        credit_anonymous_downloads: bool = True,
        share_token_length: int = DEFAULT_TOKEN_LENGTH,
    ):
        if share_token_length < MIN_TOKEN_LENGTH:
            raise ValueError(f"share_token_length must be at least {MIN_TOKEN_LENGTH}")
        self.download_earnings = download_earnings
        self.credit_anonymous_downloads = credit_anonymous_downloads
        self.share_token_length = share_token_length

    def resolve_earnings(self, data: DownloadCreate) -> int:
        """Amount credited to the file owner for this download."""
        if data.user_id is None and not self.credit_anonymous_downloads:
            return 0
        if data.earnings is not None:
            return data.earnings
        return self.download_earnings

    @staticmethod
    def parse_status(status) -> PaymentStatus:
        try:
            return PaymentStatus(status)
        except ValueError:
            raise InvalidStateTransition(f"Unknown payment status '{status}'") from None

    @staticmethod
    def check_transition(payment: Payment, new_status: PaymentStatus) -> bool:
        """Validates a payment status change.

        Returns False when ``new_status`` is already the payment's status, so
        the caller should leave the payment untouched.
        """
        if new_status not in TERMINAL_PAYMENT_STATUSES:
            raise InvalidStateTransition(f"Payment cannot be moved to '{new_status.value}'")
        if payment.status == new_status:
            return False
        if payment.status in TERMINAL_PAYMENT_STATUSES:
            logger.warning(
                f"Rejected payment {payment.id} transition {payment.status.value} -> {new_status.value}"
            )
            raise InvalidStateTransition(
                f"Payment {payment.id} is already {payment.status.value}"
            )
        return True

    # Users

    @abstractmethod
    async def get_user(self, user_id: int) -> Optional[User]:
        pass

    @abstractmethod
    async def get_users(self, user_ids: Iterable[int]) -> list[User]:
        """Users among ``user_ids`` that exist, in no particular order."""
        pass

    @abstractmethod
    async def get_user_by_external_id(self, external_id: str) -> Optional[User]:
        pass

    @abstractmethod
    async def get_user_by_email(self, email: str) -> Optional[User]:
        pass

    @abstractmethod
    async def create_user(self, data: UserCreate) -> User:
        """Creates a user with a zero balance; raises DuplicateKey on unique clashes."""
        pass

    @abstractmethod
    async def adjust_user_balance(self, user_id: int, delta: int) -> Optional[User]:
        """Adds ``delta`` (possibly negative) to the balance atomically."""
        pass

    # Files

    @abstractmethod
    async def get_file(self, file_id: int) -> Optional[File]:
        pass

    @abstractmethod
    async def get_file_by_share_token(self, token: str) -> Optional[File]:
        pass

    @abstractmethod
    async def list_files_by_owner(self, user_id: int) -> list[File]:
        pass

    @abstractmethod
    async def create_file(self, data: FileCreate, owner_id: int) -> File:
        pass

    @abstractmethod
    async def update_file(self, file_id: int, data: FileUpdate) -> Optional[File]:
        pass

    @abstractmethod
    async def delete_file(self, file_id: int) -> bool:
        """Deletes the file together with its downloads and comments."""
        pass

    @abstractmethod
    async def list_popular_files(self, limit: int = DEFAULT_LIST_LIMIT) -> list[File]:
        pass

    @abstractmethod
    async def list_recent_files(self, limit: int = DEFAULT_LIST_LIMIT) -> list[File]:
        pass

    @abstractmethod
    async def list_top_rated_files(self, limit: int = DEFAULT_LIST_LIMIT) -> list[File]:
        pass

    # Downloads

    @abstractmethod
    async def record_download(self, data: DownloadCreate) -> Download:
        """Stores the download, bumps the file counter and credits the owner.

        Raises DanglingReference when the file does not exist.
        """
        pass

    @abstractmethod
    async def get_download(self, download_id: int) -> Optional[Download]:
        pass

    @abstractmethod
    async def list_file_downloads(self, file_id: int) -> list[Download]:
        pass

    @abstractmethod
    async def list_user_downloads(self, user_id: int) -> list[Download]:
        """Downloads of files owned by ``user_id``, newest first."""
        pass

    # Comments

    @abstractmethod
    async def get_comment(self, comment_id: int) -> Optional[Comment]:
        pass

    @abstractmethod
    async def list_file_comments(self, file_id: int) -> list[Comment]:
        pass

    @abstractmethod
    async def create_comment(self, data: CommentCreate) -> Comment:
        """Stores the comment and folds its rating into the file's average."""
        pass

    # Payments

    @abstractmethod
    async def create_payment(self, data: PaymentCreate) -> Payment:
        pass

    @abstractmethod
    async def request_payout(self, data: PaymentCreate) -> Payment:
        """Creates a pending payment if the user can cover it.

        Pending payouts are only debited on completion, so the amount must fit
        into the balance minus the user's other pending payouts. The check and
        the insert are atomic per user. Raises InsufficientBalance otherwise.
        """
        pass

    @abstractmethod
    async def get_payment(self, payment_id: int) -> Optional[Payment]:
        pass

    @abstractmethod
    async def update_payment_status(
        self,
        payment_id: int,
        status: PaymentStatus,
        transaction_id: Optional[str] = None,
    ) -> Optional[Payment]:
        """Moves a pending payment to completed or failed.

        Completing debits the owner's balance by the payment amount. Repeating
        the current terminal status is a no-op.
        """
        pass

    @abstractmethod
    async def list_user_payments(self, user_id: int) -> list[Payment]:
        pass

    async def close(self) -> None:
        pass
