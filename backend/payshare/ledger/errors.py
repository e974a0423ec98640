class LedgerError(Exception):
    """Base class for ledger failures surfaced to callers."""
    status_code: int = 500
    default_detail: str = "Ledger error"

    def __init__(self, detail: str | None = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class DuplicateKey(LedgerError):
    status_code = 409
    default_detail = "Duplicate key"


class DanglingReference(LedgerError):
    status_code = 404
    default_detail = "Referenced record does not exist"


class InvalidStateTransition(LedgerError):
    status_code = 409
    default_detail = "Invalid state transition"


class StorageUnavailable(LedgerError):
    status_code = 503
    default_detail = "Storage unavailable"


class InsufficientBalance(LedgerError):
    status_code = 400
    default_detail = "Insufficient balance"


class ConstraintViolation(LedgerError):
    status_code = 422
    default_detail = "Record violates a storage constraint"
