from decimal import Decimal
from typing import Iterable, Optional


class TransferError(Exception):
    """Base class for every failure a transfer can surface."""

    error_code = "TRANSFER_ERROR"


class InvalidTransferError(TransferError):
    error_code = "INVALID_TRANSFER"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid transfer: {reason}")


class AccountNotFound(TransferError):
    error_code = "ACCOUNT_NOT_FOUND"

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Account {account_id} not found")


class InsufficientFunds(TransferError):
    error_code = "INSUFFICIENT_FUNDS"

    def __init__(self, account_id: str, available: Decimal, requested: Decimal):
        self.account_id = account_id
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient funds in account {account_id}: "
            f"available {available}, requested {requested}"
        )


class OptimisticConflictError(TransferError):
    """Stored version moved on since the snapshot was read."""

    error_code = "OPTIMISTIC_CONFLICT"

    def __init__(self, account_ids: Iterable[str]):
        self.account_ids = list(account_ids)
        super().__init__(
            f"Concurrent modification detected on account(s) {', '.join(self.account_ids)}"
        )


class RetryExhaustedError(TransferError):
    error_code = "RETRY_EXHAUSTED"

    def __init__(self, attempts: int, last_conflict: Optional[OptimisticConflictError] = None):
        self.attempts = attempts
        self.last_conflict = last_conflict
        super().__init__(f"Transfer failed after {attempts} attempts")


class LockTimeoutError(TransferError):
    error_code = "LOCK_TIMEOUT"

    def __init__(self, account_id: str, timeout: float):
        self.account_id = account_id
        self.timeout = timeout
        super().__init__(
            f"Could not acquire exclusive access to account {account_id} within {timeout}s"
        )
