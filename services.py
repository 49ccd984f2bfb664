from decimal import Decimal, InvalidOperation
from typing import Optional, Tuple
import structlog

from config import Settings, get_settings
from exceptions import AccountNotFound, InsufficientFunds, InvalidTransferError, TransferError
from locking import LockCoordinator
from models import Account, TransferResult, TransferStrategy
from repositories import AccountRepository
from retry import RetryCoordinator

# Configure structured logging
logger = structlog.get_logger()


class TransferService:
    def __init__(
        self,
        account_repo: AccountRepository,
        retry_coordinator: Optional[RetryCoordinator] = None,
        lock_coordinator: Optional[LockCoordinator] = None,
    ):
        self.account_repo = account_repo
        self.retry_coordinator = retry_coordinator or RetryCoordinator()
        self.lock_coordinator = lock_coordinator or LockCoordinator(account_repo)

    async def transfer(
        self,
        from_id: str,
        to_id: str,
        amount: Decimal,
        strategy: TransferStrategy = TransferStrategy.pessimistic
    ) -> TransferResult:
        """Move ``amount`` from one account to another with the chosen strategy."""
        strategy = TransferStrategy(strategy)
        handlers = {
            TransferStrategy.unsafe: self.transfer_unsafe,
            TransferStrategy.optimistic: self.transfer_optimistic,
            TransferStrategy.optimistic_with_retry: self.transfer_optimistic_with_retry,
            TransferStrategy.pessimistic: self.transfer_pessimistic,
        }

        logger.info(
            "Processing transfer",
            from_account_id=from_id,
            to_account_id=to_id,
            amount=str(amount),
            strategy=strategy.value
        )

        try:
            result = await handlers[strategy](from_id, to_id, amount)
        except TransferError as e:
            logger.warning(
                "Transfer failed",
                from_account_id=from_id,
                to_account_id=to_id,
                amount=str(amount),
                strategy=strategy.value,
                error_code=e.error_code,
                error=str(e)
            )
            raise

        logger.info(
            "Transfer committed",
            from_account_id=from_id,
            to_account_id=to_id,
            from_balance=str(result.from_balance),
            to_balance=str(result.to_balance),
            strategy=strategy.value,
            attempts=result.attempts
        )
        return result

    async def transfer_unsafe(self, from_id: str, to_id: str, amount: Decimal) -> TransferResult:
        """Read, check and write with no coordination at all.

        Kept as the baseline: concurrent callers can overwrite each other's
        writes because each one computes its new balances from its own,
        possibly stale, snapshot.
        """
        amount = self._validate_request(from_id, to_id, amount)

        from_account = await self.account_repo.get(from_id)
        to_account = await self.account_repo.get(to_id)
        self._check_accounts(from_id, to_id, from_account, to_account, amount)

        debited, credited = self._apply(from_account, to_account, amount)
        debited = await self.account_repo.save(debited)
        credited = await self.account_repo.save(credited)

        return self._result(debited, credited, amount, TransferStrategy.unsafe)

    async def transfer_optimistic(self, from_id: str, to_id: str, amount: Decimal) -> TransferResult:
        """Single optimistic attempt; raises OptimisticConflictError on a stale read."""
        amount = self._validate_request(from_id, to_id, amount)
        return await self._optimistic_attempt(from_id, to_id, amount)

    async def transfer_optimistic_with_retry(self, from_id: str, to_id: str, amount: Decimal) -> TransferResult:
        amount = self._validate_request(from_id, to_id, amount)

        async def attempt(attempt_number: int) -> TransferResult:
            return await self._optimistic_attempt(
                from_id, to_id, amount,
                attempt_number=attempt_number,
                strategy=TransferStrategy.optimistic_with_retry
            )

        return await self.retry_coordinator.run(attempt)

    async def transfer_pessimistic(self, from_id: str, to_id: str, amount: Decimal) -> TransferResult:
        """Hold both accounts, then read, validate and write while holding them."""
        amount = self._validate_request(from_id, to_id, amount)

        async with self.lock_coordinator.hold(from_id, to_id) as held:
            from_account = held[from_id]
            to_account = held[to_id]
            self._check_accounts(from_id, to_id, from_account, to_account, amount)

            debited, credited = self._apply(from_account, to_account, amount)
            debited, credited = await self.account_repo.save_all([debited, credited])

        return self._result(debited, credited, amount, TransferStrategy.pessimistic)

    async def _optimistic_attempt(
        self,
        from_id: str,
        to_id: str,
        amount: Decimal,
        attempt_number: int = 1,
        strategy: TransferStrategy = TransferStrategy.optimistic
    ) -> TransferResult:
        from_account = await self.account_repo.get(from_id)
        to_account = await self.account_repo.get(to_id)
        self._check_accounts(from_id, to_id, from_account, to_account, amount)

        debited, credited = self._apply(from_account, to_account, amount)
        debited, credited = await self.account_repo.compare_and_swap_save_all([
            (debited, from_account.version),
            (credited, to_account.version),
        ])

        return self._result(debited, credited, amount, strategy, attempts=attempt_number)

    def _validate_request(self, from_id: str, to_id: str, amount: Decimal) -> Decimal:
        try:
            amount = amount if isinstance(amount, Decimal) else Decimal(str(amount))
        except InvalidOperation:
            raise InvalidTransferError(f"amount {amount!r} is not a number")

        if not amount.is_finite() or amount <= 0:
            raise InvalidTransferError(f"amount must be positive, got {amount}")
        if from_id == to_id:
            raise InvalidTransferError("source and destination accounts must differ")
        return amount

    def _check_accounts(
        self,
        from_id: str,
        to_id: str,
        from_account: Optional[Account],
        to_account: Optional[Account],
        amount: Decimal
    ) -> None:
        if from_account is None:
            raise AccountNotFound(from_id)
        if to_account is None:
            raise AccountNotFound(to_id)

        if from_account.balance < amount:
            raise InsufficientFunds(from_id, from_account.balance, amount)

    def _apply(self, from_account: Account, to_account: Account, amount: Decimal) -> Tuple[Account, Account]:
        debited = from_account.with_balance(from_account.balance - amount)
        credited = to_account.with_balance(to_account.balance + amount)

        logger.debug(
            "Balances computed",
            from_account_id=from_account.id,
            old_from_balance=str(from_account.balance),
            new_from_balance=str(debited.balance),
            to_account_id=to_account.id,
            old_to_balance=str(to_account.balance),
            new_to_balance=str(credited.balance)
        )

        return debited, credited

    def _result(
        self,
        debited: Account,
        credited: Account,
        amount: Decimal,
        strategy: TransferStrategy,
        attempts: int = 1
    ) -> TransferResult:
        return TransferResult(
            from_account_id=debited.id,
            to_account_id=credited.id,
            amount=amount,
            strategy=strategy,
            from_balance=debited.balance,
            to_balance=credited.balance,
            attempts=attempts
        )


# Factory function for dependency injection
def get_transfer_service(
    account_repo: AccountRepository,
    settings: Optional[Settings] = None
) -> TransferService:
    settings = settings or get_settings()
    return TransferService(
        account_repo,
        retry_coordinator=RetryCoordinator.from_settings(settings),
        lock_coordinator=LockCoordinator(account_repo, timeout=settings.lock_timeout_seconds),
    )
