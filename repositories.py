from abc import ABC, abstractmethod
from typing import Dict, List, Mapping, Optional, Sequence, Tuple
from decimal import Decimal
import asyncio
from collections import defaultdict

import structlog

from config import get_settings
from conflicts import ConflictDetector
from exceptions import AccountNotFound, LockTimeoutError, OptimisticConflictError
from models import Account

logger = structlog.get_logger()


class AccountRepository(ABC):
    @abstractmethod
    async def get(self, account_id: str) -> Optional[Account]:
        """Get account snapshot. Returns None if account doesn't exist."""
        pass

    @abstractmethod
    async def get_for_exclusive_access(self, account_id: str, timeout: float) -> Account:
        """Take the exclusive hold on an account and return its current record.

        Blocks while another caller holds the same account. Raises
        LockTimeoutError if the hold is not granted within ``timeout``
        seconds and AccountNotFound (with the hold released) if the
        account does not exist.
        """
        pass

    @abstractmethod
    def release_exclusive_access(self, account_id: str) -> None:
        """Release a hold taken with get_for_exclusive_access.

        Raises RuntimeError if the account is not held or is held by
        another task.
        """
        pass

    @abstractmethod
    async def compare_and_swap_save_all(
        self, updates: Sequence[Tuple[Account, int]]
    ) -> List[Account]:
        """Write every record only if all stored versions still match.

        Raises OptimisticConflictError and writes nothing otherwise.
        """
        pass

    @abstractmethod
    async def save(self, account: Account) -> Account:
        """Unconditional write."""
        pass

    @abstractmethod
    async def save_all(self, accounts: Sequence[Account]) -> List[Account]:
        """Unconditional write of several records as one unit."""
        pass

    @abstractmethod
    async def get_accounts_count(self) -> int:
        """Get total number of accounts."""
        pass

    async def compare_and_swap_save(self, account: Account, expected_version: int) -> Account:
        committed = await self.compare_and_swap_save_all([(account, expected_version)])
        return committed[0]


class InMemoryAccountRepository(AccountRepository):
    """Single-node store keeping the authoritative account records in a dict.

    Every coroutine yields to the event loop before touching state, after
    ``latency`` seconds of simulated I/O, so concurrent transfers really
    interleave between their reads and writes. Writes are serialized by
    ``commit_lock`` and never yield between the version check and the
    update, which makes each write indivisible.
    """

    def __init__(
        self,
        balances: Optional[Mapping[str, Decimal]] = None,
        latency: float = 0.0,
        conflict_detector: Optional[ConflictDetector] = None,
    ):
        self.accounts: Dict[str, Account] = {}
        self.locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self.holders: Dict[str, "asyncio.Task"] = {}
        self.commit_lock = asyncio.Lock()
        self.latency = latency
        self.conflict_detector = conflict_detector or ConflictDetector()
        if balances is None:
            balances = {"A": Decimal("100"), "B": Decimal("0"), "C": Decimal("0")}
        self.seed(balances)

    def seed(self, balances: Mapping[str, Decimal]) -> None:
        """Replace the store contents; every account starts at version 0."""
        self.accounts = {
            account_id: Account(id=account_id, balance=Decimal(balance))
            for account_id, balance in balances.items()
        }

    async def _io(self) -> None:
        await asyncio.sleep(self.latency)

    async def get(self, account_id: str) -> Optional[Account]:
        await self._io()
        return self.accounts.get(account_id)

    async def get_for_exclusive_access(self, account_id: str, timeout: float) -> Account:
        # accounts are never removed, so unknown ids never get a lock entry
        if account_id not in self.accounts:
            await self._io()
            raise AccountNotFound(account_id)

        lock = self.get_lock(account_id)
        try:
            await asyncio.wait_for(lock.acquire(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Exclusive access timed out",
                account_id=account_id,
                timeout=timeout
            )
            raise LockTimeoutError(account_id, timeout)
        self.holders[account_id] = asyncio.current_task()

        try:
            account = await self.get(account_id)
            if account is None:
                raise AccountNotFound(account_id)
        except BaseException:
            self.release_exclusive_access(account_id)
            raise
        return account

    def release_exclusive_access(self, account_id: str) -> None:
        """Release a hold; only the task that took it may release it."""
        lock = self.locks.get(account_id)
        if lock is None or not lock.locked():
            raise RuntimeError(f"Account {account_id} is not held")
        if self.holders.get(account_id) is not asyncio.current_task():
            raise RuntimeError(f"Account {account_id} is held by another caller")

        del self.holders[account_id]
        lock.release()

    async def compare_and_swap_save_all(
        self, updates: Sequence[Tuple[Account, int]]
    ) -> List[Account]:
        async with self.commit_lock:
            await self._io()
            expected = {account.id: version for account, version in updates}
            stale = self.conflict_detector.find_stale(expected, self.accounts)
            if stale:
                raise OptimisticConflictError(stale)

            committed = [account.with_version(version + 1) for account, version in updates]
            for account in committed:
                self.accounts[account.id] = account
            return committed

    async def save(self, account: Account) -> Account:
        committed = await self.save_all([account])
        return committed[0]

    async def save_all(self, accounts: Sequence[Account]) -> List[Account]:
        async with self.commit_lock:
            await self._io()
            for account in accounts:
                if account.id not in self.accounts:
                    raise AccountNotFound(account.id)

            committed = [
                account.with_version(self.accounts[account.id].version + 1)
                for account in accounts
            ]
            for account in committed:
                self.accounts[account.id] = account
            return committed

    async def get_accounts_count(self) -> int:
        return len(self.accounts)

    def get_lock(self, account_id: str) -> asyncio.Lock:
        """Get lock for specific account."""
        return self.locks[account_id]

    def is_held(self, account_id: str) -> bool:
        lock = self.locks.get(account_id)
        return lock is not None and lock.locked()

    def snapshot(self) -> Dict[str, Account]:
        """Copy of the current records, for comparisons in checks and tests."""
        return dict(self.accounts)

    def total_balance(self) -> Decimal:
        return sum((account.balance for account in self.accounts.values()), Decimal("0"))


def _build_account_repository() -> InMemoryAccountRepository:
    settings = get_settings()
    return InMemoryAccountRepository(
        balances=settings.seed_balances,
        latency=settings.store_latency_seconds,
    )


# Singleton instance (the service shell swaps it through dependency overrides)
_account_repo = _build_account_repository()


def get_account_repository() -> InMemoryAccountRepository:
    return _account_repo


# For tests
def reset_repositories():
    """Reset all repositories to initial state (for testing only)."""
    global _account_repo
    _account_repo = _build_account_repository()
