import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Tuple

import structlog

from exceptions import LockTimeoutError
from models import Account
from repositories import AccountRepository

logger = structlog.get_logger()


class LockCoordinator:
    """Takes exclusive holds on a pair of accounts in a fixed global order.

    Holds are always requested lowest id first, whatever the transfer
    direction, so two transfers over the same pair can never wait on each
    other in a cycle. ``timeout`` bounds the total wait for both holds,
    not each one.
    """

    def __init__(self, account_repo: AccountRepository, timeout: float = 5.0):
        self.account_repo = account_repo
        self.timeout = timeout

    @staticmethod
    def acquisition_order(first_id: str, second_id: str) -> Tuple[str, ...]:
        return tuple(sorted({first_id, second_id}))

    @asynccontextmanager
    async def hold(self, first_id: str, second_id: str) -> AsyncIterator[Dict[str, Account]]:
        """Yield the held records keyed by id; every hold is released on exit."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        held: Dict[str, Account] = {}
        try:
            for account_id in self.acquisition_order(first_id, second_id):
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise LockTimeoutError(account_id, self.timeout)
                try:
                    held[account_id] = await self.account_repo.get_for_exclusive_access(
                        account_id, remaining
                    )
                except LockTimeoutError:
                    raise LockTimeoutError(account_id, self.timeout) from None
                logger.debug("Exclusive access granted", account_id=account_id)
            yield held
        finally:
            # release order is irrelevant, acquisition order is what matters
            for account_id in held:
                self.account_repo.release_exclusive_access(account_id)
