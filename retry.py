"""
Bounded retry for optimistic transfers.

Only OptimisticConflictError is treated as transient. Business failures
(missing account, insufficient funds, invalid request) abort on the first
attempt because re-reading the store cannot change their outcome.
Cancelling the calling task while it waits between attempts propagates
asyncio.CancelledError immediately.
"""
import asyncio
from typing import Awaitable, Callable, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from config import Settings
from exceptions import OptimisticConflictError, RetryExhaustedError

logger = structlog.get_logger()

T = TypeVar("T")


class RetryCoordinator:
    def __init__(
        self,
        max_attempts: int = 3,
        backoff_initial: float = 0.05,
        backoff_max: float = 1.0,
        backoff_jitter: float = 0.05,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.backoff_initial = backoff_initial
        self.backoff_max = backoff_max
        self.backoff_jitter = backoff_jitter
        self.sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryCoordinator":
        return cls(
            max_attempts=settings.retry_max_attempts,
            backoff_initial=settings.retry_backoff_initial_seconds,
            backoff_max=settings.retry_backoff_max_seconds,
            backoff_jitter=settings.retry_backoff_jitter_seconds,
        )

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_initial, max=self.backoff_max)
            + wait_random(0, self.backoff_jitter),
            retry=retry_if_exception_type(OptimisticConflictError),
            before_sleep=self._log_conflict,
            sleep=self.sleep,
        )

    def _log_conflict(self, retry_state: RetryCallState) -> None:
        conflict = retry_state.outcome.exception()
        logger.warning(
            "Optimistic conflict, retrying",
            attempt=retry_state.attempt_number,
            max_attempts=self.max_attempts,
            account_ids=getattr(conflict, "account_ids", None),
            delay=round(retry_state.next_action.sleep, 4) if retry_state.next_action else None
        )

    async def run(self, operation: Callable[[int], Awaitable[T]]) -> T:
        """Run ``operation(attempt_number)`` until it commits or the budget is spent.

        Each call must perform a fresh read; the coordinator never hands a
        previous snapshot back to the operation.
        """
        try:
            async for attempt in self._retrying():
                with attempt:
                    return await operation(attempt.retry_state.attempt_number)
        except RetryError as exc:
            last_conflict = exc.last_attempt.exception()
            logger.warning(
                "Optimistic retries exhausted",
                attempts=self.max_attempts,
                error=str(last_conflict)
            )
            raise RetryExhaustedError(self.max_attempts, last_conflict) from last_conflict
