import pytest
import asyncio
import warnings
from decimal import Decimal

from exceptions import (
    AccountNotFound,
    InsufficientFunds,
    OptimisticConflictError,
    RetryExhaustedError,
)
from config import TestingSettings
from retry import RetryCoordinator


def no_wait(max_attempts=3):
    return RetryCoordinator(max_attempts=max_attempts, backoff_initial=0, backoff_max=0, backoff_jitter=0)


class TestRetryCoordinator:
    @pytest.mark.asyncio
    async def test_success_on_first_attempt(self):
        calls = []

        async def operation(attempt):
            calls.append(attempt)
            return "ok"

        assert await no_wait().run(operation) == "ok"
        assert calls == [1]

    @pytest.mark.asyncio
    async def test_conflict_then_success(self):
        calls = []

        async def operation(attempt):
            calls.append(attempt)
            if attempt < 3:
                raise OptimisticConflictError(["A"])
            return attempt

        assert await no_wait().run(operation) == 3
        assert calls == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_exhaustion_wraps_last_conflict(self):
        calls = []

        async def operation(attempt):
            calls.append(attempt)
            raise OptimisticConflictError([f"attempt-{attempt}"])

        with pytest.raises(RetryExhaustedError) as exc_info:
            await no_wait(max_attempts=4).run(operation)

        assert calls == [1, 2, 3, 4]
        assert exc_info.value.attempts == 4
        assert isinstance(exc_info.value.__cause__, OptimisticConflictError)
        assert exc_info.value.last_conflict.account_ids == ["attempt-4"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        InsufficientFunds("A", Decimal("20"), Decimal("80")),
        AccountNotFound("Z"),
    ])
    async def test_business_errors_are_not_retried(self, error):
        calls = []

        async def operation(attempt):
            calls.append(attempt)
            raise error

        with pytest.raises(type(error)):
            await no_wait().run(operation)

        assert calls == [1]

    @pytest.mark.asyncio
    async def test_backoff_delays_are_bounded(self):
        delays = []

        async def record_sleep(seconds):
            delays.append(seconds)

        coordinator = RetryCoordinator(
            max_attempts=4,
            backoff_initial=0.1,
            backoff_max=0.3,
            backoff_jitter=0,
            sleep=record_sleep
        )

        async def operation(attempt):
            raise OptimisticConflictError(["A"])

        with pytest.raises(RetryExhaustedError):
            await coordinator.run(operation)

        assert delays == pytest.approx([0.1, 0.2, 0.3])

    @pytest.mark.asyncio
    async def test_jitter_stays_within_bound(self):
        delays = []

        async def record_sleep(seconds):
            delays.append(seconds)

        coordinator = RetryCoordinator(
            max_attempts=3,
            backoff_initial=0.1,
            backoff_max=1.0,
            backoff_jitter=0.05,
            sleep=record_sleep
        )

        async def operation(attempt):
            raise OptimisticConflictError(["A"])

        with pytest.raises(RetryExhaustedError):
            await coordinator.run(operation)

        assert 0.1 <= delays[0] <= 0.15
        assert 0.2 <= delays[1] <= 0.25

    @pytest.mark.asyncio
    async def test_backoff_emits_no_deprecation_warnings(self):
        async def operation(attempt):
            if attempt < 2:
                raise OptimisticConflictError(["A"])
            return attempt

        with warnings.catch_warnings():
            warnings.simplefilter("error", DeprecationWarning)
            assert await no_wait().run(operation) == 2

    @pytest.mark.asyncio
    async def test_cancel_during_backoff_stops_retrying(self):
        calls = []
        coordinator = RetryCoordinator(max_attempts=3, backoff_initial=10, backoff_max=10, backoff_jitter=0)

        async def operation(attempt):
            calls.append(attempt)
            raise OptimisticConflictError(["A"])

        task = asyncio.ensure_future(coordinator.run(operation))
        await asyncio.sleep(0.01)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert calls == [1]

    def test_requires_at_least_one_attempt(self):
        with pytest.raises(ValueError):
            RetryCoordinator(max_attempts=0)

    def test_from_settings(self):
        coordinator = RetryCoordinator.from_settings(TestingSettings(retry_max_attempts=7))

        assert coordinator.max_attempts == 7
        assert coordinator.backoff_initial == 0.0
