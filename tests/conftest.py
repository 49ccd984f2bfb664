import pytest
from decimal import Decimal

from repositories import InMemoryAccountRepository, reset_repositories
from retry import RetryCoordinator
from locking import LockCoordinator
from services import TransferService


SEED = {"A": Decimal("100"), "B": Decimal("0"), "C": Decimal("0")}


@pytest.fixture(autouse=True)
def reset_state():
    """Reset repositories before each test."""
    reset_repositories()


@pytest.fixture
def repo():
    return InMemoryAccountRepository(balances=SEED)


@pytest.fixture
def service(repo):
    return TransferService(
        repo,
        retry_coordinator=RetryCoordinator(max_attempts=3, backoff_initial=0, backoff_max=0, backoff_jitter=0),
        lock_coordinator=LockCoordinator(repo, timeout=1.0),
    )
