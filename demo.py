"""
Runs the two-withdrawal race against every strategy.

Account A starts with 100 while B and C start empty. Two concurrent
transfers of 80 leave A (one to B, one to C). Only one of them can be
honoured; the unsafe strategy lets both through and the ledger ends up
with more money than it started with.

Usage: python demo.py [--latency SECONDS]
"""
import argparse
import asyncio
from decimal import Decimal

import structlog

from config import get_settings_for_environment
from exceptions import TransferError
from logging_config import configure_logging
from models import TransferStrategy
from repositories import InMemoryAccountRepository
from services import get_transfer_service

logger = structlog.get_logger()

SEED = {"A": Decimal("100"), "B": Decimal("0"), "C": Decimal("0")}


async def run_race(strategy: TransferStrategy, latency: float) -> dict:
    settings = get_settings_for_environment("development")
    repo = InMemoryAccountRepository(balances=SEED, latency=latency)
    service = get_transfer_service(repo, settings)

    outcomes = await asyncio.gather(
        service.transfer("A", "B", Decimal("80"), strategy),
        service.transfer("A", "C", Decimal("80"), strategy),
        return_exceptions=True,
    )
    for outcome in outcomes:
        if isinstance(outcome, Exception) and not isinstance(outcome, TransferError):
            raise outcome

    return {
        "strategy": strategy.value,
        "succeeded": sum(1 for o in outcomes if not isinstance(o, Exception)),
        "failed": [type(o).__name__ for o in outcomes if isinstance(o, Exception)],
        "balances": {k: str(v.balance) for k, v in repo.snapshot().items()},
        "total": str(repo.total_balance()),
        "conserved": repo.total_balance() == sum(SEED.values()),
    }


async def main(latency: float) -> None:
    for strategy in TransferStrategy:
        report = await run_race(strategy, latency)
        logger.info("Race finished", **report)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("--latency", type=float, default=0.0, help="simulated store latency in seconds")
    args = parser.parse_args()

    configure_logging(get_settings_for_environment("development"))
    asyncio.run(main(args.latency))
