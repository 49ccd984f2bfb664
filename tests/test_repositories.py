import pytest
import asyncio
from decimal import Decimal

from conflicts import ConflictDetector
from exceptions import AccountNotFound, LockTimeoutError, OptimisticConflictError
from models import Account
from repositories import InMemoryAccountRepository, get_account_repository, reset_repositories


class TestConflictDetector:
    """Test version comparison."""

    def test_matching_version_is_fresh(self):
        detector = ConflictDetector()
        current = Account(id="A", balance=Decimal("10"), version=3)

        assert not detector.is_stale(3, current)

    def test_moved_version_is_stale(self):
        detector = ConflictDetector()
        current = Account(id="A", balance=Decimal("10"), version=4)

        assert detector.is_stale(3, current)

    def test_same_balance_different_version_is_stale(self):
        """Only the version witness counts, never the balance."""
        detector = ConflictDetector()
        current = Account(id="A", balance=Decimal("10"), version=1)

        assert detector.is_stale(0, current)

    def test_missing_record_is_stale(self):
        assert ConflictDetector().is_stale(0, None)

    def test_find_stale_reports_only_changed_ids(self):
        detector = ConflictDetector()
        current = {
            "A": Account(id="A", balance=Decimal("1"), version=2),
            "B": Account(id="B", balance=Decimal("1"), version=5),
        }

        assert detector.find_stale({"A": 2, "B": 4}, current) == ["B"]
        assert detector.find_stale({"A": 2, "B": 5}, current) == []


class TestPlainAccess:
    """Test plain reads and writes."""

    @pytest.mark.asyncio
    async def test_get_existing_and_missing(self, repo):
        account = await repo.get("A")

        assert account.balance == Decimal("100")
        assert account.version == 0
        assert await repo.get("Z") is None

    @pytest.mark.asyncio
    async def test_save_bumps_version(self, repo):
        account = await repo.get("A")

        saved = await repo.save(account.with_balance(Decimal("40")))

        assert saved.version == 1
        assert (await repo.get("A")).balance == Decimal("40")

    @pytest.mark.asyncio
    async def test_save_unknown_account(self, repo):
        with pytest.raises(AccountNotFound):
            await repo.save(Account(id="Z", balance=Decimal("1")))

    @pytest.mark.asyncio
    async def test_save_all_writes_every_record(self, repo):
        a = await repo.get("A")
        b = await repo.get("B")

        saved = await repo.save_all([a.with_balance(Decimal("60")), b.with_balance(Decimal("40"))])

        assert [s.version for s in saved] == [1, 1]
        assert repo.total_balance() == Decimal("100")

    @pytest.mark.asyncio
    async def test_save_all_rejects_unknown_account_without_writing(self, repo):
        a = await repo.get("A")
        before = repo.snapshot()

        with pytest.raises(AccountNotFound):
            await repo.save_all([a.with_balance(Decimal("0")), Account(id="Z", balance=Decimal("100"))])

        assert repo.snapshot() == before

    @pytest.mark.asyncio
    async def test_accounts_count(self, repo):
        assert await repo.get_accounts_count() == 3


class TestCompareAndSwap:
    """Test version-checked writes."""

    @pytest.mark.asyncio
    async def test_matching_version_commits_and_increments(self, repo):
        a = await repo.get("A")

        saved = await repo.compare_and_swap_save(a.with_balance(Decimal("90")), a.version)

        assert saved.version == a.version + 1
        assert (await repo.get("A")).balance == Decimal("90")

    @pytest.mark.asyncio
    async def test_mismatch_rejects_and_leaves_version(self, repo):
        a = await repo.get("A")
        await repo.save(a.with_balance(Decimal("50")))

        with pytest.raises(OptimisticConflictError) as exc_info:
            await repo.compare_and_swap_save(a.with_balance(Decimal("0")), a.version)

        assert exc_info.value.account_ids == ["A"]
        current = await repo.get("A")
        assert current.balance == Decimal("50")
        assert current.version == 1

    @pytest.mark.asyncio
    async def test_one_stale_record_rejects_whole_write(self, repo):
        a = await repo.get("A")
        b = await repo.get("B")
        await repo.save(b.with_balance(Decimal("5")))
        before = repo.snapshot()

        with pytest.raises(OptimisticConflictError) as exc_info:
            await repo.compare_and_swap_save_all([
                (a.with_balance(Decimal("20")), a.version),
                (b.with_balance(Decimal("80")), b.version),
            ])

        assert exc_info.value.account_ids == ["B"]
        assert repo.snapshot() == before

    @pytest.mark.asyncio
    async def test_concurrent_swaps_single_winner(self, repo):
        a = await repo.get("A")

        results = await asyncio.gather(
            repo.compare_and_swap_save(a.with_balance(Decimal("1")), a.version),
            repo.compare_and_swap_save(a.with_balance(Decimal("2")), a.version),
            return_exceptions=True
        )

        conflicts = [r for r in results if isinstance(r, OptimisticConflictError)]
        assert len(conflicts) == 1
        assert (await repo.get("A")).version == 1


class TestExclusiveAccess:
    """Test the exclusive-hold primitive."""

    @pytest.mark.asyncio
    async def test_hold_returns_record_and_release_frees_it(self, repo):
        account = await repo.get_for_exclusive_access("A", timeout=0.5)

        assert account.id == "A"
        assert repo.is_held("A")

        repo.release_exclusive_access("A")
        assert not repo.is_held("A")

    @pytest.mark.asyncio
    async def test_second_hold_times_out(self, repo):
        await repo.get_for_exclusive_access("A", timeout=0.5)

        with pytest.raises(LockTimeoutError) as exc_info:
            await repo.get_for_exclusive_access("A", timeout=0.05)

        assert exc_info.value.account_id == "A"
        repo.release_exclusive_access("A")

    @pytest.mark.asyncio
    async def test_waiter_is_granted_after_release(self, repo):
        await repo.get_for_exclusive_access("A", timeout=0.5)

        async def take_and_release():
            account = await repo.get_for_exclusive_access("A", timeout=1.0)
            repo.release_exclusive_access("A")
            return account

        waiter = asyncio.ensure_future(take_and_release())
        await asyncio.sleep(0.01)
        assert not waiter.done()

        repo.release_exclusive_access("A")
        account = await waiter

        assert account.id == "A"
        assert not repo.is_held("A")

    @pytest.mark.asyncio
    async def test_missing_account_releases_hold(self, repo):
        with pytest.raises(AccountNotFound):
            await repo.get_for_exclusive_access("Z", timeout=0.5)

        assert not repo.is_held("Z")

    @pytest.mark.asyncio
    async def test_unknown_ids_do_not_grow_lock_map(self, repo):
        for i in range(200):
            with pytest.raises(AccountNotFound):
                await repo.get_for_exclusive_access(f"ghost_{i}", timeout=0.5)

        assert len(repo.locks) == 0
        assert len(repo.holders) == 0

    @pytest.mark.asyncio
    async def test_double_release_raises(self, repo):
        await repo.get_for_exclusive_access("A", timeout=0.5)
        repo.release_exclusive_access("A")

        with pytest.raises(RuntimeError):
            repo.release_exclusive_access("A")

    @pytest.mark.asyncio
    async def test_release_of_never_held_account_raises(self, repo):
        with pytest.raises(RuntimeError):
            repo.release_exclusive_access("B")

    @pytest.mark.asyncio
    async def test_release_by_other_task_is_refused(self, repo):
        await repo.get_for_exclusive_access("A", timeout=0.5)

        async def stray_release():
            repo.release_exclusive_access("A")

        with pytest.raises(RuntimeError):
            await asyncio.ensure_future(stray_release())

        assert repo.is_held("A")
        with pytest.raises(LockTimeoutError):
            await repo.get_for_exclusive_access("A", timeout=0.05)
        repo.release_exclusive_access("A")

    @pytest.mark.asyncio
    async def test_hold_does_not_block_other_accounts(self, repo):
        await repo.get_for_exclusive_access("A", timeout=0.5)

        account = await repo.get_for_exclusive_access("B", timeout=0.05)

        assert account.id == "B"
        repo.release_exclusive_access("A")
        repo.release_exclusive_access("B")


class TestSingleton:
    def test_reset_builds_fresh_store(self):
        first = get_account_repository()
        first.accounts.clear()

        reset_repositories()

        assert get_account_repository() is not first
        assert len(get_account_repository().accounts) == 3

    def test_seed_resets_versions(self):
        repo = InMemoryAccountRepository(balances={"X": "5"})

        assert repo.snapshot()["X"] == Account(id="X", balance=Decimal("5"), version=0)
