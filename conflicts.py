from typing import List, Mapping, Optional

from models import Account


class ConflictDetector:
    """Decides whether a previously read record has gone stale.

    The version counter is the only witness used: balances are never
    compared, so a write that restores an old balance still counts as a
    conflicting change.
    """

    def is_stale(self, expected_version: int, current: Optional[Account]) -> bool:
        if current is None:
            return True
        return current.version != expected_version

    def find_stale(
        self,
        expected_versions: Mapping[str, int],
        current: Mapping[str, Account],
    ) -> List[str]:
        """Return the ids whose stored version differs from the expected one."""
        return [
            account_id
            for account_id, version in expected_versions.items()
            if self.is_stale(version, current.get(account_id))
        ]
