import threading
from abc import ABC, abstractmethod
from typing import Dict, List, Optional
from datetime import datetime, timezone
from collections import defaultdict
from models import UserPoint, PointHistory, TransactionKind


class StorageError(Exception):
    """Raised by a repository when the underlying store operation fails."""


class BalanceRepository(ABC):
    @abstractmethod
    async def select_by_id(self, account_id: int) -> Optional[UserPoint]:
        """Get account balance. Returns None if account doesn't exist."""
        pass

    @abstractmethod
    async def insert_or_update(
        self, account_id: int, balance: int, updated_at: Optional[datetime] = None
    ) -> UserPoint:
        """Overwrite (or create) the balance record of an account."""
        pass

    @abstractmethod
    async def delete(self, account_id: int) -> None:
        """Remove the balance record of an account, if any."""
        pass

    @abstractmethod
    async def get_accounts_count(self) -> int:
        """Get total number of accounts."""
        pass


class HistoryRepository(ABC):
    @abstractmethod
    async def select_all_by_account_id(self, account_id: int) -> List[PointHistory]:
        """Get every history entry of an account, oldest first."""
        pass

    @abstractmethod
    async def insert(
        self, account_id: int, amount: int, kind: TransactionKind, occurred_at: datetime
    ) -> PointHistory:
        """Append a history entry."""
        pass

    @abstractmethod
    async def get_entries_count(self) -> int:
        """Get total number of stored history entries."""
        pass


class InMemoryBalanceRepository(BalanceRepository):
    def __init__(self, seed: Optional[Dict[int, int]] = None):
        if seed is None:
            seed = {1: 100, 2: 500, 3: 0}
        now = datetime.now(timezone.utc)
        self.accounts: Dict[int, UserPoint] = {
            account_id: UserPoint(accountId=account_id, balance=balance, updatedAt=now)
            for account_id, balance in seed.items()
        }

    async def select_by_id(self, account_id: int) -> Optional[UserPoint]:
        return self.accounts.get(account_id)

    async def insert_or_update(
        self, account_id: int, balance: int, updated_at: Optional[datetime] = None
    ) -> UserPoint:
        point = UserPoint(
            accountId=account_id,
            balance=balance,
            updatedAt=updated_at or datetime.now(timezone.utc),
        )
        self.accounts[account_id] = point
        return point

    async def delete(self, account_id: int) -> None:
        self.accounts.pop(account_id, None)

    async def get_accounts_count(self) -> int:
        return len(self.accounts)


class InMemoryHistoryRepository(HistoryRepository):
    def __init__(self):
        self.entries: Dict[int, List[PointHistory]] = defaultdict(list)
        self._next_id = 1
        self._id_guard = threading.Lock()

    async def select_all_by_account_id(self, account_id: int) -> List[PointHistory]:
        return list(self.entries.get(account_id, []))

    async def insert(
        self, account_id: int, amount: int, kind: TransactionKind, occurred_at: datetime
    ) -> PointHistory:
        with self._id_guard:
            entry = PointHistory(
                entryId=self._next_id,
                accountId=account_id,
                amount=amount,
                kind=kind,
                occurredAt=occurred_at,
            )
            self._next_id += 1
            self.entries[account_id].append(entry)
        return entry

    async def get_entries_count(self) -> int:
        return sum(len(entries) for entries in self.entries.values())


# Singleton instances
_balance_repo = InMemoryBalanceRepository()
_history_repo = InMemoryHistoryRepository()


def get_balance_repository() -> BalanceRepository:
    return _balance_repo


def get_history_repository() -> HistoryRepository:
    return _history_repo


def reset_repositories():
    """Reset all repositories to initial state (for testing only)."""
    global _balance_repo, _history_repo
    _balance_repo = InMemoryBalanceRepository()
    _history_repo = InMemoryHistoryRepository()
