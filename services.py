import threading
from datetime import datetime
from typing import List, Optional
from zoneinfo import ZoneInfo
import structlog

from config import get_settings
from locks import AccountLockRegistry, LockTimeoutError
from models import UserPoint, PointHistory, TransactionKind
from repositories import (
    BalanceRepository,
    HistoryRepository,
    StorageError,
    get_balance_repository,
    get_history_repository,
    reset_repositories,
)
from results import FailureKind, Ok, PointResult, failure

# Configure structured logging
logger = structlog.get_logger()


class HistoryRecorder:
    """Appends history entries for mutations that have already been applied."""

    def __init__(self, history_repo: HistoryRepository):
        self.history_repo = history_repo

    async def record(
        self, account_id: int, amount: int, kind: TransactionKind, timestamp: datetime
    ) -> PointHistory:
        entry = await self.history_repo.insert(account_id, amount, kind, timestamp)
        logger.debug(
            "History entry recorded",
            account_id=account_id,
            entry_id=entry.entryId,
            amount=amount,
            kind=kind.value
        )
        return entry


class PointQueryService:
    """Read-only lookups. Reads never take the account lock."""

    def __init__(
        self,
        balance_repo: BalanceRepository,
        history_repo: HistoryRepository,
        empty_history_is_error: bool = True
    ):
        self.balance_repo = balance_repo
        self.history_repo = history_repo
        self.empty_history_is_error = empty_history_is_error

    async def get_balance(self, account_id: int) -> PointResult[UserPoint]:
        try:
            point = await self.balance_repo.select_by_id(account_id)
        except StorageError as e:
            logger.error("Balance lookup failed", account_id=account_id, error=str(e))
            return failure(FailureKind.STORAGE_FAILURE, "Balance store unavailable")

        if point is None:
            logger.warning("Account not found", account_id=account_id)
            return failure(FailureKind.ACCOUNT_NOT_FOUND, "Account not found")
        return Ok(point)

    async def get_history(self, account_id: int) -> PointResult[List[PointHistory]]:
        try:
            histories = await self.history_repo.select_all_by_account_id(account_id)
            if histories:
                return Ok(histories)
            exists = await self.balance_repo.select_by_id(account_id) is not None
        except StorageError as e:
            logger.error("History lookup failed", account_id=account_id, error=str(e))
            return failure(FailureKind.STORAGE_FAILURE, "History store unavailable")

        if self.empty_history_is_error:
            logger.warning("No point history", account_id=account_id)
            return failure(FailureKind.NO_HISTORY_FOUND, "No point history found")
        if not exists:
            logger.warning("Account not found", account_id=account_id)
            return failure(FailureKind.ACCOUNT_NOT_FOUND, "Account not found")
        return Ok([])


class PointService:
    """Point balance API: serialized charge/use per account plus lookups.

    Each instance owns its lock registry, so one instance must be shared by
    every caller mutating the same stores.
    """

    def __init__(
        self,
        balance_repo: BalanceRepository,
        history_repo: HistoryRepository,
        max_balance: int = 1_000_000,
        lock_timeout: Optional[float] = None,
        auto_provision_accounts: bool = False,
        empty_history_is_error: bool = True,
        compensate_on_history_failure: bool = True,
        tz: str = "UTC"
    ):
        self.balance_repo = balance_repo
        self.history_repo = history_repo
        self.max_balance = max_balance
        self.lock_timeout = lock_timeout
        self.auto_provision_accounts = auto_provision_accounts
        self.compensate_on_history_failure = compensate_on_history_failure
        self.tz = ZoneInfo(tz)
        self.locks = AccountLockRegistry()
        self.recorder = HistoryRecorder(history_repo)
        self.queries = PointQueryService(balance_repo, history_repo, empty_history_is_error)

    async def get_balance(self, account_id: int) -> PointResult[UserPoint]:
        return await self.queries.get_balance(account_id)

    async def get_history(self, account_id: int) -> PointResult[List[PointHistory]]:
        return await self.queries.get_history(account_id)

    async def charge(self, account_id: int, amount: int) -> PointResult[UserPoint]:
        """Add points to an account."""
        return await self._mutate(account_id, amount, TransactionKind.CHARGE)

    async def use(self, account_id: int, amount: int) -> PointResult[UserPoint]:
        """Spend points from an account."""
        return await self._mutate(account_id, amount, TransactionKind.USE)

    async def _mutate(self, account_id: int, amount: int, kind: TransactionKind) -> PointResult[UserPoint]:
        logger.info(
            "Processing point mutation",
            account_id=account_id,
            amount=amount,
            kind=kind.value
        )

        if amount <= 0:
            logger.warning("Invalid amount", account_id=account_id, amount=amount, kind=kind.value)
            return failure(FailureKind.INVALID_AMOUNT, "Amount must be greater than zero")

        try:
            async with self.locks.hold(account_id, self.lock_timeout):
                return await self._apply_locked(account_id, amount, kind)
        except LockTimeoutError as e:
            logger.warning("Account lock timed out", account_id=account_id, timeout=e.timeout)
            return failure(FailureKind.LOCK_TIMEOUT, "Account is busy, try again later")

    async def _apply_locked(self, account_id: int, amount: int, kind: TransactionKind) -> PointResult[UserPoint]:
        try:
            current = await self.balance_repo.select_by_id(account_id)
        except StorageError as e:
            logger.error("Balance read failed", account_id=account_id, error=str(e))
            return failure(FailureKind.STORAGE_FAILURE, "Balance store unavailable")

        provisioned = current is None
        if provisioned:
            if not self.auto_provision_accounts:
                logger.warning("Account not found", account_id=account_id)
                return failure(FailureKind.ACCOUNT_NOT_FOUND, "Account not found")
            current = UserPoint(accountId=account_id, balance=0, updatedAt=self._now())

        if kind == TransactionKind.CHARGE:
            new_balance = current.balance + amount
            if new_balance > self.max_balance:
                logger.warning(
                    "Balance limit exceeded",
                    account_id=account_id,
                    current_balance=current.balance,
                    requested_amount=amount,
                    max_balance=self.max_balance
                )
                return failure(
                    FailureKind.BALANCE_LIMIT_EXCEEDED,
                    f"Balance cannot exceed {self.max_balance}"
                )
        else:
            new_balance = current.balance - amount
            if new_balance < 0:
                logger.warning(
                    "Insufficient balance",
                    account_id=account_id,
                    current_balance=current.balance,
                    requested_amount=amount
                )
                return failure(
                    FailureKind.INSUFFICIENT_BALANCE,
                    f"Insufficient balance: current {current.balance}, requested {amount}"
                )

        now = self._now()
        try:
            updated = await self.balance_repo.insert_or_update(account_id, new_balance, now)
        except StorageError as e:
            logger.error("Balance write failed", account_id=account_id, error=str(e))
            return failure(FailureKind.STORAGE_FAILURE, "Balance store unavailable")

        try:
            await self.recorder.record(account_id, amount, kind, now)
        except StorageError as e:
            logger.error(
                "History append failed",
                account_id=account_id,
                amount=amount,
                kind=kind.value,
                error=str(e),
                compensating=self.compensate_on_history_failure
            )
            if self.compensate_on_history_failure:
                await self._restore(current, provisioned)
            return failure(FailureKind.STORAGE_FAILURE, "History store unavailable")

        logger.info(
            "Point mutation applied",
            account_id=account_id,
            kind=kind.value,
            old_balance=current.balance,
            new_balance=updated.balance
        )
        return Ok(updated)

    async def _restore(self, previous: UserPoint, provisioned: bool) -> None:
        """Undo the balance write of a failed mutation.

        An auto-provisioned account had no record before, so its record is
        removed instead of being rewritten.
        """
        try:
            if provisioned:
                await self.balance_repo.delete(previous.accountId)
            else:
                await self.balance_repo.insert_or_update(
                    previous.accountId, previous.balance, previous.updatedAt
                )
        except StorageError as e:
            # Stores are now inconsistent; nothing else can be done here
            logger.critical(
                "Balance compensation failed",
                account_id=previous.accountId,
                balance=previous.balance,
                error=str(e)
            )

    def _now(self) -> datetime:
        return datetime.now(self.tz)


def get_point_service_for_settings(
    balance_repo: BalanceRepository,
    history_repo: HistoryRepository
) -> PointService:
    settings = get_settings()
    return PointService(
        balance_repo,
        history_repo,
        max_balance=settings.max_balance,
        lock_timeout=settings.lock_timeout_seconds,
        auto_provision_accounts=settings.auto_provision_accounts,
        empty_history_is_error=settings.empty_history_is_error,
        compensate_on_history_failure=settings.compensate_on_history_failure,
        tz=settings.timezone
    )


# One engine per process: its lock registry must be shared by every request
_point_service: Optional[PointService] = None
_service_guard = threading.Lock()


def get_point_service() -> PointService:
    global _point_service
    with _service_guard:
        if _point_service is None:
            _point_service = get_point_service_for_settings(
                get_balance_repository(), get_history_repository()
            )
        return _point_service


def reset_point_service():
    """Reset repositories and drop the shared service (for testing only)."""
    global _point_service
    with _service_guard:
        reset_repositories()
        _point_service = None
