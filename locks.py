import asyncio
import threading
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

# Back-off bounds while waiting for a lock held elsewhere
MIN_POLL_INTERVAL = 0.0005
MAX_POLL_INTERVAL = 0.01


class LockTimeoutError(Exception):
    """Raised when an account lock could not be acquired in time."""

    def __init__(self, account_id: int, timeout: float):
        super().__init__(f"Timed out after {timeout}s waiting for lock on account {account_id}")
        self.account_id = account_id
        self.timeout = timeout


class AccountLockRegistry:
    """One mutual-exclusion lock per account, created on first use.

    Handles are ``threading.Lock`` objects, so the same account is
    serialized across tasks, event loops and threads alike. Entries are
    never evicted; the registry grows with the number of distinct accounts
    it has seen.
    """

    def __init__(self):
        self._locks: Dict[int, threading.Lock] = {}
        self._guard = threading.Lock()

    def acquire(self, account_id: int) -> threading.Lock:
        """Get the lock for an account, creating it exactly once."""
        with self._guard:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[account_id] = lock
            return lock

    @asynccontextmanager
    async def hold(self, account_id: int, timeout: Optional[float] = None) -> AsyncIterator[None]:
        """Hold the account's lock for the duration of the block.

        Waiting never blocks the event loop. A wait that is cancelled or
        times out has not taken the lock.
        """
        lock = self.acquire(account_id)
        deadline = None if timeout is None else time.monotonic() + timeout
        interval = MIN_POLL_INTERVAL
        while not lock.acquire(blocking=False):
            if deadline is not None and time.monotonic() >= deadline:
                raise LockTimeoutError(account_id, timeout)
            await asyncio.sleep(interval)
            interval = min(interval * 2, MAX_POLL_INTERVAL)
        try:
            yield
        finally:
            lock.release()

    def __contains__(self, account_id: int) -> bool:
        with self._guard:
            return account_id in self._locks

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
