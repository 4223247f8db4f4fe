from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Dict, Iterable, List, Optional

from ..errors import AccountLockTimeout
from ..models.account import CreditAccount, LedgerTotals
from ..models.ledger import LedgerEntry
from ..models.notification import NotificationEvent, NotificationType
from ..models.reservation import Reservation, ReservationStatus
from ..models.transaction import CreditTransaction


class AccountLocks:
    """
    One `asyncio.Lock` per account, kept only while someone holds or waits
    on it, so the registry does not grow with every account ever touched.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    def is_held(self, account_id: str) -> bool:
        lock = self._locks.get(account_id)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, account_id: str, timeout: float) -> AsyncIterator[None]:
        lock = self._locks.setdefault(account_id, asyncio.Lock())
        self._users[account_id] = self._users.get(account_id, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=timeout)
            except asyncio.TimeoutError:
                raise AccountLockTimeout(account_id, timeout) from None
            try:
                yield
            finally:
                lock.release()
        finally:
            self._users[account_id] -= 1
            if not self._users[account_id]:
                del self._users[account_id]
                del self._locks[account_id]


class BaseDBManager(ABC):
    """
    DB-agnostic async manager interface.

    Concrete implementations (MongoDB, in-memory, ...) implement these
    methods. Every balance-changing write happens inside `locked()`, which
    gives exclusive access to one account and rolls back all writes made
    in its body if the body raises.
    """

    @abstractmethod
    @asynccontextmanager
    async def locked(self, account_id: str, timeout: float) -> AsyncIterator[None]:
        """
        Acquire the account's exclusive lock and open an atomic unit of work.

        Must raise `AccountLockTimeout` when the lock cannot be obtained
        within `timeout` seconds. Writes made inside the block are committed
        together on normal exit and discarded if the block raises.
        """
        yield

    async def ensure_indexes(self) -> None:
        """Create backend indexes; a no-op for stores without them."""
        return None

    # Account store
    @abstractmethod
    async def create_account(self, account_id: str) -> CreditAccount:
        """Insert a zero-balance account if absent; idempotent."""
        ...

    @abstractmethod
    async def get_account(self, account_id: str) -> Optional[CreditAccount]: ...

    @abstractmethod
    async def get_for_update(self, account_id: str) -> Optional[CreditAccount]:
        """
        Read the account inside `locked()` for a subsequent `update_account`.
        """
        ...

    @abstractmethod
    async def update_account(self, account: CreditAccount) -> CreditAccount: ...

    # Transaction log
    @abstractmethod
    async def append_transaction(self, tx: CreditTransaction) -> CreditTransaction:
        """
        Only write path of the log. Raises `IdempotencyKeyTaken` when the
        key is already recorded.
        """
        ...

    @abstractmethod
    async def get_transaction_by_idempotency_key(
        self, idempotency_key: str
    ) -> Optional[CreditTransaction]: ...

    @abstractmethod
    async def get_transactions(
        self, account_id: str, limit: int, offset: int
    ) -> tuple[List[CreditTransaction], int]:
        """Newest first page of an account's transactions plus the total count."""
        ...

    @abstractmethod
    async def get_ledger_totals(self, account_id: str) -> LedgerTotals: ...

    # Reservation table
    @abstractmethod
    async def insert_reservation(self, reservation: Reservation) -> Reservation: ...

    @abstractmethod
    async def get_reservation(self, reservation_id: str) -> Optional[Reservation]: ...

    @abstractmethod
    async def sum_pending_unexpired(self, account_id: str, now: datetime) -> int:
        """
        Sum of pending holds with `expires_at > now`. Called inside
        `locked()` so two concurrent reservations cannot both see the
        same free capacity.
        """
        ...

    @abstractmethod
    async def transition_reservation(
        self,
        reservation_id: str,
        from_status: ReservationStatus,
        to_status: ReservationStatus,
        at: datetime,
    ) -> Reservation:
        """
        Atomically move a reservation from `from_status` to `to_status`.

        Raises `ReservationNotFound` for unknown ids and
        `ReservationAlreadyProcessed` when the current status is not
        `from_status`.
        """
        ...

    @abstractmethod
    async def find_expired_pending(self, now: datetime) -> Iterable[Reservation]: ...

    # Notifications
    @abstractmethod
    async def add_notification_event(
        self, notification: NotificationEvent
    ) -> NotificationEvent: ...

    @abstractmethod
    async def get_latest_notification(
        self, account_id: str, notification_type: NotificationType
    ) -> Optional[NotificationEvent]:
        """Newest successfully queued event of this type, or None."""
        ...

    # Ledger audit
    @abstractmethod
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry: ...
