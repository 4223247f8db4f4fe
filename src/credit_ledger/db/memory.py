from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import AsyncIterator, Callable, Dict, Iterable, List, Optional

from .base import AccountLocks, BaseDBManager
from ..errors import (
    IdempotencyKeyTaken,
    ReservationAlreadyProcessed,
    ReservationNotFound,
)
from ..models.account import CreditAccount, LedgerTotals
from ..models.ledger import LedgerEntry
from ..models.notification import (
    NotificationEvent,
    NotificationStatus,
    NotificationType,
)
from ..models.reservation import Reservation, ReservationStatus
from ..models.transaction import CreditTransaction


# Undo callbacks for the unit of work running in the current task
_journal: ContextVar[Optional[List[Callable[[], None]]]] = ContextVar(
    "credit_ledger_memory_journal", default=None
)


class InMemoryDBManager(BaseDBManager):
    """
    In-memory implementation used for tests and local development.

    Each account gets its own `asyncio.Lock`; writes made inside `locked()`
    are journaled and undone if the block raises. Every call yields to the
    event loop once, so concurrent callers interleave the way they would
    against a real database.
    """

    def __init__(self) -> None:
        self._accounts: Dict[str, CreditAccount] = {}
        self._transactions: List[CreditTransaction] = []
        self._by_idempotency_key: Dict[str, CreditTransaction] = {}
        self._reservations: Dict[str, Reservation] = {}
        self._notifications: List[NotificationEvent] = []
        self._ledger: List[LedgerEntry] = []
        self._locks = AccountLocks()
        self._id_counter: int = 0

    def _next_id(self) -> str:
        self._id_counter += 1
        return str(self._id_counter)

    @staticmethod
    async def _io() -> None:
        await asyncio.sleep(0)

    @staticmethod
    def _record_undo(undo: Callable[[], None]) -> None:
        journal = _journal.get()
        if journal is not None:
            journal.append(undo)

    @asynccontextmanager
    async def locked(self, account_id: str, timeout: float) -> AsyncIterator[None]:
        async with self._locks.hold(account_id, timeout):
            journal: List[Callable[[], None]] = []
            token = _journal.set(journal)
            try:
                yield
            except BaseException:
                for undo in reversed(journal):
                    undo()
                raise
            finally:
                _journal.reset(token)

    # Account store
    async def create_account(self, account_id: str) -> CreditAccount:
        await self._io()
        existing = self._accounts.get(account_id)
        if existing is not None:
            return existing.model_copy()
        account = CreditAccount(id=account_id)
        self._accounts[account_id] = account
        self._record_undo(lambda: self._accounts.pop(account_id, None))
        return account.model_copy()

    async def get_account(self, account_id: str) -> Optional[CreditAccount]:
        await self._io()
        account = self._accounts.get(account_id)
        return account.model_copy() if account is not None else None

    async def get_for_update(self, account_id: str) -> Optional[CreditAccount]:
        if not self._locks.is_held(account_id):
            raise RuntimeError(f"get_for_update({account_id!r}) called outside locked()")
        account = await self.get_account(account_id)
        if account is not None:
            account.lock_version += 1
        return account

    async def update_account(self, account: CreditAccount) -> CreditAccount:
        await self._io()
        previous = self._accounts.get(account.id)
        self._accounts[account.id] = account.model_copy()

        def undo() -> None:
            if previous is None:
                self._accounts.pop(account.id, None)
            else:
                self._accounts[account.id] = previous

        self._record_undo(undo)
        return account

    # Transaction log
    async def append_transaction(self, tx: CreditTransaction) -> CreditTransaction:
        await self._io()
        key = tx.idempotency_key
        if key is not None and key in self._by_idempotency_key:
            raise IdempotencyKeyTaken(key)
        if tx.id is None:
            tx.id = self._next_id()
        stored = tx.model_copy()
        self._transactions.append(stored)
        if key is not None:
            self._by_idempotency_key[key] = stored

        def undo() -> None:
            self._transactions.remove(stored)
            if key is not None:
                self._by_idempotency_key.pop(key, None)

        self._record_undo(undo)
        return tx

    async def get_transaction_by_idempotency_key(
        self, idempotency_key: str
    ) -> Optional[CreditTransaction]:
        await self._io()
        tx = self._by_idempotency_key.get(idempotency_key)
        return tx.model_copy() if tx is not None else None

    async def get_transactions(
        self, account_id: str, limit: int, offset: int
    ) -> tuple[List[CreditTransaction], int]:
        await self._io()
        rows = [t for t in reversed(self._transactions) if t.account_id == account_id]
        return [t.model_copy() for t in rows[offset : offset + limit]], len(rows)

    async def get_ledger_totals(self, account_id: str) -> LedgerTotals:
        await self._io()
        totals = LedgerTotals()
        for tx in self._transactions:
            if tx.account_id != account_id:
                continue
            totals.net += tx.amount
            totals.count += 1
            if tx.amount > 0:
                totals.earned += tx.amount
            else:
                totals.spent += -tx.amount
        return totals

    # Reservation table
    async def insert_reservation(self, reservation: Reservation) -> Reservation:
        await self._io()
        if reservation.id is None:
            reservation.id = self._next_id()
        reservation_id = reservation.id
        self._reservations[reservation_id] = reservation.model_copy()
        self._record_undo(lambda: self._reservations.pop(reservation_id, None))
        return reservation

    async def get_reservation(self, reservation_id: str) -> Optional[Reservation]:
        await self._io()
        reservation = self._reservations.get(reservation_id)
        return reservation.model_copy() if reservation is not None else None

    async def sum_pending_unexpired(self, account_id: str, now: datetime) -> int:
        await self._io()
        return sum(
            r.amount
            for r in self._reservations.values()
            if r.account_id == account_id and r.is_live(now)
        )

    async def transition_reservation(
        self,
        reservation_id: str,
        from_status: ReservationStatus,
        to_status: ReservationStatus,
        at: datetime,
    ) -> Reservation:
        await self._io()
        current = self._reservations.get(reservation_id)
        if current is None:
            raise ReservationNotFound(reservation_id)
        if current.status is not from_status:
            raise ReservationAlreadyProcessed(reservation_id, current.status.value)

        updated = current.model_copy(update={"status": to_status})
        if to_status is ReservationStatus.COMMITTED:
            updated.committed_at = at
        elif to_status is ReservationStatus.RELEASED:
            updated.released_at = at
        self._reservations[reservation_id] = updated
        self._record_undo(lambda: self._reservations.__setitem__(reservation_id, current))
        return updated.model_copy()

    async def find_expired_pending(self, now: datetime) -> Iterable[Reservation]:
        await self._io()
        return [
            r.model_copy()
            for r in self._reservations.values()
            if r.status is ReservationStatus.PENDING and r.expires_at <= now
        ]

    # Notifications
    async def add_notification_event(
        self, notification: NotificationEvent
    ) -> NotificationEvent:
        await self._io()
        if notification.id is None:
            notification.id = self._next_id()
        self._notifications.append(notification)
        return notification

    async def get_latest_notification(
        self, account_id: str, notification_type: NotificationType
    ) -> Optional[NotificationEvent]:
        await self._io()
        matches = [
            n
            for n in self._notifications
            if n.account_id == account_id
            and n.notification_type is notification_type
            and n.status is NotificationStatus.QUEUED
        ]
        return max(matches, key=lambda n: n.created_at) if matches else None

    # Ledger audit
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        await self._io()
        if entry.id is None:
            entry.id = self._next_id()
        self._ledger.append(entry)
        return entry

    @property
    def ledger_entries(self) -> List[LedgerEntry]:
        return list(self._ledger)
