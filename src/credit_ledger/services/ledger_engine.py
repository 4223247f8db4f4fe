from __future__ import annotations

import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from ..db.base import BaseDBManager
from ..errors import (
    AccountLockTimeout,
    AccountNotFound,
    DuplicateIdempotencyKeyConflict,
    IdempotencyKeyTaken,
    InsufficientCredits,
    ReservationAlreadyProcessed,
    ReservationExpired,
    ReservationNotFound,
)
from ..logging.ledger_logger import LedgerLogger
from ..models.account import AccountBalance, CreditAccount, ReconciliationReport
from ..models.base import PaginatedResult
from ..models.reservation import Reservation, ReservationStatus
from ..models.transaction import (
    CreditTransaction,
    LedgerResult,
    SourcePlatform,
    TransactionKind,
)
from .notification_service import NotificationService


logger = logging.getLogger(__name__)


def _require_positive(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValueError("amount must be a whole number of credits")
    if amount <= 0:
        raise ValueError("amount must be positive")


class LedgerEngine:
    """
    Unified credit ledger: earn, spend, and the two-phase reserve/commit/release
    protocol over a single store.

    Every mutating operation runs inside the backend's per-account lock:
    read the account, compute availability, write, release. Availability is
    always `balance - live holds`, recomputed under the lock. Idempotency keys
    are checked before the lock, again once it is held, and finally by the
    store's unique constraint, so racing retries replay instead of failing.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        notifications: Optional[NotificationService] = None,
        reservation_ttl: timedelta = timedelta(minutes=15),
        lock_timeout: float = 5.0,
        auto_create_accounts: bool = True,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        if reservation_ttl <= timedelta(0):
            raise ValueError("reservation_ttl must be positive")
        self._db = db
        self._ledger = ledger
        self._notifications = notifications
        self._reservation_ttl = reservation_ttl
        self._lock_timeout = lock_timeout
        self._auto_create_accounts = auto_create_accounts
        self._clock = clock

    @property
    def db(self) -> BaseDBManager:
        return self._db

    # Earning / spending

    async def earn(
        self,
        account_id: str,
        amount: int,
        kind: TransactionKind | str,
        source_platform: SourcePlatform | str,
        idempotency_key: str | None = None,
        reference_id: str | None = None,
        reference_type: str | None = None,
        description: str | None = None,
        correlation_id: str | None = None,
    ) -> LedgerResult:
        _require_positive(amount)
        kind = TransactionKind(kind)
        platform = SourcePlatform(source_platform)
        if not kind.can_earn:
            raise ValueError(f"{kind.value!r} cannot be used to earn credits")

        replay = await self._replay(idempotency_key, account_id, amount, kind)
        if replay is not None:
            return replay

        try:
            async with self._locked_account(account_id) as account:
                await self._ensure_key_unused(idempotency_key)
                now = self._clock()
                account.balance += amount
                account.lifetime_earned += amount
                account.updated_at = now
                tx = await self._db.append_transaction(
                    CreditTransaction(
                        account_id=account_id,
                        amount=amount,
                        running_balance=account.balance,
                        kind=kind,
                        source_platform=platform,
                        description=description,
                        idempotency_key=idempotency_key,
                        reference_id=reference_id,
                        reference_type=reference_type,
                        created_at=now,
                    )
                )
                await self._db.update_account(account)
        except IdempotencyKeyTaken as exc:
            return await self._resolve_taken_key(exc.idempotency_key, account_id, amount, kind)

        await self._audit(
            self._ledger.log_transaction,
            account_id=account_id,
            message="Credits earned",
            details={
                "transaction_id": tx.id,
                "amount": amount,
                "kind": kind.value,
                "new_balance": tx.running_balance,
            },
            correlation_id=correlation_id,
        )
        return LedgerResult(account_id=account_id, new_balance=tx.running_balance, transaction=tx)

    async def spend(
        self,
        account_id: str,
        amount: int,
        kind: TransactionKind | str,
        source_platform: SourcePlatform | str,
        idempotency_key: str | None = None,
        reference_id: str | None = None,
        reference_type: str | None = None,
        description: str | None = None,
        correlation_id: str | None = None,
    ) -> LedgerResult:
        """
        Direct deduction without a reservation.

        Live holds are subtracted from what a direct spend may touch,
        otherwise a later commit of one of those holds could overdraw.
        """
        _require_positive(amount)
        kind = TransactionKind(kind)
        platform = SourcePlatform(source_platform)
        if not kind.can_spend:
            raise ValueError(f"{kind.value!r} cannot be used to spend credits")

        replay = await self._replay(idempotency_key, account_id, -amount, kind)
        if replay is not None:
            return replay

        try:
            async with self._locked_account(account_id) as account:
                await self._ensure_key_unused(idempotency_key)
                now = self._clock()
                held = await self._db.sum_pending_unexpired(account_id, now)
                available = account.balance - held
                if available < amount:
                    raise InsufficientCredits(account_id, amount, available)

                previous_balance = account.balance
                account.balance -= amount
                account.updated_at = now
                tx = await self._db.append_transaction(
                    CreditTransaction(
                        account_id=account_id,
                        amount=-amount,
                        running_balance=account.balance,
                        kind=kind,
                        source_platform=platform,
                        description=description,
                        idempotency_key=idempotency_key,
                        reference_id=reference_id,
                        reference_type=reference_type,
                        created_at=now,
                    )
                )
                await self._db.update_account(account)
        except IdempotencyKeyTaken as exc:
            return await self._resolve_taken_key(exc.idempotency_key, account_id, -amount, kind)
        except InsufficientCredits as exc:
            await self._audit(
                self._ledger.log_error,
                message="Insufficient credits for spend",
                details={"requested": exc.requested, "available": exc.available},
                account_id=account_id,
                correlation_id=correlation_id,
            )
            raise

        await self._audit(
            self._ledger.log_transaction,
            account_id=account_id,
            message="Credits spent",
            details={
                "transaction_id": tx.id,
                "amount": amount,
                "kind": kind.value,
                "new_balance": tx.running_balance,
            },
            correlation_id=correlation_id,
        )
        await self._after_debit(account_id, previous_balance, tx.running_balance)
        return LedgerResult(account_id=account_id, new_balance=tx.running_balance, transaction=tx)

    # Two-phase protocol

    async def reserve(
        self,
        account_id: str,
        amount: int,
        purpose: str,
        reference_id: str | None = None,
        reference_type: str | None = None,
        ttl_seconds: int | None = None,
        correlation_id: str | None = None,
    ) -> Reservation:
        """
        Hold `amount` credits against the account's available balance.

        The account balance itself is untouched; the hold only narrows
        what later spends and reservations see until it is committed,
        released, or expires.
        """
        _require_positive(amount)
        if not purpose:
            raise ValueError("purpose is required")
        ttl = self._reservation_ttl if ttl_seconds is None else timedelta(seconds=ttl_seconds)
        if ttl <= timedelta(0):
            raise ValueError("ttl_seconds must be positive")

        try:
            async with self._locked_account(account_id) as account:
                now = self._clock()
                held = await self._db.sum_pending_unexpired(account_id, now)
                available = account.balance - held
                if available < amount:
                    raise InsufficientCredits(account_id, amount, available)

                reservation = await self._db.insert_reservation(
                    Reservation(
                        account_id=account_id,
                        amount=amount,
                        purpose=purpose,
                        expires_at=now + ttl,
                        reference_id=reference_id,
                        reference_type=reference_type,
                        created_at=now,
                    )
                )
        except InsufficientCredits as exc:
            await self._audit(
                self._ledger.log_error,
                message="Insufficient credits for reservation",
                details={
                    "requested": exc.requested,
                    "available": exc.available,
                    "purpose": purpose,
                },
                account_id=account_id,
                correlation_id=correlation_id,
            )
            raise

        await self._audit(
            self._ledger.log_reservation,
            account_id=account_id,
            message="Credits reserved",
            details={
                "reservation_id": reservation.id,
                "amount": amount,
                "purpose": purpose,
                "expires_at": reservation.expires_at.isoformat(),
            },
            correlation_id=correlation_id,
        )
        return reservation

    async def commit(
        self,
        reservation_id: str,
        kind: TransactionKind | str,
        source_platform: SourcePlatform | str,
        idempotency_key: str | None = None,
        description: str | None = None,
        correlation_id: str | None = None,
    ) -> LedgerResult:
        """
        Turn a pending hold into a spend.

        The hold already carved out capacity at reserve time, so funds are
        not re-validated against other holds here. `kind` is required:
        the ledger never guesses a category for a committed spend.
        """
        kind = TransactionKind(kind)
        platform = SourcePlatform(source_platform)
        if not kind.can_spend:
            raise ValueError(f"{kind.value!r} cannot be used to spend credits")

        replay = await self._replay(idempotency_key, reservation_id=reservation_id)
        if replay is not None:
            return replay

        reservation = await self._db.get_reservation(reservation_id)
        if reservation is None:
            raise ReservationNotFound(reservation_id)
        account_id = reservation.account_id

        try:
            async with self._locked_account(account_id, create_missing=False) as account:
                await self._ensure_key_unused(idempotency_key)
                now = self._clock()
                current = await self._db.get_reservation(reservation_id)
                if current is None:
                    raise ReservationNotFound(reservation_id)
                if current.status is not ReservationStatus.PENDING:
                    raise ReservationAlreadyProcessed(reservation_id, current.status.value)
                if current.expires_at <= now:
                    raise ReservationExpired(reservation_id)
                if account.balance < current.amount:
                    # Only reachable if the balance was changed outside the engine.
                    raise InsufficientCredits(account_id, current.amount, account.balance)

                await self._db.transition_reservation(
                    reservation_id,
                    ReservationStatus.PENDING,
                    ReservationStatus.COMMITTED,
                    now,
                )
                previous_balance = account.balance
                account.balance -= current.amount
                account.updated_at = now
                tx = await self._db.append_transaction(
                    CreditTransaction(
                        account_id=account_id,
                        amount=-current.amount,
                        running_balance=account.balance,
                        kind=kind,
                        source_platform=platform,
                        description=description or current.purpose,
                        idempotency_key=idempotency_key,
                        reference_id=current.reference_id,
                        reference_type=current.reference_type,
                        reservation_id=reservation_id,
                        created_at=now,
                    )
                )
                await self._db.update_account(account)
        except IdempotencyKeyTaken as exc:
            return await self._resolve_taken_key(
                exc.idempotency_key, reservation_id=reservation_id
            )
        except (ReservationAlreadyProcessed, ReservationExpired, InsufficientCredits) as exc:
            await self._audit(
                self._ledger.log_error,
                message="Reservation commit rejected",
                details={"reservation_id": reservation_id, "error": str(exc)},
                account_id=account_id,
                correlation_id=correlation_id,
            )
            raise

        await self._audit(
            self._ledger.log_transaction,
            account_id=account_id,
            message="Reserved credits committed",
            details={
                "reservation_id": reservation_id,
                "transaction_id": tx.id,
                "amount": reservation.amount,
                "kind": kind.value,
                "new_balance": tx.running_balance,
            },
            correlation_id=correlation_id,
        )
        await self._after_debit(account_id, previous_balance, tx.running_balance)
        return LedgerResult(account_id=account_id, new_balance=tx.running_balance, transaction=tx)

    async def release(
        self, reservation_id: str, correlation_id: str | None = None
    ) -> Reservation:
        """
        Cancel a pending hold without spending.

        Releasing an already released hold is a no-op that returns it;
        releasing a committed or expired hold raises
        `ReservationAlreadyProcessed`.
        """
        reservation = await self._db.get_reservation(reservation_id)
        if reservation is None:
            raise ReservationNotFound(reservation_id)

        async with self._locked_account(reservation.account_id, create_missing=False):
            current = await self._db.get_reservation(reservation_id)
            if current is None:
                raise ReservationNotFound(reservation_id)
            if current.status is ReservationStatus.RELEASED:
                logger.info("Reservation %s already released", reservation_id)
                return current
            released = await self._db.transition_reservation(
                reservation_id,
                ReservationStatus.PENDING,
                ReservationStatus.RELEASED,
                self._clock(),
            )

        await self._audit(
            self._ledger.log_reservation,
            account_id=released.account_id,
            message="Reserved credits released",
            details={"reservation_id": reservation_id, "amount": released.amount},
            correlation_id=correlation_id,
        )
        return released

    async def sweep_expired(self) -> int:
        """
        Mark every pending hold past its expiry as expired.

        Accounts are visited one at a time, each under its own lock and
        with the same guarded transition a commit uses, so a commit that
        wins the race is left alone. Returns the number of holds expired.
        """
        now = self._clock()
        by_account: Dict[str, List[Reservation]] = defaultdict(list)
        for reservation in await self._db.find_expired_pending(now):
            by_account[reservation.account_id].append(reservation)

        expired = 0
        for account_id, reservations in by_account.items():
            swept = 0
            try:
                async with self._db.locked(account_id, self._lock_timeout):
                    for reservation in reservations:
                        try:
                            await self._db.transition_reservation(
                                reservation.id,  # type: ignore[arg-type]
                                ReservationStatus.PENDING,
                                ReservationStatus.EXPIRED,
                                now,
                            )
                        except ReservationAlreadyProcessed:
                            continue
                        swept += 1
            except AccountLockTimeout:
                logger.warning(
                    "Expiry sweep skipped account %s: lock busy", account_id
                )
                continue
            expired += swept

        if expired:
            await self._audit(
                self._ledger.log_system,
                message="Expired reservations swept",
                details={"expired": expired, "accounts": len(by_account)},
            )
        logger.info("Expiry sweep finished: %d reservation(s) expired", expired)
        return expired

    # Reads and maintenance

    async def get_balance(self, account_id: str) -> AccountBalance:
        account = await self._db.get_account(account_id)
        if account is None:
            if not self._auto_create_accounts:
                raise AccountNotFound(account_id)
            account = CreditAccount(id=account_id)

        reserved = await self._db.sum_pending_unexpired(account_id, self._clock())
        totals = await self._db.get_ledger_totals(account_id)
        return AccountBalance(
            account_id=account_id,
            balance=account.balance,
            reserved=reserved,
            available=account.balance - reserved,
            lifetime_earned=account.lifetime_earned,
            lifetime_spent=totals.spent,
        )

    async def get_history(
        self, account_id: str, limit: int = 20, offset: int = 0
    ) -> PaginatedResult:
        if limit <= 0 or offset < 0:
            raise ValueError("limit must be positive and offset non-negative")
        items, total = await self._db.get_transactions(account_id, limit=limit, offset=offset)
        return PaginatedResult(items=items, total=total, limit=limit, offset=offset)

    async def reconcile(self, account_id: str) -> ReconciliationReport:
        """
        Recompute balance and lifetime earned from the log and compare them
        with the stored account.
        """
        async with self._locked_account(account_id, create_missing=False) as account:
            totals = await self._db.get_ledger_totals(account_id)

        report = ReconciliationReport(
            account_id=account_id,
            stored_balance=account.balance,
            ledger_balance=totals.net,
            stored_lifetime_earned=account.lifetime_earned,
            ledger_lifetime_earned=totals.earned,
            transaction_count=totals.count,
        )
        if not report.consistent:
            logger.error(
                "Ledger drift on account %s: stored=%d ledger=%d",
                account_id,
                report.stored_balance,
                report.ledger_balance,
            )
            await self._audit(
                self._ledger.log_error,
                message="Ledger drift detected",
                details=report.model_dump(mode="json"),
                account_id=account_id,
            )
        return report

    # Internals

    @asynccontextmanager
    async def _locked_account(
        self, account_id: str, create_missing: bool = True
    ) -> AsyncIterator[CreditAccount]:
        if create_missing and self._auto_create_accounts:
            await self._db.create_account(account_id)
        async with self._db.locked(account_id, self._lock_timeout):
            account = await self._db.get_for_update(account_id)
            if account is None:
                raise AccountNotFound(account_id)
            yield account

    async def _replay(
        self,
        idempotency_key: str | None,
        account_id: str | None = None,
        amount: int | None = None,
        kind: TransactionKind | None = None,
        reservation_id: str | None = None,
    ) -> Optional[LedgerResult]:
        if idempotency_key is None:
            return None
        existing = await self._db.get_transaction_by_idempotency_key(idempotency_key)
        if existing is None:
            return None

        if reservation_id is not None:
            same_call = existing.reservation_id == reservation_id
        else:
            same_call = (
                existing.reservation_id is None
                and existing.account_id == account_id
                and existing.amount == amount
                and existing.kind is kind
            )
        if not same_call:
            raise DuplicateIdempotencyKeyConflict(idempotency_key, existing.id)

        logger.info(
            "Idempotent replay of transaction %s for key %s", existing.id, idempotency_key
        )
        return LedgerResult(
            account_id=existing.account_id,
            new_balance=existing.running_balance,
            transaction=existing,
            replayed=True,
        )

    async def _resolve_taken_key(
        self,
        idempotency_key: str,
        account_id: str | None = None,
        amount: int | None = None,
        kind: TransactionKind | None = None,
        reservation_id: str | None = None,
    ) -> LedgerResult:
        # A racing retry recorded the key between our pre-check and insert.
        replay = await self._replay(idempotency_key, account_id, amount, kind, reservation_id)
        if replay is None:
            raise DuplicateIdempotencyKeyConflict(idempotency_key, None)
        return replay

    async def _ensure_key_unused(self, idempotency_key: str | None) -> None:
        # Re-read under the lock; a racing retry may have finished since the pre-check.
        if idempotency_key is None:
            return
        if await self._db.get_transaction_by_idempotency_key(idempotency_key) is not None:
            raise IdempotencyKeyTaken(idempotency_key)

    async def _audit(self, log_call: Callable[..., Awaitable[None]], **kwargs: Any) -> None:
        """Write an audit entry; the ledger change it describes is already durable."""
        try:
            await log_call(**kwargs)
        except Exception:
            logger.exception(
                "Audit entry %r not recorded for account %s",
                kwargs.get("message"),
                kwargs.get("account_id"),
            )

    async def _after_debit(
        self, account_id: str, previous_balance: int, new_balance: int
    ) -> None:
        if self._notifications is None:
            return
        try:
            await self._notifications.notify_low_balance(
                account_id, previous_balance, new_balance
            )
        except Exception:
            logger.exception("Low balance notification failed for account %s", account_id)
