from __future__ import annotations

from typing import Optional


class CreditLedgerError(Exception):
    """Base class for every failure the ledger engine reports to callers."""

    code: str = "credit_ledger_error"


class AccountNotFound(CreditLedgerError):
    code = "account_not_found"

    def __init__(self, account_id: str) -> None:
        super().__init__(f"account {account_id!r} not found")
        self.account_id = account_id


class InsufficientCredits(CreditLedgerError, ValueError):
    """Available balance (balance minus live holds) does not cover the request."""

    code = "insufficient_credits"

    def __init__(self, account_id: str, requested: int, available: int) -> None:
        super().__init__(
            f"insufficient credits: requested {requested}, available {available}"
        )
        self.account_id = account_id
        self.requested = requested
        self.available = available


class ReservationNotFound(CreditLedgerError):
    code = "reservation_not_found"

    def __init__(self, reservation_id: str) -> None:
        super().__init__(f"reservation {reservation_id!r} not found")
        self.reservation_id = reservation_id


class ReservationAlreadyProcessed(CreditLedgerError):
    """The reservation already reached a terminal state."""

    code = "reservation_already_processed"

    def __init__(self, reservation_id: str, status: str) -> None:
        super().__init__(f"reservation {reservation_id!r} already {status}")
        self.reservation_id = reservation_id
        self.status = status


class ReservationExpired(CreditLedgerError):
    code = "reservation_expired"

    def __init__(self, reservation_id: str) -> None:
        super().__init__(f"reservation {reservation_id!r} expired")
        self.reservation_id = reservation_id


class DuplicateIdempotencyKeyConflict(CreditLedgerError):
    """Same idempotency key reused for a logically different operation."""

    code = "duplicate_idempotency_key"

    def __init__(self, idempotency_key: str, existing_transaction_id: Optional[str]) -> None:
        super().__init__(
            f"idempotency key {idempotency_key!r} already used by "
            f"transaction {existing_transaction_id!r}"
        )
        self.idempotency_key = idempotency_key
        self.existing_transaction_id = existing_transaction_id


class AccountLockTimeout(CreditLedgerError):
    """Transient: the account stayed locked past the wait budget. Safe to retry."""

    code = "account_lock_timeout"

    def __init__(self, account_id: str, timeout: float) -> None:
        super().__init__(f"timed out after {timeout}s waiting for account {account_id!r}")
        self.account_id = account_id
        self.timeout = timeout


class IdempotencyKeyTaken(Exception):
    """
    Raised by storage backends when the unique constraint on
    `CreditTransaction.idempotency_key` rejects an insert. The engine
    turns it into a replay or a `DuplicateIdempotencyKeyConflict`.
    """

    def __init__(self, idempotency_key: str) -> None:
        super().__init__(idempotency_key)
        self.idempotency_key = idempotency_key
