from __future__ import annotations

from datetime import timedelta
from functools import lru_cache
from pathlib import Path
from typing import NoReturn

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ..config import settings
from ..db.base import BaseDBManager
from ..db.memory import InMemoryDBManager
from ..errors import (
    AccountLockTimeout,
    AccountNotFound,
    CreditLedgerError,
    DuplicateIdempotencyKeyConflict,
    InsufficientCredits,
    ReservationAlreadyProcessed,
    ReservationExpired,
    ReservationNotFound,
)
from ..logging.ledger_logger import LedgerLogger
from ..models.account import AccountBalance, ReconciliationReport
from ..models.api_models import (
    BalanceChangeResponse,
    CommitRequest,
    CreditMovementRequest,
    ReservationResponse,
    ReserveRequest,
    SweepResponse,
)
from ..models.base import PaginatedResult
from ..models.reservation import Reservation
from ..models.transaction import LedgerResult
from ..notifications.queue import LoggingNotificationQueue
from ..services.ledger_engine import LedgerEngine
from ..services.notification_service import NotificationService


router = APIRouter(prefix="/credits", tags=["credits"])


_STATUS_BY_ERROR = {
    InsufficientCredits: status.HTTP_402_PAYMENT_REQUIRED,
    AccountNotFound: status.HTTP_404_NOT_FOUND,
    ReservationNotFound: status.HTTP_404_NOT_FOUND,
    ReservationAlreadyProcessed: status.HTTP_409_CONFLICT,
    DuplicateIdempotencyKeyConflict: status.HTTP_409_CONFLICT,
    ReservationExpired: status.HTTP_410_GONE,
    AccountLockTimeout: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def _create_db_manager() -> BaseDBManager:
    if settings.MONGO_URI:
        from ..db.mongo import MongoDBManager

        return MongoDBManager.from_client_uri(settings.MONGO_URI, settings.MONGO_DB)
    return InMemoryDBManager()


@lru_cache(maxsize=1)
def get_ledger_engine() -> LedgerEngine:
    db = _create_db_manager()
    ledger = LedgerLogger(db=db, file_path=Path(settings.LEDGER_LOG_PATH))
    notifications = NotificationService(
        db=db,
        queue=LoggingNotificationQueue(),
        thresholds=settings.LOW_BALANCE_THRESHOLDS,
        cooldown=timedelta(days=settings.LOW_BALANCE_ALERT_COOLDOWN_DAYS),
    )
    return LedgerEngine(
        db=db,
        ledger=ledger,
        notifications=notifications,
        reservation_ttl=timedelta(seconds=settings.RESERVATION_TTL_SECONDS),
        lock_timeout=settings.LOCK_TIMEOUT_SECONDS,
        auto_create_accounts=settings.AUTO_CREATE_ACCOUNTS,
    )


def _raise_http(exc: Exception) -> NoReturn:
    if isinstance(exc, CreditLedgerError):
        code = _STATUS_BY_ERROR.get(type(exc), status.HTTP_400_BAD_REQUEST)
        raise HTTPException(
            status_code=code, detail={"code": exc.code, "message": str(exc)}
        ) from exc
    raise HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"code": "invalid_request", "message": str(exc)},
    ) from exc


def _balance_change(result: LedgerResult) -> BalanceChangeResponse:
    return BalanceChangeResponse(
        account_id=result.account_id,
        new_balance=result.new_balance,
        transaction_id=result.transaction.id,
        replayed=result.replayed,
    )


def _reservation(reservation: Reservation) -> ReservationResponse:
    return ReservationResponse(
        reservation_id=reservation.id or "",
        account_id=reservation.account_id,
        amount=reservation.amount,
        status=reservation.status,
        expires_at=reservation.expires_at,
    )


@router.post("/accounts/{account_id}/earn", response_model=BalanceChangeResponse)
async def earn_credits(
    account_id: str,
    payload: CreditMovementRequest,
    engine: LedgerEngine = Depends(get_ledger_engine),
) -> BalanceChangeResponse:
    try:
        result = await engine.earn(account_id=account_id, **payload.model_dump())
    except (CreditLedgerError, ValueError) as exc:
        _raise_http(exc)
    return _balance_change(result)


@router.post("/accounts/{account_id}/spend", response_model=BalanceChangeResponse)
async def spend_credits(
    account_id: str,
    payload: CreditMovementRequest,
    engine: LedgerEngine = Depends(get_ledger_engine),
) -> BalanceChangeResponse:
    try:
        result = await engine.spend(account_id=account_id, **payload.model_dump())
    except (CreditLedgerError, ValueError) as exc:
        _raise_http(exc)
    return _balance_change(result)


@router.post(
    "/accounts/{account_id}/reservations",
    response_model=ReservationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def reserve_credits(
    account_id: str,
    payload: ReserveRequest,
    engine: LedgerEngine = Depends(get_ledger_engine),
) -> ReservationResponse:
    try:
        reservation = await engine.reserve(account_id=account_id, **payload.model_dump())
    except (CreditLedgerError, ValueError) as exc:
        _raise_http(exc)
    return _reservation(reservation)


@router.post("/reservations/{reservation_id}/commit", response_model=BalanceChangeResponse)
async def commit_reservation(
    reservation_id: str,
    payload: CommitRequest,
    engine: LedgerEngine = Depends(get_ledger_engine),
) -> BalanceChangeResponse:
    try:
        result = await engine.commit(reservation_id=reservation_id, **payload.model_dump())
    except (CreditLedgerError, ValueError) as exc:
        _raise_http(exc)
    return _balance_change(result)


@router.post("/reservations/{reservation_id}/release", response_model=ReservationResponse)
async def release_reservation(
    reservation_id: str,
    engine: LedgerEngine = Depends(get_ledger_engine),
) -> ReservationResponse:
    try:
        reservation = await engine.release(reservation_id)
    except CreditLedgerError as exc:
        _raise_http(exc)
    return _reservation(reservation)


@router.post("/maintenance/sweep", response_model=SweepResponse)
async def sweep_expired_reservations(
    engine: LedgerEngine = Depends(get_ledger_engine),
) -> SweepResponse:
    return SweepResponse(expired=await engine.sweep_expired())


@router.get("/accounts/{account_id}/balance", response_model=AccountBalance)
async def get_balance(
    account_id: str,
    engine: LedgerEngine = Depends(get_ledger_engine),
) -> AccountBalance:
    try:
        return await engine.get_balance(account_id)
    except CreditLedgerError as exc:
        _raise_http(exc)


@router.get("/accounts/{account_id}/transactions", response_model=PaginatedResult)
async def get_transactions(
    account_id: str,
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    engine: LedgerEngine = Depends(get_ledger_engine),
) -> PaginatedResult:
    return await engine.get_history(account_id, limit=limit, offset=offset)


@router.get("/accounts/{account_id}/reconcile", response_model=ReconciliationReport)
async def reconcile_account(
    account_id: str,
    engine: LedgerEngine = Depends(get_ledger_engine),
) -> ReconciliationReport:
    try:
        return await engine.reconcile(account_id)
    except CreditLedgerError as exc:
        _raise_http(exc)
