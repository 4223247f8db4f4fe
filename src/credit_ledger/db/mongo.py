from __future__ import annotations

from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Optional, Type, TypeVar
from uuid import uuid4

from motor.motor_asyncio import (
    AsyncIOMotorClient,
    AsyncIOMotorClientSession,
    AsyncIOMotorDatabase,
)
from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, OperationFailure

from .base import AccountLocks, BaseDBManager
from ..errors import (
    AccountLockTimeout,
    IdempotencyKeyTaken,
    ReservationAlreadyProcessed,
    ReservationNotFound,
)
from ..models.account import CreditAccount, LedgerTotals
from ..models.base import DBSerializableModel
from ..models.ledger import LedgerEntry
from ..models.notification import (
    NotificationEvent,
    NotificationStatus,
    NotificationType,
)
from ..models.reservation import Reservation, ReservationStatus
from ..models.transaction import CreditTransaction


TModel = TypeVar("TModel", bound=DBSerializableModel)

INDEXED_MODELS: List[Type[DBSerializableModel]] = [
    CreditTransaction,
    Reservation,
    NotificationEvent,
    LedgerEntry,
]


class MongoDBManager(BaseDBManager):
    """
    MongoDB implementation of BaseDBManager using motor (async driver).

    IDs are stored as string-based `_id` fields and mirrored in the `id`
    attribute of each Pydantic model, which keeps the rest of the system
    agnostic of MongoDB specifics.

    `locked()` serializes callers in this process with an `asyncio.Lock`
    per account and opens a multi-document transaction (replica set
    required). `get_for_update()` bumps `lock_version` on the account
    document inside that transaction, which write-locks the document
    against other processes until commit; a competing transaction aborts
    with a transient write conflict, surfaced as `AccountLockTimeout`.
    """

    def __init__(self, database: AsyncIOMotorDatabase) -> None:
        self._db = database
        self._local_locks = AccountLocks()
        self._session: ContextVar[Optional[AsyncIOMotorClientSession]] = ContextVar(
            "credit_ledger_mongo_session", default=None
        )

    @classmethod
    def from_client_uri(cls, uri: str, db_name: str) -> "MongoDBManager":
        client = AsyncIOMotorClient(uri, tz_aware=False)
        return cls(client[db_name])

    async def ensure_indexes(self) -> None:
        """Create the collection indexes each model declares."""
        for model in INDEXED_MODELS:
            col = self._db[model.collection_name]
            for index in model.indexes:
                options: Dict[str, Any] = {"unique": index.get("unique", False)}
                if index.get("sparse"):
                    options["sparse"] = True
                await col.create_index(list(index["fields"]), **options)

    @asynccontextmanager
    async def locked(self, account_id: str, timeout: float) -> AsyncIterator[None]:
        async with self._local_locks.hold(account_id, timeout):
            try:
                async with await self._db.client.start_session() as session:
                    async with session.start_transaction(
                        max_commit_time_ms=int(timeout * 1000)
                    ):
                        token = self._session.set(session)
                        try:
                            yield
                        finally:
                            self._session.reset(token)
            except OperationFailure as exc:
                if exc.has_error_label("TransientTransactionError") or exc.has_error_label(
                    "UnknownTransactionCommitResult"
                ):
                    raise AccountLockTimeout(account_id, timeout) from exc
                raise

    # Helper utilities
    @staticmethod
    def _prepare_insert(model: TModel) -> Dict[str, Any]:
        data = model.serialize_for_db()
        model_id = getattr(model, "id", None)
        if not model_id:
            model_id = uuid4().hex
            setattr(model, "id", model_id)
            data["id"] = model_id
        data["_id"] = model_id
        return data

    @staticmethod
    def _prepare_update(model: TModel) -> Dict[str, Any]:
        data = model.serialize_for_db()
        model_id = getattr(model, "id", None)
        if not model_id:
            raise ValueError("Model must have id to be updated")
        data["_id"] = model_id
        return data

    @staticmethod
    def _decode(model_cls: Type[TModel], doc: Optional[Mapping[str, Any]]) -> Optional[TModel]:
        if doc is None:
            return None
        data = dict(doc)
        if "_id" in data and "id" not in data:
            data["id"] = str(data["_id"])
        data.pop("_id", None)
        return model_cls.model_validate(data)

    # Account store
    async def create_account(self, account_id: str) -> CreditAccount:
        col = self._db[CreditAccount.collection_name]
        data = self._prepare_insert(CreditAccount(id=account_id))
        try:
            await col.update_one(
                {"_id": account_id},
                {"$setOnInsert": data},
                upsert=True,
                session=self._session.get(),
            )
        except DuplicateKeyError:
            # Lost an upsert race; the account exists now.
            pass
        doc = await col.find_one({"_id": account_id}, session=self._session.get())
        return self._decode(CreditAccount, doc)  # type: ignore[return-value]

    async def get_account(self, account_id: str) -> Optional[CreditAccount]:
        col = self._db[CreditAccount.collection_name]
        doc = await col.find_one({"_id": account_id}, session=self._session.get())
        return self._decode(CreditAccount, doc)

    async def get_for_update(self, account_id: str) -> Optional[CreditAccount]:
        session = self._session.get()
        if session is None:
            raise RuntimeError(f"get_for_update({account_id!r}) called outside locked()")
        col = self._db[CreditAccount.collection_name]
        doc = await col.find_one_and_update(
            {"_id": account_id},
            {"$inc": {"lock_version": 1}},
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        return self._decode(CreditAccount, doc)

    async def update_account(self, account: CreditAccount) -> CreditAccount:
        col = self._db[CreditAccount.collection_name]
        data = self._prepare_update(account)
        await col.replace_one(
            {"_id": data["_id"]}, data, upsert=False, session=self._session.get()
        )
        return account

    # Transaction log
    async def append_transaction(self, tx: CreditTransaction) -> CreditTransaction:
        col = self._db[CreditTransaction.collection_name]
        data = self._prepare_insert(tx)
        try:
            await col.insert_one(data, session=self._session.get())
        except DuplicateKeyError as exc:
            if tx.idempotency_key is None:
                raise
            raise IdempotencyKeyTaken(tx.idempotency_key) from exc
        return tx

    async def get_transaction_by_idempotency_key(
        self, idempotency_key: str
    ) -> Optional[CreditTransaction]:
        col = self._db[CreditTransaction.collection_name]
        doc = await col.find_one(
            {"idempotency_key": idempotency_key}, session=self._session.get()
        )
        return self._decode(CreditTransaction, doc)

    async def get_transactions(
        self, account_id: str, limit: int, offset: int
    ) -> tuple[List[CreditTransaction], int]:
        col = self._db[CreditTransaction.collection_name]
        query = {"account_id": account_id}
        cursor = (
            col.find(query)
            .sort([("created_at", DESCENDING), ("_id", DESCENDING)])
            .skip(offset)
            .limit(limit)
        )
        docs = await cursor.to_list(length=limit)
        total = await col.count_documents(query)
        return [self._decode(CreditTransaction, d) for d in docs], total  # type: ignore[misc]

    async def get_ledger_totals(self, account_id: str) -> LedgerTotals:
        col = self._db[CreditTransaction.collection_name]
        pipeline = [
            {"$match": {"account_id": account_id}},
            {
                "$group": {
                    "_id": None,
                    "net": {"$sum": "$amount"},
                    "earned": {"$sum": {"$cond": [{"$gt": ["$amount", 0]}, "$amount", 0]}},
                    "spent": {
                        "$sum": {"$cond": [{"$lt": ["$amount", 0]}, {"$abs": "$amount"}, 0]}
                    },
                    "count": {"$sum": 1},
                }
            },
        ]
        rows = await col.aggregate(pipeline, session=self._session.get()).to_list(length=1)
        if not rows:
            return LedgerTotals()
        row = rows[0]
        return LedgerTotals(
            net=row["net"], earned=row["earned"], spent=row["spent"], count=row["count"]
        )

    # Reservation table
    async def insert_reservation(self, reservation: Reservation) -> Reservation:
        col = self._db[Reservation.collection_name]
        data = self._prepare_insert(reservation)
        await col.insert_one(data, session=self._session.get())
        return reservation

    async def get_reservation(self, reservation_id: str) -> Optional[Reservation]:
        col = self._db[Reservation.collection_name]
        doc = await col.find_one({"_id": reservation_id}, session=self._session.get())
        return self._decode(Reservation, doc)

    async def sum_pending_unexpired(self, account_id: str, now: datetime) -> int:
        col = self._db[Reservation.collection_name]
        pipeline = [
            {
                "$match": {
                    "account_id": account_id,
                    "status": ReservationStatus.PENDING.value,
                    "expires_at": {"$gt": now},
                }
            },
            {"$group": {"_id": None, "total": {"$sum": "$amount"}}},
        ]
        rows = await col.aggregate(pipeline, session=self._session.get()).to_list(length=1)
        return int(rows[0]["total"]) if rows else 0

    async def transition_reservation(
        self,
        reservation_id: str,
        from_status: ReservationStatus,
        to_status: ReservationStatus,
        at: datetime,
    ) -> Reservation:
        col = self._db[Reservation.collection_name]
        update: Dict[str, Any] = {"status": to_status.value}
        if to_status is ReservationStatus.COMMITTED:
            update["committed_at"] = at
        elif to_status is ReservationStatus.RELEASED:
            update["released_at"] = at

        session = self._session.get()
        doc = await col.find_one_and_update(
            {"_id": reservation_id, "status": from_status.value},
            {"$set": update},
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        if doc is not None:
            return self._decode(Reservation, doc)  # type: ignore[return-value]

        current = await col.find_one({"_id": reservation_id}, session=session)
        if current is None:
            raise ReservationNotFound(reservation_id)
        raise ReservationAlreadyProcessed(reservation_id, current["status"])

    async def find_expired_pending(self, now: datetime) -> Iterable[Reservation]:
        col = self._db[Reservation.collection_name]
        cursor = col.find(
            {"status": ReservationStatus.PENDING.value, "expires_at": {"$lte": now}}
        ).sort("expires_at", 1)
        docs = await cursor.to_list(length=None)
        return [self._decode(Reservation, d) for d in docs]  # type: ignore[misc]

    # Notifications
    async def add_notification_event(
        self, notification: NotificationEvent
    ) -> NotificationEvent:
        col = self._db[NotificationEvent.collection_name]
        data = self._prepare_insert(notification)
        await col.insert_one(data)
        return notification

    async def get_latest_notification(
        self, account_id: str, notification_type: NotificationType
    ) -> Optional[NotificationEvent]:
        col = self._db[NotificationEvent.collection_name]
        doc = await col.find_one(
            {
                "account_id": account_id,
                "notification_type": notification_type.value,
                "status": NotificationStatus.QUEUED.value,
            },
            sort=[("created_at", DESCENDING)],
        )
        return self._decode(NotificationEvent, doc)

    # Ledger audit
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        col = self._db[LedgerEntry.collection_name]
        data = self._prepare_insert(entry)
        await col.insert_one(data)
        return entry
