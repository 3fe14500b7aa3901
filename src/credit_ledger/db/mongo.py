from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Optional, Type, TypeVar

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from .base import BaseDBManager
from ..models.audit import AuditEvent
from ..models.base import DBSerializableModel, utcnow
from ..models.ledger import LedgerEntry
from ..models.plan import Plan
from ..models.user import UserAccount


TModel = TypeVar("TModel", bound=DBSerializableModel)


class MongoDBManager(BaseDBManager):
    """
    MongoDB implementation of BaseDBManager using motor (async driver).

    Layout:
      - `users`:   `_id` = uid
      - `plans`:   `_id` = plan code
      - `ledgers`: `_id` = "<uid>/<entry id>"; the compound key gives each
        user a private id space, the same guarantee as a per-user
        sub-collection, and makes duplicate inserts fail atomically.

    The `transaction()` context manager is a no-op: every primitive is a
    single-document write, which MongoDB applies atomically.
    """

    def __init__(self, database: AsyncIOMotorDatabase) -> None:
        self._db = database

    @classmethod
    def from_client_uri(cls, uri: str, db_name: str) -> "MongoDBManager":
        client = AsyncIOMotorClient(uri, tz_aware=True)
        return cls(client[db_name])

    async def ensure_indexes(self) -> None:
        ledgers = self._db[LedgerEntry.collection_name]
        await ledgers.create_index([("user_id", ASCENDING), ("created_at", ASCENDING)])
        await self._db[AuditEvent.collection_name].create_index(
            [("user_id", ASCENDING), ("created_at", DESCENDING)]
        )

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        yield

    # Helper utilities
    @staticmethod
    def ledger_doc_id(user_id: str, entry_id: str) -> str:
        return f"{user_id}/{entry_id}"

    @staticmethod
    def _to_doc(model: DBSerializableModel, doc_id: str) -> Dict[str, Any]:
        data = model.serialize_for_db()
        data["_id"] = doc_id
        return data

    @staticmethod
    def _decode(model_cls: Type[TModel], doc: Optional[Mapping[str, Any]]) -> Optional[TModel]:
        if doc is None:
            return None
        data = dict(doc)
        doc_id = data.pop("_id", None)
        key = model_cls.primary_key or "id"
        if key not in data and doc_id is not None:
            data[key] = str(doc_id)
        return model_cls.model_validate(data)

    # Plans
    async def upsert_plan(self, plan: Plan) -> Plan:
        col = self._db[Plan.collection_name]
        data = plan.serialize_for_db()
        created_at = data.pop("created_at", utcnow())
        doc = await col.find_one_and_update(
            {"_id": plan.code},
            {"$set": data, "$setOnInsert": {"created_at": created_at}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return self._decode(Plan, doc) or plan

    async def get_plan(self, code: str) -> Optional[Plan]:
        col = self._db[Plan.collection_name]
        return self._decode(Plan, await col.find_one({"_id": code}))

    async def get_all_plans(self) -> Iterable[Plan]:
        col = self._db[Plan.collection_name]
        docs = await col.find({}).sort("sort_order", ASCENDING).to_list(length=None)
        return [self._decode(Plan, d) for d in docs if d is not None]  # type: ignore[misc]

    # Accounts
    async def get_user(self, user_id: str) -> Optional[UserAccount]:
        col = self._db[UserAccount.collection_name]
        return self._decode(UserAccount, await col.find_one({"_id": user_id}))

    async def create_user_if_absent(self, user: UserAccount) -> UserAccount:
        col = self._db[UserAccount.collection_name]
        doc = await col.find_one_and_update(
            {"_id": user.id},
            {"$setOnInsert": user.serialize_for_db()},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return self._decode(UserAccount, doc) or user

    async def set_balance(
        self, user_id: str, balance: int, plan_code: Optional[str] = None
    ) -> UserAccount:
        col = self._db[UserAccount.collection_name]
        now = utcnow()
        fields: Dict[str, Any] = {"credit_balance": balance, "updated_at": now}
        if plan_code is not None:
            fields["plan_code"] = plan_code
        doc = await col.find_one_and_update(
            {"_id": user_id},
            {"$set": fields, "$setOnInsert": {"id": user_id, "created_at": now}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return self._decode(UserAccount, doc)  # type: ignore[return-value]

    async def increment_balance(self, user_id: str, amount: int) -> UserAccount:
        col = self._db[UserAccount.collection_name]
        now = utcnow()
        doc = await col.find_one_and_update(
            {"_id": user_id},
            {
                "$inc": {"credit_balance": amount},
                "$set": {"updated_at": now},
                "$setOnInsert": {"id": user_id, "created_at": now},
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return self._decode(UserAccount, doc)  # type: ignore[return-value]

    async def decrement_balance_if_sufficient(
        self, user_id: str, amount: int
    ) -> Optional[UserAccount]:
        col = self._db[UserAccount.collection_name]
        doc = await col.find_one_and_update(
            {"_id": user_id, "credit_balance": {"$gte": amount}},
            {"$inc": {"credit_balance": -amount}, "$set": {"updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        return self._decode(UserAccount, doc)

    # Ledger
    async def get_ledger_entry(self, user_id: str, entry_id: str) -> Optional[LedgerEntry]:
        col = self._db[LedgerEntry.collection_name]
        doc = await col.find_one({"_id": self.ledger_doc_id(user_id, entry_id)})
        return self._decode(LedgerEntry, doc)

    async def insert_ledger_entry(self, entry: LedgerEntry) -> bool:
        col = self._db[LedgerEntry.collection_name]
        try:
            await col.insert_one(self._to_doc(entry, self.ledger_doc_id(entry.user_id, entry.id)))
        except DuplicateKeyError:
            return False
        return True

    async def list_ledger_entries(
        self,
        user_id: str,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
        newest_first: bool = False,
    ) -> List[LedgerEntry]:
        col = self._db[LedgerEntry.collection_name]
        query: Dict[str, Any] = {"user_id": user_id}
        if since is not None:
            query["created_at"] = {"$gte": since}
        direction = DESCENDING if newest_first else ASCENDING
        cursor = col.find(query).sort([("created_at", direction), ("_id", direction)])
        if limit is not None:
            cursor = cursor.limit(limit)
        docs = await cursor.to_list(length=None)
        return [self._decode(LedgerEntry, d) for d in docs if d is not None]  # type: ignore[misc]

    # Audit
    async def add_audit_event(self, event: AuditEvent) -> AuditEvent:
        col = self._db[AuditEvent.collection_name]
        data = event.serialize_for_db()
        result = await col.insert_one(data)
        event.id = str(result.inserted_id)
        return event
