"""
Transaction Store: the authoritative record of every payment attempt.

Two backends implement the same interface: an in-memory map (default) and a
MongoDB collection through motor. Nothing outside this module depends on the
concrete class.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional, Union

from pydantic import ValidationError
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from shared.utils import DuplicateKeyException, NotFoundException, ValidationException
from offramp.lifecycle import apply_status
from offramp.models import INR_PLACES, TOKEN_PLACES, Transaction, TransactionStatus
from offramp.schemas import TransactionCreate

logger = logging.getLogger(__name__)

# Optimistic update attempts before giving up on a contended record
MAX_CAS_ATTEMPTS = 5


def coerce_draft(draft: Union[TransactionCreate, dict]) -> TransactionCreate:
    if isinstance(draft, TransactionCreate):
        return draft
    try:
        return TransactionCreate.model_validate(draft)
    except ValidationError as e:
        raise ValidationException(
            "Invalid transaction data",
            errors=e.errors(include_url=False, include_context=False, include_input=False),
        )


def build_record(draft: TransactionCreate, transaction_id: int, now: datetime) -> Transaction:
    return Transaction(
        id=transaction_id,
        merchant_tx_id=draft.merchant_tx_id,
        upi_id=draft.upi_id,
        inr_amount=draft.inr_amount.quantize(INR_PLACES),
        token_amount=draft.token_amount.quantize(TOKEN_PLACES),
        crypto_type=draft.crypto_type,
        chain=draft.chain,
        status=TransactionStatus.PENDING,
        wallet_address=draft.wallet_address,
        created_at=now,
        updated_at=now,
    )


class TransactionStore(ABC):

    @abstractmethod
    async def create(self, draft: Union[TransactionCreate, dict]) -> Transaction:
        ...

    @abstractmethod
    async def get_by_id(self, transaction_id: int) -> Transaction:
        ...

    @abstractmethod
    async def get_by_merchant_id(self, merchant_tx_id: str) -> Transaction:
        ...

    @abstractmethod
    async def update_status(
        self,
        transaction_id: int,
        status: TransactionStatus,
        tx_hash: Optional[str] = None,
        onmeta_tx_id: Optional[str] = None,
    ) -> Transaction:
        ...

    @abstractmethod
    async def list_recent(self, limit: int = 10) -> List[Transaction]:
        ...

    async def startup(self) -> None:
        pass

    async def shutdown(self) -> None:
        pass

    async def ping(self) -> str:
        return "connected"


class InMemoryTransactionStore(TransactionStore):

    def __init__(self):
        self._transactions: Dict[int, Transaction] = {}
        self._by_merchant_id: Dict[str, int] = {}
        self._next_id = 1
        self._create_lock = asyncio.Lock()
        self._record_locks: Dict[int, asyncio.Lock] = {}

    async def create(self, draft):
        draft = coerce_draft(draft)
        async with self._create_lock:
            if draft.merchant_tx_id in self._by_merchant_id:
                raise DuplicateKeyException(
                    f"Transaction with merchantTxId {draft.merchant_tx_id} already exists"
                )
            record = build_record(draft, self._next_id, datetime.utcnow())
            self._next_id += 1
            self._transactions[record.id] = record
            self._by_merchant_id[record.merchant_tx_id] = record.id
            self._record_locks[record.id] = asyncio.Lock()
        return record

    async def get_by_id(self, transaction_id):
        record = self._transactions.get(transaction_id)
        if record is None:
            raise NotFoundException("Transaction not found")
        return record

    async def get_by_merchant_id(self, merchant_tx_id):
        transaction_id = self._by_merchant_id.get(merchant_tx_id)
        if transaction_id is None:
            raise NotFoundException("Transaction not found")
        return self._transactions[transaction_id]

    async def update_status(self, transaction_id, status, tx_hash=None, onmeta_tx_id=None):
        lock = self._record_locks.get(transaction_id)
        if lock is None:
            raise NotFoundException("Transaction not found")
        async with lock:
            current = self._transactions[transaction_id]
            updated = apply_status(current, status, tx_hash, onmeta_tx_id)
            self._transactions[transaction_id] = updated
        return updated

    async def list_recent(self, limit=10):
        if limit <= 0:
            return []
        records = sorted(
            self._transactions.values(),
            key=lambda t: (t.created_at, t.id),
            reverse=True,
        )
        return records[:limit]

    async def ping(self):
        return "in-memory"


class MongoTransactionStore(TransactionStore):
    """MongoDB backend; uniqueness is enforced by indexes, ids by a counter document."""

    def __init__(self, database):
        self.db = database
        self.collection = database.transactions
        self.counters = database.counters

    async def startup(self):
        await self.collection.create_index("merchant_tx_id", unique=True)
        await self.collection.create_index("id", unique=True)
        await self.collection.create_index([("created_at", -1), ("id", -1)])

    async def ping(self):
        try:
            await self.db.command("ping")
            return "connected"
        except Exception:
            return "disconnected"

    @staticmethod
    def _to_doc(record: Transaction) -> dict:
        doc = record.model_dump()
        # Decimal is not BSON encodable; strings keep the exact precision
        doc["inr_amount"] = str(record.inr_amount)
        doc["token_amount"] = str(record.token_amount)
        doc["status"] = record.status.value
        doc["crypto_type"] = record.crypto_type.value
        return doc

    @staticmethod
    def _from_doc(doc: dict) -> Transaction:
        doc = dict(doc)
        doc.pop("_id", None)
        return Transaction(**doc)

    async def _next_id(self) -> int:
        counter = await self.counters.find_one_and_update(
            {"_id": "transactions"},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return counter["seq"]

    async def create(self, draft):
        draft = coerce_draft(draft)
        record = build_record(draft, await self._next_id(), datetime.utcnow())
        try:
            await self.collection.insert_one(self._to_doc(record))
        except DuplicateKeyError:
            raise DuplicateKeyException(
                f"Transaction with merchantTxId {draft.merchant_tx_id} already exists"
            )
        # Mongo stores milliseconds; hand back what a later read will return
        return await self.get_by_id(record.id)

    async def get_by_id(self, transaction_id):
        doc = await self.collection.find_one({"id": transaction_id})
        if not doc:
            raise NotFoundException("Transaction not found")
        return self._from_doc(doc)

    async def get_by_merchant_id(self, merchant_tx_id):
        doc = await self.collection.find_one({"merchant_tx_id": merchant_tx_id})
        if not doc:
            raise NotFoundException("Transaction not found")
        return self._from_doc(doc)

    async def update_status(self, transaction_id, status, tx_hash=None, onmeta_tx_id=None):
        for attempt in range(MAX_CAS_ATTEMPTS):
            current = await self.get_by_id(transaction_id)
            updated = apply_status(current, status, tx_hash, onmeta_tx_id)
            doc = await self.collection.find_one_and_update(
                {
                    "id": transaction_id,
                    "status": current.status.value,
                    "updated_at": current.updated_at,
                },
                {"$set": {
                    "status": updated.status.value,
                    "tx_hash": updated.tx_hash,
                    "onmeta_tx_id": updated.onmeta_tx_id,
                    "updated_at": updated.updated_at,
                }},
                return_document=ReturnDocument.AFTER,
            )
            if doc:
                return self._from_doc(doc)
            logger.warning("Concurrent update detected, retrying", extra={
                "transaction_id": transaction_id,
                "attempt": attempt + 1,
            })
        raise RuntimeError(f"Could not update transaction {transaction_id}: too much contention")

    async def list_recent(self, limit=10):
        if limit <= 0:
            return []
        cursor = self.collection.find({}).sort([("created_at", -1), ("id", -1)]).limit(limit)
        docs = await cursor.to_list(length=limit)
        return [self._from_doc(doc) for doc in docs]
