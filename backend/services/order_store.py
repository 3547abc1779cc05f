"""
Order Store - Key-value persistence for Order records, keyed by id.
Implements a pluggable store interface so the lifecycle controller never
reaches into a concrete backend.

MongoOrderStore: production store on the `orders` collection
InMemoryOrderStore: dev mode (no MONGO_URL) and tests
"""
import copy
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, List, Optional

from database import database
from models import Order

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Base exception for store operations."""
    pass


class OrderNotFoundError(StoreError):
    """Order id not present in the store."""

    def __init__(self, order_id: str):
        super().__init__(f"Order not found: {order_id}")
        self.order_id = order_id


def _to_document(order: Order) -> Dict:
    """Serialise for storage (dates as ISO strings, enums as values)."""
    return order.model_dump(mode="json")


class OrderStore(ABC):
    """Abstract base class for order persistence."""

    @abstractmethod
    async def list(self) -> List[Order]:
        pass

    @abstractmethod
    async def get(self, order_id: str) -> Order:
        """Return the order or raise OrderNotFoundError."""
        pass

    @abstractmethod
    async def upsert(self, order: Order) -> Order:
        """Insert or replace by id. Returns the stored order."""
        pass

    @abstractmethod
    async def delete(self, order_id: str) -> None:
        """Remove the order or raise OrderNotFoundError."""
        pass

    async def find(self, order_id: str) -> Optional[Order]:
        try:
            return await self.get(order_id)
        except OrderNotFoundError:
            return None


class MongoOrderStore(OrderStore):
    """MongoDB-backed store."""

    def __init__(self, db=None):
        self._db = db

    @property
    def collection(self):
        db = self._db if self._db is not None else database.get_db()
        return db.orders

    async def list(self) -> List[Order]:
        try:
            cursor = self.collection.find({}, {"_id": 0}).sort("created_on", -1)
            docs = await cursor.to_list(length=None)
        except Exception as e:
            raise StoreError(f"Failed to list orders: {e}") from e
        return [Order(**doc) for doc in docs]

    async def get(self, order_id: str) -> Order:
        try:
            doc = await self.collection.find_one({"id": order_id}, {"_id": 0})
        except Exception as e:
            raise StoreError(f"Failed to read order {order_id}: {e}") from e
        if not doc:
            raise OrderNotFoundError(order_id)
        return Order(**doc)

    async def upsert(self, order: Order) -> Order:
        stored = order.model_copy(update={"updated_at": datetime.now(timezone.utc)})
        try:
            await self.collection.replace_one(
                {"id": stored.id},
                _to_document(stored),
                upsert=True,
            )
        except Exception as e:
            raise StoreError(f"Failed to save order {order.id}: {e}") from e
        logger.info(f"Order saved: {stored.id}")
        return stored

    async def delete(self, order_id: str) -> None:
        try:
            result = await self.collection.delete_one({"id": order_id})
        except Exception as e:
            raise StoreError(f"Failed to delete order {order_id}: {e}") from e
        if result.deleted_count == 0:
            raise OrderNotFoundError(order_id)
        logger.info(f"Order deleted: {order_id}")


class InMemoryOrderStore(OrderStore):
    """Process-local store. Orders are copied in and out so callers never share state."""

    def __init__(self, orders: Optional[List[Order]] = None):
        self._orders: Dict[str, Dict] = {}
        for order in orders or []:
            self._orders[order.id] = _to_document(order)

    async def list(self) -> List[Order]:
        return [Order(**copy.deepcopy(doc)) for doc in self._orders.values()]

    async def get(self, order_id: str) -> Order:
        doc = self._orders.get(order_id)
        if doc is None:
            raise OrderNotFoundError(order_id)
        return Order(**copy.deepcopy(doc))

    async def upsert(self, order: Order) -> Order:
        stored = order.model_copy(update={"updated_at": datetime.now(timezone.utc)})
        self._orders[stored.id] = _to_document(stored)
        return stored

    async def delete(self, order_id: str) -> None:
        if self._orders.pop(order_id, None) is None:
            raise OrderNotFoundError(order_id)


# Global dev-mode store, used when MongoDB is not configured
_memory_store = InMemoryOrderStore()
_memory_store_warned = False


def get_order_store() -> OrderStore:
    """Mongo store when the database is connected, in-memory store otherwise."""
    global _memory_store_warned
    if database.get_db() is not None:
        return MongoOrderStore()
    if not _memory_store_warned:
        logger.warning("MongoDB not connected - orders are kept in memory only")
        _memory_store_warned = True
    return _memory_store
