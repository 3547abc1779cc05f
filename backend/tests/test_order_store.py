"""
Order store: in-memory isolation and the Mongo-backed calls.
"""
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from services.order_store import (
    InMemoryOrderStore,
    MongoOrderStore,
    OrderNotFoundError,
    StoreError,
    get_order_store,
)

pytestmark = pytest.mark.asyncio


class TestInMemoryOrderStore:

    async def test_upsert_and_get(self, make_order):
        store = InMemoryOrderStore()
        order = make_order()

        saved = await store.upsert(order)
        loaded = await store.get(order.id)

        assert loaded.id == order.id
        assert saved.updated_at is not None
        assert loaded.company_name == "Acqua Lux Veneto"

    async def test_returned_orders_are_copies(self, make_order):
        store = InMemoryOrderStore()
        order = await store.upsert(make_order())

        loaded = await store.get(order.id)
        loaded.workflow.contract_sent = True

        assert (await store.get(order.id)).workflow.contract_sent is False

    async def test_missing_order(self):
        store = InMemoryOrderStore()
        with pytest.raises(OrderNotFoundError):
            await store.get("nope")
        with pytest.raises(OrderNotFoundError):
            await store.delete("nope")
        assert await store.find("nope") is None

    async def test_delete(self, make_order):
        order = make_order()
        store = InMemoryOrderStore([order])
        await store.delete(order.id)
        assert await store.list() == []

    async def test_extra_workflow_flags_survive(self, make_order):
        store = InMemoryOrderStore()
        order = await store.upsert(make_order(flags={"contract_created": True}))
        loaded = await store.get(order.id)
        assert loaded.workflow.model_dump()["contract_created"] is True


class TestMongoOrderStore:

    def _db(self):
        db = MagicMock()
        db.orders = MagicMock()
        return db

    async def test_get_projects_out_mongo_id(self, make_order):
        db = self._db()
        order = make_order()
        db.orders.find_one = AsyncMock(return_value=order.model_dump(mode="json"))

        loaded = await MongoOrderStore(db).get(order.id)

        assert loaded.id == order.id
        db.orders.find_one.assert_awaited_once_with({"id": order.id}, {"_id": 0})

    async def test_get_missing(self):
        db = self._db()
        db.orders.find_one = AsyncMock(return_value=None)
        with pytest.raises(OrderNotFoundError):
            await MongoOrderStore(db).get("missing")

    async def test_upsert_replaces_by_id(self, make_order):
        db = self._db()
        db.orders.replace_one = AsyncMock()
        order = make_order()

        await MongoOrderStore(db).upsert(order)

        args, kwargs = db.orders.replace_one.call_args
        assert args[0] == {"id": order.id}
        assert args[1]["company_name"] == order.company_name
        assert args[1]["created_on"] == order.created_on.isoformat()
        assert kwargs["upsert"] is True

    async def test_driver_errors_become_store_errors(self, make_order):
        db = self._db()
        db.orders.replace_one = AsyncMock(side_effect=RuntimeError("not primary"))
        with pytest.raises(StoreError):
            await MongoOrderStore(db).upsert(make_order())

    async def test_list_sorted_newest_first(self, make_order):
        db = self._db()
        cursor = MagicMock()
        cursor.sort.return_value = cursor
        cursor.to_list = AsyncMock(return_value=[make_order().model_dump(mode="json")])
        db.orders.find.return_value = cursor

        orders = await MongoOrderStore(db).list()

        assert len(orders) == 1
        cursor.sort.assert_called_once_with("created_on", -1)

    async def test_delete_missing(self):
        db = self._db()
        db.orders.delete_one = AsyncMock(return_value=MagicMock(deleted_count=0))
        with pytest.raises(OrderNotFoundError):
            await MongoOrderStore(db).delete("missing")


class TestGetOrderStore:

    async def test_memory_store_without_database(self):
        with patch("services.order_store.database.get_db", return_value=None):
            assert isinstance(get_order_store(), InMemoryOrderStore)

    async def test_mongo_store_when_connected(self):
        with patch("services.order_store.database.get_db", return_value=MagicMock()):
            assert isinstance(get_order_store(), MongoOrderStore)
