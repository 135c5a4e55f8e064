import asyncio
from pathlib import Path

import fakeredis
import pytest
from fakeredis import aioredis as fake_aioredis
from sqlalchemy.ext.asyncio import create_async_engine

from order_service.coordinator import OrderCoordinator
from order_service.emitter import InMemoryEmitter
from order_service.errors import EmitError
from order_service.models import NewOrder
from order_service.store import InMemoryOrderStore, RedisOrderStore, SqlOrderStore


def pytest_collection_modifyitems(config, items):
    """Mark tests by the infrastructure they touch."""
    for item in items:
        name = Path(str(item.fspath)).name
        if name in {"test_aggregate.py", "test_models.py", "test_config.py"}:
            item.add_marker(pytest.mark.domain)
        elif name in {"test_store_contract.py", "test_emitters.py", "test_consumer.py"}:
            item.add_marker(pytest.mark.integration)


def new_order_payload(user_id="u1", total="42.00", **overrides) -> dict:
    payload = {
        "userid": user_id,
        "firstname": "Ada",
        "lastname": "Lovelace",
        "email": "ada@example.com",
        "address": {
            "street": "1 Analytical Way",
            "city": "London",
            "zip": "N1",
            "state": "LDN",
            "country": "UK",
        },
        "delivery": "UPS/FEDEX",
        "card": {
            "type": "Visa",
            "number": "4222222222222",
            "expiryMonth": 12,
            "expiryYear": 2030,
            "cvv": "123",
        },
        "cart": [
            {"id": "sku-1", "description": "Yoga mat", "quantity": "2", "price": "20.00"},
            {"id": "sku-2", "description": "Water bottle", "quantity": 1, "price": "2.00"},
        ],
        "total": total,
    }
    payload.update(overrides)
    return payload


def make_new_order(user_id="u1", total="42.00", **overrides) -> NewOrder:
    return NewOrder.model_validate(new_order_payload(user_id, total, **overrides))


class FailingEmitter(InMemoryEmitter):
    """Records like InMemoryEmitter but refuses the topics listed in ``fail_topics``."""

    def __init__(self, fail_topics=("payment", "shipment")) -> None:
        super().__init__()
        self.fail_topics = set(fail_topics)

    async def _send(self, topic: str, payload: bytes) -> None:
        if topic in self.fail_topics:
            raise EmitError(f"{topic} transport unavailable")
        await super()._send(topic, payload)


@pytest.fixture()
def store():
    return InMemoryOrderStore()


@pytest.fixture()
def emitter():
    return InMemoryEmitter()


@pytest.fixture()
def coordinator(store, emitter):
    return OrderCoordinator(store, emitter)


@pytest.fixture()
def redis_server():
    return fakeredis.FakeServer()


@pytest.fixture()
def fake_redis(redis_server):
    return fake_aioredis.FakeRedis(server=redis_server, decode_responses=True)


@pytest.fixture(params=["memory", "sql", "redis"])
def make_store(request, tmp_path, redis_server):
    """Factory for a fresh, set-up store of each backend."""

    async def factory():
        if request.param == "sql":
            engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")
            order_store = SqlOrderStore(engine)
        elif request.param == "redis":
            order_store = RedisOrderStore(
                fake_aioredis.FakeRedis(server=redis_server, decode_responses=True)
            )
        else:
            order_store = InMemoryOrderStore()
        await order_store.setup()
        return order_store

    return factory


@pytest.fixture()
def run_with_store(make_store):
    """Run ``scenario(store)`` to completion against each backend."""

    def run(scenario):
        async def main():
            order_store = await make_store()
            try:
                return await scenario(order_store)
            finally:
                await order_store.close()

        return asyncio.run(main())

    return run
