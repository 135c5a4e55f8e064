"""Redis Streams consumer against fakeredis: ack, redelivery and dead-lettering."""

import asyncio
import json
import logging

from fakeredis import aioredis as fake_aioredis
from redis.exceptions import ConnectionError as RedisConnectionError

from order_service.consumer import StreamConsumer
from order_service.coordinator import OrderCoordinator
from order_service.emitter import InMemoryEmitter
from order_service.models import Order, OrderStatus
from order_service.store import InMemoryOrderStore

from conftest import make_new_order

PAYMENTS = "payment_responses"
SHIPMENTS = "shipment_updates"


def _payment_payload(order_id, success=True):
    return json.dumps(
        {
            "metadata": {"domain": "Payment", "source": "ValidateCreditCard", "type": "CreditCardValidated"},
            "data": {"orderID": order_id, "success": success, "message": "ok"},
        }
    )


class Harness:
    def __init__(self, redis_server, **consumer_options):
        self.redis = fake_aioredis.FakeRedis(server=redis_server, decode_responses=True)
        self.store = InMemoryOrderStore()
        self.emitter = InMemoryEmitter()
        self.coordinator = OrderCoordinator(self.store, self.emitter)
        self.consumer = StreamConsumer(
            self.redis,
            self.coordinator,
            payment_stream=PAYMENTS,
            shipment_stream=SHIPMENTS,
            consumer="test-worker",
            **consumer_options,
        )

    async def pending(self, stream):
        return await self.redis.xpending_range(stream, "order-service", min="-", max="+", count=10)


def test_handled_message_is_acked(redis_server):
    async def scenario():
        h = Harness(redis_server)
        await h.consumer.ensure_groups()
        order_id = (await h.coordinator.place_order(make_new_order())).order_id
        await h.redis.xadd(PAYMENTS, {"payload": _payment_payload(order_id)})

        acked = await h.consumer.poll_once()

        return acked, await h.pending(PAYMENTS), await h.store.get(order_id), h.emitter

    acked, pending, order, emitter = asyncio.run(scenario())

    assert acked == 1
    assert pending == []
    assert order.status == OrderStatus.PENDING_SHIPMENT
    assert len(emitter.messages("shipment")) == 1


def test_shipment_update_is_routed_to_the_shipment_handler(redis_server):
    async def scenario():
        h = Harness(redis_server)
        await h.consumer.ensure_groups()
        order_id = (await h.coordinator.place_order(make_new_order())).order_id
        await h.redis.xadd(PAYMENTS, {"payload": _payment_payload(order_id)})
        await h.consumer.poll_once()
        await h.redis.xadd(
            SHIPMENTS,
            {"payload": json.dumps({"data": {"orderNumber": order_id, "status": "Delivered"}})},
        )

        await h.consumer.poll_once()

        return await h.store.get(order_id)

    assert asyncio.run(scenario()).status == OrderStatus.DELIVERED


def test_ensure_groups_is_repeatable(redis_server):
    async def scenario():
        h = Harness(redis_server)
        await h.consumer.ensure_groups()
        await h.consumer.ensure_groups()
        return await h.redis.xinfo_groups(PAYMENTS)

    groups = asyncio.run(scenario())
    assert [g["name"] for g in groups] == ["order-service"]


def test_malformed_message_is_dead_lettered(redis_server):
    async def scenario():
        h = Harness(redis_server)
        await h.consumer.ensure_groups()
        bad_id = await h.redis.xadd(PAYMENTS, {"payload": "{not json"})
        await h.redis.xadd(PAYMENTS, {"unexpected": "field"})

        acked = await h.consumer.poll_once()

        return bad_id, acked, await h.pending(PAYMENTS), await h.redis.xrange(f"{PAYMENTS}:dead")

    bad_id, acked, pending, dead = asyncio.run(scenario())

    assert acked == 2
    assert pending == []
    assert len(dead) == 2
    first = dead[0][1]
    assert first["original_id"] == bad_id
    assert first["payload"] == "{not json"
    assert "CreditCardValidated" in first["error"]
    assert "no payload" in dead[1][1]["error"]


def test_retryable_failure_stays_pending_until_reclaimed(redis_server):
    async def scenario():
        h = Harness(redis_server, claim_idle_ms=5)
        await h.consumer.ensure_groups()
        await h.redis.xadd(PAYMENTS, {"payload": _payment_payload("o-late")})

        first = await h.consumer.poll_once()
        still_pending = await h.pending(PAYMENTS)

        # The order lands after its payment outcome.
        await h.store.create(Order(order_id="o-late", user_id="u1", status=OrderStatus.PENDING_PAYMENT))
        await asyncio.sleep(0.05)
        second = await h.consumer.poll_once()

        return first, still_pending, second, await h.pending(PAYMENTS), await h.store.get("o-late")

    first, still_pending, second, pending_after, order = asyncio.run(scenario())

    assert first == 0
    assert len(still_pending) == 1
    assert second == 1
    assert pending_after == []
    assert order.status == OrderStatus.PENDING_SHIPMENT


def test_message_is_dead_lettered_after_max_deliveries(redis_server):
    async def scenario():
        h = Harness(redis_server, claim_idle_ms=5, max_deliveries=1)
        await h.consumer.ensure_groups()
        await h.redis.xadd(PAYMENTS, {"payload": _payment_payload("o-never")})

        await h.consumer.poll_once()
        await asyncio.sleep(0.05)
        acked = await h.consumer.poll_once()

        return acked, await h.pending(PAYMENTS), await h.redis.xrange(f"{PAYMENTS}:dead")

    acked, pending, dead = asyncio.run(scenario())

    assert acked == 1
    assert pending == []
    assert len(dead) == 1
    assert "gave up after 1 deliveries" in dead[0][1]["error"]


def test_unreadable_order_is_dead_lettered_at_once(redis_server):
    async def scenario():
        h = Harness(redis_server)
        await h.consumer.ensure_groups()
        await h.store.put_raw("o-bad", "u1", '{"_id": "o-bad", "status": "Bogus"}')
        await h.redis.xadd(PAYMENTS, {"payload": _payment_payload("o-bad")})

        acked = await h.consumer.poll_once()

        return acked, await h.pending(PAYMENTS), await h.redis.xrange(f"{PAYMENTS}:dead")

    acked, pending, dead = asyncio.run(scenario())

    assert acked == 1
    assert pending == []
    assert dead[0][1]["error"] == "order o-bad is unreadable"


class _UnreachableAtStartRedis:
    """Refuses group creation a given number of times, then stops the loop after one read."""

    def __init__(self, redis, stop, refusals=1):
        self._redis = redis
        self._stop = stop
        self.refusals = refusals

    def __getattr__(self, name):
        return getattr(self._redis, name)

    async def xgroup_create(self, *args, **kwargs):
        if self.refusals:
            self.refusals -= 1
            raise RedisConnectionError("Connection refused")
        return await self._redis.xgroup_create(*args, **kwargs)

    async def xreadgroup(self, *args, **kwargs):
        response = await self._redis.xreadgroup(*args, **kwargs)
        self._stop.set()
        return response


def test_run_survives_redis_being_down_at_startup(redis_server, caplog):
    caplog.set_level(logging.INFO, logger="order_service.consumer")

    async def scenario():
        h = Harness(redis_server)
        stop = asyncio.Event()
        h.consumer.redis = _UnreachableAtStartRedis(h.redis, stop)
        order_id = (await h.coordinator.place_order(make_new_order())).order_id
        await h.redis.xadd(PAYMENTS, {"payload": _payment_payload(order_id)})

        await asyncio.wait_for(h.consumer.run(stop, block_ms=None, retry_delay=0.01), timeout=5)

        return await h.store.get(order_id), await h.pending(PAYMENTS)

    order, pending = asyncio.run(scenario())

    assert order.status == OrderStatus.PENDING_SHIPMENT
    assert pending == []
    messages = [r.getMessage() for r in caplog.records]
    assert any(m.startswith("Stream consumer failed") for m in messages)
    assert any(m.startswith("Consuming payment_responses") for m in messages)
