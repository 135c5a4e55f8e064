"""
Order Service: Redis トランスポート

キュー (point-to-point): トピックごとに Redis Stream を 1 本使う。決済・配送
サービスはコンシューマグループで読むので、各イベントはどれか 1 つの
ワーカーに at-least-once で届く。

バス (broadcast): すべてのイベントを 1 つのチャネルに PUBLISH する。
Pub/Sub は撃ちっぱなしで、落ちている購読者はイベントを取りこぼす。
"""

import logging

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .base import PAYMENT_TOPIC, SHIPMENT_TOPIC, EventEmitter

logger = logging.getLogger(__name__)


class RedisQueueEmitter(EventEmitter):
    transport_errors = (RedisError,)

    def __init__(
        self,
        redis: aioredis.Redis,
        payment_stream: str = "payment_requests",
        shipment_stream: str = "shipment_requests",
        timeout: float = 5.0,
        maxlen: int | None = 100_000,
    ) -> None:
        super().__init__(timeout)
        self.redis = redis
        self.streams = {PAYMENT_TOPIC: payment_stream, SHIPMENT_TOPIC: shipment_stream}
        self.maxlen = maxlen

    async def _send(self, topic: str, payload: bytes) -> None:
        await self.redis.xadd(
            self.streams[topic],
            {"payload": payload.decode()},
            maxlen=self.maxlen,
            approximate=True,
        )

    async def close(self) -> None:
        await self.redis.aclose()


class RedisBusEmitter(EventEmitter):
    transport_errors = (RedisError,)

    def __init__(self, redis: aioredis.Redis, channel: str = "order_events", timeout: float = 5.0) -> None:
        super().__init__(timeout)
        self.redis = redis
        self.channel = channel

    async def _send(self, topic: str, payload: bytes) -> None:
        receivers = await self.redis.publish(self.channel, payload.decode())
        if not receivers:
            logger.warning("No subscriber on %s received the %s event", self.channel, topic)

    async def close(self) -> None:
        await self.redis.aclose()
