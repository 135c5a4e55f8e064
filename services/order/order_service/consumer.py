"""
Order Service: Redis Streams コンシューマ

決済結果と配送状況のストリームをコンシューマグループで読み、
各メッセージをコーディネータに渡す。

  payment_responses  ──▶  CreditCardValidated   ──▶  payment_validated
  shipment_updates   ──▶  ShipmentStatusUpdate  ──▶  shipment_updated

配送は at-least-once:
  - 処理できたメッセージは XACK する
  - 再試行可能な失敗は pending のまま残し、``claim_idle_ms`` 経過後に
    XCLAIM して再処理する
  - 再試行不能な失敗と、``max_deliveries`` 回配送済みのメッセージは
    ``<stream>:dead`` に写して ACK する

各メッセージの ``payload`` フィールドに JSON エンベロープが入っている。
"""

import asyncio
import logging

import redis.asyncio as aioredis
from redis.exceptions import RedisError, ResponseError

from .adapters import decode
from .config import Settings
from .coordinator import OrderCoordinator
from .errors import OrderServiceError, ValidationError
from .events import CreditCardValidated, ShipmentStatusUpdate

logger = logging.getLogger(__name__)


class StreamConsumer:
    def __init__(
        self,
        redis: aioredis.Redis,
        coordinator: OrderCoordinator,
        *,
        payment_stream: str = "payment_responses",
        shipment_stream: str = "shipment_updates",
        group: str = "order-service",
        consumer: str = "order-service-1",
        claim_idle_ms: int = 30_000,
        max_deliveries: int = 5,
        batch_size: int = 10,
    ) -> None:
        self.redis = redis
        self.group = group
        self.consumer = consumer
        self.claim_idle_ms = claim_idle_ms
        self.max_deliveries = max_deliveries
        self.batch_size = batch_size
        self.handlers = {
            payment_stream: (CreditCardValidated, coordinator.payment_validated),
            shipment_stream: (ShipmentStatusUpdate, coordinator.shipment_updated),
        }

    @classmethod
    def from_settings(
        cls, redis: aioredis.Redis, coordinator: OrderCoordinator, settings: Settings
    ) -> "StreamConsumer":
        return cls(
            redis,
            coordinator,
            payment_stream=settings.payment_response_stream,
            shipment_stream=settings.shipment_update_stream,
            group=settings.consumer_group,
            consumer=settings.consumer_name,
            claim_idle_ms=settings.consumer_claim_idle_ms,
            max_deliveries=settings.consumer_max_deliveries,
        )

    async def ensure_groups(self) -> None:
        for stream in self.handlers:
            try:
                await self.redis.xgroup_create(stream, self.group, id="0", mkstream=True)
            except ResponseError as e:
                if "BUSYGROUP" not in str(e):
                    raise

    async def poll_once(self, block_ms: int | None = None) -> int:
        """回収分と新着分を 1 回ずつ処理する。ACK した件数を返す。"""
        acked = await self.reclaim()
        response = await self.redis.xreadgroup(
            self.group,
            self.consumer,
            {stream: ">" for stream in self.handlers},
            count=self.batch_size,
            block=block_ms,
        )
        for stream, messages in response or []:
            for message_id, fields in messages:
                if await self.handle(stream, message_id, fields):
                    acked += 1
        return acked

    async def reclaim(self) -> int:
        """``claim_idle_ms`` より長く pending のメッセージを引き取る。"""
        acked = 0
        for stream in self.handlers:
            pending = await self.redis.xpending_range(
                stream, self.group, min="-", max="+", count=self.batch_size
            )
            for entry in pending:
                if entry["time_since_delivered"] < self.claim_idle_ms:
                    continue
                message_id = entry["message_id"]
                if entry["times_delivered"] >= self.max_deliveries:
                    for _, fields in await self.redis.xrange(stream, message_id, message_id):
                        await self._dead_letter(
                            stream,
                            message_id,
                            fields,
                            f"gave up after {entry['times_delivered']} deliveries",
                        )
                    await self.redis.xack(stream, self.group, message_id)
                    acked += 1
                    continue
                claimed = await self.redis.xclaim(
                    stream, self.group, self.consumer, self.claim_idle_ms, [message_id]
                )
                for claimed_id, fields in claimed:
                    if await self.handle(stream, claimed_id, fields):
                        acked += 1
        return acked

    async def handle(self, stream: str, message_id: str, fields: dict) -> bool:
        """
        メッセージを 1 件適用する。ACK した (処理済みまたはデッドレター行き)
        なら True、再配送のため pending に残したなら False を返す。
        """
        model, handler = self.handlers[stream]
        try:
            if "payload" not in fields:
                raise ValidationError("message has no payload field")
            await handler(decode(model, fields["payload"]))
        except OrderServiceError as e:
            if e.retryable:
                logger.warning("Leaving %s message %s pending: %s", stream, message_id, e)
                return False
            logger.error("Dead-lettering %s message %s: %s", stream, message_id, e)
            await self._dead_letter(stream, message_id, fields, str(e))
        except Exception:
            logger.exception("Failed to process %s message %s", stream, message_id)
            return False
        else:
            logger.info("Handled %s message %s", stream, message_id)

        await self.redis.xack(stream, self.group, message_id)
        return True

    async def _dead_letter(self, stream: str, message_id: str, fields: dict, reason: str) -> None:
        await self.redis.xadd(
            f"{stream}:dead",
            {**fields, "original_id": message_id, "error": reason},
        )

    async def run(
        self,
        shutdown_event: asyncio.Event,
        block_ms: int | None = 1000,
        retry_delay: float = 1.0,
    ) -> None:
        """
        ``shutdown_event`` がセットされるまで消費し続ける。

        グループ作成もループの中で行う。起動時に Redis が落ちていても
        タスクは終了せず、ログを残して再試行する。
        """
        groups_ready = False
        while not shutdown_event.is_set():
            try:
                if not groups_ready:
                    await self.ensure_groups()
                    groups_ready = True
                    logger.info(
                        "Consuming %s as %s/%s",
                        ", ".join(self.handlers),
                        self.group,
                        self.consumer,
                    )
                await self.poll_once(block_ms=block_ms)
            except RedisError:
                logger.exception("Stream consumer failed, retrying in %.1fs", retry_delay)
                await asyncio.sleep(retry_delay)


async def run_consumer(
    redis_url: str,
    coordinator: OrderCoordinator,
    settings: Settings,
    shutdown_event: asyncio.Event,
) -> None:
    redis_conn = aioredis.from_url(redis_url, decode_responses=True)
    consumer = StreamConsumer.from_settings(redis_conn, coordinator, settings)
    try:
        await consumer.run(shutdown_event)
    finally:
        await redis_conn.aclose()
