"""
Order Service: Redis 注文ストア

所有者の副インデックス付きのキーバリュー配置:

    <prefix>:ORDER:<order id>   注文ドキュメント (JSON 文字列)
    <prefix>:ORDER              全注文 id の集合 ("pk = ORDER" パーティション)
    <prefix>:owner:<user id>    そのユーザーの注文 id の集合

書き込みは WATCH/MULTI を使い、レコードとインデックスを同時に反映する。
読んでから書くまでに他から注文が変更されていれば、ステータス更新は
``ConcurrentUpdateError`` で失敗する。
"""

import redis.asyncio as aioredis
from redis.exceptions import RedisError, WatchError

from ..errors import ConcurrentUpdateError, NotFoundError, StorageWriteError
from ..models import Order, OrderStatus
from .base import ENTITY_TYPE, OrderStore, decode_record, decode_records


class RedisOrderStore(OrderStore):
    backend_errors = (RedisError,)

    def __init__(self, redis: aioredis.Redis, timeout: float = 5.0, prefix: str = "orders") -> None:
        super().__init__(timeout)
        self.redis = redis
        self.prefix = prefix

    @classmethod
    def from_url(cls, redis_url: str, timeout: float = 5.0) -> "RedisOrderStore":
        return cls(aioredis.from_url(redis_url, decode_responses=True), timeout)

    async def close(self) -> None:
        await self.redis.aclose()

    def _key(self, order_id: str) -> str:
        return f"{self.prefix}:{ENTITY_TYPE}:{order_id}"

    def _index_key(self) -> str:
        return f"{self.prefix}:{ENTITY_TYPE}"

    def _owner_key(self, user_id: str) -> str:
        return f"{self.prefix}:owner:{user_id}"

    async def _create(self, order: Order) -> Order:
        key = self._key(order.order_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                if await pipe.exists(key):
                    raise StorageWriteError(f"order {order.order_id} already exists")
                pipe.multi()
                pipe.set(key, order.to_json())
                pipe.sadd(self._index_key(), order.order_id)
                pipe.sadd(self._owner_key(order.user_id), order.order_id)
                await pipe.execute()
            except WatchError as e:
                raise StorageWriteError(f"order {order.order_id} was written concurrently") from e
        return order

    async def _get(self, order_id: str) -> Order:
        payload = await self.redis.get(self._key(order_id))
        if payload is None:
            raise NotFoundError(f"order {order_id} not found")
        return decode_record(order_id, payload)

    async def _load(self, order_ids) -> list[Order]:
        if not order_ids:
            return []
        payloads = await self.redis.mget([self._key(i) for i in sorted(order_ids)])
        return decode_records(payloads)

    async def _get_all(self) -> list[Order]:
        return await self._load(await self.redis.smembers(self._index_key()))

    async def _get_by_user(self, user_id: str) -> list[Order]:
        return await self._load(await self.redis.smembers(self._owner_key(user_id)))

    async def _update_status(
        self,
        order_number: str,
        new_status: OrderStatus,
        expected_status: OrderStatus | None,
        message: str | None,
    ) -> Order:
        key = self._key(order_number)
        async with self.redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                payload = await pipe.get(key)
                if payload is None:
                    raise NotFoundError(f"order {order_number} not found")
                current = decode_record(order_number, payload)
                self._check_expected(current, expected_status)
                updated = self._with_status(current, new_status, message)
                pipe.multi()
                pipe.set(key, updated.to_json())
                await pipe.execute()
            except WatchError as e:
                raise ConcurrentUpdateError(
                    f"order {order_number} changed while updating to {new_status.value}"
                ) from e
        return updated

    async def put_raw(self, order_id: str, owner_id: str, payload: str) -> None:
        """検証を通さずにレコードを書き込む（旧データや壊れたデータの再現用）。"""
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(self._key(order_id), payload)
            pipe.sadd(self._index_key(), order_id)
            pipe.sadd(self._owner_key(owner_id), order_id)
            await pipe.execute()
