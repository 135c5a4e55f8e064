"""注文ストアのバックエンド。``Settings.order_store`` で選ぶ。"""

from ..config import Settings
from .base import ENTITY_TYPE, OrderStore
from .memory import InMemoryOrderStore
from .redis_kv import RedisOrderStore
from .sql import SqlOrderStore


def build_store(settings: Settings) -> OrderStore:
    if settings.order_store == "sql":
        return SqlOrderStore.from_url(settings.database_url, settings.store_timeout)
    if settings.order_store == "redis":
        return RedisOrderStore.from_url(settings.redis_url, settings.store_timeout)
    return InMemoryOrderStore(settings.store_timeout)


__all__ = [
    "ENTITY_TYPE",
    "InMemoryOrderStore",
    "OrderStore",
    "RedisOrderStore",
    "SqlOrderStore",
    "build_store",
]
