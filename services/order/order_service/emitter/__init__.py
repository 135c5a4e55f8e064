"""イベント送信のトランスポート。``Settings.event_transport`` で選ぶ。"""

import httpx
import redis.asyncio as aioredis

from ..config import Settings
from .base import PAYMENT_TOPIC, SHIPMENT_TOPIC, EventEmitter
from .http_transport import HttpEmitter
from .local import InMemoryEmitter, LoggingEmitter
from .redis_transport import RedisBusEmitter, RedisQueueEmitter


def build_emitter(settings: Settings) -> EventEmitter:
    timeout = settings.emit_timeout
    if settings.event_transport == "redis-queue":
        return RedisQueueEmitter(
            aioredis.from_url(settings.redis_url, decode_responses=True),
            settings.payment_stream,
            settings.shipment_stream,
            timeout=timeout,
        )
    if settings.event_transport == "redis-bus":
        return RedisBusEmitter(
            aioredis.from_url(settings.redis_url, decode_responses=True),
            settings.event_channel,
            timeout=timeout,
        )
    if settings.event_transport == "http":
        return HttpEmitter(
            httpx.AsyncClient(timeout=timeout),
            settings.payment_url,
            settings.shipment_url,
            timeout=timeout,
        )
    if settings.event_transport == "memory":
        return InMemoryEmitter(timeout)
    return LoggingEmitter(timeout)


__all__ = [
    "PAYMENT_TOPIC",
    "SHIPMENT_TOPIC",
    "EventEmitter",
    "HttpEmitter",
    "InMemoryEmitter",
    "LoggingEmitter",
    "RedisBusEmitter",
    "RedisQueueEmitter",
    "build_emitter",
]
