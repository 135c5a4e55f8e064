"""
Order Service: 設定 (Configuration)

設定はすべて環境変数から読む。``Settings.from_env()`` はプロセス起動時に
1 回だけ呼ばれ、ストアとトランスポートはここで選ぶ。
"""

import os
import socket
from typing import Literal

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError


class Settings(BaseModel):
    order_store: Literal["memory", "sql", "redis"] = "memory"
    database_url: str = "sqlite+aiosqlite:///./orders.db"
    redis_url: str = "redis://localhost:6379"

    event_transport: Literal["log", "memory", "redis-queue", "redis-bus", "http"] = "log"
    payment_stream: str = "payment_requests"
    shipment_stream: str = "shipment_requests"
    event_channel: str = "order_events"
    payment_url: str = ""
    shipment_url: str = ""

    store_timeout: float = Field(default=5.0, gt=0)
    emit_timeout: float = Field(default=5.0, gt=0)
    max_conflict_retries: int = Field(default=3, ge=0)

    consumer_enabled: bool = False
    payment_response_stream: str = "payment_responses"
    shipment_update_stream: str = "shipment_updates"
    consumer_group: str = "order-service"
    consumer_name: str = Field(default_factory=socket.gethostname)
    consumer_claim_idle_ms: int = Field(default=30_000, gt=0)
    consumer_max_deliveries: int = Field(default=5, ge=1)

    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ=None) -> "Settings":
        """各フィールドを大文字の環境変数名から読む。未設定ならデフォルトのまま。"""
        environ = os.environ if environ is None else environ
        values = {
            name: environ[name.upper()]
            for name in cls.model_fields
            if name.upper() in environ
        }
        try:
            return cls(**values)
        except PydanticValidationError as e:
            raise ValidationError(f"invalid configuration: {e}") from e
