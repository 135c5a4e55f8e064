"""
Order Service: HTTP トランスポート

各イベントを決済サービスまたは配送サービスに POST する。
2xx 以外の応答は引き渡し失敗とみなす。
"""

import httpx

from ..errors import EmitError
from .base import PAYMENT_TOPIC, SHIPMENT_TOPIC, EventEmitter


class HttpEmitter(EventEmitter):
    transport_errors = (httpx.HTTPError,)

    def __init__(
        self,
        client: httpx.AsyncClient,
        payment_url: str,
        shipment_url: str,
        timeout: float = 5.0,
    ) -> None:
        super().__init__(timeout)
        self.client = client
        self.urls = {PAYMENT_TOPIC: payment_url, SHIPMENT_TOPIC: shipment_url}

    async def _send(self, topic: str, payload: bytes) -> None:
        url = self.urls.get(topic)
        if not url:
            raise EmitError(f"no URL configured for {topic} events")
        resp = await self.client.post(
            url,
            content=payload,
            headers={"content-type": "application/json"},
        )
        resp.raise_for_status()

    async def close(self) -> None:
        await self.client.aclose()
