"""
Order Service: イベント送信の契約 (Event Emitter)

エミッタは Saga イベントを JSON バイト列にしてトランスポートに渡す。
配送の at-least-once はトランスポート側の保証で、エミッタ自身は成功した
引き渡しを再送しない。失敗 (タイムアウトを含む) はすべて ``EmitError``。
"""

import asyncio
import logging
from abc import ABC, abstractmethod

from ..errors import EmitError
from ..events import Envelope, PaymentRequested, ShipmentRequested

logger = logging.getLogger(__name__)

PAYMENT_TOPIC = "payment"
SHIPMENT_TOPIC = "shipment"


class EventEmitter(ABC):
    # EmitError に変換するトランスポート例外
    transport_errors: tuple[type[BaseException], ...] = ()

    def __init__(self, timeout: float = 5.0) -> None:
        self.timeout = timeout

    async def send_payment_requested(self, event: PaymentRequested) -> None:
        await self._emit(PAYMENT_TOPIC, event)

    async def send_shipment_requested(self, event: ShipmentRequested) -> None:
        await self._emit(SHIPMENT_TOPIC, event)

    async def close(self) -> None:
        """トランスポートのクライアントを解放する。"""

    async def _emit(self, topic: str, event: Envelope) -> None:
        payload = event.to_payload()
        try:
            await asyncio.wait_for(self._send(topic, payload), self.timeout)
        except asyncio.TimeoutError:
            raise EmitError(f"{event.metadata.type} hand-off timed out after {self.timeout}s") from None
        except EmitError:
            raise
        except self.transport_errors as e:
            raise EmitError(f"{event.metadata.type} hand-off failed: {e}") from e
        logger.debug("Emitted %s on %s", event.metadata.type, topic)

    @abstractmethod
    async def _send(self, topic: str, payload: bytes) -> None: ...
