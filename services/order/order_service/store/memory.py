"""
Order Service: プロセス内注文ストア (In-process Order Store)

行は永続バックエンドと同じくシリアライズ済みドキュメントとして保持する。
実際の往復に耐えないものが漏れ出さないようにするため。
ユーザー別検索はフィルタ付きの全件スキャン。

書き込みはストア全体で 1 つのロックで直列化する。
"""

import asyncio

from ..errors import NotFoundError, StorageWriteError
from ..models import Order, OrderStatus
from .base import ENTITY_TYPE, OrderStore, decode_record, decode_records


class InMemoryOrderStore(OrderStore):
    def __init__(self, timeout: float = 5.0) -> None:
        super().__init__(timeout)
        self._rows: dict[tuple[str, str], dict] = {}
        self._lock = asyncio.Lock()

    async def put_raw(self, order_id: str, owner_id: str, payload: str) -> None:
        """検証を通さずに行を書き込む（旧データや壊れたデータの再現用）。"""
        self._rows[(ENTITY_TYPE, order_id)] = {
            "owner_id": owner_id,
            "status": None,
            "payload": payload,
        }

    async def _create(self, order: Order) -> Order:
        key = (ENTITY_TYPE, order.order_id)
        async with self._lock:
            if key in self._rows:
                raise StorageWriteError(f"order {order.order_id} already exists")
            self._rows[key] = {
                "owner_id": order.user_id,
                "status": order.status.value,
                "payload": order.to_json(),
            }
        return order

    async def _get(self, order_id: str) -> Order:
        row = self._rows.get((ENTITY_TYPE, order_id))
        if row is None:
            raise NotFoundError(f"order {order_id} not found")
        return decode_record(order_id, row["payload"])

    async def _get_all(self) -> list[Order]:
        return decode_records(
            row["payload"] for (pk, _), row in list(self._rows.items()) if pk == ENTITY_TYPE
        )

    async def _get_by_user(self, user_id: str) -> list[Order]:
        return decode_records(
            row["payload"]
            for (pk, _), row in list(self._rows.items())
            if pk == ENTITY_TYPE and row["owner_id"] == user_id
        )

    async def _update_status(
        self,
        order_number: str,
        new_status: OrderStatus,
        expected_status: OrderStatus | None,
        message: str | None,
    ) -> Order:
        async with self._lock:
            current = await self._get(order_number)
            self._check_expected(current, expected_status)
            updated = self._with_status(current, new_status, message)
            row = self._rows[(ENTITY_TYPE, order_number)]
            row["status"] = updated.status.value
            row["payload"] = updated.to_json()
        return updated
