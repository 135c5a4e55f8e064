"""
Order Service: 注文レコードストアの契約 (Order Record Store)

全バックエンド共通のシングルテーブル構成:

    pk = "ORDER"          エンティティ種別マーカー
    sk = <order id>       種別内の主キー
    owner_id = <user id>  ユーザー別検索のために非正規化した所有者
    status                現在のライフサイクル状態
    payload               注文そのもの (JSON ドキュメント)

すべての呼び出しは ``timeout`` 秒で打ち切る。ドライバのエラーとタイムアウトは
``StorageReadError`` / ``StorageWriteError`` として返し、呼び出し側
(またはトランスポートの再配送) が再試行できるようにする。
読めないレコードは ``UnreadableRecordError`` となり、再試行しても直らない。
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import datetime, timezone
from uuid import uuid4

from pydantic import ValidationError as PydanticValidationError

from ..errors import (
    ConcurrentUpdateError,
    OrderServiceError,
    StorageReadError,
    StorageWriteError,
    UnreadableRecordError,
)
from ..models import Order, OrderStatus

logger = logging.getLogger(__name__)

ENTITY_TYPE = "ORDER"


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def decode_record(order_id: str, payload: str | bytes) -> Order:
    """主キーで読んだ 1 件をデコードする。読めなければ UnreadableRecordError。"""
    try:
        return Order.from_json(payload)
    except PydanticValidationError as e:
        logger.error("Order record %s is unreadable: %s", order_id, e)
        raise UnreadableRecordError(f"order {order_id} is unreadable") from e


def decode_records(payloads: Iterable[str | bytes | None]) -> list[Order]:
    """一覧用のデコード。読めないレコードはログに残して読み飛ばす。"""
    orders = []
    for payload in payloads:
        if payload is None:
            continue
        try:
            orders.append(Order.from_json(payload))
        except PydanticValidationError as e:
            logger.warning("Skipping undecodable order record: %s", e)
    return orders


class OrderStore(ABC):
    """保存先に依存しない注文の永続化。"""

    # ストレージエラーに変換するドライバ例外
    backend_errors: tuple[type[BaseException], ...] = ()

    def __init__(self, timeout: float = 5.0) -> None:
        self.timeout = timeout

    # ── 公開契約 ────────────────────────────────────────────────────────────

    async def create(self, order: Order) -> Order:
        """id が無ければ採番し、レコードを永続化する。"""
        now = utcnow()
        order = order.model_copy(
            update={
                "order_id": order.order_id or str(uuid4()),
                "created_at": order.created_at or now,
                "updated_at": now,
            }
        )
        return await self._bounded(self._create(order), StorageWriteError, "create order")

    async def get(self, order_id: str) -> Order:
        return await self._bounded(self._get(order_id), StorageReadError, "read order")

    async def get_all(self) -> list[Order]:
        return await self._bounded(self._get_all(), StorageReadError, "list orders")

    async def get_by_user(self, user_id: str) -> list[Order]:
        return await self._bounded(self._get_by_user(user_id), StorageReadError, "list user orders")

    async def update_status(
        self,
        order_number: str,
        new_status: OrderStatus,
        *,
        expected_status: OrderStatus | None = None,
        message: str | None = None,
    ) -> Order:
        """
        1 件の注文の状態を読み取り・変更・書き戻しする。

        書き込みは読み取った状態を条件とする。同じ注文が並行して更新されて
        いれば上書きせず ``ConcurrentUpdateError`` で失敗する。
        ``expected_status`` を渡した場合、保存済みの状態がそれと一致しなければならない。
        """
        return await self._bounded(
            self._update_status(order_number, new_status, expected_status, message),
            StorageWriteError,
            "update order status",
        )

    async def setup(self) -> None:
        """バックエンドに必要なスキーマを作成する。"""

    async def close(self) -> None:
        """バックエンドのクライアントを解放する。"""

    # ── バックエンド実装 ──────────────────────────────────────────────────────

    @abstractmethod
    async def _create(self, order: Order) -> Order: ...

    @abstractmethod
    async def _get(self, order_id: str) -> Order: ...

    @abstractmethod
    async def _get_all(self) -> list[Order]: ...

    @abstractmethod
    async def _get_by_user(self, user_id: str) -> list[Order]: ...

    @abstractmethod
    async def _update_status(
        self,
        order_number: str,
        new_status: OrderStatus,
        expected_status: OrderStatus | None,
        message: str | None,
    ) -> Order: ...

    # ── ヘルパー ────────────────────────────────────────────────────────────────────

    @staticmethod
    def _with_status(order: Order, new_status: OrderStatus, message: str | None) -> Order:
        update = {"status": new_status, "updated_at": utcnow()}
        if message is not None:
            update["status_message"] = message
        return order.model_copy(update=update)

    @staticmethod
    def _check_expected(order: Order, expected_status: OrderStatus | None) -> None:
        if expected_status is not None and order.status != expected_status:
            raise ConcurrentUpdateError(
                f"order {order.order_id} is {order.status.value}, expected {expected_status.value}"
            )

    async def _bounded(self, coro, error_cls: type[OrderServiceError], what: str):
        try:
            return await asyncio.wait_for(coro, self.timeout)
        except asyncio.TimeoutError:
            raise error_cls(f"{what} timed out after {self.timeout}s") from None
        except OrderServiceError:
            raise
        except self.backend_errors as e:
            logger.exception("Storage backend failed to %s", what)
            raise error_cls(f"{what} failed: {e}") from e
