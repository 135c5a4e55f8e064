"""
Order Service: ライフサイクル・コーディネータ (Order Lifecycle Coordinator)

コーディネータが Saga を受け持つ。新規注文や結果イベントを受け取り、
集約に判断させ、遷移を永続化してから次のイベントを送る。

    place_order        →  create(PendingPayment)  →  PaymentRequested
    payment_validated  →  PendingShipment          →  ShipmentRequested
                       →  PaymentFailed
    shipment_updated   →  Shipped / Delivered

遷移は最後まで完了する (永続化してから送信) か、失敗として報告される。
イベントは at-least-once で届くため、各遷移はまずレコードに反映済みか
確認し、反映済みなら何もしない (何も送らない)。
"""

import logging
from collections.abc import Callable

from .aggregate import OrderAggregate
from .emitter import EventEmitter
from .errors import ConcurrentUpdateError, EmitError, OrderServiceError, ValidationError
from .events import CreditCardValidated, PaymentRequested, ShipmentRequested, ShipmentStatusUpdate
from .models import Card, NewOrder, Order, OrderStatus, OrderStatusView
from .store import OrderStore

logger = logging.getLogger(__name__)


class OrderCoordinator:
    def __init__(
        self,
        store: OrderStore,
        emitter: EventEmitter,
        max_conflict_retries: int = 3,
    ) -> None:
        self.store = store
        self.emitter = emitter
        self.max_conflict_retries = max_conflict_retries

    # ── コマンド ───────────────────────────────────

    async def place_order(self, new_order: NewOrder) -> OrderStatusView:
        """
        新規注文を記録し、決済を依頼する。

        注文が永続化されるまでは何も送らない。決済依頼を引き渡せなければ
        注文を PaymentRequestFailed に退避させ、EmitError を呼び出し元に返す。
        """
        if not new_order.user_id:
            raise ValidationError("userid is required")
        if not new_order.cart:
            raise ValidationError("cart is empty")

        order = new_order.to_order().model_copy(
            update={"order_id": None, "status": OrderStatus.PENDING_PAYMENT}
        )
        order = await self.store.create(order)
        logger.info("Order %s recorded for user %s", order.order_id, order.user_id)

        await self._request_payment(order, new_order.card)
        return OrderStatusView.pending(order)

    async def payment_validated(self, event: CreditCardValidated) -> Order:
        data = event.data
        order, changed = await self._transition(
            data.order_id,
            lambda agg: agg.decide_payment(data.success),
            message=data.message or None,
        )
        if not changed:
            return order

        logger.info("Payment for order %s: %s", order.order_id, order.status.value)
        if order.status == OrderStatus.PENDING_SHIPMENT:
            await self._emit_or_park(
                order,
                self.emitter.send_shipment_requested,
                ShipmentRequested.for_order(order.order_id, order.delivery),
            )
        return order

    async def shipment_updated(self, event: ShipmentStatusUpdate) -> Order:
        data = event.data
        message = f"tracking number {data.tracking_number}" if data.tracking_number else None
        order, changed = await self._transition(
            data.order_number,
            lambda agg: agg.decide_shipment(data.status),
            message=message,
        )
        if changed:
            logger.info("Shipment status for order %s: %s", order.order_id, order.status.value)
        return order

    async def retry_payment(self, order_id: str, card: Card) -> OrderStatusView:
        """最初の決済依頼が送れなかった注文について、決済を依頼し直す。"""
        order, changed = await self._transition(order_id, lambda agg: agg.decide_payment_retry())
        if changed:
            await self._request_payment(order, card)
        return OrderStatusView.pending(order)

    # ── クエリ ────────────────────────────────────

    async def get_order(self, order_id: str) -> Order:
        return await self.store.get(order_id)

    async def list_orders(self) -> list[Order]:
        return await self.store.get_all()

    async def list_user_orders(self, user_id: str) -> list[Order]:
        return await self.store.get_by_user(user_id)

    # ── 内部処理 ───────────────────────────────────

    async def _request_payment(self, order: Order, card: Card) -> None:
        await self._emit_or_park(
            order,
            self.emitter.send_payment_requested,
            PaymentRequested.for_order(order.order_id, card, order.total),
        )

    async def _emit_or_park(self, order: Order, send: Callable, event) -> None:
        try:
            await send(event)
        except EmitError as e:
            logger.error("Order %s is stranded in %s: %s", order.order_id, order.status.value, e)
            await self._park(order, str(e))
            raise

    async def _park(self, order: Order, reason: str) -> None:
        """次のイベントが送れなかった注文を失敗ステータスに移す。"""
        failure_status = OrderAggregate(order).failure_status()
        if failure_status is None:
            return
        try:
            await self.store.update_status(
                order.order_id,
                failure_status,
                expected_status=order.status,
                message=reason,
            )
        except OrderServiceError:
            logger.exception("Could not mark order %s as %s", order.order_id, failure_status.value)

    async def _transition(
        self,
        order_id: str,
        decide: Callable[[OrderAggregate], OrderStatus | None],
        message: str | None = None,
    ) -> tuple[Order, bool]:
        """
        注文を読み、判断し、条件付きで書き込む。

        結果のレコードと、この呼び出しで変更したかどうかを返す。競合に
        負けたら読み直してやり直す。その時点ではたいてい反映済みと判断される。
        """
        attempt = 0
        while True:
            current = await self.store.get(order_id)
            target = decide(OrderAggregate(current))
            if target is None:
                logger.info(
                    "Order %s is already %s, ignoring redelivered event",
                    order_id,
                    current.status.value,
                )
                return current, False
            try:
                updated = await self.store.update_status(
                    order_id,
                    target,
                    expected_status=current.status,
                    message=message,
                )
                return updated, True
            except ConcurrentUpdateError:
                attempt += 1
                if attempt > self.max_conflict_retries:
                    raise
                logger.warning("Order %s changed concurrently, re-reading (attempt %d)", order_id, attempt)
