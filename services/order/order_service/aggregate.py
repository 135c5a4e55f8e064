"""
Order Service: 注文集約 (Order Aggregate)

集約は何も書き込まない。保存済みの注文を見て、届いた結果を
適用すべきか、すでにレコードに反映済み (再配送されたメッセージ) か、
現在の状態では受け付けられないかを判断する。

状態遷移:

    PendingPayment ──▶ PendingShipment ──▶ Shipped ──▶ Delivered
         │                    │
         ├──▶ PaymentFailed   └──▶ ShipmentRequestFailed (送信失敗。再配送で
         │                                                 再試行)
         └──▶ PaymentRequestFailed (送信失敗。カードを付けて再依頼)
"""

from .errors import InvalidTransitionError, ValidationError
from .models import Order, OrderStatus

S = OrderStatus

_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    S.CREATED: frozenset({S.PENDING_PAYMENT}),
    S.PENDING_PAYMENT: frozenset({S.PENDING_SHIPMENT, S.PAYMENT_FAILED, S.PAYMENT_REQUEST_FAILED}),
    S.PAYMENT_REQUEST_FAILED: frozenset({S.PENDING_PAYMENT, S.PENDING_SHIPMENT, S.PAYMENT_FAILED}),
    S.PENDING_SHIPMENT: frozenset({S.SHIPPED, S.DELIVERED, S.SHIPMENT_REQUEST_FAILED}),
    S.SHIPMENT_REQUEST_FAILED: frozenset({S.PENDING_SHIPMENT, S.SHIPPED, S.DELIVERED}),
    S.SHIPPED: frozenset({S.DELIVERED}),
    S.PAYMENT_FAILED: frozenset(),
    S.DELIVERED: frozenset(),
}

# 目標の状態に到達済み、または追い越している状態
_REACHED: dict[OrderStatus, frozenset[OrderStatus]] = {
    S.PENDING_PAYMENT: frozenset({S.PENDING_PAYMENT}),
    S.PAYMENT_FAILED: frozenset({S.PAYMENT_FAILED}),
    S.PENDING_SHIPMENT: frozenset({S.PENDING_SHIPMENT, S.SHIPPED, S.DELIVERED}),
    S.SHIPPED: frozenset({S.SHIPPED, S.DELIVERED}),
    S.DELIVERED: frozenset({S.DELIVERED}),
}

_SHIPMENT_STATUS_NAMES = {
    "shipped": S.SHIPPED,
    "sent": S.SHIPPED,
    "intransit": S.SHIPPED,
    "delivered": S.DELIVERED,
}


def parse_shipment_status(value: str) -> OrderStatus:
    """配送サービスが報告したステータス文字列を注文ステータスに変換する。"""
    key = "".join(ch for ch in value.lower() if ch.isalnum())
    try:
        return _SHIPMENT_STATUS_NAMES[key]
    except KeyError:
        raise ValidationError(f"unknown shipment status: {value!r}") from None


class OrderAggregate:
    """
    保存済みレコード 1 件を包む注文の状態機械。

    ``decide_*`` は書き込むべきステータスを返す。レコードに反映済みで
    何もしなくてよい場合は ``None`` を返す。
    """

    def __init__(self, order: Order) -> None:
        self.order = order

    @property
    def status(self) -> OrderStatus:
        return self.order.status

    def can_transition(self, target: OrderStatus) -> bool:
        return target in _TRANSITIONS.get(self.status, frozenset())

    def _decide(self, target: OrderStatus) -> OrderStatus | None:
        if self.status in _REACHED.get(target, frozenset()):
            return None
        if not self.can_transition(target):
            raise InvalidTransitionError(
                f"order {self.order.order_id} cannot move from {self.status.value} to {target.value}"
            )
        return target

    # ── 判断 ──────────────────────────────────────

    def decide_payment(self, success: bool) -> OrderStatus | None:
        return self._decide(S.PENDING_SHIPMENT if success else S.PAYMENT_FAILED)

    def decide_shipment(self, reported_status: str) -> OrderStatus | None:
        return self._decide(parse_shipment_status(reported_status))

    def decide_payment_retry(self) -> OrderStatus | None:
        return self._decide(S.PENDING_PAYMENT)

    def failure_status(self) -> OrderStatus | None:
        """直後のイベントが送れなかったとき、注文を退避させるステータス。"""
        if self.status == S.PENDING_PAYMENT:
            return S.PAYMENT_REQUEST_FAILED
        if self.status == S.PENDING_SHIPMENT:
            return S.SHIPMENT_REQUEST_FAILED
        return None
