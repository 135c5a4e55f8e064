"""
Order Service: 注文レコードとリクエスト/レスポンスモデル

JSON の形はショップ公開の注文フォーマットに従う。注文 id は ``_id``、
所有者は ``userid`` としてシリアライズする。カード情報は ``NewOrder`` にだけ
存在し、永続化される ``Order`` にはカード項目が無い。
したがってカードがストアに届くことはない。

金額は 10 進文字列で受け渡す。JSON の浮動小数点数は書かれた形が失われるため拒否する。
"""

from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Annotated

from pydantic import BeforeValidator, BaseModel, ConfigDict, Field


class OrderStatus(str, Enum):
    CREATED = "Created"
    PENDING_PAYMENT = "PendingPayment"
    PAYMENT_REQUEST_FAILED = "PaymentRequestFailed"
    PAYMENT_FAILED = "PaymentFailed"
    PENDING_SHIPMENT = "PendingShipment"
    SHIPMENT_REQUEST_FAILED = "ShipmentRequestFailed"
    SHIPPED = "Shipped"
    DELIVERED = "Delivered"


def _decimal_string(value):
    if isinstance(value, bool):
        raise ValueError("an amount must be a decimal string")
    if isinstance(value, int):
        value = str(value)
    elif isinstance(value, float):
        raise ValueError(f"an amount must be a decimal string, not the number {value!r}")
    if not isinstance(value, str):
        raise ValueError("an amount must be a decimal string")
    try:
        amount = Decimal(value)
    except InvalidOperation:
        raise ValueError(f"not a decimal amount: {value!r}") from None
    if not amount.is_finite() or amount < 0:
        raise ValueError(f"not a valid amount: {value!r}")
    return value


Amount = Annotated[str, BeforeValidator(_decimal_string)]


class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True)


class Address(_Model):
    street: str | None = None
    city: str | None = None
    zip: str | None = None
    state: str | None = None
    country: str | None = None


class CartItem(_Model):
    id: str | None = None
    description: str | None = None
    quantity: int = Field(default=1, ge=1)
    price: Amount = "0.00"


class Card(_Model):
    type: str
    number: str
    expiry_month: int = Field(alias="expiryMonth", ge=1, le=12)
    expiry_year: int = Field(alias="expiryYear")
    cvv: str


class _CustomerFields(_Model):
    firstname: str | None = None
    lastname: str | None = None
    email: str | None = None
    address: Address | None = None
    delivery: str = ""
    cart: list[CartItem] = Field(default_factory=list)
    total: Amount = "0.00"


class Order(_CustomerFields):
    """保存される注文レコード"""

    order_id: str | None = Field(default=None, alias="_id")
    user_id: str = Field(default="", alias="userid")
    status: OrderStatus = OrderStatus.CREATED
    status_message: str | None = Field(default=None, alias="statusMessage")
    created_at: str | None = Field(default=None, alias="createdAt")
    updated_at: str | None = Field(default=None, alias="updatedAt")

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)

    @classmethod
    def from_json(cls, raw: str | bytes) -> "Order":
        return cls.model_validate_json(raw)


class NewOrder(_CustomerFields):
    """注文受付リクエスト。``user_id`` は通常パスから与えられる。"""

    user_id: str = Field(default="", alias="userid")
    card: Card

    def to_order(self) -> Order:
        """永続化するレコード: カード以外のすべて"""
        return Order.model_validate(self.model_dump(exclude={"card"}))


class PaymentOutcome(_Model):
    message: str
    success: bool


class OrderStatusView(_Model):
    order_id: str
    user_id: str = Field(alias="userid")
    payment: PaymentOutcome

    @classmethod
    def pending(cls, order: Order) -> "OrderStatusView":
        return cls(
            order_id=order.order_id,
            user_id=order.user_id,
            payment=PaymentOutcome(message="pending payment", success=False),
        )
