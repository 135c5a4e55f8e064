"""
Order Service: イベント定義

決済サービス・配送サービスとやり取りするメッセージはすべて
``{"metadata": {...}, "data": {...}}`` のエンベロープに包む。
イベントは過去形 (または依頼) で命名し、不変(immutable)として扱う。

  送信:  PaymentRequested, ShipmentRequested
  受信:  CreditCardValidated, ShipmentStatusUpdate
"""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from .models import Amount, Card

ORDER_DOMAIN = "Order"
PAYMENT_REQUESTED = "PaymentRequested"
SHIPMENT_REQUESTED = "ShipmentRequested"
DEFAULT_SUCCESS_STATUS = "success"


class _Message(BaseModel):
    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True)


class Metadata(_Message):
    domain: str = ORDER_DOMAIN
    source: str = ""
    type: str = ""
    status: str = DEFAULT_SUCCESS_STATUS


class Envelope(_Message):
    metadata: Metadata = Field(default_factory=Metadata)

    def to_payload(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode()


class PaymentRequestedData(_Message):
    order_id: str = Field(alias="orderID")
    card: Card
    total: Amount


class PaymentRequested(Envelope):
    """新しく記録された注文の決済が依頼された"""

    data: PaymentRequestedData

    @classmethod
    def for_order(cls, order_id: str, card: Card, total: str, source: str = "AddOrder"):
        return cls(
            metadata=Metadata(source=source, type=PAYMENT_REQUESTED),
            data=PaymentRequestedData(order_id=order_id, card=card, total=total),
        )


class ShipmentRequestedData(_Message):
    order_id: str = Field(alias="orderID")
    delivery: str


class ShipmentRequested(Envelope):
    """決済が成功し、注文を発送してよい"""

    data: ShipmentRequestedData

    @classmethod
    def for_order(cls, order_id: str, delivery: str):
        return cls(
            metadata=Metadata(source="ShipOrder", type=SHIPMENT_REQUESTED),
            data=ShipmentRequestedData(order_id=order_id, delivery=delivery),
        )


class CreditCardValidatedData(_Message):
    order_id: str = Field(alias="orderID", min_length=1)
    success: bool
    message: str = ""
    transaction_id: str = Field(default="", alias="transactionID")
    amount: Amount | Literal[""] = ""


class CreditCardValidated(Envelope):
    """決済サービスがカードの検証を終えた"""

    data: CreditCardValidatedData


class ShipmentStatusData(_Message):
    order_number: str = Field(alias="orderNumber", min_length=1)
    status: str = Field(min_length=1)
    tracking_number: str = Field(default="", alias="trackingNumber")


class ShipmentStatusUpdate(Envelope):
    """配送サービスが進捗を報告した。何度も届くことがある。"""

    data: ShipmentStatusData
