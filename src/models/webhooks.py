from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


OrderTopic = Literal[
    "orders/create",
    "orders/paid",
    "orders/updated",
    "orders/cancelled",
    "orders/fulfilled",
]
FulfillmentTopic = Literal["fulfillments/create", "fulfillments/update"]
TransactionTopic = Literal["transactions/create"]
WebhookTopic = Union[OrderTopic, FulfillmentTopic, TransactionTopic]


class WebhookHeaders(BaseModel):
    topic: str
    hmac_signature: str
    event_id: str
    shop_domain: str | None = None
    api_version: str | None = None
    webhook_id: str | None = None
    triggered_at: str | None = None


class NameValue(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    value: Any = None


def _coerce_name_values(value: Any) -> Any:
    # Older API versions send properties as a plain mapping.
    if isinstance(value, dict):
        return [{"name": str(k), "value": v} for k, v in value.items()]
    return value or []


class LineItem(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: int | None = None
    product_id: int | None = None
    variant_id: int | None = None
    title: str | None = None
    name: str | None = None
    sku: str | None = None
    quantity: int | None = None
    price: str | None = None
    properties: list[NameValue] = Field(default_factory=list)

    @field_validator("properties", mode="before")
    @classmethod
    def _normalize_properties(cls, value: Any) -> Any:
        return _coerce_name_values(value)


class Customer(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: int | None = None
    email: str | None = None
    note: str | None = None


class ShopifyOrderPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: int
    checkout_id: int | None = None
    email: str | None = None
    financial_status: str | None = None
    fulfillment_status: str | None = None
    total_price: str | None = None
    currency: str | None = None
    note: str | None = None
    note_attributes: list[NameValue] = Field(default_factory=list)
    line_items: list[LineItem] = Field(default_factory=list)
    customer: Customer | None = None
    shipping_address: dict[str, Any] | None = None
    cancelled_at: str | None = None
    cancel_reason: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @field_validator("note_attributes", mode="before")
    @classmethod
    def _normalize_note_attributes(cls, value: Any) -> Any:
        return _coerce_name_values(value)

    @field_validator("total_price", mode="before")
    @classmethod
    def _total_price_as_string(cls, value: Any) -> Any:
        if value is None:
            return None
        text = str(value).strip()
        try:
            Decimal(text)
        except InvalidOperation as exc:
            raise ValueError(f"total_price is not a decimal: {value!r}") from exc
        return text

    def total_price_decimal(self) -> Decimal | None:
        return Decimal(self.total_price) if self.total_price is not None else None


class FulfillmentPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: int
    order_id: int | None = None
    status: str | None = None
    shipment_status: str | None = None
    tracking_company: str | None = None
    tracking_number: str | None = None
    tracking_numbers: list[str] = Field(default_factory=list)
    tracking_url: str | None = None
    tracking_urls: list[str] = Field(default_factory=list)
    line_items: list[LineItem] = Field(default_factory=list)
    created_at: str | None = None
    updated_at: str | None = None

    def resolved_tracking_number(self) -> str | None:
        return self.tracking_number or (self.tracking_numbers[0] if self.tracking_numbers else None)

    def resolved_tracking_url(self) -> str | None:
        return self.tracking_url or (self.tracking_urls[0] if self.tracking_urls else None)


class TransactionPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: int
    order_id: int
    kind: str | None = None
    status: str | None = None
    amount: str | None = None
    currency: str | None = None


class OrderNotification(BaseModel):
    kind: Literal["order"] = "order"
    topic: OrderTopic
    headers: WebhookHeaders
    order: ShopifyOrderPayload
    raw: dict[str, Any]


class FulfillmentNotification(BaseModel):
    kind: Literal["fulfillment"] = "fulfillment"
    topic: FulfillmentTopic
    headers: WebhookHeaders
    fulfillment: FulfillmentPayload
    raw: dict[str, Any]


class TransactionNotification(BaseModel):
    kind: Literal["transaction"] = "transaction"
    topic: TransactionTopic
    headers: WebhookHeaders
    transaction: TransactionPayload
    raw: dict[str, Any]


Notification = Union[OrderNotification, FulfillmentNotification, TransactionNotification]


class WebhookAckResponse(BaseModel):
    success: bool
    message: str | None = None
    skipped: bool = False
    topic: str | None = None
    event_id: str | None = None
    shopify_order_id: int | None = None
    signature_status: Literal["verified", "skipped_no_secret"] | None = None
    effects: dict[str, bool] = Field(default_factory=dict)
