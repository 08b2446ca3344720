from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class OrderWebhookEvent(BaseModel):
    topic: str
    event_id: str
    timestamp: str
    processed: bool = True


class TrackingInfo(BaseModel):
    tracking_number: str | None = None
    tracking_url: str | None = None
    shipment_status: str | None = None


class OrderSummary(BaseModel):
    id: str | None = None
    shopify_order_id: int
    listing_title: str
    order_status: str
    total_price: float | None = None
    currency: str | None = None
    created_at: datetime | None = None
    tracking_info: TrackingInfo | None = None


class MonthlyOrderStats(BaseModel):
    orders: int = 0
    revenue: float = 0.0


class OrderAnalytics(BaseModel):
    totalRevenue: float = 0.0
    totalOrders: int = 0
    monthlyData: dict[str, MonthlyOrderStats] = Field(default_factory=dict)


class UserOrdersData(BaseModel):
    orders: list[OrderSummary]
    analytics: OrderAnalytics


class UserOrdersResponse(BaseModel):
    success: Literal[True] = True
    data: UserOrdersData


class OrderDetailResponse(BaseModel):
    success: Literal[True] = True
    data: dict[str, Any]


class ClaimRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    wallet_address: str = Field(alias="walletAddress", min_length=1)


ClaimRejectionReason = Literal[
    "order_not_found",
    "not_fulfilled",
    "not_purchaser",
    "already_claimed",
    "claim_failed",
]


class ClaimRecord(BaseModel):
    order_id: int
    amount: float | None = None
    currency: str = "USD"
    status: Literal["completed"] = "completed"
    claimed_at: str


class ClaimResponse(BaseModel):
    success: Literal[True] = True
    message: str = "Order claimed successfully"
    claim: ClaimRecord
