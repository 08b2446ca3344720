from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from src.domain.effects import EffectResult
from src.domain.normalization import OrderStatus, is_status_regression, normalize_wallet_address
from src.models.orders import ClaimRejectionReason
from src.models.webhooks import ShopifyOrderPayload
from src.observability import incr_metric, log_event
from src.services.identity import CreationIdentity
from src.services.listings import ListingService
from src.services.order_events import webhook_event_entry


ORDERS_TABLE = "shopify_orders"
TRACKING_TABLE = "fulfillment_tracking"
LISTINGS_TABLE = "listings"
_STATUS_GUARD_MODES = {"monotonic", "last_write_wins"}
# Never written by upsert: the claim is one-way and the audit trail is append-only.
_UPSERT_PROTECTED_FIELDS = ("claimed_at", "claim_amount")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    return None


def _as_decimal(value: Any) -> Decimal:
    if value in (None, ""):
        return Decimal("0")
    return Decimal(str(value))


class ClaimRejectedError(Exception):
    _STATUS_CODES = {
        "order_not_found": 404,
        "not_fulfilled": 400,
        "not_purchaser": 403,
        "already_claimed": 400,
        "claim_failed": 500,
    }

    def __init__(self, reason: ClaimRejectionReason, message: str):
        super().__init__(message)
        self.reason = reason

    @property
    def status_code(self) -> int:
        return self._STATUS_CODES[self.reason]


def build_order_record(
    order: ShopifyOrderPayload,
    identity: CreationIdentity,
    order_status: OrderStatus,
    *,
    topic: str,
    event_id: str,
    fulfillment_status: str | None = None,
) -> dict[str, Any]:
    total = order.total_price_decimal()
    return {
        "shopify_order_id": order.id,
        "shopify_checkout_id": str(order.checkout_id) if order.checkout_id is not None else None,
        "listing_id": identity.listing_id,
        "purchaser_wallet_address": identity.purchaser_wallet_address,
        "creator_wallet_address": identity.creator_wallet_address,
        "order_status": order_status,
        "financial_status": order.financial_status,
        "fulfillment_status": fulfillment_status or order.fulfillment_status or "unfulfilled",
        "total_price": float(total) if total is not None else None,
        "currency": order.currency,
        "shopify_customer_id": order.customer.id if order.customer else None,
        "shopify_customer_email": order.email or (order.customer.email if order.customer else None),
        "shipping_address": order.shipping_address,
        "line_items": [item.model_dump(mode="json") for item in order.line_items],
        "webhook_events": [webhook_event_entry(topic, event_id)],
    }


class OrderService:
    """Order reconciler over ``shopify_orders``.

    Lifecycle is ``pending -> paid -> fulfilled`` with ``cancelled`` and
    ``refunded`` reachable from any non-terminal state. Writes are upserts or
    partial updates keyed on ``shopify_order_id`` so redelivered notifications
    converge on the same row.
    """

    def __init__(self, db: Any, listings: ListingService | None = None, status_guard_mode: str = "monotonic"):
        self.db = db
        self.listings = listings or ListingService(db)
        mode = str(status_guard_mode or "monotonic").strip().lower()
        self.status_guard_mode = mode if mode in _STATUS_GUARD_MODES else "monotonic"

    def _get_order(self, shopify_order_id: int, fields: str = "*") -> dict[str, Any] | None:
        result = (
            self.db.table(ORDERS_TABLE)
            .select(fields)
            .eq("shopify_order_id", shopify_order_id)
            .limit(1)
            .execute()
        )
        return result.data[0] if result.data else None

    def upsert_order(self, record: dict[str, Any], request_id: str | None = None) -> EffectResult:
        name = "order_upsert"
        shopify_order_id = record["shopify_order_id"]
        payload = {k: v for k, v in record.items() if k not in _UPSERT_PROTECTED_FIELDS}
        skipped_from: str | None = None
        try:
            existing = self._get_order(shopify_order_id, "id, order_status, webhook_events")
            if existing:
                # The event recorder owns the trail of an existing row.
                payload.pop("webhook_events", None)
                target = payload.get("order_status")
                if (
                    target
                    and self.status_guard_mode == "monotonic"
                    and is_status_regression(existing.get("order_status"), target)
                ):
                    skipped_from = existing.get("order_status")
                    self._log_regression(shopify_order_id, skipped_from, target, request_id)
                    payload.pop("order_status", None)
                    payload.pop("financial_status", None)
                    payload.pop("fulfillment_status", None)
            payload["updated_at"] = _now_iso()
            result = self.db.table(ORDERS_TABLE).upsert(payload, on_conflict="shopify_order_id").execute()
        except Exception as exc:
            log_event(
                "order_upsert_failed",
                level=logging.ERROR,
                request_id=request_id,
                shopify_order_id=shopify_order_id,
                error=str(exc),
            )
            return EffectResult.failure(name, str(exc), message="Failed to save order")

        row = result.data[0] if result.data else {}
        created = existing is None
        if created and record.get("listing_id") and record.get("total_price") is not None:
            stats = self.listings.update_listing_stats(record["listing_id"], _as_decimal(record["total_price"]))
            if not stats.ok:
                log_event(
                    "listing_stats_update_failed",
                    level=logging.WARNING,
                    request_id=request_id,
                    listing_id=record["listing_id"],
                    error=stats.error,
                )
        incr_metric("orders.upserted", created=created)
        return EffectResult.success(
            name,
            "Order saved successfully",
            order_id=row.get("id"),
            created=created,
            regression_skipped=skipped_from is not None,
            current_status=skipped_from,
        )

    def update_order_status(
        self,
        shopify_order_id: int,
        status: OrderStatus,
        financial_status: str | None = None,
        fulfillment_status: str | None = None,
        extra_fields: dict[str, Any] | None = None,
        request_id: str | None = None,
    ) -> EffectResult:
        """Partial status update; ``matched=False`` means no row exists yet.

        Only supplied fields are written. In ``monotonic`` mode a stale update
        that would move the order backwards is skipped and reported as
        success, since the stored state is already newer.
        """
        name = "order_status"
        update: dict[str, Any] = {"order_status": status, "updated_at": _now_iso()}
        if financial_status:
            update["financial_status"] = financial_status
        if fulfillment_status:
            update["fulfillment_status"] = fulfillment_status
        for key, value in (extra_fields or {}).items():
            if value is not None:
                update[key] = value
        try:
            if self.status_guard_mode == "monotonic":
                current = self._get_order(shopify_order_id, "id, order_status")
                if current is None:
                    result = EffectResult.success(name, "No matching order")
                    result.matched = False
                    return result
                if is_status_regression(current.get("order_status"), status):
                    self._log_regression(shopify_order_id, current.get("order_status"), status, request_id)
                    return EffectResult.success(
                        name,
                        f"Order already {current.get('order_status')}; stale {status} update skipped",
                        regression_skipped=True,
                        current_status=current.get("order_status"),
                    )
            updated = (
                self.db.table(ORDERS_TABLE)
                .update(update)
                .eq("shopify_order_id", shopify_order_id)
                .execute()
            )
        except Exception as exc:
            log_event(
                "order_status_update_failed",
                level=logging.ERROR,
                request_id=request_id,
                shopify_order_id=shopify_order_id,
                status=status,
                error=str(exc),
            )
            return EffectResult.failure(name, str(exc), message="Failed to update order status")

        result = EffectResult.success(name, "Order status updated successfully")
        result.matched = bool(updated.data)
        return result

    def update_order_fields(
        self,
        shopify_order_id: int,
        fields: dict[str, Any],
        request_id: str | None = None,
    ) -> EffectResult:
        name = "order_update"
        update = {k: v for k, v in fields.items() if v is not None and k not in _UPSERT_PROTECTED_FIELDS}
        update["updated_at"] = _now_iso()
        try:
            updated = (
                self.db.table(ORDERS_TABLE)
                .update(update)
                .eq("shopify_order_id", shopify_order_id)
                .execute()
            )
        except Exception as exc:
            log_event(
                "order_update_failed",
                level=logging.ERROR,
                request_id=request_id,
                shopify_order_id=shopify_order_id,
                error=str(exc),
            )
            return EffectResult.failure(name, str(exc), message="Failed to update order")
        result = EffectResult.success(name, "Order updated successfully")
        result.matched = bool(updated.data)
        return result

    def _log_regression(
        self,
        shopify_order_id: int,
        current: str | None,
        target: str,
        request_id: str | None,
    ) -> None:
        incr_metric("orders.status_regression_skipped", current=current, target=target)
        log_event(
            "order_status_regression_skipped",
            level=logging.WARNING,
            request_id=request_id,
            shopify_order_id=shopify_order_id,
            current_status=current,
            target_status=target,
        )

    def claim_order(self, shopify_order_id: int, wallet_address: str) -> dict[str, Any]:
        order = self._get_order(shopify_order_id)
        if not order:
            raise ClaimRejectedError("order_not_found", "Order not found")
        if order.get("order_status") != "fulfilled":
            raise ClaimRejectedError("not_fulfilled", "Order is not fulfilled")
        if normalize_wallet_address(order.get("purchaser_wallet_address")) != normalize_wallet_address(wallet_address):
            raise ClaimRejectedError("not_purchaser", "You are not authorized to claim this order")
        if order.get("claimed_at"):
            raise ClaimRejectedError("already_claimed", "Order has already been claimed")

        claimed_at = _now_iso()
        try:
            updated = (
                self.db.table(ORDERS_TABLE)
                .update({"claimed_at": claimed_at, "claim_amount": order.get("total_price")})
                .eq("shopify_order_id", shopify_order_id)
                .is_("claimed_at", "null")
                .execute()
            )
        except Exception as exc:
            log_event(
                "order_claim_failed",
                level=logging.ERROR,
                shopify_order_id=shopify_order_id,
                error=str(exc),
            )
            raise ClaimRejectedError("claim_failed", "Failed to claim order") from exc
        if not updated.data:
            # Lost a race with a concurrent claim.
            raise ClaimRejectedError("already_claimed", "Order has already been claimed")

        incr_metric("orders.claimed")
        log_event("order_claimed", shopify_order_id=shopify_order_id)
        return {
            "order_id": shopify_order_id,
            "amount": order.get("total_price"),
            "currency": order.get("currency") or "USD",
            "status": "completed",
            "claimed_at": claimed_at,
        }

    def get_order_details(self, shopify_order_id: int) -> dict[str, Any] | None:
        order = self._get_order(shopify_order_id)
        if not order:
            return None
        listing = None
        if order.get("listing_id"):
            listing_result = (
                self.db.table(LISTINGS_TABLE)
                .select("id, title, description, price, image_url")
                .eq("id", order["listing_id"])
                .limit(1)
                .execute()
            )
            listing = listing_result.data[0] if listing_result.data else None
        tracking = (
            self.db.table(TRACKING_TABLE)
            .select("*")
            .eq("shopify_order_id", shopify_order_id)
            .execute()
        )
        return {**order, "listing": listing, "fulfillment_tracking": tracking.data or []}

    def get_user_orders(self, wallet_address: str) -> list[dict[str, Any]]:
        orders = (
            self.db.table(ORDERS_TABLE)
            .select(
                "id, shopify_order_id, listing_id, order_status, total_price, currency, created_at"
            )
            .or_(
                f"purchaser_wallet_address.ilike.{wallet_address},"
                f"creator_wallet_address.ilike.{wallet_address}"
            )
            .order("created_at", desc=True)
            .execute()
        ).data or []
        if not orders:
            return []

        listing_ids = sorted({o["listing_id"] for o in orders if o.get("listing_id")})
        titles: dict[str, str] = {}
        if listing_ids:
            listings = self.db.table(LISTINGS_TABLE).select("id, title").in_("id", listing_ids).execute()
            titles = {row["id"]: row.get("title") for row in listings.data or []}

        tracking_by_order: dict[Any, dict[str, Any]] = {}
        tracking = (
            self.db.table(TRACKING_TABLE)
            .select("shopify_order_id, tracking_number, tracking_url, shipment_status")
            .in_("shopify_order_id", [o["shopify_order_id"] for o in orders])
            .execute()
        )
        for row in tracking.data or []:
            tracking_by_order.setdefault(row["shopify_order_id"], row)

        summaries = []
        for order in orders:
            track = tracking_by_order.get(order["shopify_order_id"])
            summaries.append(
                {
                    "id": order.get("id"),
                    "shopify_order_id": order["shopify_order_id"],
                    "listing_title": titles.get(order.get("listing_id")) or "Unknown Item",
                    "order_status": order.get("order_status"),
                    "total_price": order.get("total_price"),
                    "currency": order.get("currency"),
                    "created_at": order.get("created_at"),
                    "tracking_info": (
                        {
                            "tracking_number": track.get("tracking_number"),
                            "tracking_url": track.get("tracking_url"),
                            "shipment_status": track.get("shipment_status"),
                        }
                        if track
                        else None
                    ),
                }
            )
        return summaries

    def get_order_analytics(self, wallet_address: str) -> dict[str, Any]:
        """Revenue and order counts for orders sold by ``wallet_address``."""
        rows = (
            self.db.table(ORDERS_TABLE)
            .select("total_price, currency, order_status, created_at")
            .ilike("creator_wallet_address", wallet_address)
            .in_("order_status", ["paid", "fulfilled"])
            .execute()
        ).data or []

        total_revenue = Decimal("0")
        monthly: dict[str, dict[str, Any]] = {}
        for row in rows:
            amount = _as_decimal(row.get("total_price"))
            total_revenue += amount
            created = _parse_datetime(row.get("created_at"))
            if created is None:
                continue
            bucket = monthly.setdefault(created.strftime("%Y-%m"), {"orders": 0, "revenue": Decimal("0")})
            bucket["orders"] += 1
            bucket["revenue"] += amount

        return {
            "totalRevenue": float(total_revenue),
            "totalOrders": len(rows),
            "monthlyData": {
                month: {"orders": data["orders"], "revenue": float(data["revenue"])}
                for month, data in sorted(monthly.items())
            },
        }
