from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from src.domain.effects import EffectResult, EffectsOutcome, run_secondary
from src.domain.normalization import TERMINAL_ORDER_STATUSES, OrderStatus, normalize_order_status
from src.models.webhooks import (
    FulfillmentNotification,
    Notification,
    OrderNotification,
    ShopifyOrderPayload,
    TransactionNotification,
)
from src.services.fulfillment_tracking import FulfillmentTrackingService, build_tracking_record
from src.services.identity import (
    FulfillmentLookup,
    IdentityResolver,
    OrderIdentityError,
    ResolvedOrder,
    extract_listing_id,
    extract_purchaser,
)
from src.services.listings import ListingService
from src.services.order_events import OrderEventRecorder
from src.services.orders import OrderService, build_order_record


@dataclass
class ReconcileResult:
    ok: bool
    message: str
    skipped: bool = False
    shopify_order_id: int | None = None
    error: str | None = None
    effects: EffectsOutcome = field(default_factory=EffectsOutcome)

    @classmethod
    def skip(cls, message: str, effects: EffectsOutcome | None = None) -> "ReconcileResult":
        return cls(ok=True, skipped=True, message=message, effects=effects or EffectsOutcome())


def _kept_terminal_status(result: EffectResult) -> bool:
    return bool(result.data.get("regression_skipped")) and result.data.get("current_status") in TERMINAL_ORDER_STATUSES


class WebhookReconciler:
    """Applies one verified, de-duplicated notification to local state.

    Each handler records every write as an :class:`EffectResult`; only the
    critical ones decide whether the notification succeeded. Secondary writes
    (audit trail, inventory restoration, listing bookkeeping) are logged when
    they fail and otherwise ignored.
    """

    def __init__(
        self,
        db: Any,
        fulfillment_lookup: FulfillmentLookup | None = None,
        status_guard_mode: str = "monotonic",
    ):
        self.identity = IdentityResolver(db, fulfillment_lookup)
        self.listings = ListingService(db)
        self.orders = OrderService(db, self.listings, status_guard_mode=status_guard_mode)
        self.tracking = FulfillmentTrackingService(db)
        self.events = OrderEventRecorder(db)

    def handle(self, notification: Notification, request_id: str | None = None) -> ReconcileResult:
        handlers = {
            "orders/create": self.handle_order_created,
            "orders/paid": self.handle_order_paid,
            "orders/updated": self.handle_order_updated,
            "orders/fulfilled": self.handle_order_fulfilled,
            "orders/cancelled": self.handle_order_cancelled,
            "fulfillments/create": self.handle_fulfillment,
            "fulfillments/update": self.handle_fulfillment,
            "transactions/create": self.handle_transaction,
        }
        return handlers[notification.topic](notification, request_id)

    def _finish(
        self,
        outcome: EffectsOutcome,
        *,
        shopify_order_id: int | None,
        topic: str,
        event_id: str,
        message: str,
        request_id: str | None,
    ) -> ReconcileResult:
        if shopify_order_id is not None:
            run_secondary(
                outcome,
                "order_event_audit",
                lambda: self.events.record(shopify_order_id, topic, event_id, request_id=request_id),
                request_id=request_id,
                topic=topic,
                shopify_order_id=shopify_order_id,
            )
        if not outcome.ok:
            return ReconcileResult(
                ok=False,
                message=message,
                shopify_order_id=shopify_order_id,
                error=outcome.primary_error,
                effects=outcome,
            )
        return ReconcileResult(ok=True, message=message, shopify_order_id=shopify_order_id, effects=outcome)

    def _create_order(
        self,
        notification: OrderNotification,
        order_status: OrderStatus,
        outcome: EffectsOutcome,
        request_id: str | None,
        fulfillment_status: str | None = None,
    ) -> EffectResult:
        order = notification.order
        identity = self.identity.derive_creation_identity(order)
        run_secondary(
            outcome,
            "listing_product_link",
            lambda: self.listings.record_listing_product(
                identity.listing_id,
                order.line_items[0].product_id if order.line_items else None,
            ),
            request_id=request_id,
            listing_id=identity.listing_id,
        )
        record = build_order_record(
            order,
            identity,
            order_status,
            topic=notification.topic,
            event_id=notification.headers.event_id,
            fulfillment_status=fulfillment_status,
        )
        return outcome.add(self.orders.upsert_order(record, request_id=request_id))

    def _mark_sold(
        self,
        outcome: EffectsOutcome,
        listing_id: str | None,
        order: ShopifyOrderPayload,
        request_id: str | None,
    ) -> None:
        if not listing_id:
            return
        run_secondary(
            outcome,
            "listing_sold",
            lambda: self.listings.mark_listing_sold(
                listing_id,
                order.email or (order.customer.email if order.customer else None),
                extract_purchaser(order),
            ),
            request_id=request_id,
            listing_id=listing_id,
        )

    def _update_or_create(
        self,
        notification: OrderNotification,
        resolved: ResolvedOrder,
        status: OrderStatus,
        outcome: EffectsOutcome,
        request_id: str | None,
        fulfillment_status: str | None = None,
        extra_fields: dict[str, Any] | None = None,
    ) -> EffectResult:
        order = notification.order
        update = self.orders.update_order_status(
            resolved.shopify_order_id,
            status,
            order.financial_status,
            fulfillment_status or order.fulfillment_status,
            extra_fields=extra_fields,
            request_id=request_id,
        )
        if update.ok and not update.matched:
            # Row vanished between lookup and update; fall back to a full upsert.
            try:
                return self._create_order(notification, status, outcome, request_id, fulfillment_status)
            except OrderIdentityError as exc:
                update = EffectResult.failure("order_status", str(exc))
        return outcome.add(update)

    def handle_order_created(self, notification: OrderNotification, request_id: str | None = None) -> ReconcileResult:
        order = notification.order
        outcome = EffectsOutcome()
        status = normalize_order_status(order.financial_status)
        upsert = self._create_order(notification, status, outcome, request_id)
        if status == "paid" and not _kept_terminal_status(upsert):
            self._mark_sold(outcome, extract_listing_id(order), order, request_id)
        return self._finish(
            outcome,
            shopify_order_id=order.id if upsert.ok else None,
            topic=notification.topic,
            event_id=notification.headers.event_id,
            message="Order created successfully" if upsert.ok else "Failed to save order",
            request_id=request_id,
        )

    def handle_order_paid(self, notification: OrderNotification, request_id: str | None = None) -> ReconcileResult:
        order = notification.order
        outcome = EffectsOutcome()
        resolved = self.identity.find_order(order.id, order.checkout_id)
        if resolved:
            listing_id = resolved.row.get("listing_id") or extract_listing_id(order)
            primary = self._update_or_create(notification, resolved, "paid", outcome, request_id)
            shopify_order_id = resolved.shopify_order_id
        else:
            listing_id = extract_listing_id(order)
            try:
                primary = self._create_order(notification, "paid", outcome, request_id)
            except OrderIdentityError as exc:
                self._mark_sold(outcome, listing_id, order, request_id)
                return ReconcileResult.skip(f"Order {order.id} is not tracked: {exc}", outcome)
            shopify_order_id = order.id

        # The listing flips even if the order write failed, but a cancelled or refunded order keeps it released.
        if not _kept_terminal_status(primary):
            self._mark_sold(outcome, listing_id, order, request_id)
        return self._finish(
            outcome,
            shopify_order_id=shopify_order_id if primary.ok else None,
            topic=notification.topic,
            event_id=notification.headers.event_id,
            message=(
                "Order payment status updated successfully" if primary.ok else "Failed to update order status"
            ),
            request_id=request_id,
        )

    def handle_order_updated(self, notification: OrderNotification, request_id: str | None = None) -> ReconcileResult:
        order = notification.order
        outcome = EffectsOutcome()
        resolved = self.identity.find_order(order.id, order.checkout_id)
        if not resolved:
            return ReconcileResult.skip(f"Order {order.id} is not tracked")

        status = normalize_order_status(order.financial_status, order.fulfillment_status)
        if status in {"refunded", "cancelled"}:
            primary = self._update_or_create(notification, resolved, status, outcome, request_id)
        else:
            total = order.total_price_decimal()
            primary = outcome.add(
                self.orders.update_order_fields(
                    resolved.shopify_order_id,
                    {
                        "financial_status": order.financial_status,
                        "fulfillment_status": order.fulfillment_status,
                        "total_price": float(total) if total is not None else None,
                        "currency": order.currency,
                        "shopify_customer_email": order.email,
                        "shipping_address": order.shipping_address,
                    },
                    request_id=request_id,
                )
            )
        return self._finish(
            outcome,
            shopify_order_id=resolved.shopify_order_id,
            topic=notification.topic,
            event_id=notification.headers.event_id,
            message="Order updated successfully" if primary.ok else "Failed to update order",
            request_id=request_id,
        )

    def handle_order_fulfilled(self, notification: OrderNotification, request_id: str | None = None) -> ReconcileResult:
        order = notification.order
        outcome = EffectsOutcome()
        resolved = self.identity.find_order(order.id, order.checkout_id)
        fulfillment_status = order.fulfillment_status or "fulfilled"
        if resolved:
            primary = self._update_or_create(
                notification, resolved, "fulfilled", outcome, request_id, fulfillment_status=fulfillment_status
            )
            shopify_order_id = resolved.shopify_order_id
        else:
            try:
                primary = self._create_order(
                    notification, "fulfilled", outcome, request_id, fulfillment_status=fulfillment_status
                )
            except OrderIdentityError as exc:
                return ReconcileResult.skip(f"Order {order.id} is not tracked: {exc}", outcome)
            shopify_order_id = order.id
        return self._finish(
            outcome,
            shopify_order_id=shopify_order_id,
            topic=notification.topic,
            event_id=notification.headers.event_id,
            message=(
                "Order fulfillment status updated successfully" if primary.ok else "Failed to update order status"
            ),
            request_id=request_id,
        )

    def handle_order_cancelled(self, notification: OrderNotification, request_id: str | None = None) -> ReconcileResult:
        order = notification.order
        outcome = EffectsOutcome()
        resolved = self.identity.find_order(order.id, order.checkout_id)
        if resolved:
            primary = outcome.add(
                self.orders.update_order_status(
                    resolved.shopify_order_id,
                    "cancelled",
                    order.financial_status,
                    order.fulfillment_status or "cancelled",
                    extra_fields={"cancelled_at": order.cancelled_at, "cancel_reason": order.cancel_reason},
                    request_id=request_id,
                )
            )
        for result in self.listings.restore_listings(
            order.line_items,
            listing_id=resolved.row.get("listing_id") if resolved else None,
        ):
            run_secondary(outcome, result.name, lambda result=result: result, request_id=request_id)

        if not resolved:
            return ReconcileResult.skip(f"Order {order.id} is not tracked", outcome)
        return self._finish(
            outcome,
            shopify_order_id=resolved.shopify_order_id,
            topic=notification.topic,
            event_id=notification.headers.event_id,
            message="Order cancellation processed successfully" if primary.ok else "Failed to update order status",
            request_id=request_id,
        )

    def handle_fulfillment(
        self,
        notification: FulfillmentNotification,
        request_id: str | None = None,
    ) -> ReconcileResult:
        fulfillment = notification.fulfillment
        outcome = EffectsOutcome()
        resolved = self.identity.resolve_fulfillment_order(fulfillment, request_id=request_id)
        if not resolved:
            return ReconcileResult.skip(f"No tracked order for fulfillment {fulfillment.id}")

        shopify_order_id = resolved.shopify_order_id
        record = build_tracking_record(fulfillment, shopify_order_id)
        tracking = outcome.add(self.tracking.upsert_fulfillment_tracking(record))

        if tracking.ok and (fulfillment.status == "success" or record["shipment_status"] == "delivered"):
            run_secondary(
                outcome,
                "order_fulfilled",
                lambda: self.orders.update_order_status(
                    shopify_order_id,
                    "fulfilled",
                    fulfillment_status="fulfilled",
                    request_id=request_id,
                ),
                request_id=request_id,
                shopify_order_id=shopify_order_id,
            )
        return self._finish(
            outcome,
            shopify_order_id=shopify_order_id,
            topic=notification.topic,
            event_id=notification.headers.event_id,
            message=(
                "Fulfillment tracking saved successfully" if tracking.ok else "Failed to save tracking info"
            ),
            request_id=request_id,
        )

    def handle_transaction(
        self,
        notification: TransactionNotification,
        request_id: str | None = None,
    ) -> ReconcileResult:
        transaction = notification.transaction
        outcome = EffectsOutcome()
        resolved = self.identity.find_order(transaction.order_id)
        if not resolved:
            return ReconcileResult.skip(f"Order {transaction.order_id} is not tracked")

        kind = str(transaction.kind or "").lower()
        succeeded = str(transaction.status or "").lower() == "success"
        target: OrderStatus | None = None
        if succeeded and kind in {"sale", "capture"}:
            target = "paid"
        elif succeeded and kind == "refund":
            target = "refunded"

        if target is not None:
            primary = outcome.add(
                self.orders.update_order_status(
                    resolved.shopify_order_id,
                    target,
                    financial_status="paid" if target == "paid" else "refunded",
                    request_id=request_id,
                )
            )
            message = "Transaction applied" if primary.ok else "Failed to update order status"
        else:
            message = "Transaction does not change order state"
        return self._finish(
            outcome,
            shopify_order_id=resolved.shopify_order_id,
            topic=notification.topic,
            event_id=notification.headers.event_id,
            message=message,
            request_id=request_id,
        )
