from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from src.domain.effects import EffectResult
from src.observability import log_event


ORDERS_TABLE = "shopify_orders"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def webhook_event_entry(topic: str, event_id: str, processed: bool = True) -> dict[str, Any]:
    return {"topic": topic, "event_id": event_id, "timestamp": _now_iso(), "processed": processed}


class OrderEventRecorder:
    """Appends received notifications to an order's ``webhook_events`` trail.

    Runs after the primary effect is decided, so nothing here ever raises.
    """

    def __init__(self, db: Any):
        self.db = db

    def record(
        self,
        shopify_order_id: int,
        topic: str,
        event_id: str,
        processed: bool = True,
        request_id: str | None = None,
    ) -> EffectResult:
        name = "order_event_audit"
        try:
            current = (
                self.db.table(ORDERS_TABLE)
                .select("webhook_events")
                .eq("shopify_order_id", shopify_order_id)
                .limit(1)
                .execute()
            )
            if not current.data:
                log_event(
                    "order_event_audit_skipped",
                    level=logging.WARNING,
                    request_id=request_id,
                    shopify_order_id=shopify_order_id,
                    topic=topic,
                    reason="order_not_found",
                )
                return EffectResult.success(name, "Order not tracked").as_secondary()

            events = list(current.data[0].get("webhook_events") or [])
            if any(entry.get("event_id") == event_id for entry in events):
                return EffectResult.success(name, "Event already recorded").as_secondary()
            events.append(webhook_event_entry(topic, event_id, processed))
            self.db.table(ORDERS_TABLE).update({"webhook_events": events}).eq(
                "shopify_order_id", shopify_order_id
            ).execute()
        except Exception as exc:
            log_event(
                "order_event_audit_failed",
                level=logging.WARNING,
                request_id=request_id,
                shopify_order_id=shopify_order_id,
                topic=topic,
                error=str(exc),
            )
            return EffectResult.failure(name, str(exc)).as_secondary()
        return EffectResult.success(name, "Event recorded").as_secondary()
