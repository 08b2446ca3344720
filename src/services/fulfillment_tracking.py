from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from src.domain.effects import EffectResult
from src.domain.normalization import normalize_shipment_status
from src.models.webhooks import FulfillmentPayload


TRACKING_TABLE = "fulfillment_tracking"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def build_tracking_record(fulfillment: FulfillmentPayload, shopify_order_id: int) -> dict[str, Any]:
    shipment_status = normalize_shipment_status(fulfillment.shipment_status)
    record: dict[str, Any] = {
        "shopify_order_id": shopify_order_id,
        "shopify_fulfillment_id": fulfillment.id,
        "tracking_company": fulfillment.tracking_company,
        "tracking_number": fulfillment.resolved_tracking_number(),
        "tracking_url": fulfillment.resolved_tracking_url(),
        "shipment_status": shipment_status,
        "shipped_at": fulfillment.created_at,
    }
    if shipment_status == "delivered":
        record["delivered_at"] = fulfillment.updated_at or _now_iso()
    return record


class FulfillmentTrackingService:
    def __init__(self, db: Any):
        self.db = db

    def get_tracking(self, shopify_fulfillment_id: int) -> dict[str, Any] | None:
        result = (
            self.db.table(TRACKING_TABLE)
            .select("*")
            .eq("shopify_fulfillment_id", shopify_fulfillment_id)
            .limit(1)
            .execute()
        )
        return result.data[0] if result.data else None

    def upsert_fulfillment_tracking(self, record: dict[str, Any]) -> EffectResult:
        """Insert or update one shipment keyed on ``shopify_fulfillment_id``.

        A status change appends a location update; redelivering the same
        status leaves ``location_updates`` untouched.
        """
        name = "fulfillment_tracking"
        try:
            existing = self.get_tracking(record["shopify_fulfillment_id"])
            location_updates = list((existing or {}).get("location_updates") or [])
            previous_status = (existing or {}).get("shipment_status")
            if record.get("shipment_status") and record["shipment_status"] != previous_status:
                location_updates.append(
                    {
                        "timestamp": _now_iso(),
                        "location": record.get("tracking_company") or "",
                        "description": f"Shipment status changed to {record['shipment_status']}",
                        "status": record["shipment_status"],
                    }
                )
            payload = {**record, "location_updates": location_updates, "updated_at": _now_iso()}
            if existing and existing.get("shipped_at"):
                payload.pop("shipped_at", None)
            result = (
                self.db.table(TRACKING_TABLE)
                .upsert(payload, on_conflict="shopify_fulfillment_id")
                .execute()
            )
        except Exception as exc:
            return EffectResult.failure(name, str(exc), message="Failed to save tracking info")
        row = result.data[0] if result.data else {}
        return EffectResult.success(name, "Tracking info saved successfully", tracking_id=row.get("id"))
