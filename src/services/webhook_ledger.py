from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from src.models.webhooks import WebhookHeaders
from src.observability import incr_metric, log_event


WEBHOOK_LOGS_TABLE = "webhook_logs"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _order_id_from_payload(payload: dict[str, Any]) -> Any:
    # Fulfillment and transaction payloads carry order_id; order payloads carry id.
    return payload.get("order_id") or payload.get("id")


class WebhookLedger:
    """Idempotency ledger over ``webhook_logs``.

    Entries move absent -> processed=false -> processed=true. Only a
    processed=true entry blocks redelivery; a bare receipt from a crashed
    attempt does not. The ledger is an optimization: concurrent duplicates can
    both pass :meth:`is_processed`, so the downstream writes are upserts.
    """

    def __init__(self, db: Any):
        self.db = db

    def is_processed(self, event_id: str) -> bool:
        result = (
            self.db.table(WEBHOOK_LOGS_TABLE)
            .select("id")
            .eq("event_id", event_id)
            .eq("processed", True)
            .limit(1)
            .execute()
        )
        return bool(result.data)

    def log_received(
        self,
        topic: str,
        headers: WebhookHeaders,
        payload: dict[str, Any],
        processed: bool = False,
        error: str | None = None,
        request_id: str | None = None,
    ) -> None:
        row = {
            "webhook_topic": topic,
            "shopify_order_id": _order_id_from_payload(payload),
            "webhook_id": headers.webhook_id,
            "event_id": headers.event_id,
            "shop_domain": headers.shop_domain,
            "payload": payload,
            "processed": processed,
            "error_message": error,
            "created_at": _now_iso(),
        }
        try:
            self.db.table(WEBHOOK_LOGS_TABLE).insert(row).execute()
        except Exception as exc:
            incr_metric("webhook.ledger.write_failed", operation="log_received")
            log_event(
                "webhook_ledger_log_failed",
                level=logging.ERROR,
                request_id=request_id,
                topic=topic,
                event_id=headers.event_id,
                error=str(exc),
            )

    def mark_processed(self, event_id: str, request_id: str | None = None) -> bool:
        try:
            self.db.table(WEBHOOK_LOGS_TABLE).update(
                {"processed": True}
            ).eq("event_id", event_id).execute()
        except Exception as exc:
            incr_metric("webhook.ledger.write_failed", operation="mark_processed")
            log_event(
                "webhook_ledger_mark_failed",
                level=logging.ERROR,
                request_id=request_id,
                event_id=event_id,
                error=str(exc),
            )
            return False
        return True
