from __future__ import annotations

import hmac
import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import ValidationError

from src.config import settings
from src.db import get_supabase
from src.domain.signature import check_webhook_signature
from src.models.webhooks import (
    FulfillmentNotification,
    Notification,
    OrderNotification,
    TransactionNotification,
    WebhookAckResponse,
    WebhookHeaders,
)
from src.observability import log_event, metrics_snapshot, record_webhook_outcome
from src.providers.shopify.client import get_fulfillment_details
from src.services.identity import FulfillmentLookup, OrderIdentityError
from src.services.reconciliation import WebhookReconciler
from src.services.webhook_ledger import WebhookLedger


router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])

_ORDER_TOPICS = {"orders/create", "orders/paid", "orders/updated", "orders/cancelled", "orders/fulfilled"}
_FULFILLMENT_TOPICS = {"fulfillments/create", "fulfillments/update"}


def _request_id(request: Request | None) -> str | None:
    if not request:
        return None
    return getattr(getattr(request, "state", None), "request_id", None)


def _extract_webhook_headers(request: Request) -> WebhookHeaders | None:
    topic = request.headers.get("X-Shopify-Topic")
    signature = request.headers.get("X-Shopify-Hmac-Sha256")
    event_id = request.headers.get("X-Shopify-Event-Id")
    if not topic or not signature or not event_id:
        return None
    return WebhookHeaders(
        topic=topic.strip(),
        hmac_signature=signature.strip(),
        event_id=event_id.strip(),
        shop_domain=request.headers.get("X-Shopify-Shop-Domain"),
        api_version=request.headers.get("X-Shopify-API-Version"),
        webhook_id=request.headers.get("X-Shopify-Webhook-Id"),
        triggered_at=request.headers.get("X-Shopify-Triggered-At"),
    )


def _build_notification(topic: str, headers: WebhookHeaders, payload: dict[str, Any]) -> Notification:
    if topic in _ORDER_TOPICS:
        return OrderNotification(topic=topic, headers=headers, order=payload, raw=payload)
    if topic in _FULFILLMENT_TOPICS:
        return FulfillmentNotification(topic=topic, headers=headers, fulfillment=payload, raw=payload)
    return TransactionNotification(topic=topic, headers=headers, transaction=payload, raw=payload)


def _fulfillment_lookup() -> FulfillmentLookup | None:
    if not settings.shopify_store or not settings.shopify_admin_api_token:
        return None

    def _lookup(fulfillment_id: str) -> dict[str, Any]:
        return get_fulfillment_details(
            fulfillment_id,
            store=settings.shopify_store,
            access_token=settings.shopify_admin_api_token,
            api_version=settings.shopify_api_version,
            timeout_seconds=settings.shopify_api_timeout_seconds,
        )

    return _lookup


def _ingest_shopify_webhook(request: Request, raw_body: bytes, route_topic: str, db: Any) -> WebhookAckResponse:
    req_id = _request_id(request)
    headers = _extract_webhook_headers(request)
    if headers is None:
        record_webhook_outcome(
            "rejected", topic=route_topic, level=logging.WARNING, request_id=req_id, reason="missing_headers"
        )
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "Missing required webhook headers"},
        )

    record_webhook_outcome("received", topic=route_topic, event_id=headers.event_id, request_id=req_id)
    signature = check_webhook_signature(raw_body, headers.hmac_signature, settings.shopify_webhook_secret)
    if not signature.accepted:
        record_webhook_outcome(
            "rejected",
            topic=route_topic,
            event_id=headers.event_id,
            level=logging.WARNING,
            request_id=req_id,
            reason=signature.reason,
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "Invalid webhook signature", "reason": signature.reason},
        )
    if not signature.verified:
        log_event(
            "webhook_signature_skipped",
            level=logging.WARNING,
            request_id=req_id,
            topic=route_topic,
            event_id=headers.event_id,
            reason=signature.reason,
        )

    if headers.topic != route_topic:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": f"Webhook topic {headers.topic} does not match endpoint {route_topic}"},
        )
    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail={"error": "Invalid JSON payload"}) from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail={"error": "Invalid JSON payload"})
    try:
        notification = _build_notification(route_topic, headers, payload)
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "Invalid webhook payload", "fields": [".".join(map(str, e["loc"])) for e in exc.errors()]},
        ) from exc

    ack = WebhookAckResponse(
        success=True,
        topic=route_topic,
        event_id=headers.event_id,
        signature_status=signature.status,
    )
    ledger = WebhookLedger(db)
    if ledger.is_processed(headers.event_id):
        record_webhook_outcome("duplicate", topic=route_topic, event_id=headers.event_id, request_id=req_id)
        ack.message = "Event already processed"
        ack.skipped = True
        return ack

    ledger.log_received(route_topic, headers, payload, request_id=req_id)
    reconciler = WebhookReconciler(
        db,
        fulfillment_lookup=_fulfillment_lookup(),
        status_guard_mode=settings.order_status_guard_mode,
    )
    try:
        result = reconciler.handle(notification, request_id=req_id)
    except OrderIdentityError as exc:
        ledger.log_received(route_topic, headers, payload, error=str(exc), request_id=req_id)
        record_webhook_outcome(
            "invalid",
            topic=route_topic,
            event_id=headers.event_id,
            level=logging.WARNING,
            request_id=req_id,
            reason=exc.reason,
        )
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": str(exc), "reason": exc.reason},
        ) from exc
    except Exception as exc:
        ledger.log_received(route_topic, headers, payload, error=str(exc), request_id=req_id)
        record_webhook_outcome(
            "failed",
            topic=route_topic,
            event_id=headers.event_id,
            level=logging.ERROR,
            request_id=req_id,
            error=str(exc),
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": "Internal server error"},
        ) from exc

    if not result.ok:
        ledger.log_received(route_topic, headers, payload, error=result.error, request_id=req_id)
        record_webhook_outcome(
            "failed",
            topic=route_topic,
            event_id=headers.event_id,
            level=logging.ERROR,
            request_id=req_id,
            error=result.error,
            effects=result.effects.summary(),
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": result.message, "message": result.error},
        )

    ledger.mark_processed(headers.event_id, request_id=req_id)
    record_webhook_outcome(
        "skipped" if result.skipped else "processed",
        topic=route_topic,
        event_id=headers.event_id,
        request_id=req_id,
        shopify_order_id=result.shopify_order_id,
        effects=result.effects.summary(),
    )
    ack.message = result.message
    ack.skipped = result.skipped
    ack.shopify_order_id = result.shopify_order_id
    ack.effects = result.effects.summary()
    return ack


@router.post("/shopify/orders/create", response_model=WebhookAckResponse)
async def ingest_order_created(request: Request, db: Any = Depends(get_supabase)):
    return _ingest_shopify_webhook(request, await request.body(), "orders/create", db)


@router.post("/shopify/orders/paid", response_model=WebhookAckResponse)
async def ingest_order_paid(request: Request, db: Any = Depends(get_supabase)):
    return _ingest_shopify_webhook(request, await request.body(), "orders/paid", db)


@router.post("/shopify/orders/updated", response_model=WebhookAckResponse)
async def ingest_order_updated(request: Request, db: Any = Depends(get_supabase)):
    return _ingest_shopify_webhook(request, await request.body(), "orders/updated", db)


@router.post("/shopify/orders/cancelled", response_model=WebhookAckResponse)
async def ingest_order_cancelled(request: Request, db: Any = Depends(get_supabase)):
    return _ingest_shopify_webhook(request, await request.body(), "orders/cancelled", db)


@router.post("/shopify/orders/fulfilled", response_model=WebhookAckResponse)
async def ingest_order_fulfilled(request: Request, db: Any = Depends(get_supabase)):
    return _ingest_shopify_webhook(request, await request.body(), "orders/fulfilled", db)


@router.post("/shopify/fulfillments/create", response_model=WebhookAckResponse)
async def ingest_fulfillment_created(request: Request, db: Any = Depends(get_supabase)):
    return _ingest_shopify_webhook(request, await request.body(), "fulfillments/create", db)


@router.post("/shopify/fulfillments/update", response_model=WebhookAckResponse)
async def ingest_fulfillment_updated(request: Request, db: Any = Depends(get_supabase)):
    return _ingest_shopify_webhook(request, await request.body(), "fulfillments/update", db)


@router.post("/shopify/transactions/create", response_model=WebhookAckResponse)
async def ingest_transaction_created(request: Request, db: Any = Depends(get_supabase)):
    return _ingest_shopify_webhook(request, await request.body(), "transactions/create", db)


@router.get("/metrics")
async def get_webhook_metrics(
    prefix: str | None = None,
    x_internal_secret: str | None = Header(default=None),
):
    configured = settings.internal_api_secret
    if not configured:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": "INTERNAL_API_SECRET is not configured"},
        )
    if not x_internal_secret or not hmac.compare_digest(x_internal_secret, configured):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail={"error": "Invalid internal secret"})
    return {"counters": metrics_snapshot(prefix)}
