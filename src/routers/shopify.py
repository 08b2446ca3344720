from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException

from src.config import settings
from src.domain.provider_errors import provider_error_detail, provider_error_http_status
from src.observability import incr_metric, log_event
from src.providers.shopify.client import ShopifyProviderError, get_fulfillment_details


router = APIRouter(prefix="/api/shopify", tags=["shopify"])


@router.get("/fulfillment/{fulfillment_id}")
async def get_fulfillment(fulfillment_id: str):
    try:
        details = get_fulfillment_details(
            fulfillment_id,
            store=settings.shopify_store,
            access_token=settings.shopify_admin_api_token,
            api_version=settings.shopify_api_version,
            timeout_seconds=settings.shopify_api_timeout_seconds,
        )
    except ShopifyProviderError as exc:
        incr_metric("shopify.fulfillment_lookup.failed", category=exc.category)
        log_event(
            "shopify_fulfillment_lookup_failed",
            level=logging.WARNING,
            fulfillment_id=fulfillment_id,
            category=exc.category,
            error=str(exc),
        )
        raise HTTPException(
            status_code=provider_error_http_status(exc),
            detail=provider_error_detail(
                provider="shopify",
                operation="get_fulfillment",
                exc=exc,
                fulfillment_id=fulfillment_id,
            ),
        ) from exc
    return {"success": True, "fulfillment": details["fulfillment"], "order": details["order"]}
