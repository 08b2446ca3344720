from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status

from src.config import settings
from src.db import get_supabase
from src.domain.normalization import is_valid_wallet_address
from src.models.orders import (
    ClaimRequest,
    ClaimResponse,
    OrderDetailResponse,
    UserOrdersResponse,
)
from src.services.orders import ClaimRejectedError, OrderService


router = APIRouter(prefix="/api/orders", tags=["orders"])


def _order_service(db: Any) -> OrderService:
    return OrderService(db, status_guard_mode=settings.order_status_guard_mode)


@router.get("/user/{wallet_address}", response_model=UserOrdersResponse)
async def get_user_orders(wallet_address: str, db: Any = Depends(get_supabase)):
    if not is_valid_wallet_address(wallet_address):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "Invalid wallet address format"},
        )
    service = _order_service(db)
    try:
        orders = service.get_user_orders(wallet_address)
        analytics = service.get_order_analytics(wallet_address)
    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": "Failed to fetch orders"},
        ) from exc
    return {"success": True, "data": {"orders": orders, "analytics": analytics}}


@router.get("/{shopify_order_id}", response_model=OrderDetailResponse)
async def get_order(shopify_order_id: int, db: Any = Depends(get_supabase)):
    details = _order_service(db).get_order_details(shopify_order_id)
    if not details:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail={"error": "Order not found"})
    return {"success": True, "data": details}


@router.post("/{shopify_order_id}/claim", response_model=ClaimResponse)
async def claim_order(shopify_order_id: int, body: ClaimRequest, db: Any = Depends(get_supabase)):
    try:
        claim = _order_service(db).claim_order(shopify_order_id, body.wallet_address)
    except ClaimRejectedError as exc:
        raise HTTPException(
            status_code=exc.status_code,
            detail={"error": str(exc), "reason": exc.reason},
        ) from exc
    return {"success": True, "message": "Order claimed successfully", "claim": claim}
