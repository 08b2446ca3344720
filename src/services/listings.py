from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from src.domain.effects import EffectResult
from src.models.webhooks import LineItem
from src.services.identity import UNKNOWN_WALLET, listing_id_for_line_item


LISTINGS_TABLE = "listings"

_CLEARED_PURCHASE = {
    "status": "available",
    "purchased_at": None,
    "purchaser_email": None,
    "purchaser_wallet_address": None,
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _as_decimal(value: Any) -> Decimal:
    if value in (None, ""):
        return Decimal("0")
    return Decimal(str(value))


class ListingService:
    """Inventory side effects that order reconciliation applies to listings."""

    def __init__(self, db: Any):
        self.db = db

    def _get(self, listing_id: str, fields: str) -> dict[str, Any] | None:
        result = self.db.table(LISTINGS_TABLE).select(fields).eq("id", listing_id).limit(1).execute()
        return result.data[0] if result.data else None

    def mark_listing_sold(
        self,
        listing_id: str,
        purchaser_email: str | None,
        purchaser_wallet_address: str | None,
    ) -> EffectResult:
        name = "listing_sold"
        try:
            listing = self._get(listing_id, "id, status, purchaser_email, purchaser_wallet_address")
            if not listing:
                return EffectResult.failure(name, f"Listing {listing_id} not found")
            wallet = None if purchaser_wallet_address in (None, UNKNOWN_WALLET) else purchaser_wallet_address
            if (
                listing.get("status") == "sold"
                and listing.get("purchaser_email") == purchaser_email
                and (wallet is None or listing.get("purchaser_wallet_address") == wallet)
            ):
                return EffectResult.success(name, "Listing already sold", listing_id=listing_id, written=False)

            update = {"status": "sold", "purchased_at": _now_iso(), "purchaser_email": purchaser_email}
            if wallet:
                update["purchaser_wallet_address"] = wallet
            self.db.table(LISTINGS_TABLE).update(update).eq("id", listing_id).execute()
        except Exception as exc:
            return EffectResult.failure(name, str(exc))
        return EffectResult.success(name, "Listing marked sold", listing_id=listing_id, written=True)

    def _restore_one(self, column: str, value: Any) -> EffectResult:
        name = f"listing_restore:{value}"
        try:
            updated = self.db.table(LISTINGS_TABLE).update(dict(_CLEARED_PURCHASE)).eq(column, value).execute()
        except Exception as exc:
            return EffectResult.failure(name, str(exc)).as_secondary()
        result = EffectResult.success(name, "Listing availability restored").as_secondary()
        result.matched = bool(updated.data)
        return result

    def restore_listings(
        self,
        line_items: list[LineItem],
        listing_id: str | None = None,
    ) -> list[EffectResult]:
        """Put every listing a cancelled order touched back on sale.

        Line items resolve to listings by their listing markers, otherwise by
        Shopify product id. Each write stands alone, so one failing listing
        never stops the others from being restored.
        """
        results: list[EffectResult] = []
        targets: list[tuple[str, str]] = []
        if listing_id:
            targets.append(("id", listing_id))
        for item in line_items:
            marked = listing_id_for_line_item(item)
            if marked:
                target = ("id", marked)
            elif item.product_id is not None:
                target = ("shopify_product_id", str(item.product_id))
            else:
                continue
            if target not in targets:
                targets.append(target)
        for column, value in targets:
            results.append(self._restore_one(column, value))
        return results

    def record_listing_product(self, listing_id: str, product_id: int | str | None) -> EffectResult:
        name = "listing_product_link"
        if product_id is None:
            return EffectResult.success(name, "No product id on order")
        try:
            self.db.table(LISTINGS_TABLE).update(
                {"shopify_product_id": str(product_id), "last_order_at": _now_iso()}
            ).eq("id", listing_id).execute()
        except Exception as exc:
            return EffectResult.failure(name, str(exc))
        return EffectResult.success(name, listing_id=listing_id)

    def update_listing_stats(self, listing_id: str, order_amount: Decimal) -> EffectResult:
        name = "listing_stats"
        try:
            listing = self._get(listing_id, "id, total_orders, total_revenue")
            if not listing:
                return EffectResult.failure(name, f"Listing {listing_id} not found")
            total_orders = int(listing.get("total_orders") or 0) + 1
            total_revenue = _as_decimal(listing.get("total_revenue")) + order_amount
            self.db.table(LISTINGS_TABLE).update(
                {
                    "total_orders": total_orders,
                    "total_revenue": float(total_revenue),
                    "last_order_at": _now_iso(),
                }
            ).eq("id", listing_id).execute()
        except Exception as exc:
            return EffectResult.failure(name, str(exc))
        return EffectResult.success(name, total_orders=total_orders, total_revenue=float(total_revenue))
