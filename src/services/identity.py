from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Literal

from src.models.webhooks import FulfillmentPayload, LineItem, ShopifyOrderPayload
from src.observability import incr_metric, log_event


ORDERS_TABLE = "shopify_orders"
LISTINGS_TABLE = "listings"
USERS_TABLE = "users"
UNKNOWN_WALLET = "unknown"

_TITLE_LISTING_RE = re.compile(r"\[listing:([a-f0-9-]+)\]", re.IGNORECASE)
_NOTE_LISTING_RE = re.compile(r"listing[_-]?id:?\s*([a-f0-9-]+)", re.IGNORECASE)
_NOTE_WALLET_RE = re.compile(r"wallet[_-]?address:?\s*(0x[a-fA-F0-9]+)", re.IGNORECASE)
_CUSTOMER_WALLET_RE = re.compile(r"wallet:?\s*(0x[a-fA-F0-9]+)", re.IGNORECASE)

FulfillmentLookup = Callable[[str], dict[str, Any]]
MatchStrategy = Literal["order_id", "checkout_id", "api_order_id", "api_checkout_id"]


class OrderIdentityError(ValueError):
    """An order cannot be created because its marketplace linkage is missing."""

    def __init__(self, reason: str, message: str):
        super().__init__(message)
        self.reason = reason


@dataclass(frozen=True)
class ResolvedOrder:
    row: dict[str, Any]
    matched_by: MatchStrategy

    @property
    def shopify_order_id(self) -> int:
        return int(self.row["shopify_order_id"])


@dataclass(frozen=True)
class CreationIdentity:
    listing_id: str
    creator_wallet_address: str
    purchaser_wallet_address: str


def _attr_value(items: list[Any], *names: str) -> str | None:
    for item in items:
        if item.name in names and item.value not in (None, ""):
            return str(item.value)
    return None


def listing_id_for_line_item(line_item: LineItem) -> str | None:
    from_property = _attr_value(line_item.properties, "listing_id", "Listing ID")
    if from_property:
        return from_property
    if line_item.sku and line_item.sku.startswith("listing-"):
        return line_item.sku[len("listing-"):]
    title_match = _TITLE_LISTING_RE.search(line_item.title or line_item.name or "")
    if title_match:
        return title_match.group(1)
    return None


def extract_listing_id(order: ShopifyOrderPayload) -> str | None:
    """Find the marketplace listing an order was placed for.

    Checked in priority order, first match wins: the ``listing_id`` note
    attribute, then per line item its properties, a ``listing-<id>`` SKU and a
    ``[listing:<id>]`` title marker, and finally a ``listing_id: <id>``
    pattern in the free-text order note.
    """
    from_note_attributes = _attr_value(order.note_attributes, "listing_id")
    if from_note_attributes:
        return from_note_attributes
    for line_item in order.line_items:
        listing_id = listing_id_for_line_item(line_item)
        if listing_id:
            return listing_id
    if order.note:
        note_match = _NOTE_LISTING_RE.search(order.note)
        if note_match:
            return note_match.group(1)
    return None


def listing_ids_for_line_items(line_items: list[LineItem]) -> list[str]:
    ids: list[str] = []
    for line_item in line_items:
        listing_id = listing_id_for_line_item(line_item)
        if listing_id and listing_id not in ids:
            ids.append(listing_id)
    return ids


def extract_purchaser(order: ShopifyOrderPayload) -> str | None:
    from_note_attributes = _attr_value(order.note_attributes, "wallet_address")
    if from_note_attributes:
        return from_note_attributes
    if order.note:
        note_match = _NOTE_WALLET_RE.search(order.note)
        if note_match:
            return note_match.group(1)
    if order.customer and order.customer.note:
        customer_match = _CUSTOMER_WALLET_RE.search(order.customer.note)
        if customer_match:
            return customer_match.group(1)
    return None


class IdentityResolver:
    """Maps checkout, order and fulfillment ids onto stored order rows."""

    def __init__(self, db: Any, fulfillment_lookup: FulfillmentLookup | None = None):
        self.db = db
        self.fulfillment_lookup = fulfillment_lookup

    def _find_one(self, column: str, value: Any) -> dict[str, Any] | None:
        result = self.db.table(ORDERS_TABLE).select("*").eq(column, value).limit(1).execute()
        return result.data[0] if result.data else None

    def find_order(
        self,
        order_id: int | str | None,
        checkout_id: int | str | None = None,
    ) -> ResolvedOrder | None:
        if order_id is not None:
            try:
                row = self._find_one("shopify_order_id", int(order_id))
            except (TypeError, ValueError):
                row = None
            if row:
                return ResolvedOrder(row=row, matched_by="order_id")

        # Webhooks mix checkout and order ids, so the order id is tried as a checkout id too.
        candidates = [str(value) for value in (checkout_id, order_id) if value not in (None, "")]
        for candidate in dict.fromkeys(candidates):
            row = self._find_one("shopify_checkout_id", candidate)
            if row:
                return ResolvedOrder(row=row, matched_by="checkout_id")
        return None

    def resolve_fulfillment_order(
        self,
        fulfillment: FulfillmentPayload,
        request_id: str | None = None,
    ) -> ResolvedOrder | None:
        resolved = self.find_order(fulfillment.order_id)
        if resolved:
            return resolved
        if self.fulfillment_lookup is None:
            return None

        incr_metric("shopify.fulfillment_lookup.attempted")
        try:
            details = self.fulfillment_lookup(str(fulfillment.id))
        except Exception as exc:
            incr_metric("shopify.fulfillment_lookup.failed")
            log_event(
                "fulfillment_order_lookup_failed",
                level=logging.WARNING,
                request_id=request_id,
                fulfillment_id=fulfillment.id,
                order_id=fulfillment.order_id,
                error=str(exc),
            )
            return None

        order = details.get("order") or {}
        resolved = self.find_order(order.get("id"), order.get("checkout_id"))
        if not resolved:
            return None
        incr_metric("shopify.fulfillment_lookup.resolved", matched_by=resolved.matched_by)
        return ResolvedOrder(
            row=resolved.row,
            matched_by="api_order_id" if resolved.matched_by == "order_id" else "api_checkout_id",
        )

    def resolve_creator(self, listing_id: str) -> str | None:
        listing = (
            self.db.table(LISTINGS_TABLE)
            .select("id, ordered_by_user_id")
            .eq("id", listing_id)
            .limit(1)
            .execute()
        )
        if not listing.data:
            return None
        owner_id = listing.data[0].get("ordered_by_user_id")
        if not owner_id:
            log_event("listing_creator_missing", level=logging.WARNING, listing_id=listing_id)
            return UNKNOWN_WALLET
        user = self.db.table(USERS_TABLE).select("wallet_address").eq("id", owner_id).limit(1).execute()
        if not user.data:
            return UNKNOWN_WALLET
        return user.data[0].get("wallet_address") or UNKNOWN_WALLET

    def derive_creation_identity(self, order: ShopifyOrderPayload) -> CreationIdentity:
        listing_id = extract_listing_id(order)
        if not listing_id:
            raise OrderIdentityError("listing_not_identified", "Could not identify marketplace listing")
        creator = self.resolve_creator(listing_id)
        if not creator:
            raise OrderIdentityError("creator_not_identified", "Could not identify listing creator")
        return CreationIdentity(
            listing_id=listing_id,
            creator_wallet_address=creator,
            purchaser_wallet_address=extract_purchaser(order) or UNKNOWN_WALLET,
        )
