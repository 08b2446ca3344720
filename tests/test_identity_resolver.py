import pytest

from src.models.webhooks import FulfillmentPayload, ShopifyOrderPayload
from src.observability import metrics_snapshot, reset_metrics
from src.services.identity import (
    IdentityResolver,
    OrderIdentityError,
    extract_listing_id,
    extract_purchaser,
)


WALLET = "0x" + "ab" * 20


def _order(**overrides):
    payload = {"id": 1001, "checkout_id": 2001, "line_items": []}
    payload.update(overrides)
    return ShopifyOrderPayload.model_validate(payload)


def test_listing_id_priority_order():
    order = _order(
        note_attributes=[{"name": "listing_id", "value": "from-attrs"}],
        line_items=[{"properties": [{"name": "listing_id", "value": "from-props"}]}],
        note="listing_id: abc123",
    )
    assert extract_listing_id(order) == "from-attrs"

    order = _order(line_items=[{"sku": "other"}, {"properties": {"listing_id": "from-props"}}])
    assert extract_listing_id(order) == "from-props"

    order = _order(line_items=[{"sku": "listing-abc-1"}])
    assert extract_listing_id(order) == "abc-1"

    order = _order(line_items=[{"title": "Camera [listing:9f8e7d]"}])
    assert extract_listing_id(order) == "9f8e7d"

    order = _order(note="Gift. listing_id: 4a5b6c")
    assert extract_listing_id(order) == "4a5b6c"

    assert extract_listing_id(_order(line_items=[{"title": "T-shirt"}])) is None


def test_purchaser_wallet_sources():
    assert extract_purchaser(_order(note_attributes={"wallet_address": WALLET})) == WALLET
    assert extract_purchaser(_order(note=f"wallet_address: {WALLET}")) == WALLET
    assert extract_purchaser(_order(customer={"id": 1, "note": f"wallet: {WALLET}"})) == WALLET
    assert extract_purchaser(_order()) is None


def test_find_order_by_order_id_then_checkout_id(make_db):
    db = make_db(
        {
            "shopify_orders": [
                {"shopify_order_id": 1001, "shopify_checkout_id": "2001"},
                {"shopify_order_id": 1002, "shopify_checkout_id": "3003"},
            ]
        }
    )
    resolver = IdentityResolver(db)

    by_id = resolver.find_order(1001)
    assert by_id.matched_by == "order_id"
    assert by_id.shopify_order_id == 1001

    by_checkout = resolver.find_order(9999, checkout_id=2001)
    assert by_checkout.matched_by == "checkout_id"
    assert by_checkout.shopify_order_id == 1001

    # Order ids are also tried as checkout ids.
    assert resolver.find_order(3003).shopify_order_id == 1002
    assert resolver.find_order(4242) is None
    assert resolver.find_order(None) is None


def test_fulfillment_resolution_uses_lookup_only_after_local_miss(make_db):
    reset_metrics()
    db = make_db({"shopify_orders": [{"shopify_order_id": 1001, "shopify_checkout_id": "2001"}]})
    calls = []

    def _lookup(fulfillment_id):
        calls.append(fulfillment_id)
        return {"order": {"id": "7777", "checkout_id": "2001"}}

    resolver = IdentityResolver(db, fulfillment_lookup=_lookup)

    local = resolver.resolve_fulfillment_order(FulfillmentPayload(id=1, order_id=1001))
    assert local.matched_by == "order_id"
    assert calls == []

    remote = resolver.resolve_fulfillment_order(FulfillmentPayload(id=2, order_id=5555))
    assert remote.matched_by == "api_checkout_id"
    assert remote.shopify_order_id == 1001
    assert calls == ["2"]
    assert metrics_snapshot()["shopify.fulfillment_lookup.resolved|matched_by=checkout_id"] == 1


def test_fulfillment_resolution_without_lookup_returns_none(make_db):
    resolver = IdentityResolver(make_db({"shopify_orders": []}))
    assert resolver.resolve_fulfillment_order(FulfillmentPayload(id=3, order_id=42)) is None


def test_creation_identity(make_db):
    db = make_db(
        {
            "listings": [
                {"id": "L-1", "ordered_by_user_id": "user-1"},
                {"id": "L-2", "ordered_by_user_id": None},
            ],
            "users": [{"id": "user-1", "wallet_address": WALLET}],
        }
    )
    resolver = IdentityResolver(db)

    identity = resolver.derive_creation_identity(_order(note_attributes={"listing_id": "L-1"}))
    assert identity.listing_id == "L-1"
    assert identity.creator_wallet_address == WALLET
    assert identity.purchaser_wallet_address == "unknown"

    orphan = resolver.derive_creation_identity(_order(note_attributes={"listing_id": "L-2"}))
    assert orphan.creator_wallet_address == "unknown"

    with pytest.raises(OrderIdentityError) as missing_listing:
        resolver.derive_creation_identity(_order())
    assert missing_listing.value.reason == "listing_not_identified"

    with pytest.raises(OrderIdentityError) as unknown_listing:
        resolver.derive_creation_identity(_order(note_attributes={"listing_id": "L-404"}))
    assert unknown_listing.value.reason == "creator_not_identified"
