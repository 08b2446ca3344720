from __future__ import annotations

from typing import Literal


OrderStatus = Literal["pending", "paid", "fulfilled", "cancelled", "refunded"]
ShipmentStatus = Literal["pending", "in_transit", "delivered", "exception"]

TERMINAL_ORDER_STATUSES: frozenset[str] = frozenset({"cancelled", "refunded"})
_ORDER_STATUS_RANK = {"pending": 0, "paid": 1, "fulfilled": 2}


def normalize_order_status(
    financial_status: str | None,
    fulfillment_status: str | None = None,
) -> OrderStatus:
    financial = str(financial_status or "").strip().lower()
    fulfillment = str(fulfillment_status or "").strip().lower()
    if financial in {"refunded"}:
        return "refunded"
    if financial in {"voided"}:
        return "cancelled"
    if fulfillment == "fulfilled" and financial in {"paid", "partially_refunded", ""}:
        return "fulfilled"
    if financial in {"paid", "partially_refunded"}:
        return "paid"
    return "pending"


def normalize_shipment_status(value: str | None) -> ShipmentStatus:
    # Under-claim progress: unknown vocabulary stays pending.
    if not value:
        return "pending"
    key = str(value).strip().lower()
    mapping = {
        "confirmed": "in_transit",
        "in_transit": "in_transit",
        "out_for_delivery": "in_transit",
        "delivered": "delivered",
        "failure": "exception",
        "attempted_delivery": "exception",
    }
    return mapping.get(key, "pending")


def normalize_wallet_address(value: str | None) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text.lower() if text else None


def is_valid_wallet_address(value: str | None) -> bool:
    if not value or not value.startswith("0x") or len(value) != 42:
        return False
    try:
        int(value[2:], 16)
    except ValueError:
        return False
    return True


def is_status_regression(current: str | None, target: str) -> bool:
    """True when moving ``current`` to ``target`` would go backwards.

    Terminal states never move. Among pending < paid < fulfilled only forward
    moves (or same-state rewrites) are allowed; cancel/refund are reachable
    from any non-terminal state.
    """
    if not current or current == target:
        return False
    if current in TERMINAL_ORDER_STATUSES:
        return True
    if target in TERMINAL_ORDER_STATUSES:
        return False
    return _ORDER_STATUS_RANK.get(target, 0) < _ORDER_STATUS_RANK.get(current, 0)
