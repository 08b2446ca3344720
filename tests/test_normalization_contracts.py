from src.domain.normalization import (
    is_status_regression,
    is_valid_wallet_address,
    normalize_order_status,
    normalize_shipment_status,
    normalize_wallet_address,
)


def test_order_status_normalization_contract():
    assert normalize_order_status("paid") == "paid"
    assert normalize_order_status("PAID") == "paid"
    assert normalize_order_status("partially_refunded") == "paid"
    assert normalize_order_status("refunded") == "refunded"
    assert normalize_order_status("voided") == "cancelled"
    assert normalize_order_status("pending") == "pending"
    assert normalize_order_status("authorized") == "pending"
    assert normalize_order_status(None) == "pending"
    assert normalize_order_status("paid", "fulfilled") == "fulfilled"
    assert normalize_order_status("refunded", "fulfilled") == "refunded"
    assert normalize_order_status("pending", "fulfilled") == "pending"


def test_shipment_status_normalization_contract():
    assert normalize_shipment_status("confirmed") == "in_transit"
    assert normalize_shipment_status("in_transit") == "in_transit"
    assert normalize_shipment_status("out_for_delivery") == "in_transit"
    assert normalize_shipment_status("delivered") == "delivered"
    assert normalize_shipment_status("failure") == "exception"
    assert normalize_shipment_status("attempted_delivery") == "exception"
    assert normalize_shipment_status("label_printed") == "pending"
    assert normalize_shipment_status(None) == "pending"


def test_status_regression_contract():
    assert is_status_regression("fulfilled", "paid") is True
    assert is_status_regression("paid", "pending") is True
    assert is_status_regression("paid", "fulfilled") is False
    assert is_status_regression("paid", "paid") is False
    assert is_status_regression("fulfilled", "cancelled") is False
    assert is_status_regression("cancelled", "paid") is True
    assert is_status_regression("refunded", "cancelled") is True
    assert is_status_regression(None, "pending") is False


def test_wallet_address_contract():
    wallet = "0x" + "Ab" * 20
    assert is_valid_wallet_address(wallet) is True
    assert is_valid_wallet_address("0x123") is False
    assert is_valid_wallet_address("0x" + "zz" * 20) is False
    assert is_valid_wallet_address(None) is False
    assert normalize_wallet_address(wallet) == "0x" + "ab" * 20
    assert normalize_wallet_address("  ") is None
