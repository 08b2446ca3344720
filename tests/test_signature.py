import base64

from src.domain.signature import (
    check_webhook_signature,
    compute_webhook_signature,
    verify_webhook_signature,
)


BODY = b'{"id":1001,"total_price":"25.00"}'


def test_signature_over_exact_bytes():
    signature = compute_webhook_signature(BODY, "secret")
    assert verify_webhook_signature(BODY, signature, "secret") is True
    # Re-serialized JSON with different whitespace is a different body.
    assert verify_webhook_signature(b'{"id": 1001, "total_price": "25.00"}', signature, "secret") is False
    assert verify_webhook_signature(BODY, signature, "other-secret") is False


def test_malformed_signatures_are_mismatches():
    assert verify_webhook_signature(BODY, None, "secret") is False
    assert verify_webhook_signature(BODY, "", "secret") is False
    assert verify_webhook_signature(BODY, "%%%not-base64%%%", "secret") is False
    assert verify_webhook_signature(BODY, base64.b64encode(b"short").decode(), "secret") is False


def test_signature_check_outcomes():
    signature = compute_webhook_signature(BODY, "secret")

    verified = check_webhook_signature(BODY, signature, "secret")
    assert verified.status == "verified"
    assert verified.accepted and verified.verified

    skipped = check_webhook_signature(BODY, "anything", None)
    assert skipped.status == "skipped_no_secret"
    assert skipped.accepted and not skipped.verified

    missing = check_webhook_signature(BODY, None, "secret")
    assert missing.status == "invalid"
    assert missing.reason == "missing_signature"
    assert not missing.accepted

    wrong = check_webhook_signature(BODY + b" ", signature, "secret")
    assert wrong.reason == "invalid_signature"
