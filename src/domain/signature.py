from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
from dataclasses import dataclass
from typing import Literal


SignatureStatus = Literal["verified", "skipped_no_secret", "invalid"]


@dataclass(frozen=True)
class SignatureCheck:
    status: SignatureStatus
    reason: str | None = None

    @property
    def accepted(self) -> bool:
        return self.status != "invalid"

    @property
    def verified(self) -> bool:
        return self.status == "verified"


def compute_webhook_signature(raw_body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_webhook_signature(raw_body: bytes, signature: str | None, secret: str) -> bool:
    """Check a base64 HMAC-SHA256 signature over the literal request body.

    The comparison runs on decoded digests with ``hmac.compare_digest`` so
    timing does not leak how much of the signature matched. A header that is
    not valid base64 is simply a mismatch.
    """
    if not signature:
        return False
    try:
        provided = base64.b64decode(signature.strip(), validate=True)
    except (binascii.Error, ValueError):
        return False
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    return hmac.compare_digest(expected, provided)


def check_webhook_signature(raw_body: bytes, signature: str | None, secret: str | None) -> SignatureCheck:
    if not secret:
        return SignatureCheck(status="skipped_no_secret", reason="secret_not_configured")
    if not signature:
        return SignatureCheck(status="invalid", reason="missing_signature")
    if not verify_webhook_signature(raw_body, signature, secret):
        return SignatureCheck(status="invalid", reason="invalid_signature")
    return SignatureCheck(status="verified")
