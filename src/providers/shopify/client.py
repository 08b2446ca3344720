from __future__ import annotations

import random
import time
from typing import Any

import httpx


_RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}
_MAX_RETRY_ATTEMPTS = 3
_RETRY_BASE_DELAY_SECONDS = 0.25
_RETRY_MAX_DELAY_SECONDS = 2.0

_FULFILLMENT_QUERY = """
query GetFulfillment($id: ID!) {
  fulfillment(id: $id) {
    id
    legacyResourceId
    name
    status
    createdAt
    trackingInfo {
      company
      number
      url
    }
    order {
      id
      legacyResourceId
      name
      email
      createdAt
      checkoutId
      displayFinancialStatus
      displayFulfillmentStatus
    }
  }
}
"""


class ShopifyProviderError(Exception):
    """Provider-level exception for Shopify Admin API failures."""

    @property
    def category(self) -> str:
        message = str(self).lower()
        if (
            "connectivity error" in message
            or "http 429" in message
            or "http 500" in message
            or "http 502" in message
            or "http 503" in message
            or "http 504" in message
        ):
            return "transient"
        if "not found" in message:
            return "not_found"
        if (
            "invalid shopify access token" in message
            or "missing shopify" in message
            or "graphql errors" in message
            or "non-json" in message
        ):
            return "terminal"
        return "unknown"

    @property
    def retryable(self) -> bool:
        return self.category == "transient"


def _graphql_url(store: str, api_version: str) -> str:
    host = store if store.endswith(".myshopify.com") else f"{store}.myshopify.com"
    return f"https://{host}/admin/api/{api_version}/graphql.json"


def _request_with_retry(
    *,
    url: str,
    headers: dict[str, str],
    json_payload: dict[str, Any],
    timeout_seconds: float,
) -> httpx.Response:
    last_exc: httpx.HTTPError | None = None
    response: httpx.Response | None = None
    for attempt in range(1, _MAX_RETRY_ATTEMPTS + 1):
        try:
            with httpx.Client(timeout=timeout_seconds) as client:
                response = client.post(url, headers=headers, json=json_payload)
        except httpx.HTTPError as exc:
            last_exc = exc
            if attempt >= _MAX_RETRY_ATTEMPTS:
                raise
            delay = min(_RETRY_BASE_DELAY_SECONDS * (2 ** (attempt - 1)), _RETRY_MAX_DELAY_SECONDS)
            delay += random.uniform(0, delay * 0.2)
            time.sleep(delay)
            continue

        if response.status_code in _RETRYABLE_STATUS_CODES and attempt < _MAX_RETRY_ATTEMPTS:
            delay = min(_RETRY_BASE_DELAY_SECONDS * (2 ** (attempt - 1)), _RETRY_MAX_DELAY_SECONDS)
            delay += random.uniform(0, delay * 0.2)
            time.sleep(delay)
            continue
        return response

    if last_exc:
        raise last_exc
    assert response is not None
    return response


def _graphql(
    *,
    store: str | None,
    access_token: str | None,
    api_version: str,
    query: str,
    variables: dict[str, Any],
    timeout_seconds: float,
) -> dict[str, Any]:
    if not store:
        raise ShopifyProviderError("Missing Shopify store")
    if not access_token:
        raise ShopifyProviderError("Missing Shopify access token")

    try:
        response = _request_with_retry(
            url=_graphql_url(store, api_version),
            headers={
                "X-Shopify-Access-Token": access_token,
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            json_payload={"query": query, "variables": variables},
            timeout_seconds=timeout_seconds,
        )
    except httpx.HTTPError as exc:
        raise ShopifyProviderError(f"Shopify connectivity error: {exc}") from exc

    if response.status_code in {401, 403}:
        raise ShopifyProviderError("Invalid Shopify access token")
    if response.status_code >= 400:
        raise ShopifyProviderError(
            f"Shopify API returned HTTP {response.status_code}: {response.text[:200]}"
        )
    try:
        body = response.json()
    except ValueError as exc:
        raise ShopifyProviderError("Shopify returned non-JSON response") from exc
    if body.get("errors"):
        raise ShopifyProviderError(f"Shopify GraphQL errors: {str(body['errors'])[:200]}")
    return body.get("data") or {}


def _legacy_id(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value)
    # gid://shopify/Checkout/123 -> 123
    return text.rsplit("/", 1)[-1] or None


def get_fulfillment_details(
    fulfillment_id: str | int,
    *,
    store: str | None,
    access_token: str | None,
    api_version: str = "2024-10",
    timeout_seconds: float = 10.0,
) -> dict[str, Any]:
    """Fetch a fulfillment and the order it belongs to.

    Returns ``{"fulfillment": {...}, "order": {...}}`` with plain numeric ids
    so callers can match them against stored webhook identifiers.
    """
    data = _graphql(
        store=store,
        access_token=access_token,
        api_version=api_version,
        query=_FULFILLMENT_QUERY,
        variables={"id": f"gid://shopify/Fulfillment/{fulfillment_id}"},
        timeout_seconds=timeout_seconds,
    )
    fulfillment = data.get("fulfillment")
    if not fulfillment:
        raise ShopifyProviderError(f"Fulfillment {fulfillment_id} not found in Shopify")

    tracking = (fulfillment.get("trackingInfo") or [{}])[0] or {}
    order = fulfillment.get("order") or {}
    return {
        "fulfillment": {
            "id": fulfillment.get("legacyResourceId"),
            "status": fulfillment.get("status"),
            "created_at": fulfillment.get("createdAt"),
            "tracking_company": tracking.get("company"),
            "tracking_number": tracking.get("number"),
            "tracking_url": tracking.get("url"),
        },
        "order": {
            "id": order.get("legacyResourceId"),
            "name": order.get("name"),
            "email": order.get("email"),
            "financial_status": order.get("displayFinancialStatus"),
            "fulfillment_status": order.get("displayFulfillmentStatus"),
            "created_at": order.get("createdAt"),
            "checkout_id": _legacy_id(order.get("checkoutId")),
        },
    }
