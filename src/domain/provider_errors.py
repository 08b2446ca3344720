from __future__ import annotations

from typing import Any, Protocol


# Upstream lookups surface as gateway errors; only a definite miss is a 404.
_STATUS_BY_CATEGORY = {
    "not_found": 404,
    "transient": 503,
    "terminal": 502,
    "unknown": 502,
}


class CategorizedProviderError(Protocol):
    @property
    def category(self) -> str: ...

    @property
    def retryable(self) -> bool: ...


def provider_error_http_status(exc: CategorizedProviderError) -> int:
    if exc.retryable:
        return 503
    return _STATUS_BY_CATEGORY.get(exc.category, 502)


def provider_error_detail(
    *,
    provider: str,
    operation: str,
    exc: CategorizedProviderError,
    **context: Any,
) -> dict[str, Any]:
    detail = {
        "type": "provider_error",
        "error": str(exc),
        "provider": provider,
        "operation": operation,
        "category": exc.category,
        "retryable": exc.retryable,
    }
    detail.update({key: value for key, value in context.items() if value is not None})
    return detail
