from __future__ import annotations

import json
import logging
from collections import Counter
from datetime import date, datetime
from decimal import Decimal
from threading import Lock
from typing import Any


logger = logging.getLogger("marketplace_orders")


class CounterRegistry:
    """Process-local counters keyed by ``name|label=value,...``."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._counts: Counter[str] = Counter()

    def incr(self, key: str, value: int = 1) -> None:
        with self._lock:
            self._counts[key] += value

    def snapshot(self, prefix: str | None = None) -> dict[str, int]:
        with self._lock:
            return {k: v for k, v in self._counts.items() if not prefix or k.startswith(prefix)}

    def clear(self) -> None:
        with self._lock:
            self._counts.clear()


_registry = CounterRegistry()


def _json_safe(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_json_safe(v) for v in value]
    return str(value)


def metric_key(name: str, **labels: Any) -> str:
    present = {k: v for k, v in labels.items() if v is not None}
    if not present:
        return name
    return name + "|" + ",".join(f"{k}={present[k]}" for k in sorted(present))


def incr_metric(name: str, value: int = 1, **labels: Any) -> None:
    _registry.incr(metric_key(name, **{k: _json_safe(v) for k, v in labels.items()}), value)


def metrics_snapshot(prefix: str | None = None) -> dict[str, int]:
    return _registry.snapshot(prefix)


def reset_metrics() -> None:
    _registry.clear()


def log_event(
    event: str,
    *,
    level: int = logging.INFO,
    request_id: str | None = None,
    **fields: Any,
) -> None:
    """Emit one JSON log line; ``None`` fields are dropped to keep lines short."""
    record: dict[str, Any] = {"event": event}
    if request_id:
        record["request_id"] = request_id
    record.update({key: _json_safe(value) for key, value in fields.items() if value is not None})
    logger.log(level, json.dumps(record, sort_keys=True))


def record_webhook_outcome(
    outcome: str,
    *,
    topic: str,
    event_id: str | None = None,
    level: int = logging.INFO,
    request_id: str | None = None,
    **fields: Any,
) -> None:
    incr_metric(f"webhook.events.{outcome}", topic=topic)
    log_event(
        f"webhook_{outcome}",
        level=level,
        request_id=request_id,
        topic=topic,
        event_id=event_id,
        **fields,
    )
