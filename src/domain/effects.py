from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from src.observability import incr_metric, log_event


@dataclass
class EffectResult:
    """Outcome of one write performed while reconciling a notification."""

    name: str
    ok: bool
    critical: bool = True
    message: str | None = None
    error: str | None = None
    matched: bool = True
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, name: str, message: str | None = None, **data: Any) -> "EffectResult":
        return cls(name=name, ok=True, message=message, data=data)

    @classmethod
    def failure(cls, name: str, error: str, message: str | None = None) -> "EffectResult":
        return cls(name=name, ok=False, message=message, error=error)

    def as_secondary(self) -> "EffectResult":
        self.critical = False
        return self


@dataclass
class EffectsOutcome:
    results: list[EffectResult] = field(default_factory=list)

    def add(self, result: EffectResult) -> EffectResult:
        self.results.append(result)
        return result

    @property
    def ok(self) -> bool:
        return all(result.ok for result in self.results if result.critical)

    @property
    def primary_error(self) -> str | None:
        for result in self.results:
            if result.critical and not result.ok:
                return result.error or result.message or result.name
        return None

    def summary(self) -> dict[str, bool]:
        return {result.name: result.ok for result in self.results}


def run_secondary(
    outcome: EffectsOutcome,
    name: str,
    effect: Callable[[], EffectResult | None],
    *,
    request_id: str | None = None,
    **context: Any,
) -> EffectResult:
    """Run a non-critical effect; failures are recorded and logged, never raised."""
    try:
        result = effect() or EffectResult.success(name)
    except Exception as exc:
        result = EffectResult.failure(name, str(exc))
    result.name = name
    result.as_secondary()
    outcome.add(result)
    if not result.ok:
        incr_metric("webhook.secondary_effect.failed", effect=name)
        log_event(
            "webhook_secondary_effect_failed",
            level=logging.WARNING,
            request_id=request_id,
            effect=name,
            error=result.error,
            **context,
        )
    return result
