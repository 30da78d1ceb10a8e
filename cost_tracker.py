"""LLM spend accounting using per-model token pricing."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Any, Dict, Mapping, Optional

from observability import record_metric

# USD per one million tokens.
MODEL_PRICING: Dict[str, Dict[str, float]] = {
    "gpt-4o": {"input": 2.5, "output": 10.0},
    "gpt-4o-mini": {"input": 0.15, "output": 0.6},
    "deepseek-chat": {"input": 0.27, "output": 1.1},
    "deepseek-reasoner": {"input": 0.55, "output": 2.19},
}
DEFAULT_PRICING_MODEL = "gpt-4o-mini"


def _safe_tokens(value: Any) -> float:
    if not isinstance(value, (int, float)) or not math.isfinite(value):
        return 0.0
    return max(0.0, float(value))


def normalise_model_name(model: str) -> str:
    """Strip a ``provider/`` prefix such as ``openai/gpt-4o``."""

    if "/" in model:
        return model.split("/", 1)[1] or model
    return model


@dataclass
class CostTracker:
    total_usd: float = 0.0
    calls: int = 0
    tokens_in: float = 0.0
    tokens_out: float = 0.0

    def track_llm_cost(self, model: str, tokens_in: Any, tokens_out: Any) -> float:
        """Add one call to the running totals and return its cost in USD."""

        safe_in = _safe_tokens(tokens_in)
        safe_out = _safe_tokens(tokens_out)
        normalised = normalise_model_name(model or DEFAULT_PRICING_MODEL)
        rates = MODEL_PRICING.get(normalised) or MODEL_PRICING.get(model) or MODEL_PRICING[DEFAULT_PRICING_MODEL]
        cost = (safe_in * rates["input"] + safe_out * rates["output"]) / 1_000_000

        self.total_usd += cost
        self.calls += 1
        self.tokens_in += safe_in
        self.tokens_out += safe_out
        record_metric("llm_cost_usd", cost, labels={"model": normalised})
        return cost

    def track_usage(self, model: str, usage: Optional[Mapping[str, Any]]) -> float:
        if not usage:
            return 0.0
        return self.track_llm_cost(model, usage.get("prompt_tokens"), usage.get("completion_tokens"))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "CostTracker":
        if not data:
            return cls()
        return cls(
            total_usd=float(data.get("total_usd", 0.0)),
            calls=int(data.get("calls", 0)),
            tokens_in=_safe_tokens(data.get("tokens_in", 0)),
            tokens_out=_safe_tokens(data.get("tokens_out", 0)),
        )


__all__ = ["CostTracker", "MODEL_PRICING", "normalise_model_name"]
