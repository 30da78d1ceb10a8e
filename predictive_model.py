"""Online logistic scorer for entry candidates.

The model is intentionally tiny: a bias plus five feature weights that are
nudged by one gradient step after every closed trade.  It is never batch
retrained; only a full agent reset restores the defaults.
"""

from __future__ import annotations

import math
import time
from copy import deepcopy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

import pandas as pd

from signal_cache import clamp01

FEATURES = ("sentiment", "freshness", "sourceDiversity", "logVolume", "regimeAlignment")
WEIGHT_LIMIT = 3.0

DEFAULT_WEIGHTS: Dict[str, float] = {
    "sentiment": 1.2,
    "freshness": 0.8,
    "sourceDiversity": 0.5,
    "logVolume": 0.35,
    "regimeAlignment": 0.4,
}


def _now_ms() -> int:
    return int(time.time() * 1000)


def sigmoid(value: float) -> float:
    if not isinstance(value, (int, float)) or not math.isfinite(value):
        return 0.5
    if value > 20:
        return 1.0
    if value < -20:
        return 0.0
    return 1 / (1 + math.exp(-value))


def regime_alignment(sentiment: float, regime: str) -> float:
    direction = 1 if sentiment >= 0 else -1
    if regime == "trending":
        return 0.7 * direction
    if regime == "volatile":
        return 0.1 if direction > 0 else -0.2
    return 0.0


@dataclass
class SymbolOutcomeStats:
    samples: int = 0
    wins: int = 0
    losses: int = 0
    avg_return_pct: float = 0.0
    last_outcome_at: int = 0


@dataclass
class PredictiveModelState:
    bias: float = 0.0
    learning_rate: float = 0.05
    weights: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_WEIGHTS))
    samples: int = 0
    hit_rate: float = 0.0
    mse: float = 0.0
    last_updated_at: int = 0
    per_symbol: Dict[str, SymbolOutcomeStats] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bias": self.bias,
            "learning_rate": self.learning_rate,
            "weights": dict(self.weights),
            "samples": self.samples,
            "hit_rate": self.hit_rate,
            "mse": self.mse,
            "last_updated_at": self.last_updated_at,
            "per_symbol": {symbol: vars(stats).copy() for symbol, stats in self.per_symbol.items()},
        }

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "PredictiveModelState":
        if not data:
            return cls()
        weights = dict(DEFAULT_WEIGHTS)
        for name, value in (data.get("weights") or {}).items():
            if name in weights and isinstance(value, (int, float)):
                weights[name] = float(value)
        per_symbol = {
            str(symbol): SymbolOutcomeStats(**{k: v for k, v in stats.items() if k in SymbolOutcomeStats.__dataclass_fields__})
            for symbol, stats in (data.get("per_symbol") or {}).items()
            if isinstance(stats, Mapping)
        }
        return cls(
            bias=float(data.get("bias", 0.0)),
            learning_rate=float(data.get("learning_rate", 0.05)),
            weights=weights,
            samples=int(data.get("samples", 0)),
            hit_rate=float(data.get("hit_rate", 0.0)),
            mse=float(data.get("mse", 0.0)),
            last_updated_at=int(data.get("last_updated_at", 0)),
            per_symbol=per_symbol,
        )

    def copy(self) -> "PredictiveModelState":
        return deepcopy(self)


def build_features(
    sentiment: float,
    freshness: float,
    volume: float,
    source_diversity: float,
    regime: str,
) -> Dict[str, float]:
    """Normalise raw signal characteristics into ``[0, 1]`` features."""

    return {
        "sentiment": clamp01((sentiment + 1) / 2),
        "freshness": clamp01(freshness),
        "sourceDiversity": clamp01(source_diversity / 4),
        "logVolume": clamp01(math.log10(max(1.0, volume or 1)) / 3),
        "regimeAlignment": clamp01((regime_alignment(sentiment, regime) + 1) / 2),
    }


def predict_probability(
    model: PredictiveModelState,
    *,
    sentiment: float,
    freshness: float,
    volume: float,
    source_diversity: float,
    regime: str,
) -> float:
    """Probability in ``[0, 1]`` that an entry on this signal closes green."""

    features = build_features(sentiment, freshness, volume, source_diversity, regime)
    linear = model.bias + sum(model.weights[name] * (features[name] - 0.5) * 2 for name in FEATURES)
    return clamp01(sigmoid(linear))


def _clamp_weight(value: float) -> float:
    return max(-WEIGHT_LIMIT, min(WEIGHT_LIMIT, value))


def update_from_trade(
    model: PredictiveModelState,
    symbol: str,
    outcome_return_pct: float,
    entry: Optional[Mapping[str, Any]] = None,
    now: Optional[int] = None,
) -> float:
    """Apply one online gradient step for a closed trade.

    Parameters
    ----------
    model:
        Model state mutated in place.
    symbol:
        Traded symbol; per-symbol stats are keyed by its upper-case form.
    outcome_return_pct:
        Realised return in percent; positive counts as a win.
    entry:
        Position-entry record captured at fill time.  Missing fields fall
        back to neutral proxies.

    Returns
    -------
    float
        The prediction error (target minus entry prediction).
    """

    ts = _now_ms() if now is None else now
    entry = entry or {}
    target = 1 if outcome_return_pct > 0 else 0
    entry_prediction = entry.get("entry_prediction")
    prediction = clamp01(entry_prediction if entry_prediction is not None else 0.5)
    error = target - prediction
    lr = model.learning_rate

    sources = entry.get("entry_sources") or []
    social_volume = entry.get("entry_social_volume") or 1
    entry_regime = entry.get("entry_regime")
    regime_proxy = 0.5 if entry_regime == "trending" else -0.2 if entry_regime == "volatile" else 0.1

    model.bias += lr * error * 0.25
    weights = model.weights
    weights["sentiment"] += lr * error * float(entry.get("entry_sentiment") or 0)
    weights["freshness"] += lr * error * 0.15
    weights["sourceDiversity"] += lr * error * min(1.0, (len(sources) or 1) / 4)
    weights["logVolume"] += lr * error * min(1.0, math.log10(max(1.0, social_volume)) / 3)
    weights["regimeAlignment"] += lr * error * regime_proxy
    for name in FEATURES:
        weights[name] = _clamp_weight(weights[name])

    model.samples += 1
    previous = max(0, model.samples - 1)
    hit = 1 if error == 0 or target == (1 if prediction >= 0.5 else 0) else 0
    model.hit_rate = (model.hit_rate * previous + hit) / model.samples
    model.mse = (model.mse * previous + error**2) / model.samples
    model.last_updated_at = ts

    upper = symbol.upper()
    stats = model.per_symbol.get(upper) or SymbolOutcomeStats()
    stats.samples += 1
    if outcome_return_pct > 0:
        stats.wins += 1
    else:
        stats.losses += 1
    stats.avg_return_pct = (stats.avg_return_pct * (stats.samples - 1) + outcome_return_pct) / stats.samples
    stats.last_outcome_at = ts
    model.per_symbol[upper] = stats
    return error


def build_performance_attribution(model: PredictiveModelState, now: Optional[int] = None) -> Dict[str, Any]:
    """Summarise realised outcomes per symbol and weight share per factor."""

    ts = _now_ms() if now is None else now
    rows: List[Dict[str, Any]] = [
        {
            "symbol": symbol,
            "samples": max(0, stats.samples),
            "win_rate": max(0, stats.wins) / stats.samples if stats.samples > 0 else 0.0,
            "avg_return_pct": float(stats.avg_return_pct or 0.0),
        }
        for symbol, stats in model.per_symbol.items()
        if stats.samples > 0
    ]
    frame = pd.DataFrame(rows, columns=["symbol", "samples", "win_rate", "avg_return_pct"])
    total_samples = int(frame["samples"].sum()) if not frame.empty else 0
    weighted_avg = (
        float((frame["avg_return_pct"] * frame["samples"]).sum() / total_samples) if total_samples > 0 else 0.0
    )
    top = frame.sort_values("avg_return_pct", ascending=False, kind="mergesort").head(5)
    lagging = frame.sort_values("avg_return_pct", ascending=True, kind="mergesort").head(5)

    weights = model.weights
    labels = {
        "sentiment": "sentiment",
        "freshness": "freshness",
        "sourceDiversity": "sourceDiversity",
        "logVolume": "volume",
        "regimeAlignment": "regimeAlignment",
    }
    abs_total = sum(abs(weights[name]) for name in FEATURES) or 1.0
    factors = sorted(
        ({"factor": labels[name], "contribution": abs(weights[name]) / abs_total} for name in FEATURES),
        key=lambda item: item["contribution"],
        reverse=True,
    )
    return {
        "timestamp": ts,
        "total_samples": total_samples,
        "hit_rate": clamp01(model.hit_rate),
        "avg_return_pct": weighted_avg,
        "top_symbols": top.astype(object).to_dict("records"),
        "lagging_symbols": lagging.astype(object).to_dict("records"),
        "factor_attribution": factors,
    }


__all__ = [
    "DEFAULT_WEIGHTS",
    "FEATURES",
    "PredictiveModelState",
    "SymbolOutcomeStats",
    "build_features",
    "build_performance_attribution",
    "predict_probability",
    "regime_alignment",
    "sigmoid",
    "update_from_trade",
]
