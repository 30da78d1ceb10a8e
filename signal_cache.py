"""Bounded, deduplicated cache of social/news signals.

Signals arrive from every gatherer on each data tick and are merged into one
list that is capped both by entry count and by an estimated serialised size.
Eviction is lossy: callers must not assume any particular signal survives an
ingest.  Query helpers in this module never mutate the cache.
"""

from __future__ import annotations

import json
import math
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set

from log_utils import setup_logger

logger = setup_logger(__name__)

SIGNAL_MAX_AGE_MS = 24 * 60 * 60 * 1000
SIGNAL_CACHE_MAX = 200
SIGNAL_CACHE_EMERGENCY_MIN = 80
SIGNAL_CACHE_MEMORY_BUDGET_BYTES = 5 * 1024 * 1024

QUALITY_WINDOW_MS = 3 * 60 * 60 * 1000
OUTLIER_THRESHOLD = 2.4
HIGH_CORRELATION_PAIR = 0.8
CORRELATED_TRADE_BLOCK = 0.84


def _now_ms() -> int:
    return int(time.time() * 1000)


def clamp01(value: float) -> float:
    if not isinstance(value, (int, float)) or not math.isfinite(value):
        return 0.0
    return max(0.0, min(1.0, float(value)))


def _is_finite_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def population_stdev(values: Sequence[float]) -> float:
    if len(values) < 2:
        return 0.0
    mean = sum(values) / len(values)
    variance = sum((value - mean) ** 2 for value in values) / len(values)
    return math.sqrt(max(variance, 0.0))


@dataclass
class Signal:
    symbol: str
    source: str
    source_detail: str
    sentiment: float
    raw_sentiment: float
    volume: float = 1
    freshness: float = 1.0
    source_weight: float = 1.0
    reason: str = ""
    timestamp: int = 0
    upvotes: Optional[int] = None
    comments: Optional[int] = None
    quality_score: Optional[float] = None
    subreddits: Optional[List[str]] = None
    best_flair: Optional[str] = None
    bullish: Optional[int] = None
    bearish: Optional[int] = None
    is_crypto: Optional[bool] = None
    momentum: Optional[float] = None
    price: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Signal":
        known = cls.__dataclass_fields__
        return cls(**{key: value for key, value in data.items() if key in known})


def is_signal_fresh_and_valid(signal: Optional[Signal], now: int, max_age_ms: int = SIGNAL_MAX_AGE_MS) -> bool:
    if signal is None:
        return False
    if not signal.symbol or not signal.source or not signal.source_detail:
        return False
    if not _is_finite_number(signal.timestamp) or signal.timestamp <= 0:
        return False
    if not _is_finite_number(signal.sentiment) or not _is_finite_number(signal.raw_sentiment):
        return False
    return now - signal.timestamp <= max_age_ms


def _encoded_size(signal: Signal) -> int:
    return len(json.dumps(signal.to_dict(), separators=(",", ":"), default=str).encode("utf-8"))


def estimate_size_bytes(signals: Sequence[Signal]) -> int:
    """UTF-8 length of the compact JSON array holding ``signals``."""

    try:
        payload = [signal.to_dict() for signal in signals]
        return len(json.dumps(payload, separators=(",", ":"), default=str).encode("utf-8"))
    except (TypeError, ValueError):
        return 0


@dataclass
class IngestReport:
    before_count: int
    after_count: int
    estimated_bytes: int
    cleaned_up: bool = False


@dataclass
class SignalCache:
    """The signal list plus its size bookkeeping."""

    signals: List[Signal] = field(default_factory=list)
    bytes_estimate: int = 0
    peak_bytes: int = 0
    cleanup_count: int = 0
    last_cleanup_at: Optional[int] = None
    max_entries: int = SIGNAL_CACHE_MAX
    emergency_min: int = SIGNAL_CACHE_EMERGENCY_MIN
    memory_budget_bytes: int = SIGNAL_CACHE_MEMORY_BUDGET_BYTES

    def __len__(self) -> int:
        return len(self.signals)

    def ingest(self, incoming: Iterable[Signal], now: Optional[int] = None) -> IngestReport:
        """Merge ``incoming`` into the cache and enforce both bounds."""

        ts = _now_ms() if now is None else now
        merged = [signal for signal in [*incoming, *self.signals] if is_signal_fresh_and_valid(signal, ts)]

        deduped: Dict[str, Signal] = {}
        for signal in merged:
            key = f"{signal.symbol}|{signal.source_detail}"
            previous = deduped.get(key)
            if previous is None:
                deduped[key] = signal
                continue
            newer = signal.timestamp > previous.timestamp
            stronger = signal.timestamp == previous.timestamp and abs(signal.sentiment) > abs(previous.sentiment)
            if newer or stronger:
                deduped[key] = signal

        ordered = sorted(deduped.values(), key=lambda item: (-abs(item.sentiment), -item.timestamp))
        kept = ordered[: self.max_entries]

        estimated = estimate_size_bytes(kept)
        self.bytes_estimate = estimated
        self.peak_bytes = max(self.peak_bytes, estimated)
        cleaned_up = False

        if estimated > self.memory_budget_bytes:
            avg_bytes = max(1, round(estimated / max(1, len(kept))))
            memory_bound = self.memory_budget_bytes // avg_bytes
            emergency_limit = max(self.emergency_min, min(len(kept), memory_bound))
            kept = kept[:emergency_limit]
            kept = self._fit_budget(kept)
            self.cleanup_count += 1
            self.last_cleanup_at = ts
            self.bytes_estimate = estimate_size_bytes(kept)
            cleaned_up = True

        self.signals = kept
        return IngestReport(
            before_count=len(deduped),
            after_count=len(kept),
            estimated_bytes=estimated,
            cleaned_up=cleaned_up,
        )

    def _fit_budget(self, signals: List[Signal]) -> List[Signal]:
        # The emergency floor may still exceed the budget with oversized entries.
        sizes = [_encoded_size(signal) for signal in signals]
        total = 2 + sum(sizes) + max(0, len(sizes) - 1)
        while sizes and total > self.memory_budget_bytes:
            total -= sizes.pop() + (1 if sizes else 0)
        return signals[: len(sizes)]

    def trim_newest(self, limit: int) -> bool:
        """Keep the ``limit`` newest signals by timestamp; return if changed."""

        if len(self.signals) <= limit:
            return False
        self.signals = sorted(self.signals, key=lambda item: item.timestamp, reverse=True)[:limit]
        self.bytes_estimate = estimate_size_bytes(self.signals)
        return True

    def clear(self) -> None:
        self.signals = []
        self.bytes_estimate = 0

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def signals_for_symbol(self, symbol: str) -> List[Signal]:
        return [signal for signal in self.signals if signal.symbol == symbol]

    def latest_for_symbol(self, symbol: str) -> Optional[Signal]:
        upper = symbol.upper()
        for signal in self.signals:
            if signal.symbol.upper() == upper:
                return signal
        return None

    def symbol_profile(self, symbol: str) -> Optional["SymbolProfile"]:
        samples = self.signals_for_symbol(symbol)
        if not samples:
            return None
        return SymbolProfile(
            symbol=symbol,
            sentiment=sum(signal.sentiment for signal in samples) / len(samples),
            mentions=len(samples),
            freshness=max(clamp01(signal.freshness or 0) for signal in samples),
            sources={signal.source for signal in samples},
        )

    def dispersion(self) -> float:
        """Population stdev of the first 120 finite sentiments."""

        values = [signal.sentiment for signal in self.signals if _is_finite_number(signal.sentiment)][:120]
        return population_stdev(values)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "signals": [signal.to_dict() for signal in self.signals],
            "bytes_estimate": self.bytes_estimate,
            "peak_bytes": self.peak_bytes,
            "cleanup_count": self.cleanup_count,
            "last_cleanup_at": self.last_cleanup_at,
        }

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "SignalCache":
        if not data:
            return cls()
        signals: List[Signal] = []
        dropped = 0
        for item in data.get("signals") or []:
            try:
                signals.append(Signal.from_dict(item))
            except (AttributeError, TypeError, ValueError):
                dropped += 1
        if dropped:
            logger.warning("Dropped %d malformed cached signals on restore", dropped)
        return cls(
            signals=signals,
            bytes_estimate=int(data.get("bytes_estimate") or 0),
            peak_bytes=int(data.get("peak_bytes") or 0),
            cleanup_count=int(data.get("cleanup_count") or 0),
            last_cleanup_at=data.get("last_cleanup_at"),
        )


@dataclass
class SymbolProfile:
    symbol: str
    sentiment: float
    mentions: int
    freshness: float
    sources: Set[str]


def signal_correlation(left: SymbolProfile, right: SymbolProfile) -> float:
    """Heuristic similarity of two symbols' signal footprints in [0, 1]."""

    union = left.sources | right.sources
    overlap = len(left.sources & right.sources) / len(union) if union else 0.0
    sentiment_alignment = 1 - min(2.0, abs(left.sentiment - right.sentiment)) / 2
    freshness_alignment = 1 - min(1.0, abs(left.freshness - right.freshness))
    low = min(max(left.mentions, 1), max(right.mentions, 1))
    high = max(max(left.mentions, 1), max(right.mentions, 1))
    volume_ratio = low / high
    return clamp01(overlap * 0.45 + sentiment_alignment * 0.3 + freshness_alignment * 0.15 + volume_ratio * 0.1)


def candidate_outlier_scores(candidates: Sequence[SymbolProfile]) -> Dict[str, float]:
    """Weighted z-score per symbol; empty when fewer than five candidates."""

    if len(candidates) < 5:
        return {}
    abs_sentiments = [abs(item.sentiment) for item in candidates]
    log_mentions = [math.log10(max(1, item.mentions)) for item in candidates]
    freshness = [clamp01(item.freshness) for item in candidates]
    diversity = [clamp01(len(item.sources) / 4) for item in candidates]

    def _z(values: List[float]) -> List[float]:
        mean = sum(values) / len(values)
        stdev = population_stdev(values)
        return [abs(value - mean) / stdev if stdev > 0 else 0.0 for value in values]

    z_sent, z_mentions, z_fresh, z_src = _z(abs_sentiments), _z(log_mentions), _z(freshness), _z(diversity)
    return {
        item.symbol: z_sent[idx] * 0.5 + z_mentions[idx] * 0.25 + z_fresh[idx] * 0.15 + z_src[idx] * 0.1
        for idx, item in enumerate(candidates)
    }


def aggregate_profiles(signals: Iterable[Signal]) -> List[SymbolProfile]:
    """Average sentiment per upper-cased symbol, preserving first-seen order."""

    totals: Dict[str, SymbolProfile] = {}
    for signal in signals:
        symbol = signal.symbol.upper()
        profile = totals.get(symbol)
        if profile is None:
            profile = SymbolProfile(symbol=symbol, sentiment=0.0, mentions=0, freshness=0.0, sources=set())
            totals[symbol] = profile
        profile.sentiment += signal.sentiment
        profile.mentions += 1
        profile.freshness = max(profile.freshness, clamp01(signal.freshness))
        profile.sources.add(signal.source)
    for profile in totals.values():
        profile.sentiment = profile.sentiment / profile.mentions if profile.mentions else 0.0
    return list(totals.values())


def build_signal_quality_metrics(
    cache: SignalCache,
    held_symbols: Set[str],
    now: Optional[int] = None,
) -> Dict[str, Any]:
    ts = _now_ms() if now is None else now
    recent = [
        signal
        for signal in cache.signals
        if _is_finite_number(signal.timestamp) and ts - signal.timestamp <= QUALITY_WINDOW_MS
    ][:200]
    candidates = aggregate_profiles(recent)
    outliers = candidate_outlier_scores(candidates)
    filtered = [item.symbol for item in candidates if outliers.get(item.symbol, 0.0) >= OUTLIER_THRESHOLD]

    pairs: List[Dict[str, Any]] = []
    total = 0.0
    count = 0
    highest = 0.0
    for i, left in enumerate(candidates):
        for right in candidates[i + 1 :]:
            correlation = signal_correlation(left, right)
            total += correlation
            count += 1
            highest = max(highest, correlation)
            if correlation >= HIGH_CORRELATION_PAIR:
                pairs.append({"left": left.symbol, "right": right.symbol, "correlation": correlation})
    pairs.sort(key=lambda pair: pair["correlation"], reverse=True)

    return {
        "timestamp": ts,
        "total_signals": len(recent),
        "unique_symbols": len(candidates),
        "outlier_count": len(filtered),
        "average_correlation": total / count if count else 0.0,
        "max_correlation": highest if count else 0.0,
        "high_correlation_pairs": pairs[:8],
        "filtered_symbols": [symbol for symbol in filtered if symbol not in held_symbols][:8],
    }


def should_block_correlated_trade(
    cache: SignalCache, candidate_symbol: str, held_symbols: Iterable[str]
) -> Dict[str, Any]:
    candidate = cache.symbol_profile(candidate_symbol)
    if candidate is None:
        return {"blocked": False, "max_correlation": 0.0, "peer": None}
    highest = 0.0
    peer: Optional[str] = None
    for held in held_symbols:
        profile = cache.symbol_profile(held)
        if profile is None:
            continue
        correlation = signal_correlation(candidate, profile)
        if correlation > highest:
            highest = correlation
            peer = held
    return {"blocked": highest >= CORRELATED_TRADE_BLOCK, "max_correlation": highest, "peer": peer}


__all__ = [
    "IngestReport",
    "Signal",
    "SignalCache",
    "SymbolProfile",
    "aggregate_profiles",
    "build_signal_quality_metrics",
    "candidate_outlier_scores",
    "clamp01",
    "estimate_size_bytes",
    "is_signal_fresh_and_valid",
    "population_stdev",
    "should_block_correlated_trade",
    "signal_correlation",
]
