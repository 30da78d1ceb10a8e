"""Fan-out over external signal feeds and conversion into :class:`Signal`.

Concrete feed adapters live outside this repository.  Each one satisfies the
:class:`DataSource` protocol and yields plain mappings; this module weights
them and runs every feed behind its circuit breaker with a per-source
timeout, so one slow or failing feed never blocks the others.
"""

from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence

from agent_config import DEFAULT_SOURCE_CONFIG, SourceConfig
from circuit_breaker import CircuitBreakerRegistry, SourceRunResult, TokenBucket
from collaborators import normalize_crypto_symbol
from log_utils import setup_logger
from observability import log_event, record_metric
from signal_cache import Signal

logger = setup_logger(__name__)

DATA_GATHERER_TIMEOUT_S: Dict[str, float] = {
    "stocktwits": 6.0,
    "reddit": 12.0,
    "crypto": 4.0,
    "sec": 5.0,
    "scout": 4.0,
}
DEFAULT_TIMEOUT_S = 5.0


def _now_ms() -> int:
    return int(time.time() * 1000)


class DataSource(Protocol):
    """An external feed.  ``read_cost`` > 0 marks a budgeted source."""

    name: str
    timeout: Optional[float]
    read_cost: int

    async def fetch(self) -> Sequence[Mapping[str, Any]]: ...


def timeout_for(source: DataSource) -> float:
    timeout = getattr(source, "timeout", None)
    if isinstance(timeout, (int, float)) and timeout > 0:
        return float(timeout)
    return DATA_GATHERER_TIMEOUT_S.get(source.name, DEFAULT_TIMEOUT_S)


def _number(value: Any, default: Optional[float] = None) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        return default
    return float(value)


def build_signal(
    raw: Mapping[str, Any],
    source: str,
    config: SourceConfig = DEFAULT_SOURCE_CONFIG,
    now: Optional[int] = None,
    ticker_blacklist: Iterable[str] = (),
) -> Optional[Signal]:
    """Weight one raw feed item into a :class:`Signal`.

    Parameters
    ----------
    raw:
        Mapping with at least ``symbol`` and ``sentiment`` (``-1..1``).
        Optional keys: ``source_detail``, ``timestamp`` (ms), ``volume``,
        ``upvotes``, ``comments``, ``flair``, ``reason``, ``is_crypto``,
        ``momentum``, ``price``, ``bullish``, ``bearish``.
    source:
        Feed name, used as the default ``source_detail``.
    config:
        Source-weight table.

    Returns
    -------
    Signal or None
        ``None`` for items without a usable symbol or sentiment, or whose
        symbol is blacklisted.
    """

    ts = _now_ms() if now is None else now
    symbol = str(raw.get("symbol") or "").strip().upper()
    raw_sentiment = _number(raw.get("sentiment"))
    if not symbol or raw_sentiment is None:
        return None
    is_crypto = bool(raw.get("is_crypto"))
    if is_crypto:
        symbol = normalize_crypto_symbol(symbol)
    if symbol in {item.upper() for item in ticker_blacklist}:
        return None

    source_detail = str(raw.get("source_detail") or source)
    timestamp = int(_number(raw.get("timestamp"), float(ts)))
    weight = config.weight_for(source_detail)
    freshness = config.time_decay(timestamp, ts)
    upvotes = _number(raw.get("upvotes"))
    comments = _number(raw.get("comments"))
    engagement = (
        config.engagement_multiplier(upvotes or 0, comments or 0)
        if upvotes is not None or comments is not None
        else 1.0
    )
    flair = raw.get("flair")
    flair_mult = config.flair_multiplier(flair if isinstance(flair, str) else None)
    quality = freshness * engagement * flair_mult * weight
    sentiment = max(-1.0, min(1.0, raw_sentiment * quality))

    return Signal(
        symbol=symbol,
        source=source,
        source_detail=source_detail,
        sentiment=sentiment,
        raw_sentiment=max(-1.0, min(1.0, raw_sentiment)),
        volume=int(_number(raw.get("volume"), 1.0) or 1),
        freshness=freshness,
        source_weight=weight,
        reason=str(raw.get("reason") or f"{source}: sentiment {raw_sentiment:+.2f}"),
        timestamp=timestamp,
        upvotes=int(upvotes) if upvotes is not None else None,
        comments=int(comments) if comments is not None else None,
        quality_score=quality,
        best_flair=flair if isinstance(flair, str) else None,
        bullish=_int_or_none(raw.get("bullish")),
        bearish=_int_or_none(raw.get("bearish")),
        is_crypto=is_crypto or None,
        momentum=_number(raw.get("momentum")),
        price=_number(raw.get("price")),
    )


def _int_or_none(value: Any) -> Optional[int]:
    number = _number(value)
    return int(number) if number is not None else None


@dataclass
class GatherReport:
    signals: List[Signal] = field(default_factory=list)
    results: List[SourceRunResult] = field(default_factory=list)

    @property
    def failures(self) -> List[SourceRunResult]:
        return [result for result in self.results if not result.success and not result.skipped]

    @property
    def skipped(self) -> List[SourceRunResult]:
        return [result for result in self.results if result.skipped]


async def _run_source(
    source: DataSource,
    breakers: CircuitBreakerRegistry,
    bucket: Optional[TokenBucket],
    now: int,
) -> SourceRunResult:
    cost = int(getattr(source, "read_cost", 0) or 0)
    if cost > 0 and not breakers.is_open(source.name, now):
        if bucket is None or not bucket.try_spend(cost, now):
            remaining = bucket.daily_remaining() if bucket else 0
            log_event(logger, "read_spend_rejected", source=source.name, cost=cost, daily_remaining=remaining)
            return SourceRunResult(source=source.name, success=False, skipped=True, error="read_budget_exhausted")
        log_event(logger, "read_spent", source=source.name, cost=cost, daily_remaining=bucket.daily_remaining())

    timeout = timeout_for(source)

    async def _fetch() -> Sequence[Mapping[str, Any]]:
        items = await asyncio.wait_for(source.fetch(), timeout=timeout)
        return list(items or [])

    return await breakers.run_with_breaker(source.name, _fetch, now=now)


async def gather_signals(
    sources: Sequence[DataSource],
    breakers: CircuitBreakerRegistry,
    *,
    config: SourceConfig = DEFAULT_SOURCE_CONFIG,
    bucket: Optional[TokenBucket] = None,
    ticker_blacklist: Iterable[str] = (),
    now: Optional[int] = None,
) -> GatherReport:
    """Fetch every source concurrently with all-settled semantics."""

    ts = _now_ms() if now is None else now
    blacklist = tuple(ticker_blacklist)
    started = time.perf_counter()
    outcomes = await asyncio.gather(
        *(_run_source(source, breakers, bucket, ts) for source in sources), return_exceptions=True
    )

    report = GatherReport()
    for source, outcome in zip(sources, outcomes):
        if isinstance(outcome, BaseException):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            result = SourceRunResult(source=source.name, success=False, error=str(outcome))
        else:
            result = outcome
        if result.success:
            built = [build_signal(item, source.name, config, ts, blacklist) for item in result.payload or []]
            signals = [signal for signal in built if signal is not None]
            report.signals.extend(signals)
            result.processed = len(signals)
        result.payload = None
        report.results.append(result)

    record_metric("gather_latency_ms", (time.perf_counter() - started) * 1000, labels={"sources": len(sources)})
    return report


__all__ = [
    "DATA_GATHERER_TIMEOUT_S",
    "DataSource",
    "GatherReport",
    "build_signal",
    "gather_signals",
    "timeout_for",
]
