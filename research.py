"""LLM-backed research of signal candidates and held positions.

Candidate research fans out over at most three concurrent reasoning calls,
each bounded by its own timeout.  The per-symbol coroutines never write to
:class:`AgentState`; they return a :class:`ResearchOutcome` that the tick
applies once the batch has settled, so an abandoned call cannot leave a
half-written result behind.
"""

from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from agent_state import AgentState, ResearchResult
from collaborators import Account, MarketData, Position, is_crypto_symbol, normalize_crypto_symbol
from json_utils import parse_llm_json_response, parse_research_analysis
from llm_safe import LLMAuthError, LLMProvider, LLMRequest, describe_error, safe_complete
from log_utils import setup_logger
from memory_episodes import relevant_episodes, remember_episode
from observability import append_activity
from predictive_model import predict_probability
from risk_engine import DynamicRiskProfile
from runtime_optimizer import record_performance_sample
from signal_cache import SymbolProfile, candidate_outlier_scores, clamp01, signal_correlation

logger = setup_logger(__name__)

RESEARCH_MAX_CONCURRENT = 3
RESEARCH_BATCH_DELAY_S = 0.2
RESEARCH_CALL_TIMEOUT_S = 12.0
RECENT_RESEARCH_WINDOW_MS = 15 * 60 * 1000
RECENT_RESEARCH_PENALTY = 0.2
OUTLIER_CUTOFF = 2.4
CANDIDATE_CORRELATION_CUTOFF = 0.82
ANALYST_CANDIDATES = 10
ANALYST_RAW_SIGNALS = 20

RESEARCH_SYSTEM_PROMPT = "You are a stock research analyst. Be skeptical of hype. Output valid JSON only."
POSITION_SYSTEM_PROMPT = "You are a position risk analyst. Be concise. Output valid JSON only."
ANALYST_SYSTEM_PROMPT = """You are a senior trading analyst AI. Make the FINAL trading decisions based on social sentiment signals.

Rules:
- Only recommend BUY for symbols with strong conviction from multiple data points
- Recommend SELL only for positions that have been held long enough AND show deteriorating sentiment or major red flags
- Give positions time to develop - avoid selling too early just because gains are small
- Consider the QUALITY of sentiment, not just quantity
- Output valid JSON only

Response format:
{
  "recommendations": [
    { "action": "BUY"|"SELL"|"HOLD", "symbol": "TICKER", "confidence": 0.0-1.0, "reasoning": "detailed reasoning", "suggested_size_pct": 10-30 }
  ],
  "market_summary": "overall market read and sentiment",
  "high_conviction_plays": ["symbols you feel strongest about"]
}"""

RESEARCH_SCHEMA = """{
  "verdict": "BUY|SKIP|WAIT",
  "confidence": 0.0-1.0,
  "entry_quality": "excellent|good|fair|poor",
  "reasoning": "brief reason",
  "red_flags": ["any concerns"],
  "catalysts": ["positive factors"]
}"""


def _now_ms() -> int:
    return int(time.time() * 1000)


def _clamp_sentiment(value: float) -> float:
    return max(-1.0, min(1.0, float(value)))


# ---------------------------------------------------------------------------
# Single-symbol research
# ---------------------------------------------------------------------------


FAILURE_EVENTS = frozenset({"error", "auth_error"})


@dataclass
class ResearchOutcome:
    """What one research call produced, applied later by the tick."""

    symbol: str
    result: Optional[ResearchResult] = None
    cached: bool = False
    model: Optional[str] = None
    usage: Optional[Dict[str, Any]] = None
    predictive_score: Optional[float] = None
    sources: List[str] = field(default_factory=list)
    events: List[Tuple[str, Dict[str, Any]]] = field(default_factory=list)

    def note(self, action: str, **details: Any) -> None:
        self.events.append((action, details))

    @property
    def failed(self) -> bool:
        return any(action in FAILURE_EVENTS for action, _ in self.events)


def _snapshot_price(snapshot: Dict[str, Any]) -> float:
    trade = snapshot.get("latest_trade") or {}
    quote = snapshot.get("latest_quote") or {}
    for value in (trade.get("price"), quote.get("ask_price"), quote.get("bid_price")):
        if isinstance(value, (int, float)) and value > 0:
            return float(value)
    return 0.0


async def fetch_snapshot_price(
    market_data: Optional[MarketData], symbol: str, is_crypto: bool, outcome: ResearchOutcome
) -> Optional[float]:
    """Latest trade price, else ask, else bid; ``None`` when no snapshot."""

    if market_data is None:
        outcome.note("snapshot_unavailable", symbol=symbol, reason="no market data provider")
        return None
    lookup = normalize_crypto_symbol(symbol) if is_crypto else symbol
    try:
        if is_crypto:
            snapshot = await market_data.get_crypto_snapshot(lookup)
        else:
            snapshot = await market_data.get_snapshot(lookup)
    except Exception as exc:
        outcome.note("snapshot_fetch_failed", symbol=lookup, error=describe_error(exc))
        return None
    if not snapshot:
        outcome.note("snapshot_unavailable", symbol=lookup)
        return None
    return _snapshot_price(snapshot)


def score_symbol(state: AgentState, symbol: str, fallback_sentiment: float) -> float:
    """Predictive probability for ``symbol`` from its strongest cached signal."""

    signals = state.signal_cache.signals_for_symbol(symbol)
    matching = signals[0] if signals else None
    return predict_probability(
        state.predictive_model,
        sentiment=matching.sentiment if matching else fallback_sentiment,
        freshness=matching.freshness if matching else 0.5,
        volume=matching.volume if matching else 1,
        source_diversity=len({signal.source for signal in signals}),
        regime=state.market_regime.type,
    )


def _lessons_for(state: AgentState, tags: Iterable[str], limit: int, now: int) -> str:
    episodes = relevant_episodes(state.memory_episodes, tags, limit, now=now)
    return "\n".join(
        f"- [{episode.outcome}] {episode.context} (importance {episode.importance * 100:.0f}%)" for episode in episodes
    )


def build_research_prompt(
    symbol: str,
    sentiment: float,
    sources: Sequence[str],
    price: float,
    predictive_score: float,
    model_samples: int,
    lessons: str,
    is_crypto: bool,
) -> str:
    return (
        f"Should we BUY this {'crypto' if is_crypto else 'stock'} based on social sentiment and fundamentals?\n\n"
        f"SYMBOL: {symbol}\n"
        f"SENTIMENT: {sentiment * 100:.0f}% bullish (sources: {', '.join(sources)})\n\n"
        "CURRENT DATA:\n"
        f"- Price: ${price}\n\n"
        "PREDICTIVE EDGE:\n"
        f"- model_probability: {predictive_score * 100:.1f}%\n"
        f"- model_samples: {model_samples}\n\n"
        "MEMORY LESSONS:\n"
        f"{lessons or '- No relevant memory episodes yet'}\n\n"
        "Evaluate if this is a good entry. Consider: Is the sentiment justified? "
        "Is it too late (already pumped)? Any red flags?\n\n"
        f"JSON response:\n{RESEARCH_SCHEMA}"
    )


async def research_signal(
    state: AgentState,
    llm: Optional[LLMProvider],
    market_data: Optional[MarketData],
    symbol: str,
    sentiment: float,
    sources: Sequence[str],
    *,
    now: Optional[int] = None,
) -> ResearchOutcome:
    """Ask the LLM whether ``symbol`` is a good entry.

    Parameters
    ----------
    state:
        Read for the cache, model, memory and config.  Apart from pruning
        expired memory episodes, only the LLM auth guard is written, by
        :func:`llm_safe.safe_complete`.
    sentiment:
        Average weighted sentiment of the candidate.
    sources:
        Feed names that mentioned the symbol.

    Returns
    -------
    ResearchOutcome
        ``result`` is ``None`` when research was skipped or failed; the
        reason is in ``events``.
    """

    ts = _now_ms() if now is None else now
    outcome = ResearchOutcome(symbol=symbol, sources=list(sources))
    if llm is None:
        outcome.note("skipped_no_llm", symbol=symbol, reason="LLM Provider not configured")
        return outcome
    if state.llm_auth.is_cooling_off(ts):
        return outcome

    cached = state.signal_research.get(symbol)
    if cached is not None and cached.is_fresh(ts):
        outcome.result = cached
        outcome.cached = True
        return outcome

    config = state.config
    try:
        is_crypto = is_crypto_symbol(symbol, config.crypto_symbols)
        price = await fetch_snapshot_price(market_data, symbol, is_crypto, outcome)
        if price is None:
            return outcome

        predictive_score = score_symbol(state, symbol, sentiment)
        outcome.predictive_score = predictive_score
        prompt = build_research_prompt(
            symbol,
            sentiment,
            sources,
            price,
            predictive_score,
            state.predictive_model.samples,
            _lessons_for(state, [symbol, "research", "risk"], 3, ts),
            is_crypto,
        )
        request = LLMRequest(
            model=config.llm_model,
            messages=[
                {"role": "system", "content": RESEARCH_SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            temperature=0.0,
            max_tokens=250,
            response_format={"type": "json_object"},
        )
        response = await safe_complete(llm, request, state.llm_auth, now=ts)
        outcome.model = response.model or config.llm_model
        if response.usage:
            outcome.usage = dict(response.usage)
            outcome.note(
                "llm_usage",
                symbol=symbol,
                model=outcome.model,
                prompt_tokens=response.usage.get("prompt_tokens"),
                completion_tokens=response.usage.get("completion_tokens"),
                total_tokens=response.usage.get("total_tokens"),
                event_type="api",
            )

        parsed = parse_research_analysis(response.content or "{}", symbol)
        if parsed.repaired:
            outcome.note(
                "invalid_llm_json",
                symbol=symbol,
                fallback=parsed.fallback,
                parse_error=parsed.parse_error,
                response_preview=parsed.response_preview,
                severity="warning",
            )
        analysis = parsed.analysis
        result = ResearchResult(
            symbol=symbol,
            verdict=analysis.verdict,
            confidence=clamp01(analysis.confidence * 0.75 + predictive_score * 0.25),
            entry_quality=analysis.entry_quality,
            reasoning=analysis.reasoning,
            red_flags=list(analysis.red_flags),
            catalysts=list(analysis.catalysts),
            timestamp=ts,
            sentiment=_clamp_sentiment(sentiment),
        )
        outcome.result = result
        outcome.note(
            "signal_researched",
            symbol=symbol,
            verdict=result.verdict,
            confidence=result.confidence,
            quality=result.entry_quality,
        )
    except LLMAuthError as exc:
        outcome.note(
            "auth_error",
            symbol=symbol,
            message="ACTION REQUIRED: Invalid LLM API Key. Research disabled for 5 minutes.",
            details=describe_error(exc),
        )
    except Exception as exc:
        outcome.note("error", symbol=symbol, message=describe_error(exc))
    return outcome


def apply_research_outcome(state: AgentState, outcome: ResearchOutcome, now: Optional[int] = None) -> Optional[ResearchResult]:
    """Write one outcome into ``state``: logs, cost, result and memory."""

    ts = _now_ms() if now is None else now
    for action, details in outcome.events:
        append_activity(state.logs, "SignalResearch", action, details, now_ms=ts, logger=logger)
    if outcome.usage:
        state.cost_tracker.track_usage(outcome.model or state.config.llm_model, outcome.usage)

    result = outcome.result
    if result is None or outcome.cached:
        return result
    state.signal_research[result.symbol] = result
    tags = ["research", result.symbol]
    if result.verdict == "BUY":
        tags.append("entry_candidate")
    remember_episode(
        state.memory_episodes,
        f"Research verdict for {result.symbol}: {result.verdict} ({result.confidence * 100:.0f}%)",
        "success" if result.verdict == "BUY" else "neutral",
        tags,
        impact=min(1.0, abs(result.sentiment)),
        confidence=result.confidence,
        novelty=0.4,
        metadata={
            "verdict": result.verdict,
            "entryQuality": result.entry_quality,
            "sources": outcome.sources,
            "predictiveScore": outcome.predictive_score,
        },
        now=ts,
    )
    return result


# ---------------------------------------------------------------------------
# Candidate selection and batch research
# ---------------------------------------------------------------------------


@dataclass
class ResearchCandidate:
    symbol: str
    avg_sentiment: float
    avg_raw_sentiment: float
    mentions: int
    freshness: float
    sources: Set[str]
    predictive_score: float = 0.0
    priority: float = 0.0
    max_correlation: float = 0.0

    def profile(self) -> SymbolProfile:
        return SymbolProfile(
            symbol=self.symbol,
            sentiment=self.avg_sentiment,
            mentions=self.mentions,
            freshness=self.freshness,
            sources=self.sources,
        )


@dataclass
class CandidateSelection:
    queued: List[ResearchCandidate] = field(default_factory=list)
    eligible_signals: int = 0
    not_held: int = 0
    outliers: List[str] = field(default_factory=list)
    correlated: List[Tuple[str, float]] = field(default_factory=list)


def _aggregate_candidates(state: AgentState, signals: Iterable[Any], now: int) -> List[ResearchCandidate]:
    grouped: Dict[str, ResearchCandidate] = {}
    totals: Dict[str, List[float]] = {}
    for signal in signals:
        candidate = grouped.get(signal.symbol)
        if candidate is None:
            candidate = ResearchCandidate(
                symbol=signal.symbol,
                avg_sentiment=0.0,
                avg_raw_sentiment=0.0,
                mentions=0,
                freshness=0.0,
                sources=set(),
            )
            grouped[signal.symbol] = candidate
            totals[signal.symbol] = [0.0, 0.0]
        totals[signal.symbol][0] += signal.sentiment
        totals[signal.symbol][1] += signal.raw_sentiment
        candidate.mentions += 1
        candidate.freshness = max(candidate.freshness, signal.freshness or 0)
        candidate.sources.add(signal.source)

    for symbol, candidate in grouped.items():
        candidate.avg_sentiment = totals[symbol][0] / candidate.mentions
        candidate.avg_raw_sentiment = totals[symbol][1] / candidate.mentions
        candidate.freshness = clamp01(candidate.freshness)
        source_diversity = min(1.0, len(candidate.sources) / 3)
        mention_score = min(1.0, math.log2(candidate.mentions + 1) / 4)
        candidate.predictive_score = predict_probability(
            state.predictive_model,
            sentiment=candidate.avg_sentiment,
            freshness=candidate.freshness,
            volume=candidate.mentions,
            source_diversity=len(candidate.sources),
            regime=state.market_regime.type,
        )
        recent = state.signal_research.get(symbol)
        penalty = RECENT_RESEARCH_PENALTY if recent is not None and now - recent.timestamp < RECENT_RESEARCH_WINDOW_MS else 0.0
        candidate.priority = (
            candidate.avg_sentiment * 0.55
            + candidate.avg_raw_sentiment * 0.2
            + source_diversity * 0.15
            + mention_score * 0.05
            + candidate.freshness * 0.05
            + candidate.predictive_score * 0.15
            - penalty
        )
    return list(grouped.values())


def select_research_candidates(
    state: AgentState, held_symbols: Iterable[str], *, limit: int = 5, now: Optional[int] = None
) -> CandidateSelection:
    """Rank unheld symbols for research without touching state.

    Symbols whose outlier score reaches 2.4 are dropped, and a candidate
    whose signal footprint correlates at 0.82 or more with a held or already
    selected symbol is skipped.
    """

    ts = _now_ms() if now is None else now
    held = set(held_symbols) | set(state.position_entries)
    selection = CandidateSelection()
    not_held = [signal for signal in state.signal_cache.signals if signal.symbol not in held]
    eligible = [signal for signal in not_held if signal.raw_sentiment >= state.config.min_sentiment_score]
    selection.not_held = len(not_held)
    selection.eligible_signals = len(eligible)
    if not eligible:
        return selection

    candidates = _aggregate_candidates(state, eligible, ts)
    outlier_scores = candidate_outlier_scores([candidate.profile() for candidate in candidates])
    selection.outliers = [c.symbol for c in candidates if outlier_scores.get(c.symbol, 0.0) >= OUTLIER_CUTOFF]
    pool = sorted(
        (c for c in candidates if outlier_scores.get(c.symbol, 0.0) < OUTLIER_CUTOFF),
        key=lambda c: c.priority,
        reverse=True,
    )

    peers: List[SymbolProfile] = []
    for symbol in held:
        profile = state.signal_cache.symbol_profile(symbol)
        if profile is not None:
            peers.append(profile)

    for candidate in pool:
        profile = candidate.profile()
        candidate.max_correlation = max((signal_correlation(profile, peer) for peer in peers), default=0.0)
        if candidate.max_correlation >= CANDIDATE_CORRELATION_CUTOFF:
            selection.correlated.append((candidate.symbol, candidate.max_correlation))
            continue
        selection.queued.append(candidate)
        peers.append(profile)
        if len(selection.queued) >= limit:
            break
    return selection


async def research_top_signals(
    state: AgentState,
    llm: Optional[LLMProvider],
    market_data: Optional[MarketData],
    held_symbols: Iterable[str],
    *,
    limit: int = 5,
    now: Optional[int] = None,
    call_timeout_s: float = RESEARCH_CALL_TIMEOUT_S,
    batch_delay_s: float = RESEARCH_BATCH_DELAY_S,
) -> List[ResearchResult]:
    """Research the best unheld candidates and store the verdicts.

    Runs inside the tick.  Calls go out in batches of three with all-settled
    semantics; a call that times out is dropped and logged as failed.
    """

    started = time.perf_counter()
    ts = _now_ms() if now is None else now

    def _log(action: str, **details: Any) -> None:
        append_activity(state.logs, "SignalResearch", action, details, now_ms=ts, logger=logger)

    def _finish(had_error: bool) -> None:
        record_performance_sample(state.optimization, "research", (time.perf_counter() - started) * 1000, had_error)

    if state.llm_auth.is_cooling_off(ts):
        _log(
            "research_skipped_circuit_breaker",
            reason="Recent auth error",
            time_remaining_ms=state.llm_auth.remaining_ms(ts),
        )
        _finish(True)
        return []

    selection = select_research_candidates(state, held_symbols, limit=limit, now=ts)
    for symbol, correlation in selection.correlated:
        _log("candidate_skipped_high_correlation", symbol=symbol, max_correlation=round(correlation, 3))
    if selection.outliers:
        _log("candidate_outliers_filtered", count=len(selection.outliers), symbols=selection.outliers[:10])
    if not selection.queued:
        _log(
            "no_candidates",
            total_signals=len(state.signal_cache),
            not_held=selection.not_held,
            above_threshold=selection.eligible_signals,
            outlier_filtered=len(selection.outliers),
            min_sentiment=state.config.min_sentiment_score,
        )
        _finish(False)
        return []

    queued = selection.queued
    max_concurrent = min(RESEARCH_MAX_CONCURRENT, len(queued))
    _log(
        "researching_signals",
        count=len(queued),
        max_concurrent=max_concurrent,
        queue=[
            {
                "symbol": c.symbol,
                "priority": round(c.priority, 3),
                "predictive": round(c.predictive_score, 3),
                "mentions": c.mentions,
                "corr": round(c.max_correlation, 3),
            }
            for c in queued
        ],
    )

    calls_before = state.cost_tracker.calls
    results: List[ResearchResult] = []
    failed = 0
    for offset in range(0, len(queued), max_concurrent):
        batch = queued[offset : offset + max_concurrent]
        settled = await asyncio.gather(
            *(
                asyncio.wait_for(
                    research_signal(state, llm, market_data, c.symbol, c.avg_sentiment, sorted(c.sources), now=ts),
                    timeout=call_timeout_s,
                )
                for c in batch
            ),
            return_exceptions=True,
        )
        for candidate, outcome in zip(batch, settled):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                error = "timeout" if isinstance(outcome, asyncio.TimeoutError) else describe_error(outcome)
                _log("research_failed", symbol=candidate.symbol, error=error)
                failed += 1
                continue
            if outcome.failed:
                failed += 1
            result = apply_research_outcome(state, outcome, ts)
            if result is not None:
                results.append(result)
        if offset + max_concurrent < len(queued):
            await asyncio.sleep(batch_delay_s)

    _log(
        "research_cycle_completed",
        queued=len(queued),
        resolved=len(results),
        llm_calls_delta=max(0, state.cost_tracker.calls - calls_before),
        tracked_research=len(state.signal_research),
    )
    _finish(failed > 0)
    return results


# ---------------------------------------------------------------------------
# Held positions
# ---------------------------------------------------------------------------

POSITION_RECOMMENDATIONS = ("HOLD", "SELL", "ADD")
RISK_LEVELS = ("low", "medium", "high")


def position_pl_pct(position: Position) -> float:
    basis = position.market_value - position.unrealized_pl
    return position.unrealized_pl / basis * 100 if basis > 0 else 0.0


async def research_position(
    state: AgentState,
    llm: Optional[LLMProvider],
    position: Position,
    *,
    now: Optional[int] = None,
) -> Optional[Dict[str, Any]]:
    """HOLD/SELL/ADD risk read for one held position, stored by symbol."""

    if llm is None:
        return None
    ts = _now_ms() if now is None else now
    symbol = position.symbol
    config = state.config
    prompt = (
        "Analyze this position for risk and opportunity:\n\n"
        f"POSITION: {symbol}\n"
        f"- Shares: {position.qty}\n"
        f"- Market Value: ${position.market_value:.2f}\n"
        f"- P&L: ${position.unrealized_pl:.2f} ({position_pl_pct(position):.1f}%)\n"
        f"- Current Price: ${position.current_price}\n\n"
        "Provide a brief risk assessment and recommendation (HOLD, SELL, or ADD). JSON format:\n"
        "{\n"
        '  "recommendation": "HOLD|SELL|ADD",\n'
        '  "risk_level": "low|medium|high",\n'
        '  "reasoning": "brief reason",\n'
        '  "key_factors": ["factor1", "factor2"]\n'
        "}"
    )
    request = LLMRequest(
        model=config.llm_model,
        messages=[
            {"role": "system", "content": POSITION_SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ],
        temperature=0.0,
        max_tokens=200,
        response_format={"type": "json_object"},
    )
    try:
        response = await safe_complete(llm, request, state.llm_auth, now=ts)
    except Exception as exc:
        append_activity(
            state.logs, "PositionResearch", "error", {"symbol": symbol, "message": describe_error(exc)}, now_ms=ts, logger=logger
        )
        return None

    if response.usage:
        state.cost_tracker.track_usage(response.model or config.llm_model, response.usage)
    data, ok = parse_llm_json_response(response.content or "{}", logger=logger)
    if not ok:
        append_activity(
            state.logs,
            "PositionResearch",
            "error",
            {"symbol": symbol, "message": "Invalid JSON in position research response"},
            now_ms=ts,
            logger=logger,
        )
        return None

    recommendation = str(data.get("recommendation") or "").strip().upper()
    risk_level = str(data.get("risk_level") or "").strip().lower()
    factors = data.get("key_factors")
    analysis = {
        "recommendation": recommendation if recommendation in POSITION_RECOMMENDATIONS else "HOLD",
        "risk_level": risk_level if risk_level in RISK_LEVELS else "medium",
        "reasoning": str(data.get("reasoning") or ""),
        "key_factors": [str(item) for item in factors][:12] if isinstance(factors, list) else [],
        "timestamp": ts,
    }
    state.position_research[symbol] = analysis
    append_activity(
        state.logs,
        "PositionResearch",
        "position_analyzed",
        {"symbol": symbol, "recommendation": analysis["recommendation"], "risk": analysis["risk_level"]},
        now_ms=ts,
        logger=logger,
    )
    return analysis


# ---------------------------------------------------------------------------
# Batch analyst
# ---------------------------------------------------------------------------


@dataclass
class AnalystRecommendation:
    action: str
    symbol: str
    confidence: float
    reasoning: str = ""
    suggested_size_pct: Optional[float] = None


@dataclass
class AnalystDecision:
    recommendations: List[AnalystRecommendation] = field(default_factory=list)
    market_summary: str = ""
    high_conviction: List[str] = field(default_factory=list)


def _coerce_recommendations(raw: Any) -> List[AnalystRecommendation]:
    if not isinstance(raw, list):
        return []
    recommendations: List[AnalystRecommendation] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        action = str(item.get("action") or "").strip().upper()
        symbol = str(item.get("symbol") or "").strip().upper()
        if action not in ("BUY", "SELL", "HOLD") or not symbol:
            continue
        try:
            confidence = float(item.get("confidence"))
        except (TypeError, ValueError):
            continue
        size = item.get("suggested_size_pct")
        recommendations.append(
            AnalystRecommendation(
                action=action,
                symbol=symbol,
                confidence=clamp01(confidence),
                reasoning=str(item.get("reasoning") or ""),
                suggested_size_pct=float(size) if isinstance(size, (int, float)) else None,
            )
        )
    return recommendations


def _format_positions(state: AgentState, positions: Sequence[Position], now: int) -> str:
    if not positions:
        return "None"
    lines = []
    for position in positions:
        entry = state.position_entries.get(position.symbol)
        hold_minutes = round((now - entry.entry_time) / 60_000) if entry else 0
        held = f"{hold_minutes / 60:.1f}h" if hold_minutes >= 60 else f"{hold_minutes}m"
        lines.append(
            f"- {position.symbol}: {position.qty} shares, P&L: ${position.unrealized_pl:.2f} "
            f"({position_pl_pct(position):.1f}%), held {held}"
        )
    return "\n".join(lines)


async def analyze_signals_with_llm(
    state: AgentState,
    llm: Optional[LLMProvider],
    positions: Sequence[Position],
    account: Account,
    risk_profile: DynamicRiskProfile,
    *,
    now: Optional[int] = None,
) -> AnalystDecision:
    """Batch BUY/SELL/HOLD recommendations over the whole signal cache.

    Malformed responses yield an empty decision rather than an error.
    """

    signals = state.signal_cache.signals
    if llm is None or not signals:
        return AnalystDecision(market_summary="No signals to analyze")
    ts = _now_ms() if now is None else now
    config = state.config

    grouped: Dict[str, List[Any]] = {}
    for signal in signals:
        grouped.setdefault(signal.symbol, []).append(signal)
    candidates = []
    for symbol, items in grouped.items():
        avg_sentiment = sum(item.sentiment for item in items) / len(items)
        sources = [item.source for item in items]
        predictive = predict_probability(
            state.predictive_model,
            sentiment=avg_sentiment,
            freshness=0.6,
            volume=len(items),
            source_diversity=len(set(sources)),
            regime=state.market_regime.type,
        )
        if avg_sentiment >= config.min_sentiment_score * 0.5:
            candidates.append((symbol, avg_sentiment, predictive, sources))
    candidates.sort(key=lambda item: item[1] + item[2] * 0.2, reverse=True)
    candidates = candidates[:ANALYST_CANDIDATES]
    if not candidates:
        return AnalystDecision(market_summary="No candidates above threshold")

    held = {position.symbol for position in positions}
    stress = state.last_stress_test
    regime = state.market_regime
    candidate_lines = "\n".join(
        f"- {symbol}: avg sentiment {sentiment * 100:.0f}%, predictive {predictive * 100:.0f}%, "
        f"sources: {', '.join(sources)}, {'[CURRENTLY HELD]' if symbol in held else '[NOT HELD]'}"
        for symbol, sentiment, predictive, sources in candidates
    )
    raw_lines = "\n".join(f"- {s.symbol} ({s.source}): {s.reason}" for s in signals[:ANALYST_RAW_SIGNALS])
    lessons = _lessons_for(state, ["analyst", "risk", "trade"], 4, ts)
    prompt = (
        f"Current Time: {time.strftime('%Y-%m-%dT%H:%M:%SZ', time.gmtime(ts / 1000))}\n\n"
        "ACCOUNT STATUS:\n"
        f"- Equity: ${account.equity:.2f}\n"
        f"- Cash: ${account.cash:.2f}\n"
        f"- Current Positions: {len(positions)}/{config.max_positions}\n\n"
        f"CURRENT POSITIONS:\n{_format_positions(state, positions, ts)}\n\n"
        f"TOP SENTIMENT CANDIDATES:\n{candidate_lines}\n\n"
        f"RAW SIGNALS (top {ANALYST_RAW_SIGNALS}):\n{raw_lines}\n\n"
        "PORTFOLIO RISK CONTEXT:\n"
        f"- Regime: {risk_profile.market_regime}\n"
        f"- Regime confidence: {regime.confidence * 100:.0f}%\n"
        f"- Regime duration (min): {regime.duration / 60000:.1f}\n"
        f"- Realized volatility: {risk_profile.realized_volatility * 100:.2f}%\n"
        f"- Max drawdown: {risk_profile.max_drawdown_pct * 100:.2f}%\n"
        f"- Sharpe-like: {risk_profile.sharpe_like:.3f}\n"
        f"- Dynamic multiplier: {risk_profile.multiplier:.2f}\n"
        f"- Suggested position pct: {risk_profile.suggested_position_pct:.2f}%\n"
        f"- Stress test passed: {stress.passed if stress else 'n/a'}\n"
        f"- Stress worst-case drawdown: {f'{stress.worst_case_drawdown_pct * 100:.2f}' if stress else 'n/a'}%\n\n"
        f"EPISODIC MEMORY LESSONS:\n{lessons or '- No major memory episodes yet'}\n\n"
        "TRADING RULES:\n"
        f"- Max position size: ${config.max_position_value}\n"
        f"- Take profit target: {config.take_profit_pct}%\n"
        f"- Stop loss: {config.stop_loss_pct}%\n"
        f"- Min confidence to trade: {config.min_analyst_confidence}\n"
        f"- Min hold time before selling: {config.llm_min_hold_minutes} minutes\n\n"
        "Analyze and provide BUY/SELL/HOLD recommendations:"
    )
    request = LLMRequest(
        model=config.llm_analyst_model,
        messages=[
            {"role": "system", "content": ANALYST_SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ],
        temperature=0.0,
        max_tokens=800,
        response_format={"type": "json_object"},
    )

    try:
        response = await safe_complete(llm, request, state.llm_auth, now=ts)
    except Exception as exc:
        append_activity(state.logs, "Analyst", "error", {"message": describe_error(exc)}, now_ms=ts, logger=logger)
        return AnalystDecision(market_summary=f"Analysis failed: {describe_error(exc)}")

    if response.usage:
        state.cost_tracker.track_usage(response.model or config.llm_analyst_model, response.usage)
    data, ok = parse_llm_json_response(
        response.content or "{}",
        defaults={"recommendations": [], "market_summary": "", "high_conviction_plays": []},
        logger=logger,
    )
    if not ok:
        append_activity(
            state.logs,
            "Analyst",
            "invalid_llm_json",
            {"preview": (response.content or "")[:320], "severity": "warning"},
            now_ms=ts,
            logger=logger,
        )
    recommendations = _coerce_recommendations(data.get("recommendations"))
    conviction = data.get("high_conviction_plays")
    decision = AnalystDecision(
        recommendations=recommendations,
        market_summary=str(data.get("market_summary") or ""),
        high_conviction=[str(item) for item in conviction] if isinstance(conviction, list) else [],
    )
    append_activity(
        state.logs,
        "Analyst",
        "analysis_complete",
        {"candidates": len(candidates), "recommendations": len(recommendations)},
        now_ms=ts,
        logger=logger,
    )
    remember_episode(
        state.memory_episodes,
        f"LLM batch analysis produced {len(recommendations)} recommendations",
        "neutral",
        ["analyst", "batch_decision", risk_profile.market_regime],
        impact=min(1.0, len(candidates) / 10),
        confidence=clamp01(sum(rec.confidence for rec in recommendations) / max(1, len(recommendations))),
        novelty=0.35,
        metadata={"highConviction": decision.high_conviction, "marketSummary": decision.market_summary},
        now=ts,
    )
    return decision


__all__ = [
    "AnalystDecision",
    "AnalystRecommendation",
    "CandidateSelection",
    "ResearchCandidate",
    "ResearchOutcome",
    "analyze_signals_with_llm",
    "apply_research_outcome",
    "fetch_snapshot_price",
    "research_position",
    "research_signal",
    "research_top_signals",
    "score_symbol",
    "select_research_candidates",
]
