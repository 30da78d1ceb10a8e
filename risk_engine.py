"""Dynamic risk profile, regime detection and scenario stress tests.

All functions here are pure with respect to the agent state: they take the
equity history, signal cache, account and positions they need and return
records the scheduler stores.  Equity math is done with ``numpy``.
"""

from __future__ import annotations

import math
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import numpy as np

from collaborators import Account, Bar, Position, is_crypto_symbol
from predictive_model import PredictiveModelState, update_from_trade
from signal_cache import SignalCache, clamp01

RISK_HISTORY_POINTS = 180
SHOCK_HISTORY_POINTS = 240
VAR_HISTORY_POINTS = 320
PORTFOLIO_SNAPSHOT_INTERVAL_MS = 60_000
PORTFOLIO_HISTORY_RETENTION_MS = 35 * 24 * 60 * 60 * 1000
PORTFOLIO_HISTORY_MAX = 5_000

STRESS_PASS_DRAWDOWN = 0.12
BASE_POSITION_PCT_CAP = 20


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class EquityPoint:
    timestamp_ms: int
    equity: float


@dataclass
class MarketRegime:
    type: str = "ranging"
    confidence: float = 0.5
    duration: int = 0
    volatility: float = 0.01
    trend: float = 0.0
    sharpe_like: float = 0.0
    sentiment_dispersion: float = 0.0
    detected_at: int = 0
    since: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "MarketRegime":
        if not data:
            return cls()
        return cls(**{key: value for key, value in data.items() if key in cls.__dataclass_fields__})


@dataclass
class RiskMetrics:
    realized_volatility: float
    max_drawdown_pct: float
    sharpe_like: float
    regime: str
    trend_strength: float
    sentiment_dispersion: float


@dataclass
class DynamicRiskProfile:
    timestamp: int
    market_regime: str
    realized_volatility: float
    max_drawdown_pct: float
    sharpe_like: float
    multiplier: float
    suggested_position_pct: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class StressScenario:
    name: str
    shock_pct: float
    projected_loss: float
    projected_drawdown_pct: float = 0.0


@dataclass
class StressTestResult:
    timestamp: int
    passed: bool
    worst_case_loss: float
    worst_case_drawdown_pct: float
    recommended_risk_multiplier: float
    historical_shock_pct: float
    scenarios: List[StressScenario] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> Optional["StressTestResult"]:
        if not data:
            return None
        scenarios = [StressScenario(**item) for item in data.get("scenarios") or [] if isinstance(item, Mapping)]
        return cls(
            timestamp=int(data.get("timestamp", 0)),
            passed=bool(data.get("passed")),
            worst_case_loss=float(data.get("worst_case_loss", 0.0)),
            worst_case_drawdown_pct=float(data.get("worst_case_drawdown_pct", 0.0)),
            recommended_risk_multiplier=float(data.get("recommended_risk_multiplier", 1.0)),
            historical_shock_pct=float(data.get("historical_shock_pct", 0.0)),
            scenarios=scenarios,
        )


# ---------------------------------------------------------------------------
# Equity history helpers
# ---------------------------------------------------------------------------


def _equity_array(points: Sequence[EquityPoint]) -> np.ndarray:
    return np.array([point.equity for point in points], dtype=float)


def equity_returns(points: Sequence[EquityPoint]) -> np.ndarray:
    """Simple returns between consecutive points with a positive base."""

    values = _equity_array(points)
    if values.size < 2:
        return np.array([], dtype=float)
    prev, nxt = values[:-1], values[1:]
    mask = (prev > 0) & np.isfinite(prev) & np.isfinite(nxt)
    return (nxt[mask] - prev[mask]) / prev[mask]


def max_drawdown(points: Sequence[EquityPoint]) -> float:
    values = _equity_array(points)
    values = values[np.isfinite(values)]
    if values.size == 0:
        return 0.0
    peaks = np.maximum.accumulate(values)
    with np.errstate(divide="ignore", invalid="ignore"):
        drawdowns = np.where(peaks > 0, (peaks - values) / peaks, 0.0)
    return float(max(0.0, drawdowns.max()))


def record_portfolio_snapshot(
    history: List[EquityPoint], equity: float, last_snapshot_at: int, now: Optional[int] = None
) -> Optional[int]:
    """Append an equity point at most once a minute; returns the new timestamp.

    History older than 35 days is dropped and the list is capped at 5000
    points.  ``None`` means no snapshot was taken.
    """

    ts = _now_ms() if now is None else now
    if ts - last_snapshot_at < PORTFOLIO_SNAPSHOT_INTERVAL_MS:
        return None
    history.append(EquityPoint(timestamp_ms=ts, equity=float(equity)))
    cutoff = ts - PORTFOLIO_HISTORY_RETENTION_MS
    history[:] = [point for point in history if point.timestamp_ms >= cutoff][-PORTFOLIO_HISTORY_MAX:]
    return ts


# ---------------------------------------------------------------------------
# Regime and dynamic risk profile
# ---------------------------------------------------------------------------


def compute_portfolio_risk_metrics(
    history: Sequence[EquityPoint],
    cache: SignalCache,
    previous_regime: Optional[MarketRegime] = None,
    now: Optional[int] = None,
) -> tuple[RiskMetrics, Optional[MarketRegime]]:
    """Derive volatility, drawdown and regime from recent equity history.

    Returns the metrics plus the refreshed :class:`MarketRegime`, or ``None``
    for the regime when there is not enough history to classify one.
    """

    ts = _now_ms() if now is None else now
    dispersion = cache.dispersion()
    points = list(history)[-RISK_HISTORY_POINTS:]
    returns = equity_returns(points) if len(points) >= 3 else np.array([], dtype=float)
    if returns.size == 0:
        fallback = RiskMetrics(
            realized_volatility=0.01,
            max_drawdown_pct=0.0,
            sharpe_like=0.0,
            regime="ranging",
            trend_strength=0.0,
            sentiment_dispersion=dispersion,
        )
        return fallback, None

    mean = float(returns.mean())
    stdev = float(returns.std())
    scale = math.sqrt(min(returns.size, 252))
    sharpe = mean / stdev * scale if stdev > 0 else 0.0
    trend = mean * scale
    drawdown = max_drawdown(points)

    regime = "ranging"
    if stdev > 0.03 or dispersion > 0.45:
        regime = "volatile"
    elif abs(trend) > 0.35 and abs(sharpe) > 0.5:
        regime = "trending"

    previous = previous_regime or MarketRegime()
    since = (previous.since or ts) if previous.type == regime else ts
    components = (
        clamp01(stdev / 0.04),
        clamp01(abs(trend) / 0.8),
        clamp01(abs(sharpe) / 1.5),
        clamp01(dispersion / 0.6),
    )
    refreshed = MarketRegime(
        type=regime,
        confidence=sum(components) / len(components),
        duration=max(0, ts - since),
        volatility=stdev,
        trend=trend,
        sharpe_like=sharpe,
        sentiment_dispersion=dispersion,
        detected_at=ts,
        since=since,
    )
    metrics = RiskMetrics(
        realized_volatility=stdev,
        max_drawdown_pct=drawdown,
        sharpe_like=sharpe,
        regime=regime,
        trend_strength=trend,
        sentiment_dispersion=dispersion,
    )
    return metrics, refreshed


def dynamic_risk_profile(
    metrics: RiskMetrics,
    account: Account,
    base_position_pct: float,
    last_stress: Optional[StressTestResult] = None,
    now: Optional[int] = None,
) -> DynamicRiskProfile:
    """Combine volatility, drawdown, daily loss, regime and stress penalties."""

    daily_pnl = 0.0
    if math.isfinite(account.last_equity) and account.last_equity > 0:
        daily_pnl = (account.equity - account.last_equity) / account.last_equity

    volatility_penalty = max(0.0, (metrics.realized_volatility - 0.01) * 12)
    drawdown_penalty = max(0.0, metrics.max_drawdown_pct * 3)
    daily_loss_penalty = max(0.0, -daily_pnl * 5)
    regime_penalty = {"volatile": 0.25, "trending": -0.05}.get(metrics.regime, 0.05)
    stress_penalty = 1 - clamp01(last_stress.recommended_risk_multiplier) if last_stress else 0.0

    raw = 1 - volatility_penalty - drawdown_penalty - daily_loss_penalty - regime_penalty - stress_penalty
    multiplier = max(0.25, min(1.2, raw))
    suggested = max(3.0, min(20.0, base_position_pct * multiplier))
    return DynamicRiskProfile(
        timestamp=_now_ms() if now is None else now,
        market_regime=metrics.regime,
        realized_volatility=metrics.realized_volatility,
        max_drawdown_pct=metrics.max_drawdown_pct,
        sharpe_like=metrics.sharpe_like,
        multiplier=multiplier,
        suggested_position_pct=suggested,
    )


def regime_confidence_adjustment(confidence: float, sentiment: float, regime: MarketRegime) -> float:
    adjusted = confidence
    if regime.type == "volatile":
        adjusted -= 0.08 * regime.confidence
    elif regime.type == "trending":
        adjusted += 0.05 * regime.confidence if sentiment >= 0 else -0.03 * regime.confidence
    else:
        adjusted -= 0.02 * regime.confidence
    return clamp01(adjusted)


# ---------------------------------------------------------------------------
# Stress testing
# ---------------------------------------------------------------------------


def derive_historical_shock_pct(history: Sequence[EquityPoint]) -> float:
    points = list(history)[-SHOCK_HISTORY_POINTS:]
    if len(points) < 10:
        return -0.08
    returns = equity_returns(points)
    negatives = np.sort(returns[returns < 0])
    if negatives.size == 0:
        return -0.05
    idx = max(0, int(math.floor(negatives.size * 0.1)) - 1)
    return float(negatives[idx])


def run_stress_test(
    account: Account,
    positions: Iterable[Position],
    history: Sequence[EquityPoint],
    crypto_symbols: Iterable[str],
    now: Optional[int] = None,
) -> StressTestResult:
    """Project four shock scenarios against current gross long exposure."""

    crypto_list = list(crypto_symbols)
    held = list(positions)
    total = sum(max(0.0, pos.market_value or 0.0) for pos in held)
    crypto = sum(
        max(0.0, pos.market_value or 0.0)
        for pos in held
        if is_crypto_symbol(pos.symbol, crypto_list) or pos.asset_class == "crypto"
    )
    equity_exposure = max(0.0, total - crypto)
    shock = derive_historical_shock_pct(history)

    scenarios = [
        StressScenario("flash_crash", -0.1, total * 0.1),
        StressScenario("macro_bear", -0.16, equity_exposure * 0.16 + crypto * 0.2),
        StressScenario("volatility_spike", -0.12, total * 0.12),
        StressScenario("historical_10pct_tail", shock, total * abs(shock)),
    ]
    for scenario in scenarios:
        scenario.projected_drawdown_pct = scenario.projected_loss / account.equity if account.equity > 0 else 1.0

    worst_loss = max((scenario.projected_loss for scenario in scenarios), default=0.0)
    worst_drawdown = worst_loss / account.equity if account.equity > 0 else 1.0
    passed = worst_drawdown <= STRESS_PASS_DRAWDOWN
    if passed:
        multiplier = max(0.7, 1 - worst_drawdown)
    else:
        multiplier = max(0.3, 0.95 - worst_drawdown * 2.5)
    return StressTestResult(
        timestamp=_now_ms() if now is None else now,
        passed=passed,
        worst_case_loss=worst_loss,
        worst_case_drawdown_pct=worst_drawdown,
        recommended_risk_multiplier=multiplier,
        historical_shock_pct=shock,
        scenarios=scenarios,
    )


def build_portfolio_risk_dashboard(
    account: Optional[Account],
    positions: Sequence[Position],
    history: Sequence[EquityPoint],
    metrics: RiskMetrics,
    now: Optional[int] = None,
) -> Optional[Dict[str, Any]]:
    """Exposure, leverage, concentration and tail-risk figures."""

    if account is None:
        return None
    total_long = sum(max(0.0, pos.market_value) for pos in positions)
    total_short = sum(abs(pos.market_value) for pos in positions if pos.side == "short")
    gross = total_long + total_short
    net = total_long - total_short
    equity = account.equity
    ranked = sorted(positions, key=lambda pos: abs(pos.market_value), reverse=True)
    largest = abs(ranked[0].market_value / equity) if equity > 0 and ranked else 0.0
    top3 = sum(abs(pos.market_value) for pos in ranked[:3])

    returns = equity_returns(list(history)[-VAR_HISTORY_POINTS:])
    negatives = np.sort(returns[returns < 0])
    if negatives.size > 0:
        var_idx = max(0, int(math.floor(negatives.size * 0.05)) - 1)
        value_at_risk = abs(float(negatives[var_idx]))
        tail = negatives[: max(1, int(math.floor(negatives.size * 0.05)))]
        expected_shortfall = abs(float(tail.mean()))
    else:
        value_at_risk = metrics.realized_volatility * 1.65
        expected_shortfall = value_at_risk

    return {
        "timestamp": _now_ms() if now is None else now,
        "regime": metrics.regime,
        "realized_volatility": metrics.realized_volatility,
        "max_drawdown_pct": metrics.max_drawdown_pct,
        "sharpe_like": metrics.sharpe_like,
        "value_at_risk_95_pct": value_at_risk,
        "expected_shortfall_95_pct": expected_shortfall,
        "gross_exposure_usd": gross,
        "net_exposure_usd": net,
        "leverage": gross / equity if equity > 0 else 0.0,
        "largest_position_pct": largest,
        "concentration_top3_pct": top3 / equity if equity > 0 else 0.0,
    }


# ---------------------------------------------------------------------------
# Sizing and exits
# ---------------------------------------------------------------------------


def estimate_symbol_volatility(bars: Optional[Sequence[Bar]]) -> float:
    """Daily-return stdev from recent bars, floored at 0.5%."""

    if not bars or len(bars) < 8:
        return 0.02
    closes = np.array([bar.c for bar in bars], dtype=float)
    closes = closes[np.isfinite(closes) & (closes > 0)]
    if closes.size < 8:
        return 0.02
    returns = np.diff(closes) / closes[:-1]
    stdev = float(returns.std()) if returns.size >= 2 else 0.0
    return max(0.005, stdev)


def compute_dynamic_position_scale(
    volatility: float, confidence: float, risk_multiplier: float, regime: str
) -> float:
    normalized_vol = clamp01((volatility - 0.01) / 0.04)
    volatility_scale = 1 - normalized_vol * 0.55
    confidence_scale = 0.75 + clamp01(confidence) * 0.5
    regime_scale = {"volatile": 0.82, "trending": 1.08}.get(regime, 0.96)
    return max(0.35, min(1.25, volatility_scale * confidence_scale * risk_multiplier * regime_scale))


def position_size_pct(suggested_pct: float, scale: float) -> float:
    base = min(BASE_POSITION_PCT_CAP, suggested_pct)
    return min(25.0, max(2.5, base * scale))


def estimate_position_pnl_pct(position: Position, entry: Optional[Mapping[str, Any]]) -> float:
    entry_price = (entry or {}).get("entry_price") or 0
    if entry_price > 0:
        return (position.current_price - entry_price) / entry_price * 100
    denominator = position.market_value - position.unrealized_pl
    if not math.isfinite(denominator) or denominator <= 0:
        return 0.0
    return position.unrealized_pl / denominator * 100


def compute_adaptive_exit_thresholds(
    profile: DynamicRiskProfile,
    position: Position,
    entry: Optional[Mapping[str, Any]],
    take_profit_pct: float,
    stop_loss_pct: float,
) -> Dict[str, float]:
    regime = profile.market_regime
    vol_pressure = clamp01((profile.realized_volatility - 0.01) / 0.04)
    drawdown_pressure = clamp01(profile.max_drawdown_pct / 0.15)
    take_mult = {"trending": 1.12, "volatile": 0.9}.get(regime, 1.0)
    stop_mult = {"volatile": 0.78, "trending": 1.08}.get(regime, 0.95)

    take = max(2.5, take_profit_pct * take_mult * (1 - vol_pressure * 0.12))
    stop = max(1.5, stop_loss_pct * stop_mult * (1 - drawdown_pressure * 0.2))
    peak = (entry or {}).get("peak_price") or 0
    peak_drawdown = 0.0
    if peak > 0 and math.isfinite(position.current_price):
        peak_drawdown = (position.current_price - peak) / peak * 100
    trailing = max(1.8, min(stop, stop * 0.7))
    return {
        "take_profit_pct": take,
        "stop_loss_pct": stop,
        "trailing_stop_pct": trailing,
        "peak_drawdown_pct": peak_drawdown,
    }


def analyze_staleness(
    entry: Optional[Mapping[str, Any]],
    current_price: float,
    current_social_volume: float,
    config: Any,
    now: Optional[int] = None,
) -> Dict[str, Any]:
    """Score 0-100 how much a position has lost its momentum.

    Hold time contributes up to 40 points, price action up to 30 and social
    volume decay up to 30.  ``config`` supplies the ``stale_*`` thresholds.
    """

    if not entry:
        return {"is_stale": False, "reason": "No entry data", "staleness_score": 0}
    ts = _now_ms() if now is None else now
    hold_hours = (ts - entry.get("entry_time", ts)) / (1000 * 60 * 60)
    hold_days = hold_hours / 24
    entry_price = entry.get("entry_price") or 0
    pnl_pct = (current_price - entry_price) / entry_price * 100 if entry_price > 0 else 0.0

    if hold_hours < config.stale_min_hold_hours:
        return {"is_stale": False, "reason": f"Too early ({hold_hours:.1f}h)", "staleness_score": 0}

    score = 0.0
    if hold_days >= config.stale_max_hold_days:
        score += 40
    elif hold_days >= config.stale_mid_hold_days:
        span = config.stale_max_hold_days - config.stale_mid_hold_days
        score += 20 * (hold_days - config.stale_mid_hold_days) / span if span > 0 else 20

    if pnl_pct < 0:
        score += min(30.0, abs(pnl_pct) * 3)
    elif pnl_pct < config.stale_mid_min_gain_pct and hold_days >= config.stale_mid_hold_days:
        score += 15

    entry_volume = entry.get("entry_social_volume") or 0
    volume_ratio = current_social_volume / entry_volume if entry_volume > 0 else 1.0
    if volume_ratio <= config.stale_social_volume_decay:
        score += 30
    elif volume_ratio <= 0.5:
        score += 15

    score = min(100.0, score)
    is_stale = score >= 70 or (hold_days >= config.stale_max_hold_days and pnl_pct < config.stale_min_gain_pct)
    reason = (
        f"Staleness score {score:.0f}/100, held {hold_days:.1f} days" if is_stale else f"OK (score {score:.0f}/100)"
    )
    return {"is_stale": is_stale, "reason": reason, "staleness_score": score}


def record_trade_outcome(
    model: PredictiveModelState,
    history: List[EquityPoint],
    symbol: str,
    return_pct: float,
    entry: Optional[Mapping[str, Any]] = None,
    realized_equity: Optional[float] = None,
    now: Optional[int] = None,
) -> float:
    """Feed a closed trade into the scorer and the equity history.

    The realised equity point makes losing streaks visible to the drawdown
    penalty of :func:`dynamic_risk_profile` immediately, without waiting for
    the next broker snapshot.
    """

    ts = _now_ms() if now is None else now
    error = update_from_trade(model, symbol, return_pct, entry, now=ts)
    if realized_equity is not None and math.isfinite(realized_equity):
        history.append(EquityPoint(timestamp_ms=ts, equity=float(realized_equity)))
        del history[:-PORTFOLIO_HISTORY_MAX]
    return error


__all__ = [
    "DynamicRiskProfile",
    "EquityPoint",
    "MarketRegime",
    "RiskMetrics",
    "StressScenario",
    "StressTestResult",
    "analyze_staleness",
    "build_portfolio_risk_dashboard",
    "compute_adaptive_exit_thresholds",
    "compute_dynamic_position_scale",
    "compute_portfolio_risk_metrics",
    "derive_historical_shock_pct",
    "dynamic_risk_profile",
    "equity_returns",
    "estimate_position_pnl_pct",
    "estimate_symbol_volatility",
    "max_drawdown",
    "position_size_pct",
    "record_portfolio_snapshot",
    "record_trade_outcome",
    "regime_confidence_adjustment",
    "run_stress_test",
]
