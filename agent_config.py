"""Tunable agent configuration, validation and source weighting tables."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field, fields, replace
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

from log_utils import setup_logger

logger = setup_logger(__name__)

PRODUCTION_SWARM_ERROR = "allow_unhealthy_swarm cannot be enabled in production"


class ConfigValidationError(ValueError):
    """Raised when a configuration update fails validation."""

    def __init__(self, message: str, *, field: Optional[str] = None, errors: Optional[Dict[str, str]] = None) -> None:
        super().__init__(message)
        self.field = field
        self.errors = dict(errors or {})


@dataclass(frozen=True)
class AgentConfig:
    data_poll_interval_ms: int = 30_000
    analyst_interval_ms: int = 120_000
    max_position_value: float = 5000
    max_positions: int = 5
    min_sentiment_score: float = 0.3
    min_analyst_confidence: float = 0.6
    take_profit_pct: float = 10
    stop_loss_pct: float = 5
    position_size_pct_of_cash: float = 25
    max_symbol_exposure_pct: float = 0.25
    max_correlated_exposure_pct: float = 0.5
    max_portfolio_drawdown_pct: float = 0.15
    stale_position_enabled: bool = True
    stale_min_hold_hours: float = 24
    stale_max_hold_days: float = 3
    stale_min_gain_pct: float = 5
    stale_mid_hold_days: float = 2
    stale_mid_min_gain_pct: float = 3
    stale_social_volume_decay: float = 0.3
    llm_model: str = "gpt-4o-mini"
    llm_analyst_model: str = "gpt-4o"
    llm_min_hold_minutes: float = 30
    options_enabled: bool = False
    crypto_enabled: bool = True
    crypto_symbols: Tuple[str, ...] = ("BTC/USDT", "ETH/USDT", "SOL/USDT")
    crypto_momentum_threshold: float = 2.0
    crypto_max_position_value: float = 1000
    crypto_take_profit_pct: float = 10
    crypto_stop_loss_pct: float = 5
    ticker_blacklist: Tuple[str, ...] = ()
    allowed_exchanges: Tuple[str, ...] = ("NYSE", "NASDAQ", "ARCA", "AMEX", "BATS")
    allow_unhealthy_swarm: bool = False
    strategy_promotion_enabled: bool = False
    strategy_promotion_min_samples: int = 30
    strategy_promotion_min_win_rate: float = 0.55
    strategy_promotion_min_avg_pnl: float = 5
    strategy_promotion_min_win_rate_lift: float = 0.03

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for name in _LIST_FIELDS:
            data[name] = list(data[name])
        return data

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "AgentConfig":
        """Merge ``data`` over the defaults, ignoring unknown keys.

        Used when loading persisted state, which may predate newer fields.
        Values that fail validation fall back to their defaults.
        """

        if not data:
            return cls()
        default = cls()
        merged: Dict[str, Any] = {}
        for key, value in data.items():
            if key not in _FIELD_TYPES:
                continue
            error = _validate_field(key, value)
            if error:
                logger.warning("Ignoring persisted config %s: %s", key, error)
                continue
            merged[key] = _coerce(key, value)
        return replace(default, **merged)


_FIELD_TYPES: Dict[str, Any] = {f.name: f.type for f in fields(AgentConfig)}
_LIST_FIELDS = ("crypto_symbols", "ticker_blacklist", "allowed_exchanges")
_BOOL_FIELDS = tuple(name for name, kind in _FIELD_TYPES.items() if kind == "bool")
_STR_FIELDS = ("llm_model", "llm_analyst_model")
_INT_FIELDS = ("data_poll_interval_ms", "analyst_interval_ms", "max_positions", "strategy_promotion_min_samples")

# Inclusive numeric bounds.
_BOUNDS: Dict[str, Tuple[float, float]] = {
    "data_poll_interval_ms": (1_000, 3_600_000),
    "analyst_interval_ms": (1_000, 3_600_000),
    "max_position_value": (1, 10_000_000),
    "max_positions": (1, 100),
    "min_sentiment_score": (0, 1),
    "min_analyst_confidence": (0, 1),
    "take_profit_pct": (0.1, 500),
    "stop_loss_pct": (0.1, 100),
    "position_size_pct_of_cash": (0.1, 100),
    "max_symbol_exposure_pct": (0, 1),
    "max_correlated_exposure_pct": (0, 1),
    "max_portfolio_drawdown_pct": (0, 1),
    "stale_min_hold_hours": (0, 24 * 365),
    "stale_max_hold_days": (0, 365),
    "stale_min_gain_pct": (-100, 1000),
    "stale_mid_hold_days": (0, 365),
    "stale_mid_min_gain_pct": (-100, 1000),
    "stale_social_volume_decay": (0, 1),
    "llm_min_hold_minutes": (0, 60 * 24 * 30),
    "crypto_momentum_threshold": (0, 100),
    "crypto_max_position_value": (0, 10_000_000),
    "crypto_take_profit_pct": (0.1, 500),
    "crypto_stop_loss_pct": (0.1, 100),
    "strategy_promotion_min_samples": (1, 100_000),
    "strategy_promotion_min_win_rate": (0, 1),
    "strategy_promotion_min_avg_pnl": (-1_000_000, 1_000_000),
    "strategy_promotion_min_win_rate_lift": (-1, 1),
}


def _validate_field(name: str, value: Any) -> Optional[str]:
    if name in _BOOL_FIELDS:
        return None if isinstance(value, bool) else "must be a boolean"
    if name in _STR_FIELDS:
        return None if isinstance(value, str) and value.strip() else "must be a non-empty string"
    if name in _LIST_FIELDS:
        if not isinstance(value, (list, tuple)) or not all(isinstance(item, str) for item in value):
            return "must be a list of strings"
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return "must be a number"
    if not math.isfinite(value):
        return "must be finite"
    if name in _INT_FIELDS and float(value) != int(value):
        return "must be an integer"
    low, high = _BOUNDS[name]
    if value < low or value > high:
        return f"must be between {low:g} and {high:g}"
    return None


def _coerce(name: str, value: Any) -> Any:
    if name in _LIST_FIELDS:
        return tuple(value)
    if name in _INT_FIELDS:
        return int(value)
    if name in _STR_FIELDS:
        return value.strip()
    return value


def validate_agent_config(changes: Mapping[str, Any]) -> Dict[str, str]:
    """Return ``{field: error}`` for every invalid or unknown key."""

    errors: Dict[str, str] = {}
    for key, value in changes.items():
        if key not in _FIELD_TYPES:
            errors[key] = "unknown field"
            continue
        error = _validate_field(key, value)
        if error:
            errors[key] = error
    return errors


def apply_config_update(
    current: AgentConfig, changes: Mapping[str, Any], *, production: bool
) -> AgentConfig:
    """Return a new config with ``changes`` applied.

    Raises
    ------
    ConfigValidationError
        When the update enables the unhealthy-swarm bypass in production or
        any field fails validation.  ``current`` is never modified.
    """

    if production and changes.get("allow_unhealthy_swarm") is True:
        raise ConfigValidationError(PRODUCTION_SWARM_ERROR, field="allow_unhealthy_swarm")
    errors = validate_agent_config(changes)
    if errors:
        raise ConfigValidationError("Invalid configuration payload", errors=errors)
    if not (changes.get("stale_mid_hold_days", current.stale_mid_hold_days)
            <= changes.get("stale_max_hold_days", current.stale_max_hold_days)):
        raise ConfigValidationError(
            "stale_mid_hold_days must not exceed stale_max_hold_days",
            field="stale_mid_hold_days",
            errors={"stale_mid_hold_days": "must not exceed stale_max_hold_days"},
        )
    coerced = {key: _coerce(key, value) for key, value in changes.items()}
    return replace(current, **coerced)


def enforce_production_swarm_guard(config: AgentConfig, *, production: bool) -> Tuple[AgentConfig, bool]:
    """Force the unhealthy-swarm bypass off in production.

    Returns the (possibly replaced) config and whether a correction happened.
    """

    if production and config.allow_unhealthy_swarm:
        return replace(config, allow_unhealthy_swarm=False), True
    return config, False


DEFAULT_AGENT_CONFIG = AgentConfig()


# ---------------------------------------------------------------------------
# Source weighting
# ---------------------------------------------------------------------------


def _frozen(mapping: Mapping[Any, float]) -> Mapping[Any, float]:
    return MappingProxyType(dict(mapping))


@dataclass(frozen=True)
class SourceConfig:
    """How much to trust each data source, injected into the agent."""

    weights: Mapping[str, float] = field(
        default_factory=lambda: _frozen(
            {
                "stocktwits": 0.85,
                "reddit_wallstreetbets": 0.6,
                "reddit_stocks": 0.9,
                "reddit_investing": 0.8,
                "reddit_options": 0.85,
                "twitter_fintwit": 0.95,
                "twitter_news": 0.9,
                "sec_8k": 0.95,
                "sec_4": 0.9,
                "sec_13f": 0.7,
            }
        )
    )
    flair_multipliers: Mapping[str, float] = field(
        default_factory=lambda: _frozen(
            {
                "DD": 1.5,
                "Technical Analysis": 1.3,
                "Fundamentals": 1.3,
                "News": 1.2,
                "Discussion": 1.0,
                "Chart": 1.1,
                "Daily Discussion": 0.7,
                "Weekend Discussion": 0.6,
                "YOLO": 0.6,
                "Gain": 0.5,
                "Loss": 0.5,
                "Meme": 0.4,
                "Shitpost": 0.3,
            }
        )
    )
    upvote_tiers: Tuple[Tuple[int, float], ...] = ((1000, 1.5), (500, 1.3), (200, 1.2), (100, 1.1), (50, 1.0), (0, 0.8))
    comment_tiers: Tuple[Tuple[int, float], ...] = ((200, 1.4), (100, 1.25), (50, 1.15), (20, 1.05), (0, 0.9))
    decay_half_life_minutes: float = 120
    default_weight: float = 0.8

    def weight_for(self, source_detail: str) -> float:
        return float(self.weights.get(source_detail, self.default_weight))

    def flair_multiplier(self, flair: Optional[str]) -> float:
        if not flair:
            return 1.0
        return float(self.flair_multipliers.get(flair.strip(), 1.0))

    def engagement_multiplier(self, upvotes: float, comments: float) -> float:
        upvote_mult = next((mult for threshold, mult in self.upvote_tiers if upvotes >= threshold), 0.8)
        comment_mult = next((mult for threshold, mult in self.comment_tiers if comments >= threshold), 0.9)
        return (upvote_mult + comment_mult) / 2

    def time_decay(self, timestamp_ms: float, now: int) -> float:
        """Exponential decay by post age, clamped to ``[0.2, 1.0]``."""

        age_minutes = (now - timestamp_ms) / 60_000
        decay = 0.5 ** (age_minutes / self.decay_half_life_minutes)
        return max(0.2, min(1.0, decay))


DEFAULT_SOURCE_CONFIG = SourceConfig()


__all__ = [
    "AgentConfig",
    "ConfigValidationError",
    "DEFAULT_AGENT_CONFIG",
    "DEFAULT_SOURCE_CONFIG",
    "PRODUCTION_SWARM_ERROR",
    "SourceConfig",
    "apply_config_update",
    "enforce_production_swarm_guard",
    "validate_agent_config",
]
