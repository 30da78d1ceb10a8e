"""The agent's aggregate state and the records it owns.

Exactly one :class:`AgentState` exists per agent.  It is loaded once at
startup, mutated in place only by the scheduler's tick, and flushed to the
state store after every tick.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, TypeVar

from agent_config import AgentConfig
from circuit_breaker import CircuitBreakerRegistry, TokenBucket
from cost_tracker import CostTracker
from llm_safe import LLMAuthGuard
from log_utils import setup_logger
from memory_episodes import MemoryEpisode
from predictive_model import PredictiveModelState
from risk_engine import EquityPoint, MarketRegime, StressTestResult
from runtime_optimizer import OptimizationState
from signal_cache import SignalCache

logger = setup_logger(__name__)

SOCIAL_HISTORY_MAX = 48
RESEARCH_TTL_MS = 180_000


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class PositionEntry:
    symbol: str
    entry_time: int
    entry_price: float
    entry_sentiment: float = 0.0
    entry_social_volume: float = 0.0
    entry_sources: List[str] = field(default_factory=list)
    entry_reason: str = ""
    peak_price: float = 0.0
    peak_sentiment: float = 0.0
    entry_prediction: Optional[float] = None
    entry_regime: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def get(self, key: str, default: Any = None) -> Any:
        """Mapping-style access for the model and risk helpers."""

        return getattr(self, key, default)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PositionEntry":
        known = {key: value for key, value in data.items() if key in cls.__dataclass_fields__}
        known["entry_sources"] = list(known.get("entry_sources") or [])
        return cls(**known)


@dataclass
class ResearchResult:
    symbol: str
    verdict: str
    confidence: float
    entry_quality: str
    reasoning: str
    red_flags: List[str] = field(default_factory=list)
    catalysts: List[str] = field(default_factory=list)
    timestamp: int = 0
    sentiment: float = 0.0

    def is_fresh(self, now: int, ttl_ms: int = RESEARCH_TTL_MS) -> bool:
        return now - self.timestamp < ttl_ms

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ResearchResult":
        known = {key: value for key, value in data.items() if key in cls.__dataclass_fields__}
        return cls(**known)


T = TypeVar("T")


def _restore_records(raw: Any, factory: Callable[[Mapping[str, Any]], T], label: str) -> Dict[str, T]:
    """Rebuild a symbol-keyed mapping, skipping records that do not parse."""

    records: Dict[str, T] = {}
    if not isinstance(raw, Mapping):
        return records
    for symbol, item in raw.items():
        try:
            records[str(symbol)] = factory(item)
        except (AttributeError, TypeError, ValueError) as exc:
            logger.warning("Dropping malformed %s for %s on restore: %s", label, symbol, exc)
    return records


def _timestamp_of(value: Any) -> int:
    if isinstance(value, Mapping):
        return int(value.get("timestamp") or 0)
    return int(getattr(value, "timestamp", 0) or 0)


def cap_newest(mapping: Dict[str, Any], limit: int) -> bool:
    """Keep the ``limit`` newest values by timestamp; return if changed."""

    if len(mapping) <= limit:
        return False
    ordered = sorted(mapping.items(), key=lambda item: _timestamp_of(item[1]), reverse=True)[:limit]
    mapping.clear()
    mapping.update(ordered)
    return True


@dataclass
class AgentState:
    enabled: bool = False
    config: AgentConfig = field(default_factory=AgentConfig)
    signal_cache: SignalCache = field(default_factory=SignalCache)
    position_entries: Dict[str, PositionEntry] = field(default_factory=dict)
    social_history: Dict[str, List[Dict[str, float]]] = field(default_factory=dict)
    logs: List[Dict[str, Any]] = field(default_factory=list)
    cost_tracker: CostTracker = field(default_factory=CostTracker)
    portfolio_equity_history: List[EquityPoint] = field(default_factory=list)
    last_portfolio_snapshot_at: int = 0
    signal_research: Dict[str, ResearchResult] = field(default_factory=dict)
    position_research: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    staleness_analysis: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    memory_episodes: List[MemoryEpisode] = field(default_factory=list)
    predictive_model: PredictiveModelState = field(default_factory=PredictiveModelState)
    market_regime: MarketRegime = field(default_factory=MarketRegime)
    risk_profile: Optional[Dict[str, Any]] = None
    last_stress_test: Optional[StressTestResult] = None
    portfolio_risk_dashboard: Optional[Dict[str, Any]] = None
    optimization: OptimizationState = field(default_factory=OptimizationState)
    breakers: CircuitBreakerRegistry = field(default_factory=CircuitBreakerRegistry)
    confirmation_bucket: TokenBucket = field(default_factory=TokenBucket)
    llm_auth: LLMAuthGuard = field(default_factory=LLMAuthGuard)
    last_broker_auth_error: Optional[Dict[str, Any]] = None
    swarm_role_health: Dict[str, int] = field(default_factory=dict)
    activity_runs: Dict[str, int] = field(default_factory=dict)
    last_data_gather_run: int = 0
    last_research_run: int = 0
    last_analyst_run: int = 0
    last_position_research_run: int = 0
    kill_switch_engaged: bool = False

    # ------------------------------------------------------------------
    # Helpers used by the scheduler
    # ------------------------------------------------------------------
    def record_social_snapshot(self, symbol: str, volume: float, sentiment: float, now: Optional[int] = None) -> None:
        history = self.social_history.setdefault(symbol, [])
        history.append({"timestamp": _now_ms() if now is None else now, "volume": volume, "sentiment": sentiment})
        del history[:-SOCIAL_HISTORY_MAX]

    def forget_position(self, symbol: str) -> None:
        self.position_entries.pop(symbol, None)
        self.social_history.pop(symbol, None)
        self.staleness_analysis.pop(symbol, None)

    # ------------------------------------------------------------------
    # Serialisation
    # ------------------------------------------------------------------
    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "config": self.config.to_dict(),
            "signal_cache": self.signal_cache.to_dict(),
            "position_entries": {symbol: entry.to_dict() for symbol, entry in self.position_entries.items()},
            "social_history": self.social_history,
            "logs": self.logs,
            "cost_tracker": self.cost_tracker.to_dict(),
            "portfolio_equity_history": [asdict(point) for point in self.portfolio_equity_history],
            "last_portfolio_snapshot_at": self.last_portfolio_snapshot_at,
            "signal_research": {symbol: result.to_dict() for symbol, result in self.signal_research.items()},
            "position_research": self.position_research,
            "staleness_analysis": self.staleness_analysis,
            "memory_episodes": [episode.to_dict() for episode in self.memory_episodes],
            "predictive_model": self.predictive_model.to_dict(),
            "market_regime": self.market_regime.to_dict(),
            "risk_profile": self.risk_profile,
            "last_stress_test": self.last_stress_test.to_dict() if self.last_stress_test else None,
            "portfolio_risk_dashboard": self.portfolio_risk_dashboard,
            "optimization": self.optimization.to_dict(),
            "breakers": self.breakers.to_dict(),
            "confirmation_bucket": self.confirmation_bucket.to_dict(),
            "last_llm_auth_error": self.llm_auth.as_status(),
            "last_broker_auth_error": self.last_broker_auth_error,
            "swarm_role_health": self.swarm_role_health,
            "activity_runs": self.activity_runs,
            "last_data_gather_run": self.last_data_gather_run,
            "last_research_run": self.last_research_run,
            "last_analyst_run": self.last_analyst_run,
            "last_position_research_run": self.last_position_research_run,
            "kill_switch_engaged": self.kill_switch_engaged,
        }

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "AgentState":
        """Rebuild state from a persisted document, defaulting missing keys."""

        if not data:
            return cls()
        episodes = [MemoryEpisode.from_dict(item) for item in data.get("memory_episodes") or [] if isinstance(item, Mapping)]
        history = [
            EquityPoint(timestamp_ms=int(item["timestamp_ms"]), equity=float(item["equity"]))
            for item in data.get("portfolio_equity_history") or []
            if isinstance(item, Mapping) and "timestamp_ms" in item and "equity" in item
        ]
        return cls(
            enabled=bool(data.get("enabled", False)),
            config=AgentConfig.from_dict(data.get("config")),
            signal_cache=SignalCache.from_dict(data.get("signal_cache")),
            position_entries=_restore_records(data.get("position_entries"), PositionEntry.from_dict, "position entry"),
            social_history={str(k): list(v) for k, v in (data.get("social_history") or {}).items()},
            logs=[entry for entry in data.get("logs") or [] if isinstance(entry, Mapping)],
            cost_tracker=CostTracker.from_dict(data.get("cost_tracker")),
            portfolio_equity_history=history,
            last_portfolio_snapshot_at=int(data.get("last_portfolio_snapshot_at") or 0),
            signal_research=_restore_records(data.get("signal_research"), ResearchResult.from_dict, "research result"),
            position_research=dict(data.get("position_research") or {}),
            staleness_analysis=dict(data.get("staleness_analysis") or {}),
            memory_episodes=[episode for episode in episodes if episode is not None],
            predictive_model=PredictiveModelState.from_dict(data.get("predictive_model")),
            market_regime=MarketRegime.from_dict(data.get("market_regime")),
            risk_profile=data.get("risk_profile"),
            last_stress_test=StressTestResult.from_dict(data.get("last_stress_test")),
            portfolio_risk_dashboard=data.get("portfolio_risk_dashboard"),
            optimization=OptimizationState.from_dict(data.get("optimization")),
            breakers=CircuitBreakerRegistry.from_dict(data.get("breakers")),
            confirmation_bucket=TokenBucket.from_dict(data.get("confirmation_bucket")),
            llm_auth=LLMAuthGuard.from_status(data.get("last_llm_auth_error")),
            last_broker_auth_error=data.get("last_broker_auth_error"),
            swarm_role_health=dict(data.get("swarm_role_health") or {}),
            activity_runs={str(k): int(v) for k, v in (data.get("activity_runs") or {}).items()},
            last_data_gather_run=int(data.get("last_data_gather_run") or 0),
            last_research_run=int(data.get("last_research_run") or 0),
            last_analyst_run=int(data.get("last_analyst_run") or 0),
            last_position_research_run=int(data.get("last_position_research_run") or 0),
            kill_switch_engaged=bool(data.get("kill_switch_engaged", False)),
        )


__all__ = ["AgentState", "PositionEntry", "ResearchResult", "cap_newest"]
