"""Self-tuning of the scheduler's stage intervals from latency telemetry."""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, Mapping, MutableMapping, Optional

EMA_ALPHA = 0.2

DATA_POLL_RANGE_MS = (10_000, 60_000)
RESEARCH_RANGE_MS = (60_000, 240_000)
ANALYST_RANGE_MS = (60_000, 240_000)
DEFAULT_RESEARCH_INTERVAL_MS = 120_000

# Latency ceilings above which the agent counts as overloaded.
GATHER_CEILING_MS = 4_000
RESEARCH_CEILING_MS = 7_000
ANALYST_CEILING_MS = 8_000
# Latency floors below which the agent counts as healthy.
GATHER_FLOOR_MS = 2_000
RESEARCH_FLOOR_MS = 4_000

OVERLOADED_ERROR_RATE = 0.2
HEALTHY_ERROR_RATE = 0.05

STAGES = ("gather", "research", "analyst")


def _now_ms() -> int:
    return int(time.time() * 1000)


def update_ema(current: float, sample: float, alpha: float = EMA_ALPHA) -> float:
    """EMA step where a non-positive current value is seeded by ``sample``."""

    if current <= 0:
        return sample
    return current * (1 - alpha) + sample * alpha


@dataclass
class OptimizationState:
    adaptive_data_poll_interval_ms: int = 30_000
    adaptive_research_interval_ms: int = DEFAULT_RESEARCH_INTERVAL_MS
    adaptive_analyst_interval_ms: int = 120_000
    gather_latency_ema_ms: float = 0.0
    research_latency_ema_ms: float = 0.0
    analyst_latency_ema_ms: float = 0.0
    error_rate_ema: float = 0.0
    last_optimization_at: int = 0
    optimization_runs: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "OptimizationState":
        if not data:
            return cls()
        known = {key: value for key, value in data.items() if key in cls.__dataclass_fields__}
        return cls(**known)


def record_performance_sample(opt: OptimizationState, stage: str, duration_ms: float, had_error: bool) -> None:
    if stage == "gather":
        opt.gather_latency_ema_ms = update_ema(opt.gather_latency_ema_ms, duration_ms)
    elif stage == "research":
        opt.research_latency_ema_ms = update_ema(opt.research_latency_ema_ms, duration_ms)
    else:
        opt.analyst_latency_ema_ms = update_ema(opt.analyst_latency_ema_ms, duration_ms)
    opt.error_rate_ema = update_ema(opt.error_rate_ema, 1.0 if had_error else 0.0)


def is_overloaded(opt: OptimizationState) -> bool:
    return (
        opt.error_rate_ema > OVERLOADED_ERROR_RATE
        or opt.gather_latency_ema_ms > GATHER_CEILING_MS
        or opt.research_latency_ema_ms > RESEARCH_CEILING_MS
        or opt.analyst_latency_ema_ms > ANALYST_CEILING_MS
    )


def is_healthy(opt: OptimizationState) -> bool:
    return (
        opt.error_rate_ema < HEALTHY_ERROR_RATE
        and 0 < opt.gather_latency_ema_ms < GATHER_FLOOR_MS
        and opt.research_latency_ema_ms < RESEARCH_FLOOR_MS
    )


def optimize_runtime_parameters(
    opt: OptimizationState,
    *,
    data_poll_default_ms: int,
    analyst_default_ms: int,
    now: Optional[int] = None,
) -> Dict[str, Any]:
    """Widen intervals under load and tighten them when healthy.

    This is a plain proportional step: overloaded multiplies the intervals
    by 1.15/1.15/1.12 up to their ceilings, healthy multiplies by
    0.92/0.93/0.94 down to their floors.  Returns a summary for logging.
    """

    data_poll = opt.adaptive_data_poll_interval_ms or data_poll_default_ms
    research = opt.adaptive_research_interval_ms or DEFAULT_RESEARCH_INTERVAL_MS
    analyst = opt.adaptive_analyst_interval_ms or analyst_default_ms

    overloaded = is_overloaded(opt)
    healthy = not overloaded and is_healthy(opt)
    if overloaded:
        data_poll = min(DATA_POLL_RANGE_MS[1], round(data_poll * 1.15))
        research = min(RESEARCH_RANGE_MS[1], round(research * 1.15))
        analyst = min(ANALYST_RANGE_MS[1], round(analyst * 1.12))
    elif healthy:
        data_poll = max(DATA_POLL_RANGE_MS[0], round(data_poll * 0.92))
        research = max(RESEARCH_RANGE_MS[0], round(research * 0.93))
        analyst = max(ANALYST_RANGE_MS[0], round(analyst * 0.94))

    opt.adaptive_data_poll_interval_ms = int(data_poll)
    opt.adaptive_research_interval_ms = int(research)
    opt.adaptive_analyst_interval_ms = int(analyst)
    opt.optimization_runs += 1
    opt.last_optimization_at = _now_ms() if now is None else now
    return {
        "data_poll_ms": opt.adaptive_data_poll_interval_ms,
        "research_ms": opt.adaptive_research_interval_ms,
        "analyst_ms": opt.adaptive_analyst_interval_ms,
        "gather_ema_ms": round(opt.gather_latency_ema_ms, 1),
        "research_ema_ms": round(opt.research_latency_ema_ms, 1),
        "analyst_ema_ms": round(opt.analyst_latency_ema_ms, 1),
        "error_rate_ema": round(opt.error_rate_ema, 3),
        "overloaded": overloaded,
        "healthy": healthy,
    }


class PeriodicActivity:
    """Fixed-interval side activity whose last run lives in agent state."""

    def __init__(self, name: str, *, interval_ms: int) -> None:
        self.name = name
        self.interval_ms = int(interval_ms)

    def due(self, runs: Mapping[str, int], now: Optional[int] = None) -> bool:
        timestamp = _now_ms() if now is None else now
        last = runs.get(self.name) or 0
        return not last or timestamp - last >= self.interval_ms

    def mark_ran(self, runs: MutableMapping[str, int], now: Optional[int] = None) -> None:
        runs[self.name] = _now_ms() if now is None else now


__all__ = [
    "OptimizationState",
    "PeriodicActivity",
    "STAGES",
    "is_healthy",
    "is_overloaded",
    "optimize_runtime_parameters",
    "record_performance_sample",
    "update_ema",
]
