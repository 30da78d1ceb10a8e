"""Durable agent state with size-aware degradation.

The store reports an oversized document as an explicit :class:`TooLarge`
result instead of raising, and :func:`persist_state` answers it by walking a
ladder of progressively tighter retention limits.
"""

from __future__ import annotations

import json
import os
import tempfile
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Union

from agent_config import enforce_production_swarm_guard
from agent_state import AgentState, cap_newest
from config import DEFAULT_STATE_MAX_BYTES, RuntimeSettings, _ensure_parent_dir
from log_utils import setup_logger
from observability import append_activity, log_event, record_metric

logger = setup_logger(__name__)

STATE_KEY = "agent_state"

PERSIST_RETRY_LOG_LIMITS = (700, 400, 200, 100)
PERSIST_RETRY_MEMORY_LIMITS = (300, 200, 120, 80)
PERSIST_RETRY_PORTFOLIO_LIMITS = (2_500, 1_500, 900, 500)
PERSIST_RETRY_SIGNAL_CACHE_LIMITS = (160, 120, 90, 60)
SIGNAL_RESEARCH_LIMIT = 300
POSITION_RESEARCH_LIMIT = 250
STALENESS_LIMIT = 250


@dataclass(frozen=True)
class WriteOk:
    size: int


@dataclass(frozen=True)
class TooLarge:
    size: int
    limit: int


WriteResult = Union[WriteOk, TooLarge]


class JsonStateStore:
    """One JSON document per key inside ``directory``, replaced atomically."""

    def __init__(self, directory: str, *, max_bytes: int = DEFAULT_STATE_MAX_BYTES) -> None:
        self.directory = directory
        self.max_bytes = int(max_bytes)

    @classmethod
    def from_settings(cls, settings: RuntimeSettings) -> "JsonStateStore":
        return cls(os.path.dirname(settings.state_path) or ".", max_bytes=settings.state_max_bytes)

    def path_for(self, key: str) -> str:
        return os.path.join(self.directory, f"{key}.json")

    def write(self, key: str, payload: Mapping[str, Any]) -> WriteResult:
        encoded = json.dumps(payload, ensure_ascii=False, separators=(",", ":"), default=str).encode("utf-8")
        if len(encoded) > self.max_bytes:
            return TooLarge(size=len(encoded), limit=self.max_bytes)
        path = self.path_for(key)
        _ensure_parent_dir(path)
        fd, tmp = tempfile.mkstemp(prefix=f".{key}_", dir=os.path.dirname(path))
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(encoded)
            os.replace(tmp, path)
        finally:
            if os.path.exists(tmp):
                try:
                    os.remove(tmp)
                except OSError:
                    pass
        return WriteOk(size=len(encoded))

    def read(self, key: str) -> Optional[Dict[str, Any]]:
        path = self.path_for(key)
        try:
            with open(path, "r", encoding="utf-8") as handle:
                text = handle.read().strip()
        except FileNotFoundError:
            return None
        if not text:
            return None
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            logger.warning("Ignoring corrupted state file %s (%s)", path, exc)
            return None
        return data if isinstance(data, dict) else None

    def delete_all(self) -> None:
        if not os.path.isdir(self.directory):
            return
        for name in os.listdir(self.directory):
            if name.endswith(".json"):
                os.remove(os.path.join(self.directory, name))


# ---------------------------------------------------------------------------
# Degrade ladder
# ---------------------------------------------------------------------------


@dataclass
class PersistOutcome:
    ok: bool
    size: int
    rung: Optional[int] = None
    trimmed: List[Dict[str, int]] = field(default_factory=list)


def _state_lengths(state: AgentState) -> Dict[str, int]:
    return {
        "logs": len(state.logs),
        "memory_episodes": len(state.memory_episodes),
        "portfolio_equity_history": len(state.portfolio_equity_history),
        "signal_cache": len(state.signal_cache),
    }


def apply_trim_rung(state: AgentState, rung: int) -> Dict[str, int]:
    """Tighten every retained collection to ``rung``'s limits.

    Safe to re-apply: a rung that already fits leaves the state unchanged.
    Returns the collection lengths after trimming.
    """

    log_limit = PERSIST_RETRY_LOG_LIMITS[rung]
    if len(state.logs) > log_limit:
        del state.logs[: len(state.logs) - log_limit]

    memory_limit = PERSIST_RETRY_MEMORY_LIMITS[rung]
    if len(state.memory_episodes) > memory_limit:
        state.memory_episodes.sort(key=lambda episode: episode.timestamp, reverse=True)
        del state.memory_episodes[memory_limit:]

    portfolio_limit = PERSIST_RETRY_PORTFOLIO_LIMITS[rung]
    if len(state.portfolio_equity_history) > portfolio_limit:
        del state.portfolio_equity_history[: len(state.portfolio_equity_history) - portfolio_limit]

    state.signal_cache.trim_newest(PERSIST_RETRY_SIGNAL_CACHE_LIMITS[rung])
    cap_newest(state.signal_research, SIGNAL_RESEARCH_LIMIT)
    cap_newest(state.position_research, POSITION_RESEARCH_LIMIT)
    cap_newest(state.staleness_analysis, STALENESS_LIMIT)
    return _state_lengths(state)


def persist_state(store: JsonStateStore, state: AgentState, *, key: str = STATE_KEY) -> PersistOutcome:
    """Write ``state`` once, degrading through the trim ladder on ``TooLarge``.

    When every rung still exceeds the limit the state stays in memory and the
    failure is logged; the next tick retries from the trimmed baseline.
    """

    started = time.perf_counter()
    result = store.write(key, state.to_dict())
    if isinstance(result, WriteOk):
        record_metric("persist_latency_ms", (time.perf_counter() - started) * 1000, labels={"outcome": "ok"})
        return PersistOutcome(ok=True, size=result.size)

    trimmed: List[Dict[str, int]] = []
    size = result.size
    log_event(logger, "persist_too_large", size=result.size, limit=result.limit)
    for rung in range(len(PERSIST_RETRY_LOG_LIMITS)):
        trimmed.append(apply_trim_rung(state, rung))
        result = store.write(key, state.to_dict())
        size = result.size
        if isinstance(result, WriteOk):
            log_event(logger, "persist_degraded", rung=rung, size=result.size, lengths=trimmed[-1])
            record_metric("persist_degraded_total", 1, labels={"rung": rung})
            return PersistOutcome(ok=True, size=result.size, rung=rung, trimmed=trimmed)

    logger.error("State persist failed after %d trim rungs (size=%d, limit=%d)", len(trimmed), size, store.max_bytes)
    record_metric("persist_failed_total", 1)
    return PersistOutcome(ok=False, size=size, rung=len(trimmed) - 1, trimmed=trimmed)


def load_state(store: JsonStateStore, settings: RuntimeSettings, *, key: str = STATE_KEY) -> AgentState:
    """Load persisted state, apply defaults and the production swarm guard."""

    state = AgentState.from_dict(store.read(key))
    state.config, corrected = enforce_production_swarm_guard(state.config, production=settings.is_production)
    if corrected:
        append_activity(
            state.logs,
            "System",
            "config_guard_enforced",
            {
                "field": "allow_unhealthy_swarm",
                "reason": "allow_unhealthy_swarm forced to false in production",
                "severity": "warning",
                "status": "warning",
                "event_type": "system",
            },
            logger=logger,
        )
        persist_state(store, state, key=key)
    return state


__all__ = [
    "JsonStateStore",
    "PERSIST_RETRY_LOG_LIMITS",
    "PERSIST_RETRY_MEMORY_LIMITS",
    "PERSIST_RETRY_PORTFOLIO_LIMITS",
    "PERSIST_RETRY_SIGNAL_CACHE_LIMITS",
    "PersistOutcome",
    "STATE_KEY",
    "TooLarge",
    "WriteOk",
    "WriteResult",
    "apply_trim_rung",
    "load_state",
    "persist_state",
]
