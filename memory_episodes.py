"""Tagged, importance-scored notes that bias later LLM prompts."""

from __future__ import annotations

import math
import secrets
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

from signal_cache import clamp01

DAY_MS = 24 * 60 * 60 * 1000
MEMORY_RETENTION_MS = 30 * DAY_MS
MEMORY_DECAY_MS = 7 * DAY_MS
MEMORY_RECENT_MS = 3 * DAY_MS
MEMORY_MIN_IMPORTANCE_TO_KEEP = 0.15
MEMORY_MAX_EPISODES = 500
MAX_TAGS = 12

OUTCOMES = ("success", "failure", "neutral")


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class MemoryEpisode:
    id: str
    timestamp: int
    importance: float
    context: str
    outcome: str
    tags: List[str] = field(default_factory=list)
    metadata: Optional[Dict[str, Any]] = None

    def decayed_importance(self, now: int) -> float:
        age = max(0, now - self.timestamp)
        return self.importance * math.exp(-age / MEMORY_DECAY_MS)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if data["metadata"] is None:
            del data["metadata"]
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Optional["MemoryEpisode"]:
        timestamp = data.get("timestamp")
        if not isinstance(timestamp, (int, float)) or not math.isfinite(timestamp):
            return None
        return cls(
            id=str(data.get("id") or f"mem:{int(timestamp)}:restored"),
            timestamp=int(timestamp),
            importance=clamp01(float(data.get("importance", 0.0))),
            context=str(data.get("context", "")),
            outcome=str(data.get("outcome", "neutral")),
            tags=[str(tag) for tag in data.get("tags") or []],
            metadata=data.get("metadata"),
        )


def _normalise_tags(tags: Iterable[str]) -> List[str]:
    seen: List[str] = []
    for tag in tags:
        lowered = str(tag).lower()
        if lowered and lowered not in seen:
            seen.append(lowered)
    return seen[:MAX_TAGS]


def prune_memory_episodes(episodes: List[MemoryEpisode], now: Optional[int] = None) -> List[MemoryEpisode]:
    """Drop expired or faded episodes in place and return the list.

    Episodes older than 30 days always go.  Younger ones survive when they
    are under three days old or their decayed importance is still at least
    0.15.  Survivors are ordered newest first and capped at 500.
    """

    ts = _now_ms() if now is None else now
    threshold = ts - MEMORY_RETENTION_MS
    kept = [
        episode
        for episode in episodes
        if episode.timestamp >= threshold
        and (
            ts - episode.timestamp < MEMORY_RECENT_MS
            or episode.decayed_importance(ts) >= MEMORY_MIN_IMPORTANCE_TO_KEEP
        )
    ]
    kept.sort(key=lambda episode: episode.timestamp, reverse=True)
    episodes[:] = kept[:MEMORY_MAX_EPISODES]
    return episodes


def remember_episode(
    episodes: List[MemoryEpisode],
    context: str,
    outcome: str,
    tags: Iterable[str],
    *,
    impact: float,
    confidence: float,
    novelty: float,
    metadata: Optional[Dict[str, Any]] = None,
    now: Optional[int] = None,
) -> MemoryEpisode:
    ts = _now_ms() if now is None else now
    importance = clamp01(clamp01(impact) * 0.4 + clamp01(confidence) * 0.35 + clamp01(novelty) * 0.25)
    episode = MemoryEpisode(
        id=f"mem:{ts}:{secrets.token_hex(4)}",
        timestamp=ts,
        importance=importance,
        context=context,
        outcome=outcome if outcome in OUTCOMES else "neutral",
        tags=_normalise_tags(tags),
        metadata=metadata,
    )
    episodes.append(episode)
    prune_memory_episodes(episodes, ts)
    return episode


def relevant_episodes(
    episodes: List[MemoryEpisode], tags: Iterable[str], limit: int = 5, now: Optional[int] = None
) -> List[MemoryEpisode]:
    """Episodes sharing any tag, ranked by decayed importance."""

    ts = _now_ms() if now is None else now
    prune_memory_episodes(episodes, ts)
    wanted = {str(tag).lower() for tag in tags}
    matches = [episode for episode in episodes if any(tag.lower() in wanted for tag in episode.tags)]
    matches.sort(key=lambda episode: episode.decayed_importance(ts), reverse=True)
    return matches[: max(0, limit)]


def format_lessons(episodes: Iterable[MemoryEpisode]) -> str:
    return "\n".join(f"- [{episode.outcome}] {episode.context}" for episode in episodes)


__all__ = [
    "MEMORY_MAX_EPISODES",
    "MemoryEpisode",
    "format_lessons",
    "prune_memory_episodes",
    "relevant_episodes",
    "remember_episode",
]
