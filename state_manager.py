"""Published status snapshots shared between the tick and operator reads."""

from __future__ import annotations

import threading
import time
from copy import deepcopy
from typing import Any, Dict, Optional


class StatusBoard:
    """Hold the most recent snapshot the scheduler published.

    The tick is the only writer of agent state.  Operator reads (status,
    metrics, logs) must not block it, so after each tick the scheduler
    publishes deep copies of the sections readers need.  Readers receive
    their own deep copy, so staleness is bounded by one tick period.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._sections: Dict[str, Dict[str, Any]] = {}

    # ------------------------------------------------------------------
    # Writers
    # ------------------------------------------------------------------
    def publish(self, section: str, value: Any, *, timestamp: Optional[float] = None) -> None:
        """Replace an entire section atomically."""

        ts = float(timestamp if timestamp is not None else time.time())
        payload = deepcopy(value)
        with self._lock:
            self._sections[section] = {"data": payload, "timestamp": ts}

    def publish_many(self, sections: Dict[str, Any], *, timestamp: Optional[float] = None) -> None:
        ts = float(timestamp if timestamp is not None else time.time())
        payload = {name: {"data": deepcopy(value), "timestamp": ts} for name, value in sections.items()}
        with self._lock:
            self._sections.update(payload)

    # ------------------------------------------------------------------
    # Readers
    # ------------------------------------------------------------------
    def get(self, section: str, default: Any = None) -> Any:
        with self._lock:
            entry = self._sections.get(section)
            if entry is None:
                return default
            return deepcopy(entry["data"])

    def published_at(self, section: str) -> Optional[float]:
        with self._lock:
            entry = self._sections.get(section)
            return entry["timestamp"] if entry else None

    def snapshot(self) -> Dict[str, Any]:
        """Return a deep copy of every published section's payload."""

        with self._lock:
            return {name: deepcopy(entry["data"]) for name, entry in self._sections.items()}

    def clear(self) -> None:
        with self._lock:
            self._sections.clear()


__all__ = ["StatusBoard"]
