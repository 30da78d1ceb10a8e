"""Per-dependency circuit breakers and the read-budget token bucket.

Every external dependency the agent talks to (each data source, the LLM, the
confirmation feed) is wrapped by a breaker that opens with exponential backoff
after consecutive failures.  While a breaker is open the dependency is not
called at all and the caller receives a *skipped* outcome, which is reported
separately from a genuine failure.

The :class:`TokenBucket` protects a scarce external read budget with two
independent limits: a small burst bucket that refills continuously and a hard
daily counter anchored on a rolling 24h window.
"""

from __future__ import annotations

import asyncio
import math
import time
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from llm_safe import describe_error

BREAKER_BASE_COOLOFF_MS = 15_000
BREAKER_MAX_COOLOFF_MS = 300_000

DAY_MS = 86_400_000
DEFAULT_DAILY_READ_LIMIT = 200
DEFAULT_BUCKET_CAPACITY = 20


def _now_ms() -> int:
    return int(time.time() * 1000)


def breaker_cooloff_ms(failures: int) -> int:
    """Return how long a breaker stays open after ``failures`` in a row."""

    exponent = max(0, int(failures) - 1)
    # 2**5 already exceeds the ceiling; avoid huge ints for long outages.
    if exponent > 10:
        return BREAKER_MAX_COOLOFF_MS
    return min(BREAKER_MAX_COOLOFF_MS, BREAKER_BASE_COOLOFF_MS * (2 ** exponent))


@dataclass
class BreakerState:
    failures: int = 0
    open_until_ms: int = 0
    last_success_at: Optional[int] = None
    last_failure_at: Optional[int] = None
    last_error: Optional[str] = None

    def is_open(self, now: Optional[int] = None) -> bool:
        ts = _now_ms() if now is None else now
        return self.open_until_ms > ts

    def record_success(self, now: Optional[int] = None) -> None:
        self.failures = 0
        self.open_until_ms = 0
        self.last_success_at = _now_ms() if now is None else now
        self.last_error = None

    def record_failure(self, error: Any, now: Optional[int] = None) -> int:
        """Count a failure and open the breaker; returns the cool-off in ms."""

        ts = _now_ms() if now is None else now
        self.failures += 1
        cooloff = breaker_cooloff_ms(self.failures)
        self.open_until_ms = ts + cooloff
        self.last_failure_at = ts
        self.last_error = describe_error(error)
        return cooloff

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "BreakerState":
        return cls(
            failures=int(data.get("failures") or 0),
            open_until_ms=int(data.get("open_until_ms") or 0),
            last_success_at=data.get("last_success_at"),
            last_failure_at=data.get("last_failure_at"),
            last_error=data.get("last_error"),
        )


@dataclass
class SourceRunResult:
    source: str
    success: bool
    processed: int = 0
    skipped: bool = False
    error: Optional[str] = None
    payload: Any = None


class CircuitBreakerRegistry:
    """Keyed collection of :class:`BreakerState` instances."""

    def __init__(self, states: Optional[Dict[str, BreakerState]] = None) -> None:
        self._states: Dict[str, BreakerState] = dict(states or {})

    def get(self, name: str) -> BreakerState:
        state = self._states.get(name)
        if state is None:
            state = BreakerState()
            self._states[name] = state
        return state

    def is_open(self, name: str, now: Optional[int] = None) -> bool:
        state = self._states.get(name)
        return bool(state and state.is_open(now))

    def names(self) -> list[str]:
        return sorted(self._states)

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        return {name: state.to_dict() for name, state in self._states.items()}

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "CircuitBreakerRegistry":
        states = {
            str(name): BreakerState.from_dict(value)
            for name, value in (data or {}).items()
            if isinstance(value, Mapping)
        }
        return cls(states)

    async def run_with_breaker(
        self,
        source: str,
        runner: Callable[[], Awaitable[Any]],
        *,
        now: Optional[int] = None,
        count: Optional[Callable[[Any], int]] = None,
    ) -> SourceRunResult:
        """Invoke ``runner`` unless the breaker for ``source`` is open.

        The runner's exceptions are converted into a failed
        :class:`SourceRunResult`; they never propagate to the caller, so a
        fan-out over several sources keeps all-settled semantics.
        """

        ts = _now_ms() if now is None else now
        state = self.get(source)
        if state.is_open(ts):
            return SourceRunResult(
                source=source,
                success=False,
                skipped=True,
                error=f"circuit_open_until_{state.open_until_ms}",
            )
        try:
            payload = await runner()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            state.record_failure(exc, ts if now is not None else _now_ms())
            return SourceRunResult(source=source, success=False, error=describe_error(exc))
        state.record_success(ts if now is not None else _now_ms())
        processed = count(payload) if count else (len(payload) if hasattr(payload, "__len__") else 0)
        return SourceRunResult(source=source, success=True, processed=int(processed), payload=payload)


@dataclass
class TokenBucket:
    """Burst bucket plus hard daily counter for a scarce read budget."""

    daily_limit: int = DEFAULT_DAILY_READ_LIMIT
    capacity: int = DEFAULT_BUCKET_CAPACITY
    tokens: float = float(DEFAULT_BUCKET_CAPACITY)
    last_refill_ms: int = 0
    daily_count: int = 0
    daily_anchor_ms: int = 0

    @property
    def refill_per_second(self) -> float:
        return self.daily_limit / 86_400

    def refill(self, now: Optional[int] = None) -> None:
        ts = _now_ms() if now is None else now
        if self.daily_anchor_ms <= 0:
            self.daily_anchor_ms = ts
        if ts - self.daily_anchor_ms > DAY_MS:
            self.daily_count = 0
            self.daily_anchor_ms = ts
        if self.last_refill_ms <= 0:
            self.last_refill_ms = ts
        if not math.isfinite(self.tokens):
            self.tokens = float(self.capacity)
        elapsed = max(0.0, (ts - self.last_refill_ms) / 1000)
        if elapsed <= 0:
            return
        self.tokens = min(float(self.capacity), self.tokens + elapsed * self.refill_per_second)
        self.last_refill_ms = ts

    def _has_budget(self, count: int) -> bool:
        return self.daily_count + count <= self.daily_limit and self.tokens >= count

    def can_spend(self, count: float = 1, now: Optional[int] = None) -> bool:
        if count <= 0:
            return True
        spend = max(1, math.floor(count))
        self.refill(now)
        return self._has_budget(spend)

    def try_spend(self, count: float = 1, now: Optional[int] = None) -> bool:
        """Debit ``count`` reads from both limits or from neither."""

        if count <= 0:
            return True
        spend = max(1, math.floor(count))
        self.refill(now)
        if not self._has_budget(spend):
            return False
        self.tokens = max(0.0, self.tokens - spend)
        self.daily_count += spend
        return True

    def daily_remaining(self) -> int:
        return max(0, self.daily_limit - self.daily_count)

    def projected_tokens(self, now: Optional[int] = None) -> float:
        """Tokens available at ``now`` without mutating the bucket."""

        ts = _now_ms() if now is None else now
        last = self.last_refill_ms or ts
        elapsed = max(0.0, (ts - last) / 1000)
        return min(float(self.capacity), self.tokens + elapsed * self.refill_per_second)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "TokenBucket":
        if not data:
            return cls()
        bucket = cls(
            daily_limit=int(data.get("daily_limit", DEFAULT_DAILY_READ_LIMIT)),
            capacity=int(data.get("capacity", DEFAULT_BUCKET_CAPACITY)),
        )
        tokens = data.get("tokens")
        bucket.tokens = float(tokens) if isinstance(tokens, (int, float)) else float(bucket.capacity)
        bucket.last_refill_ms = int(data.get("last_refill_ms") or 0)
        bucket.daily_count = int(data.get("daily_count") or 0)
        bucket.daily_anchor_ms = int(data.get("daily_anchor_ms") or 0)
        return bucket


__all__ = [
    "BREAKER_BASE_COOLOFF_MS",
    "BREAKER_MAX_COOLOFF_MS",
    "BreakerState",
    "CircuitBreakerRegistry",
    "SourceRunResult",
    "TokenBucket",
    "breaker_cooloff_ms",
]
