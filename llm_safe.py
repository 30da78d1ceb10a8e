"""Utility helpers for resilient LLM calls.

This module centralises LLM authentication-failure detection, error
description and the dependency-wide cool-off that suppresses every reasoning
call for a while once the provider rejects our credentials.  The generic
circuit breakers in :mod:`circuit_breaker` cover transient failures; the
auth guard here is a stronger, manual override that is independent of them.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Protocol

from log_utils import setup_logger

logger = setup_logger(__name__)

LLM_AUTH_COOLOFF_MS = 300_000

_AUTH_FAILURE_HINTS = (
    "authentication fails",
    "invalid api key",
    "unauthorized",
    "401",
)


class LLMAuthError(RuntimeError):
    """Raised when LLM authentication failed and requests must be skipped."""


def _now_ms() -> int:
    return int(time.time() * 1000)


def _normalise_text(text: str | None) -> str:
    """Return a case-insensitive representation of ``text``."""

    if not text:
        return ""
    return str(text).lower()


def _extract_error_parts(error: Any) -> tuple[str, str | None]:
    """Extract a human readable message and error code from ``error``."""

    if isinstance(error, Mapping):
        inner = error.get("error")
        if isinstance(inner, Mapping):
            message = inner.get("message", "")
            code = inner.get("code")
            return str(message or ""), str(code) if code is not None else None
        message = error.get("message", "")
        code = error.get("code")
        return str(message or ""), str(code) if code is not None else None
    code = getattr(error, "code", None)
    if isinstance(error, BaseException):
        return str(error) or error.__class__.__name__, str(code) if code is not None else None
    return str(error or ""), None


def describe_error(error: Any) -> str:
    """Return a compact description of ``error`` suitable for logging."""

    message, code = _extract_error_parts(error)
    if code and message and not message.startswith(code):
        return f"{code}: {message}"
    if code and not message:
        return str(code)
    return message


def is_llm_auth_failure(error: Any) -> bool:
    """Return ``True`` if ``error`` reads like a rejected credential."""

    lowered = _normalise_text(describe_error(error))
    return any(hint in lowered for hint in _AUTH_FAILURE_HINTS)


@dataclass
class LLMAuthGuard:
    """Remembers the last auth failure and enforces the cool-off window."""

    last_error_at: Optional[int] = None
    last_error_message: Optional[str] = None
    cooloff_ms: int = LLM_AUTH_COOLOFF_MS

    def record(self, message: Any, now: Optional[int] = None) -> None:
        self.last_error_at = _now_ms() if now is None else now
        self.last_error_message = describe_error(message)
        logger.warning("LLM auth failure recorded, suppressing calls for %ss", self.cooloff_ms // 1000)

    def is_cooling_off(self, now: Optional[int] = None) -> bool:
        if self.last_error_at is None:
            return False
        ts = _now_ms() if now is None else now
        return ts - self.last_error_at < self.cooloff_ms

    def remaining_ms(self, now: Optional[int] = None) -> int:
        if self.last_error_at is None:
            return 0
        ts = _now_ms() if now is None else now
        return max(0, self.cooloff_ms - (ts - self.last_error_at))

    def reset(self) -> None:
        """Reset authentication state (primarily for tests)."""

        self.last_error_at = None
        self.last_error_message = None

    def as_status(self) -> Optional[Dict[str, Any]]:
        if self.last_error_at is None:
            return None
        return {"at": self.last_error_at, "message": self.last_error_message}

    @classmethod
    def from_status(cls, data: Optional[Mapping[str, Any]]) -> "LLMAuthGuard":
        if not data:
            return cls()
        at = data.get("at")
        return cls(
            last_error_at=int(at) if isinstance(at, (int, float)) else None,
            last_error_message=data.get("message"),
        )


@dataclass
class LLMRequest:
    model: str
    messages: list
    temperature: float = 0.0
    max_tokens: int = 256
    response_format: Optional[Dict[str, Any]] = None


@dataclass
class LLMResponse:
    content: str
    model: str
    usage: Optional[Dict[str, int]] = None


class LLMProvider(Protocol):
    async def complete(self, request: LLMRequest) -> LLMResponse:
        ...


async def safe_complete(
    provider: Optional[LLMProvider],
    request: LLMRequest,
    guard: LLMAuthGuard,
    *,
    now: Optional[int] = None,
) -> LLMResponse:
    """Invoke ``provider`` unless the auth guard is cooling off.

    Authentication failures are recorded on ``guard`` and re-raised as
    :class:`LLMAuthError`; every other provider error propagates unchanged.
    """

    if provider is None:
        raise RuntimeError("LLM provider unavailable")
    if guard.is_cooling_off(now):
        raise LLMAuthError(f"LLM authentication cooling off: {guard.last_error_message}")
    try:
        return await provider.complete(request)
    except LLMAuthError as exc:
        guard.record(exc, now)
        raise
    except Exception as exc:
        if is_llm_auth_failure(exc):
            guard.record(exc, now)
            raise LLMAuthError(describe_error(exc)) from exc
        raise


__all__ = [
    "LLMAuthError",
    "LLMAuthGuard",
    "LLMProvider",
    "LLMRequest",
    "LLMResponse",
    "LLM_AUTH_COOLOFF_MS",
    "describe_error",
    "is_llm_auth_failure",
    "safe_complete",
]
