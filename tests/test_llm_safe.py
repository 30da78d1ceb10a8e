import asyncio
import logging

import pytest

from llm_safe import (
    LLMAuthError,
    LLMAuthGuard,
    LLMRequest,
    LLMResponse,
    describe_error,
    is_llm_auth_failure,
    safe_complete,
)


class DummyProvider:
    def __init__(self, error=None):
        self.error = error
        self.calls = 0

    async def complete(self, request):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return LLMResponse(content='{"ok": true}', model=request.model)


def _request():
    return LLMRequest(model="gpt-4o-mini", messages=[{"role": "user", "content": "hi"}])


def test_describe_error_prefers_nested_code_and_message():
    payload = {"error": {"message": "Invalid API key", "code": "invalid_api_key"}}
    assert describe_error(payload) == "invalid_api_key: Invalid API key"
    assert describe_error(ValueError()) == "ValueError"
    assert is_llm_auth_failure(payload)
    assert not is_llm_auth_failure(RuntimeError("rate limited"))


def test_auth_failure_starts_cooloff(caplog):
    guard = LLMAuthGuard()
    provider = DummyProvider(RuntimeError("401 Unauthorized"))

    with caplog.at_level(logging.WARNING):
        with pytest.raises(LLMAuthError):
            asyncio.run(safe_complete(provider, _request(), guard, now=1_000))

    assert guard.is_cooling_off(now=2_000)
    assert guard.remaining_ms(now=2_000) == 299_000
    assert any("LLM auth failure recorded" in rec.message for rec in caplog.records)

    with pytest.raises(LLMAuthError):
        asyncio.run(safe_complete(provider, _request(), guard, now=2_000))
    assert provider.calls == 1


def test_cooloff_expires_after_five_minutes():
    guard = LLMAuthGuard()
    guard.record("invalid api key", now=0)
    assert not guard.is_cooling_off(now=300_000)
    response = asyncio.run(safe_complete(DummyProvider(), _request(), guard, now=300_000))
    assert response.content == '{"ok": true}'


def test_other_errors_propagate_without_cooloff():
    guard = LLMAuthGuard()
    with pytest.raises(TimeoutError):
        asyncio.run(safe_complete(DummyProvider(TimeoutError("slow")), _request(), guard, now=1))
    assert guard.last_error_at is None


def test_missing_provider_raises():
    with pytest.raises(RuntimeError):
        asyncio.run(safe_complete(None, _request(), LLMAuthGuard()))


def test_status_round_trip():
    guard = LLMAuthGuard()
    assert guard.as_status() is None
    guard.record("unauthorized", now=42)
    restored = LLMAuthGuard.from_status(guard.as_status())
    assert restored.last_error_at == 42
    assert restored.last_error_message == "unauthorized"
