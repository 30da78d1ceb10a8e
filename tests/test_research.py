import asyncio
import json

import pytest

from agent_state import AgentState, ResearchResult
from collaborators import Account, Position
from llm_safe import LLMResponse
from research import (
    analyze_signals_with_llm,
    apply_research_outcome,
    research_position,
    research_signal,
    research_top_signals,
    score_symbol,
    select_research_candidates,
)
from risk_engine import DynamicRiskProfile
from signal_cache import Signal

NOW = 1_700_000_000_000

BUY_JSON = json.dumps(
    {
        "verdict": "BUY",
        "confidence": 0.8,
        "entry_quality": "good",
        "reasoning": "Earnings momentum",
        "red_flags": [],
        "catalysts": ["earnings"],
    }
)


class ScriptedLLM:
    """Answers by the first scripted symbol that appears in the prompt."""

    def __init__(self, replies=None, default=BUY_JSON, delays=None, error=None):
        self.replies = replies or {}
        self.default = default
        self.delays = delays or {}
        self.error = error
        self.requests = []

    async def complete(self, request):
        self.requests.append(request)
        prompt = request.messages[-1]["content"]
        if self.error is not None:
            raise self.error
        for symbol, delay in self.delays.items():
            if f"SYMBOL: {symbol}\n" in prompt:
                await asyncio.sleep(delay)
        content = self.default
        for symbol, reply in self.replies.items():
            if symbol in prompt:
                content = reply
                break
        return LLMResponse(
            content=content,
            model=request.model,
            usage={"prompt_tokens": 100, "completion_tokens": 20, "total_tokens": 120},
        )


class SnapshotData:
    def __init__(self, prices=None):
        self.prices = prices or {}

    async def get_snapshot(self, symbol):
        price = self.prices.get(symbol)
        return {"latest_trade": {"price": price}} if price else None

    async def get_crypto_snapshot(self, symbol):
        return await self.get_snapshot(symbol)


def _signal(symbol, sentiment, source="reddit", raw=None):
    return Signal(
        symbol=symbol,
        source=source,
        source_detail=source,
        sentiment=sentiment,
        raw_sentiment=sentiment if raw is None else raw,
        timestamp=NOW - 1_000,
        reason=f"{symbol} chatter",
    )


def _profile():
    return DynamicRiskProfile(
        timestamp=NOW,
        market_regime="ranging",
        realized_volatility=0.01,
        max_drawdown_pct=0.0,
        sharpe_like=0.0,
        multiplier=0.95,
        suggested_position_pct=20,
    )


def test_research_signal_defers_writes_until_applied():
    state = AgentState()
    state.signal_cache.ingest([_signal("AAPL", 0.7)], NOW)
    outcome = asyncio.run(
        research_signal(state, ScriptedLLM(), SnapshotData({"AAPL": 190.0}), "AAPL", 0.7, ["reddit"], now=NOW)
    )

    assert outcome.result.verdict == "BUY"
    expected = 0.8 * 0.75 + score_symbol(state, "AAPL", 0.7) * 0.25
    assert outcome.result.confidence == pytest.approx(expected)
    assert state.signal_research == {}
    assert state.memory_episodes == []

    stored = apply_research_outcome(state, outcome, NOW)
    assert state.signal_research["AAPL"] is stored
    assert state.cost_tracker.calls == 1
    assert "entry_candidate" in state.memory_episodes[0].tags
    assert [entry["action"] for entry in state.logs] == ["llm_usage", "signal_researched"]


def test_fresh_cached_research_skips_llm():
    state = AgentState()
    state.signal_research["AAPL"] = ResearchResult(
        symbol="AAPL", verdict="SKIP", confidence=0.4, entry_quality="poor", reasoning="meh", timestamp=NOW - 60_000
    )
    llm = ScriptedLLM()
    outcome = asyncio.run(research_signal(state, llm, SnapshotData({"AAPL": 1.0}), "AAPL", 0.5, [], now=NOW))
    assert outcome.cached
    assert llm.requests == []
    assert apply_research_outcome(state, outcome, NOW).verdict == "SKIP"
    assert state.memory_episodes == []


def test_missing_snapshot_aborts_research():
    state = AgentState()
    llm = ScriptedLLM()
    outcome = asyncio.run(research_signal(state, llm, SnapshotData(), "AAPL", 0.5, [], now=NOW))
    assert outcome.result is None
    assert outcome.events[0][0] == "snapshot_unavailable"
    assert llm.requests == []


def test_auth_failure_pauses_research():
    state = AgentState()
    state.signal_cache.ingest([_signal("AAPL", 0.8)], NOW)
    llm = ScriptedLLM(error=RuntimeError("401 Unauthorized"))
    outcome = asyncio.run(research_signal(state, llm, SnapshotData({"AAPL": 10.0}), "AAPL", 0.8, [], now=NOW))
    assert outcome.events[-1][0] == "auth_error"
    assert state.llm_auth.is_cooling_off(NOW + 1)

    results = asyncio.run(research_top_signals(state, llm, SnapshotData({"AAPL": 10.0}), [], now=NOW + 1))
    assert results == []
    assert state.logs[-1]["action"] == "research_skipped_circuit_breaker"
    assert len(llm.requests) == 1


def test_candidate_selection_skips_held_and_weak_signals():
    state = AgentState()
    state.signal_cache.ingest(
        [_signal("AAPL", 0.8), _signal("TSLA", 0.6, source="stocktwits"), _signal("KO", 0.1, source="sec")], NOW
    )
    selection = select_research_candidates(state, ["TSLA"], now=NOW)
    assert [candidate.symbol for candidate in selection.queued] == ["AAPL"]
    assert selection.not_held == 2
    assert selection.eligible_signals == 1


def test_research_batch_drops_timed_out_calls():
    state = AgentState()
    state.signal_cache.ingest([_signal("AAPL", 0.8), _signal("TSLA", 0.5, source="stocktwits")], NOW)
    llm = ScriptedLLM(delays={"TSLA": 1.0})
    data = SnapshotData({"AAPL": 190.0, "TSLA": 250.0})

    results = asyncio.run(
        research_top_signals(state, llm, data, [], now=NOW, call_timeout_s=0.1, batch_delay_s=0)
    )

    assert [result.symbol for result in results] == ["AAPL"]
    failed = [entry for entry in state.logs if entry["action"] == "research_failed"]
    assert failed[0]["symbol"] == "TSLA"
    assert failed[0]["metadata"]["error"] == "timeout"
    assert "TSLA" not in state.signal_research
    assert state.logs[-1]["action"] == "research_cycle_completed"
    assert state.optimization.research_latency_ema_ms > 0


def test_research_cycle_with_every_call_timing_out_counts_as_error():
    state = AgentState()
    state.signal_cache.ingest([_signal("AAPL", 0.8), _signal("TSLA", 0.5, source="stocktwits")], NOW)
    llm = ScriptedLLM(delays={"AAPL": 1.0, "TSLA": 1.0})
    data = SnapshotData({"AAPL": 190.0, "TSLA": 250.0})

    results = asyncio.run(
        research_top_signals(state, llm, data, [], now=NOW, call_timeout_s=0.05, batch_delay_s=0)
    )

    assert results == []
    assert state.optimization.error_rate_ema == pytest.approx(1.0)


def test_research_cycle_with_provider_errors_counts_as_error():
    state = AgentState()
    state.signal_cache.ingest([_signal("AAPL", 0.8)], NOW)
    llm = ScriptedLLM(error=RuntimeError("upstream 503"))

    results = asyncio.run(
        research_top_signals(state, llm, SnapshotData({"AAPL": 190.0}), [], now=NOW, batch_delay_s=0)
    )

    assert results == []
    assert "error" in [entry["action"] for entry in state.logs]
    assert state.optimization.error_rate_ema == pytest.approx(1.0)


def test_clean_research_cycle_records_no_error():
    state = AgentState()
    state.signal_cache.ingest([_signal("AAPL", 0.8)], NOW)

    asyncio.run(
        research_top_signals(state, ScriptedLLM(), SnapshotData({"AAPL": 190.0}), [], now=NOW, batch_delay_s=0)
    )

    assert state.optimization.error_rate_ema == 0


def test_position_research_normalises_response():
    state = AgentState()
    reply = json.dumps({"recommendation": "sell", "risk_level": "EXTREME", "reasoning": "fading", "key_factors": ["a"]})
    position = Position(symbol="AAPL", qty=10, market_value=1_100, unrealized_pl=100, current_price=110)
    analysis = asyncio.run(research_position(state, ScriptedLLM(default=reply), position, now=NOW))
    assert analysis["recommendation"] == "SELL"
    assert analysis["risk_level"] == "medium"
    assert state.position_research["AAPL"]["timestamp"] == NOW
    assert state.logs[-1]["action"] == "position_analyzed"


def test_batch_analyst_parses_recommendations():
    state = AgentState()
    state.signal_cache.ingest([_signal("AAPL", 0.8), _signal("NVDA", 0.6, source="stocktwits")], NOW)
    reply = json.dumps(
        {
            "recommendations": [
                {"action": "buy", "symbol": "aapl", "confidence": 0.9, "reasoning": "strong"},
                {"action": "YOLO", "symbol": "NVDA", "confidence": 0.9},
                {"action": "SELL", "symbol": "TSLA", "confidence": "high"},
            ],
            "market_summary": "risk on",
            "high_conviction_plays": ["AAPL"],
        }
    )
    decision = asyncio.run(
        analyze_signals_with_llm(
            state, ScriptedLLM(default=reply), [], Account(equity=10_000, cash=10_000), _profile(), now=NOW
        )
    )
    assert [(rec.action, rec.symbol) for rec in decision.recommendations] == [("BUY", "AAPL")]
    assert decision.high_conviction == ["AAPL"]
    assert state.logs[-1]["action"] == "analysis_complete"
    assert "batch_decision" in state.memory_episodes[-1].tags


def test_batch_analyst_tolerates_garbage():
    state = AgentState()
    state.signal_cache.ingest([_signal("AAPL", 0.8)], NOW)
    decision = asyncio.run(
        analyze_signals_with_llm(
            state, ScriptedLLM(default="not json"), [], Account(equity=1, cash=1), _profile(), now=NOW
        )
    )
    assert decision.recommendations == []
    assert "invalid_llm_json" in [entry["action"] for entry in state.logs]


def test_batch_analyst_without_signals():
    decision = asyncio.run(analyze_signals_with_llm(AgentState(), ScriptedLLM(), [], Account(equity=1, cash=1), _profile()))
    assert decision.market_summary == "No signals to analyze"
