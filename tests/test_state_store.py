import json

from agent_config import AgentConfig
from agent_state import AgentState, PositionEntry
from config import RuntimeSettings
from memory_episodes import MemoryEpisode
from predictive_model import update_from_trade
from risk_engine import EquityPoint
from state_store import (
    PERSIST_RETRY_LOG_LIMITS,
    JsonStateStore,
    TooLarge,
    WriteOk,
    apply_trim_rung,
    load_state,
    persist_state,
)


def _settings(tmp_path, environment="development"):
    return RuntimeSettings(
        environment=environment,
        kill_switch_active=False,
        swarm_bypass=False,
        risk_manager_url=None,
        swarm_registry_url=None,
        kill_switch_secret=None,
        state_path=str(tmp_path / "agent_state.json"),
        state_max_bytes=2 * 1024 * 1024,
        order_db_path=":memory:",
        http_timeout=1.0,
        tick_interval_seconds=30.0,
    )


def _bulky_state():
    state = AgentState()
    state.logs = [{"action": "tick", "timestamp_ms": i} for i in range(1_000)]
    state.memory_episodes = [
        MemoryEpisode(id=str(i), timestamp=i, importance=0.5, context="c", outcome="neutral") for i in range(500)
    ]
    state.portfolio_equity_history = [EquityPoint(i, 1_000.0) for i in range(5_000)]
    return state


class LogCountStore:
    """Reports TooLarge until the log list fits ``max_logs``."""

    def __init__(self, max_logs):
        self.max_logs = max_logs
        self.max_bytes = 1
        self.writes = []

    def write(self, key, payload):
        count = len(payload["logs"])
        self.writes.append(count)
        if count > self.max_logs:
            return TooLarge(size=count, limit=self.max_logs)
        return WriteOk(size=count)


def test_round_trip_keeps_config_entries_and_model(tmp_path):
    settings = _settings(tmp_path)
    store = JsonStateStore.from_settings(settings)
    state = AgentState(enabled=True, config=AgentConfig(max_positions=8, ticker_blacklist=("GME",)))
    state.position_entries["AAPL"] = PositionEntry(
        symbol="AAPL", entry_time=1_000, entry_price=150.0, entry_sources=["reddit"], entry_prediction=0.61
    )
    update_from_trade(state.predictive_model, "AAPL", 2.5, {"entry_prediction": 0.6}, now=5)

    outcome = persist_state(store, state)
    assert outcome.ok and outcome.rung is None

    loaded = load_state(store, settings)
    assert loaded.enabled is True
    assert loaded.config == state.config
    assert loaded.position_entries == state.position_entries
    assert loaded.predictive_model.to_dict() == state.predictive_model.to_dict()


def test_degrade_ladder_stops_at_first_fitting_rung():
    state = _bulky_state()
    store = LogCountStore(max_logs=250)

    outcome = persist_state(store, state)

    assert outcome.ok
    assert outcome.rung == 2
    assert store.writes == [1_000, 700, 400, 200]
    assert [lengths["logs"] for lengths in outcome.trimmed] == [700, 400, 200]
    assert len(state.portfolio_equity_history) == 900


def test_degrade_ladder_terminates_and_keeps_shrinking():
    state = _bulky_state()
    store = LogCountStore(max_logs=0)

    outcome = persist_state(store, state)

    assert not outcome.ok
    assert len(outcome.trimmed) == len(PERSIST_RETRY_LOG_LIMITS)
    for before, after in zip(outcome.trimmed, outcome.trimmed[1:]):
        assert all(after[name] <= before[name] for name in before)
        assert any(after[name] < before[name] for name in before)
    assert len(state.logs) == PERSIST_RETRY_LOG_LIMITS[-1]


def test_trim_rung_is_idempotent():
    state = _bulky_state()
    first = apply_trim_rung(state, 1)
    assert apply_trim_rung(state, 1) == first
    assert state.memory_episodes[0].timestamp == 499


def test_store_reports_too_large(tmp_path):
    store = JsonStateStore(str(tmp_path), max_bytes=10)
    result = store.write("agent_state", {"payload": "x" * 100})
    assert isinstance(result, TooLarge)
    assert result.limit == 10
    assert store.read("agent_state") is None


def test_corrupted_document_loads_defaults(tmp_path):
    (tmp_path / "agent_state.json").write_text("{not json")
    state = load_state(JsonStateStore(str(tmp_path)), _settings(tmp_path))
    assert state.enabled is False
    assert state.config == AgentConfig()


def test_malformed_records_are_skipped_on_load(tmp_path):
    store = JsonStateStore(str(tmp_path))
    state = AgentState()
    state.position_entries["AAPL"] = PositionEntry(symbol="AAPL", entry_time=1_000, entry_price=190.0)
    document = state.to_dict()
    document["position_entries"]["TSLA"] = {"symbol": "TSLA"}
    document["signal_research"]["NVDA"] = {"symbol": "NVDA", "verdict": "BUY"}
    document["signal_cache"]["signals"] = [{"symbol": "AMD"}]
    store.write("agent_state", document)

    loaded = load_state(store, _settings(tmp_path))

    assert list(loaded.position_entries) == ["AAPL"]
    assert loaded.position_entries["AAPL"].entry_price == 190.0
    assert loaded.signal_research == {}
    assert len(loaded.signal_cache) == 0


def test_boot_guard_turns_off_swarm_bypass_in_production(tmp_path):
    settings = _settings(tmp_path, environment="production")
    store = JsonStateStore(str(tmp_path))
    store.write("agent_state", AgentState(config=AgentConfig(allow_unhealthy_swarm=True)).to_dict())

    state = load_state(store, settings)

    assert state.config.allow_unhealthy_swarm is False
    assert state.logs[-1]["action"] == "config_guard_enforced"
    persisted = json.loads((tmp_path / "agent_state.json").read_text())
    assert persisted["config"]["allow_unhealthy_swarm"] is False


def test_boot_guard_leaves_development_alone(tmp_path):
    store = JsonStateStore(str(tmp_path))
    store.write("agent_state", AgentState(config=AgentConfig(allow_unhealthy_swarm=True)).to_dict())
    state = load_state(store, _settings(tmp_path))
    assert state.config.allow_unhealthy_swarm is True
    assert state.logs == []
