import asyncio

import pytest

from agent import TradingAgent
from agent_config import ConfigValidationError
from agent_state import PositionEntry
from collaborators import Account, Asset, BrokerError, BrokerOrder, MarketClock, Position, RiskDecision
from config import RuntimeSettings
from state_store import STATE_KEY, JsonStateStore

NOW = 1_700_000_000_000


class FakeBroker:
    def __init__(self, *, cash=10_000.0, positions=(), is_open=True, error=None, exchange="NASDAQ"):
        self.account = Account(equity=cash, cash=cash, last_equity=cash, portfolio_value=cash)
        self.positions = list(positions)
        self.is_open = is_open
        self.error = error
        self.exchange = exchange
        self.orders = []
        self.calls = 0

    def _touch(self):
        self.calls += 1
        if self.error is not None:
            raise self.error

    async def get_account(self):
        self._touch()
        return self.account

    async def get_positions(self):
        self._touch()
        return list(self.positions)

    async def get_position(self, symbol):
        self._touch()
        return next((p for p in self.positions if p.symbol == symbol), None)

    async def get_clock(self):
        self._touch()
        return MarketClock(is_open=self.is_open)

    async def create_order(self, spec):
        self.orders.append(spec)
        return BrokerOrder(id=f"ord-{len(self.orders)}", client_order_id=spec.client_order_id)

    async def get_asset(self, symbol):
        return Asset(symbol=symbol, exchange=self.exchange)

    async def get_portfolio_history(self, params=None):
        return {}


class FakeRiskManager:
    def __init__(self, *, approved=True, reason=None, kill=False, error=None):
        self.approved = approved
        self.reason = reason
        self.kill = kill
        self.error = error
        self.validated = []
        self.losses = []

    def status(self):
        if self.error is not None:
            raise self.error
        return {"killSwitchActive": self.kill}

    def validate(self, order):
        self.validated.append(order)
        return RiskDecision(self.approved, self.reason)

    def update_loss(self, profit_loss):
        self.losses.append(profit_loss)


class FakeSwarm:
    def __init__(self, healthy):
        self.healthy = healthy

    def health(self):
        return {"healthy": self.healthy, "status": 200 if self.healthy else 503}

    def agents(self):
        return {}


class PositionsDownBroker(FakeBroker):
    async def get_positions(self):
        self.calls += 1
        raise BrokerError("positions endpoint timed out")


class FailingSource:
    name = "reddit"
    timeout = 1.0
    read_cost = 0

    async def fetch(self):
        raise ConnectionError("feed down")


class StaticSource:
    name = "stocktwits"
    timeout = 1.0
    read_cost = 0

    def __init__(self, items):
        self.items = items

    async def fetch(self):
        return self.items


def _settings(tmp_path, **overrides):
    values = dict(
        environment="development",
        kill_switch_active=False,
        swarm_bypass=False,
        risk_manager_url=None,
        swarm_registry_url=None,
        kill_switch_secret="s3cret",
        state_path=str(tmp_path / "state" / "agent_state.json"),
        state_max_bytes=2 * 1024 * 1024,
        order_db_path=":memory:",
        http_timeout=1.0,
        tick_interval_seconds=30.0,
    )
    values.update(overrides)
    return RuntimeSettings(**values)


def _agent(tmp_path, *, settings=None, enabled=True, **collaborators):
    agent = TradingAgent(
        settings or _settings(tmp_path),
        store=JsonStateStore(str(tmp_path / "state")),
        clock=lambda: NOW,
        **collaborators,
    )
    agent.state.enabled = enabled
    return agent


def _actions(agent):
    return [entry["action"] for entry in agent.state.logs]


def _entry(symbol="AAPL"):
    return PositionEntry(symbol=symbol, entry_time=NOW - 3_600_000, entry_price=100.0)


# ---------------------------------------------------------------------------
# Tick gating
# ---------------------------------------------------------------------------


def test_local_kill_switch_skips_trading(tmp_path):
    broker = FakeBroker()
    agent = _agent(tmp_path, broker=broker)
    agent.state.kill_switch_engaged = True
    agent.state.position_entries["AAPL"] = _entry()

    assert asyncio.run(agent.tick()) is True

    assert broker.calls == 0
    assert "alarm_skipped" in _actions(agent)
    assert list(agent.state.position_entries) == ["AAPL"]
    assert agent.next_wakeup_at == NOW + 30_000


def test_env_kill_switch_skips_trading(tmp_path, monkeypatch):
    monkeypatch.setenv("KILL_SWITCH_ACTIVE", "true")
    broker = FakeBroker()
    agent = _agent(tmp_path, broker=broker)

    asyncio.run(agent.tick())

    assert broker.calls == 0
    skipped = [entry for entry in agent.state.logs if entry["action"] == "alarm_skipped"]
    assert skipped[0]["metadata"]["reason"] == "Kill switch active"


def test_risk_manager_kill_switch_skips_trading(tmp_path):
    broker = FakeBroker()
    agent = _agent(tmp_path, broker=broker, risk_manager=FakeRiskManager(kill=True))

    asyncio.run(agent.tick())

    assert broker.calls == 0
    assert "kill_switch_from_risk_manager" in _actions(agent)


def test_unreachable_risk_manager_blocks_trading(tmp_path):
    broker = FakeBroker()
    agent = _agent(tmp_path, broker=broker, risk_manager=FakeRiskManager(error=ConnectionError("refused")))

    asyncio.run(agent.tick())

    assert broker.calls == 0
    actions = _actions(agent)
    assert "kill_switch_check_failed" in actions
    assert "alarm_skipped" in actions


def test_overlapping_tick_is_skipped(tmp_path):
    agent = _agent(tmp_path, broker=FakeBroker())

    async def scenario():
        async with agent._lock:
            return await agent.tick()

    assert asyncio.run(scenario()) is False
    assert agent.state.logs == []


def test_disabled_tick_only_persists(tmp_path):
    broker = FakeBroker()
    agent = _agent(tmp_path, broker=broker, enabled=False)

    asyncio.run(agent.tick())

    assert broker.calls == 0
    assert agent.store.read(STATE_KEY)["enabled"] is False


def test_unhealthy_swarm_blocks_in_production(tmp_path):
    broker = FakeBroker()
    settings = _settings(tmp_path, environment="production", swarm_bypass=True)
    agent = _agent(tmp_path, settings=settings, broker=broker, swarm_registry=FakeSwarm(False))

    asyncio.run(agent.tick())

    assert broker.calls == 0
    assert "alarm_skipped" in _actions(agent)


def test_unhealthy_swarm_bypass_outside_production(tmp_path):
    broker = FakeBroker(is_open=False)
    settings = _settings(tmp_path, swarm_bypass=True)
    agent = _agent(tmp_path, settings=settings, broker=broker, swarm_registry=FakeSwarm(False))

    asyncio.run(agent.tick())

    actions = _actions(agent)
    assert "swarm_health_bypass_active" in actions
    assert "alarm_skipped" not in actions
    assert broker.calls > 0


def test_tick_gathers_signals_and_rearms(tmp_path):
    broker = FakeBroker(is_open=False)
    source = StaticSource([{"symbol": "AAPL", "sentiment": 0.1}])
    agent = _agent(tmp_path, broker=broker, sources=[source])

    asyncio.run(agent.tick())

    assert len(agent.state.signal_cache) == 1
    assert agent.state.last_data_gather_run == NOW
    actions = _actions(agent)
    assert "data_gathered" in actions
    assert "runtime_optimized" in actions
    assert "alarm_error" not in actions
    assert broker.orders == []
    assert agent.next_wakeup_at == NOW + 30_000
    assert agent.store.read(STATE_KEY)["last_data_gather_run"] == NOW


def test_one_failing_source_raises_error_rate(tmp_path):
    broker = FakeBroker(is_open=False)
    sources = [StaticSource([{"symbol": "AAPL", "sentiment": 0.1}]), FailingSource()]
    agent = _agent(tmp_path, broker=broker, sources=sources)

    asyncio.run(agent.tick())

    assert len(agent.state.signal_cache) == 1
    assert "source_failed" in _actions(agent)
    assert agent.state.optimization.error_rate_ema > 0


def test_stage_failure_is_logged_persisted_and_rearmed(tmp_path):
    broker = PositionsDownBroker(is_open=False)
    agent = _agent(tmp_path, broker=broker)

    assert asyncio.run(agent.tick()) is True

    errors = [entry for entry in agent.state.logs if entry["action"] == "alarm_error"]
    assert "positions endpoint timed out" in errors[0]["metadata"]["error"]
    assert agent.state.optimization.error_rate_ema > 0
    saved = agent.store.read(STATE_KEY)
    assert saved["optimization"]["error_rate_ema"] > 0
    assert "alarm_error" in [entry["action"] for entry in saved["logs"]]
    assert agent.next_wakeup_at == NOW + 30_000
    assert agent.status_board.get("status")["next_wakeup_at"] == NOW + 30_000


# ---------------------------------------------------------------------------
# Operator surface
# ---------------------------------------------------------------------------


def test_production_rejects_unhealthy_swarm_config(tmp_path):
    settings = _settings(tmp_path, environment="production")
    agent = _agent(tmp_path, settings=settings)

    with pytest.raises(ConfigValidationError):
        asyncio.run(agent.update_config({"allow_unhealthy_swarm": True}))

    assert agent.state.config.allow_unhealthy_swarm is False
    assert "config_update_rejected" in _actions(agent)


def test_config_update_is_persisted(tmp_path):
    agent = _agent(tmp_path)

    updated = asyncio.run(agent.update_config({"max_positions": 3}))

    assert updated["max_positions"] == 3
    assert agent.get_config()["max_positions"] == 3
    assert agent.store.read(STATE_KEY)["config"]["max_positions"] == 3


def test_kill_requires_matching_secret(tmp_path):
    agent = _agent(tmp_path)

    with pytest.raises(PermissionError):
        asyncio.run(agent.kill("wrong"))
    assert agent.state.enabled is True


def test_kill_without_configured_secret(tmp_path):
    agent = _agent(tmp_path, settings=_settings(tmp_path, kill_switch_secret=None))

    with pytest.raises(PermissionError):
        asyncio.run(agent.kill("anything"))


def test_kill_survives_restart_until_enabled(tmp_path):
    agent = _agent(tmp_path)

    assert asyncio.run(agent.kill("s3cret")) == {"killed": True, "enabled": False}
    assert agent.next_wakeup_at is None

    restarted = TradingAgent(_settings(tmp_path), store=JsonStateStore(str(tmp_path / "state")), clock=lambda: NOW)
    assert restarted.state.kill_switch_engaged is True
    assert restarted.state.enabled is False
    assert restarted.next_wakeup_at is None

    asyncio.run(restarted.enable())
    assert restarted.state.kill_switch_engaged is False
    assert restarted.next_wakeup_at == NOW
    assert "kill_switch_cleared" in _actions(restarted)


def test_reset_keeps_config(tmp_path):
    agent = _agent(tmp_path)
    asyncio.run(agent.update_config({"max_positions": 2}))
    agent.state.position_entries["AAPL"] = _entry()

    asyncio.run(agent.reset())

    assert agent.state.position_entries == {}
    assert agent.state.config.max_positions == 2
    assert agent.state.enabled is False


def test_status_caches_broker_auth_error(tmp_path):
    broker = FakeBroker(error=BrokerError("bad key", code="UNAUTHORIZED"))
    agent = _agent(tmp_path, broker=broker)

    first = asyncio.run(agent.get_status())
    calls = broker.calls
    second = asyncio.run(agent.get_status())

    assert "bad key" in first["broker_error"]
    assert second["broker_error"] == first["broker_error"]
    assert broker.calls == calls
    assert agent.state.last_broker_auth_error["code"] == "UNAUTHORIZED"


def test_status_reports_live_account(tmp_path):
    agent = _agent(tmp_path, broker=FakeBroker())

    status = asyncio.run(agent.get_status())

    assert status["broker_error"] is None
    assert status["account"]["equity"] == 10_000.0
    assert status["clock"]["is_open"] is True
    assert len(agent.state.portfolio_equity_history) == 1


def test_status_without_broker(tmp_path):
    status = asyncio.run(_agent(tmp_path).get_status())

    assert status["broker_error"] == "Broker not configured"
    assert status["account"] is None
    assert status["environment"] == "development"


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "symbol, cash, confidence",
    [
        ("  ", 10_000.0, 0.8),
        ("AAPL", 0.0, 0.8),
        ("AAPL", 10_000.0, 1.5),
        ("AAPL", 10_000.0, float("nan")),
    ],
)
def test_buy_invariants_block_order(tmp_path, symbol, cash, confidence):
    broker = FakeBroker(cash=cash)
    agent = _agent(tmp_path, broker=broker)

    assert asyncio.run(agent.execute_buy(symbol, confidence, broker.account)) is False
    assert broker.orders == []
    assert _actions(agent)[-1] == "buy_blocked"


def test_buy_submits_sized_order(tmp_path):
    broker = FakeBroker()
    agent = _agent(tmp_path, broker=broker)

    assert asyncio.run(agent.execute_buy("AAPL", 0.8, broker.account, reason="strong chatter")) is True

    order = broker.orders[0]
    assert order.side == "buy"
    assert order.time_in_force == "day"
    assert 100 <= order.notional <= 5_000
    assert order.client_order_id
    assert "buy_executed" in _actions(agent)
    assert agent.state.memory_episodes[0].outcome == "success"


def test_buy_rejected_by_risk_manager(tmp_path):
    broker = FakeBroker()
    risk = FakeRiskManager(approved=False, reason="daily loss limit")
    agent = _agent(tmp_path, broker=broker, risk_manager=risk)

    assert asyncio.run(agent.execute_buy("AAPL", 0.8, broker.account)) is False

    assert broker.orders == []
    assert risk.validated[0]["symbol"] == "AAPL"
    entry = agent.state.logs[-1]
    assert entry["action"] == "buy_blocked_by_risk_manager"
    assert entry["metadata"]["reason"] == "daily loss limit"


def test_buy_blocked_on_disallowed_exchange(tmp_path):
    broker = FakeBroker(exchange="OTC")
    agent = _agent(tmp_path, broker=broker)

    assert asyncio.run(agent.execute_buy("PENNY", 0.8, broker.account)) is False
    assert broker.orders == []


def test_sell_requires_reason(tmp_path):
    broker = FakeBroker(positions=[Position(symbol="AAPL", qty=10, market_value=1_100)])
    agent = _agent(tmp_path, broker=broker)

    assert asyncio.run(agent.execute_sell("AAPL", "  ")) is False
    assert broker.orders == []
    assert _actions(agent)[-1] == "sell_blocked"


def test_sell_closes_position_and_reports_pnl(tmp_path):
    position = Position(
        symbol="AAPL", qty=10, market_value=1_100, unrealized_pl=100, current_price=110, avg_entry_price=100
    )
    broker = FakeBroker(positions=[position])
    risk = FakeRiskManager()
    agent = _agent(tmp_path, broker=broker, risk_manager=risk)
    agent.state.position_entries["AAPL"] = _entry()

    assert asyncio.run(agent.execute_sell("AAPL", "Take profit")) is True

    order = broker.orders[0]
    assert order.side == "sell"
    assert order.qty == 10
    assert "AAPL" not in agent.state.position_entries
    assert risk.losses == [100]
    assert "sell_executed" in _actions(agent)


def test_sell_without_position_is_skipped(tmp_path):
    broker = FakeBroker()
    agent = _agent(tmp_path, broker=broker)

    assert asyncio.run(agent.execute_sell("AAPL", "Stop loss")) is False
    assert _actions(agent)[-1] == "sell_skipped"
