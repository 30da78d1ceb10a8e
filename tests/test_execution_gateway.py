import asyncio

import pytest

from collaborators import BrokerError, BrokerOrder, MarketClock, OrderSpec
from execution_gateway import (
    ExecutionGateway,
    OrderSubmissionError,
    build_buy_key,
    build_sell_key,
    client_order_id_for,
)
from order_storage import OrderSubmissionStore


class DummyBroker:
    def __init__(self, is_open=True, error=None):
        self.is_open = is_open
        self.error = error
        self.orders = []

    async def get_clock(self):
        return MarketClock(is_open=self.is_open)

    async def create_order(self, spec):
        if self.error is not None:
            raise self.error
        self.orders.append(spec)
        return BrokerOrder(id=f"ord-{len(self.orders)}", client_order_id=spec.client_order_id)


@pytest.fixture
def store():
    store = OrderSubmissionStore(":memory:")
    yield store
    store.close()


def _buy(symbol="AAPL", asset_class="us_equity"):
    return OrderSpec(symbol=symbol, side="buy", asset_class=asset_class, notional=500)


def test_same_key_submits_once(store):
    broker = DummyBroker()
    gateway = ExecutionGateway(broker, store)
    key = build_buy_key("AAPL", now=600_000)

    first = asyncio.run(gateway.submit_order(key, _buy()))
    second = asyncio.run(gateway.submit_order(key, _buy()))

    assert first.accepted and second.accepted
    assert len(broker.orders) == 1
    assert second.broker_order_id == "ord-1"
    assert store.get_by_key(key).state == "SUBMITTED"


def test_buy_keys_share_five_minute_bucket():
    assert build_buy_key("aapl", now=0) == build_buy_key("AAPL", now=299_999)
    assert build_buy_key("AAPL", now=0) != build_buy_key("AAPL", now=300_000)
    assert build_sell_key("tsla", entry_time=123) == "harness:sell:TSLA:123"


def test_closed_market_fails_equity_day_orders(store):
    broker = DummyBroker(is_open=False)
    gateway = ExecutionGateway(broker, store)

    with pytest.raises(OrderSubmissionError) as excinfo:
        asyncio.run(gateway.submit_order("k-closed", _buy()))

    assert excinfo.value.code == "MARKET_CLOSED"
    assert broker.orders == []
    assert store.get_by_key("k-closed").state == "FAILED"


def test_crypto_orders_ignore_market_clock(store):
    broker = DummyBroker(is_open=False)
    gateway = ExecutionGateway(broker, store)
    result = asyncio.run(gateway.submit_order("k-crypto", _buy("BTC/USDT", "crypto")))
    assert result.accepted


def test_failed_submission_can_be_retried(store):
    broker = DummyBroker(error=BrokerError("rate limited", code="RATE_LIMITED"))
    gateway = ExecutionGateway(broker, store)

    with pytest.raises(OrderSubmissionError) as excinfo:
        asyncio.run(gateway.submit_order("k-retry", _buy()))
    assert excinfo.value.code == "RATE_LIMITED"
    assert '"RATE_LIMITED"' in store.get_by_key("k-retry").last_error_json

    broker.error = None
    result = asyncio.run(gateway.submit_order("k-retry", _buy()))
    assert result.accepted
    assert len(broker.orders) == 1


def test_submitting_row_is_not_resubmitted(store):
    broker = DummyBroker()
    gateway = ExecutionGateway(broker, store)
    row = store.reserve("k-inflight", source="harness", broker_provider="default", request={})
    assert store.try_transition(row.id, ("RESERVED",), "SUBMITTING")
    assert not store.try_transition(row.id, ("RESERVED",), "SUBMITTING")

    result = asyncio.run(gateway.submit_order("k-inflight", _buy()))
    assert result.accepted
    assert broker.orders == []


def test_long_keys_are_hashed_for_client_order_id():
    assert client_order_id_for("short") == "short"
    hashed = client_order_id_for("harness:buy:VERYLONGSYMBOLNAME:123456789")
    assert len(hashed) == 32
