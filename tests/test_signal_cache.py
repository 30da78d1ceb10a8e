import copy
import random

from signal_cache import (
    Signal,
    SignalCache,
    build_signal_quality_metrics,
    estimate_size_bytes,
    should_block_correlated_trade,
)

NOW = 1_700_000_000_000


def make_signal(symbol, detail="wallstreetbets", sentiment=0.5, ts=NOW - 1_000, **extra):
    return Signal(
        symbol=symbol,
        source=extra.pop("source", "reddit"),
        source_detail=detail,
        sentiment=sentiment,
        raw_sentiment=sentiment,
        timestamp=ts,
        **extra,
    )


def test_cache_never_exceeds_entry_count():
    cache = SignalCache()
    rng = random.Random(7)
    batch = [
        make_signal(f"SYM{i}", detail=f"feed{i % 7}", sentiment=rng.uniform(-1, 1), ts=NOW - rng.randint(0, 3_600_000))
        for i in range(450)
    ]
    report = cache.ingest(batch, NOW)
    assert len(cache) == 200
    assert report.after_count == 200
    ordered = [abs(signal.sentiment) for signal in cache.signals]
    assert ordered == sorted(ordered, reverse=True)


def test_cache_respects_memory_budget():
    cache = SignalCache(memory_budget_bytes=20_000, emergency_min=5)
    batch = [make_signal(f"S{i}", detail=f"d{i}", reason="x" * 400) for i in range(120)]
    report = cache.ingest(batch, NOW)
    assert report.cleaned_up
    assert estimate_size_bytes(cache.signals) <= 20_000
    assert cache.cleanup_count == 1
    assert cache.last_cleanup_at == NOW


def test_dedup_keeps_newer_then_stronger():
    cache = SignalCache()
    older = make_signal("AAPL", sentiment=0.9, ts=NOW - 60_000)
    newer = make_signal("AAPL", sentiment=0.2, ts=NOW - 1_000)
    cache.ingest([older, newer], NOW)
    assert len(cache) == 1
    assert cache.signals[0].sentiment == 0.2

    weak = make_signal("TSLA", sentiment=0.3, ts=NOW - 5_000)
    strong = make_signal("TSLA", sentiment=-0.7, ts=NOW - 5_000)
    cache.ingest([weak, strong], NOW)
    tsla = cache.signals_for_symbol("TSLA")
    assert len(tsla) == 1
    assert tsla[0].sentiment == -0.7


def test_stale_and_invalid_signals_are_dropped():
    cache = SignalCache()
    stale = make_signal("OLD", ts=NOW - 25 * 60 * 60 * 1000)
    missing = make_signal("", detail="x")
    bad = make_signal("NAN", sentiment=float("nan"))
    cache.ingest([stale, missing, bad, make_signal("OK")], NOW)
    assert [signal.symbol for signal in cache.signals] == ["OK"]


def test_queries_do_not_mutate_cache():
    cache = SignalCache()
    cache.ingest([make_signal("AAPL", detail="a"), make_signal("MSFT", detail="b", sentiment=0.4)], NOW)
    before = copy.deepcopy(cache.to_dict())
    cache.signals_for_symbol("AAPL")
    cache.latest_for_symbol("msft")
    cache.symbol_profile("AAPL")
    cache.dispersion()
    build_signal_quality_metrics(cache, {"AAPL"}, NOW)
    should_block_correlated_trade(cache, "MSFT", ["AAPL"])
    assert cache.to_dict() == before


def test_trim_newest_keeps_latest_timestamps():
    cache = SignalCache()
    cache.ingest([make_signal(f"S{i}", detail=f"d{i}", ts=NOW - i * 1_000) for i in range(10)], NOW)
    assert cache.trim_newest(3)
    assert sorted(signal.symbol for signal in cache.signals) == ["S0", "S1", "S2"]
    assert not cache.trim_newest(3)


def test_correlated_trade_blocked_for_matching_footprints():
    cache = SignalCache()
    cache.ingest(
        [
            make_signal("AMD", detail="a", sentiment=0.6, freshness=0.9),
            make_signal("NVDA", detail="b", sentiment=0.62, freshness=0.9),
            make_signal("KO", detail="c", sentiment=-0.8, freshness=0.1, source="sec"),
        ],
        NOW,
    )
    blocked = should_block_correlated_trade(cache, "AMD", ["NVDA"])
    assert blocked["blocked"]
    assert blocked["peer"] == "NVDA"

    unrelated = should_block_correlated_trade(cache, "AMD", ["KO"])
    assert not unrelated["blocked"]

    unknown = should_block_correlated_trade(cache, "ZZZ", ["NVDA"])
    assert unknown == {"blocked": False, "max_correlation": 0.0, "peer": None}


def test_cache_round_trips_through_dict():
    cache = SignalCache()
    cache.ingest([make_signal("AAPL", momentum=1.5, is_crypto=None)], NOW)
    restored = SignalCache.from_dict(cache.to_dict())
    assert restored.signals == cache.signals


def test_restore_skips_malformed_signals(caplog):
    cache = SignalCache()
    cache.ingest([make_signal("AAPL")], NOW)
    payload = cache.to_dict()
    payload["signals"].append({"symbol": "TSLA", "sentiment": 0.4})
    payload["signals"].append("not a signal")

    with caplog.at_level("WARNING"):
        restored = SignalCache.from_dict(payload)

    assert [signal.symbol for signal in restored.signals] == ["AAPL"]
    assert "Dropped 2 malformed cached signals" in caplog.text
