import pytest

from cost_tracker import CostTracker, normalise_model_name


def test_cost_uses_per_million_token_pricing():
    tracker = CostTracker()
    cost = tracker.track_llm_cost("gpt-4o", 1_000_000, 100_000)
    assert cost == pytest.approx(3.5)
    assert tracker.calls == 1
    assert tracker.tokens_in == 1_000_000


def test_provider_prefix_and_unknown_models():
    assert normalise_model_name("openai/gpt-4o-mini") == "gpt-4o-mini"
    tracker = CostTracker()
    cost = tracker.track_llm_cost("mystery-model", 1_000_000, 0)
    assert cost == pytest.approx(0.15)


def test_invalid_token_counts_are_ignored():
    tracker = CostTracker()
    assert tracker.track_llm_cost("gpt-4o", float("nan"), -5) == 0.0
    assert tracker.calls == 1
    assert tracker.tokens_out == 0.0


def test_usage_mapping_and_round_trip():
    tracker = CostTracker()
    assert tracker.track_usage("deepseek-chat", None) == 0.0
    tracker.track_usage("deepseek-chat", {"prompt_tokens": 1_000, "completion_tokens": 500})
    restored = CostTracker.from_dict(tracker.to_dict())
    assert restored == tracker
