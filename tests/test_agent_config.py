import pytest

from agent_config import (
    PRODUCTION_SWARM_ERROR,
    AgentConfig,
    ConfigValidationError,
    SourceConfig,
    apply_config_update,
    enforce_production_swarm_guard,
    validate_agent_config,
)


def test_production_rejects_swarm_bypass_and_keeps_config():
    current = AgentConfig()
    with pytest.raises(ConfigValidationError) as excinfo:
        apply_config_update(current, {"allow_unhealthy_swarm": True}, production=True)
    assert str(excinfo.value) == PRODUCTION_SWARM_ERROR
    assert excinfo.value.field == "allow_unhealthy_swarm"
    assert current.allow_unhealthy_swarm is False


def test_development_allows_swarm_bypass():
    updated = apply_config_update(AgentConfig(), {"allow_unhealthy_swarm": True}, production=False)
    assert updated.allow_unhealthy_swarm is True


def test_validation_reports_every_bad_field():
    errors = validate_agent_config({"max_positions": 2.5, "min_sentiment_score": 3, "nope": 1, "crypto_enabled": "yes"})
    assert set(errors) == {"max_positions", "min_sentiment_score", "nope", "crypto_enabled"}
    assert errors["nope"] == "unknown field"


def test_update_coerces_lists_and_checks_hold_windows():
    updated = apply_config_update(AgentConfig(), {"ticker_blacklist": ["GME"], "max_positions": 7.0}, production=False)
    assert updated.ticker_blacklist == ("GME",)
    assert updated.max_positions == 7
    assert isinstance(updated.max_positions, int)
    with pytest.raises(ConfigValidationError):
        apply_config_update(AgentConfig(), {"stale_mid_hold_days": 5}, production=False)


def test_from_dict_ignores_unknown_and_invalid_values():
    config = AgentConfig.from_dict({"max_positions": 9, "legacy_field": 1, "stop_loss_pct": -4})
    assert config.max_positions == 9
    assert config.stop_loss_pct == AgentConfig().stop_loss_pct
    assert AgentConfig.from_dict(config.to_dict()) == config


def test_boot_guard_corrects_production_flag():
    config = AgentConfig(allow_unhealthy_swarm=True)
    guarded, corrected = enforce_production_swarm_guard(config, production=True)
    assert corrected and guarded.allow_unhealthy_swarm is False
    same, corrected = enforce_production_swarm_guard(config, production=False)
    assert same is config and not corrected


def test_source_config_weights_and_decay():
    source = SourceConfig()
    assert source.weight_for("reddit_stocks") == 0.9
    assert source.weight_for("somewhere_else") == 0.8
    assert source.flair_multiplier(" DD ") == 1.5
    assert source.engagement_multiplier(1200, 0) == pytest.approx((1.5 + 0.9) / 2)
    assert source.time_decay(0, 120 * 60_000) == pytest.approx(0.5)
    assert source.time_decay(0, 10**10) == 0.2
