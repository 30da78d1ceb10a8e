import logging
from importlib import reload

import log_utils


def _reset_logger(logger: logging.Logger) -> None:
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()


def test_module_loggers_share_the_agent_handlers(tmp_path, monkeypatch):
    module = reload(log_utils)
    root = logging.getLogger(module.ROOT_LOGGER)
    _reset_logger(root)
    monkeypatch.setattr(module, "LOG_FILE", str(tmp_path / "nested" / "agent.log"), raising=False)

    logger = module.setup_logger("research")
    try:
        assert logger.name == "trading_agent.research"
        assert logger.handlers == []
        assert len(root.handlers) == 2
        assert module.setup_logger("agent").parent is root
        assert len(root.handlers) == 2
        assert module.setup_logger("trading_agent.research") is logger
    finally:
        _reset_logger(root)


def test_records_carry_environment_and_tick(tmp_path, monkeypatch):
    module = reload(log_utils)
    root = logging.getLogger(module.ROOT_LOGGER)
    _reset_logger(root)
    monkeypatch.setattr(module, "LOG_FILE", str(tmp_path / "agent.log"), raising=False)
    monkeypatch.setattr(module, "_context", {"environment": "-", "tick": "-"})

    logger = module.setup_logger("agent")
    try:
        module.set_log_context(environment="staging", tick=1_700_000_000_000)
        logger.warning("alarm_error stage failed")
        logger.info("tick completed")
        for handler in root.handlers:
            handler.flush()

        last = module.read_logs(tail=1)
        assert "[staging tick=1700000000000] trading_agent.agent: tick completed" in last
        warnings = module.read_logs(tail=0, level="warning")
        assert "alarm_error stage failed" in warnings
        assert "tick completed" not in warnings
    finally:
        _reset_logger(root)


def test_log_level_from_environment(monkeypatch):
    monkeypatch.setenv("AGENT_LOG_LEVEL", "warning")
    assert log_utils._resolve_level() == logging.WARNING
    monkeypatch.setenv("AGENT_LOG_LEVEL", "nonsense")
    assert log_utils._resolve_level() == logging.INFO


def test_read_logs_missing_file(tmp_path, monkeypatch):
    monkeypatch.setattr(log_utils, "LOG_FILE", str(tmp_path / "absent.log"))
    assert log_utils.read_logs() == ""
