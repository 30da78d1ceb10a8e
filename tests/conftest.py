import pytest

import observability


@pytest.fixture(autouse=True)
def _isolated_metrics(tmp_path, monkeypatch):
    observability.set_metrics_path(str(tmp_path / "metrics.csv"))
    for name in ("KILL_SWITCH_ACTIVE", "SWARM_ALLOW_UNHEALTHY", "SWARM_ALLOW_DEGRADED", "SWARM_HEALTH_BYPASS"):
        monkeypatch.delenv(name, raising=False)
    yield
