"""Central configuration loader for environment variables."""
from __future__ import annotations

from dataclasses import dataclass

from dotenv import load_dotenv

# Load environment variables once when this module is imported.
load_dotenv()

import os


def _clean_path(value: str | None) -> str:
    """Return ``value`` without inline comments or surrounding whitespace."""

    if not value:
        return ""
    return value.split("#", 1)[0].strip()


def _ensure_parent_dir(path: str) -> None:
    """Create the parent directory for ``path`` when possible."""

    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)


def _truthy(x: str | None) -> bool:
    return str(x or "").strip().lower() in {"1", "true", "yes", "on"}


# ---------------------------------------------------------------------------
# Environment helpers
# ---------------------------------------------------------------------------
def get(key: str, default: str | None = None) -> str | None:
    """Retrieve an environment variable with an optional default."""
    return os.getenv(key, default)


def _env_float(name: str, default: float, *, minimum: float, maximum: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return default
    return max(minimum, min(maximum, value))


def _env_int(name: str, default: int, *, minimum: int, maximum: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(str(raw).strip())
    except (TypeError, ValueError):
        return default
    return max(minimum, min(maximum, value))


# ---------------------------------------------------------------------------
# Deployment environment
# ---------------------------------------------------------------------------


def get_environment() -> str:
    return (os.getenv("ENVIRONMENT", "development") or "development").strip().lower()


def is_production() -> bool:
    return get_environment() == "production"


def kill_switch_env_active() -> bool:
    """Return ``True`` when the operator forced the kill switch via env."""

    return _truthy(os.getenv("KILL_SWITCH_ACTIVE"))


def swarm_bypass_env_enabled() -> bool:
    """Return ``True`` if any of the swarm health bypass variables is set."""

    return any(
        _truthy(os.getenv(name))
        for name in ("SWARM_ALLOW_UNHEALTHY", "SWARM_ALLOW_DEGRADED", "SWARM_HEALTH_BYPASS")
    )


# Data files ----------------------------------------------------------------------------
#
# The agent persists its aggregate state as a single JSON document and keeps the
# order-submission ledger in SQLite.  Both default to ``AGENT_DATA_DIR`` so a
# deployment only needs to mount one directory.
AGENT_DATA_DIR = _clean_path(os.getenv("AGENT_DATA_DIR")) or os.path.join(
    os.path.dirname(os.path.abspath(__file__)), "data"
)
STATE_FILE = _clean_path(os.getenv("AGENT_STATE_FILE")) or os.path.join(AGENT_DATA_DIR, "agent_state.json")
ORDER_DB_FILE = _clean_path(os.getenv("ORDER_DB_FILE")) or os.path.join(AGENT_DATA_DIR, "order_submissions.db")

# Largest serialised state document the store accepts before reporting it as
# too large.  Mirrors the per-value ceiling of the hosted key/value store.
DEFAULT_STATE_MAX_BYTES = 2 * 1024 * 1024


@dataclass(frozen=True)
class RuntimeSettings:
    """Snapshot of environment driven settings used by the agent loop."""

    environment: str
    kill_switch_active: bool
    swarm_bypass: bool
    risk_manager_url: str | None
    swarm_registry_url: str | None
    kill_switch_secret: str | None
    state_path: str
    state_max_bytes: int
    order_db_path: str
    http_timeout: float
    tick_interval_seconds: float

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


def load_runtime_settings() -> RuntimeSettings:
    """Read the runtime settings from the current environment."""

    risk_url = (os.getenv("RISK_MANAGER_URL") or "").strip() or None
    registry_url = (os.getenv("SWARM_REGISTRY_URL") or "").strip() or None
    secret = (os.getenv("KILL_SWITCH_SECRET") or "").strip() or None
    return RuntimeSettings(
        environment=get_environment(),
        kill_switch_active=kill_switch_env_active(),
        swarm_bypass=swarm_bypass_env_enabled(),
        risk_manager_url=risk_url.rstrip("/") if risk_url else None,
        swarm_registry_url=registry_url.rstrip("/") if registry_url else None,
        kill_switch_secret=secret,
        state_path=STATE_FILE,
        state_max_bytes=_env_int(
            "STATE_MAX_BYTES", DEFAULT_STATE_MAX_BYTES, minimum=1024, maximum=512 * 1024 * 1024
        ),
        order_db_path=ORDER_DB_FILE,
        http_timeout=_env_float("AGENT_HTTP_TIMEOUT", 5.0, minimum=0.5, maximum=60.0),
        tick_interval_seconds=_env_float("TICK_INTERVAL_SECONDS", 30.0, minimum=1.0, maximum=3600.0),
    )


__all__ = [
    "AGENT_DATA_DIR",
    "DEFAULT_STATE_MAX_BYTES",
    "ORDER_DB_FILE",
    "RuntimeSettings",
    "STATE_FILE",
    "get",
    "get_environment",
    "is_production",
    "kill_switch_env_active",
    "load_runtime_settings",
    "swarm_bypass_env_enabled",
]
