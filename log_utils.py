import logging
from logging.handlers import RotatingFileHandler
import os
from typing import Any, Dict, Optional

# Every module logs under one "trading_agent" parent so the file and console
# handlers are attached once and shared by the whole control loop.
ROOT_LOGGER = "trading_agent"
LOG_FILE = os.getenv("AGENT_LOG_FILE") or os.path.join(
    os.path.dirname(os.path.abspath(__file__)), "logs", "trading_agent.log"
)
LOG_FORMAT = "%(asctime)s %(levelname)-7s [%(environment)s tick=%(tick)s] %(name)s: %(message)s"
LOG_MAX_BYTES = 1_000_000
LOG_BACKUPS = 5

_context: Dict[str, Any] = {"environment": "-", "tick": "-"}


class AgentContextFilter(logging.Filter):
    """Stamp each record with the deployment environment and current tick."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _context.items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


def set_log_context(environment: Optional[str] = None, tick: Optional[int] = None) -> None:
    if environment is not None:
        _context["environment"] = environment
    if tick is not None:
        _context["tick"] = tick


def _resolve_level() -> int:
    name = (os.getenv("AGENT_LOG_LEVEL") or "INFO").strip().upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def _configure_root() -> logging.Logger:
    root = logging.getLogger(ROOT_LOGGER)
    if root.handlers:
        return root
    root.setLevel(_resolve_level())
    formatter = logging.Formatter(LOG_FORMAT)
    context = AgentContextFilter()
    directory = os.path.dirname(LOG_FILE)
    if directory:
        os.makedirs(directory, exist_ok=True)
    file_handler = RotatingFileHandler(LOG_FILE, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUPS)
    console_handler = logging.StreamHandler()
    for handler in (file_handler, console_handler):
        handler.setFormatter(formatter)
        handler.addFilter(context)
        root.addHandler(handler)
    return root


def setup_logger(name: str) -> logging.Logger:
    """Return the agent logger for module ``name``.

    The first call attaches a rotating file handler and a console handler
    to the shared parent; module loggers carry no handlers of their own
    and emit through it.
    """
    _configure_root()
    if name == ROOT_LOGGER or name.startswith(ROOT_LOGGER + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


def read_logs(tail: int = 100, level: Optional[str] = None) -> str:
    """Return the last ``tail`` lines from the agent log file.

    Operators use this to inspect what the control loop did recently
    without shelling into the host.  If the log file does not exist,
    an empty string is returned.

    Parameters
    ----------
    tail : int, optional
        The number of lines from the end of the log to return. Defaults
        to 100. Non-positive values return the whole file.
    level : str, optional
        Keep only lines logged at this level name (e.g. ``"WARNING"``).

    Returns
    -------
    str
        The concatenated log lines.
    """
    if not os.path.exists(LOG_FILE):
        return ""
    with open(LOG_FILE, "r", encoding="utf-8", errors="replace") as f:
        lines = f.readlines()
    if level:
        marker = f" {level.strip().upper()} "
        lines = [line for line in lines if marker in line[:40]]
    if tail <= 0:
        return "".join(lines)
    return "".join(lines[-tail:])
