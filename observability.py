"""Observability helpers for structured logs, metrics and the activity log.

The trading agent runs in environments where pulling in a full metrics stack
is not always possible.  This module provides small utilities that are cheap to
import and good enough for unit tests:

* ``log_event`` emits JSON encoded log lines with a consistent schema so the
  caller's logger configuration can ship them to any sink.
* ``record_metric`` appends gauge/counter style metrics to a CSV file that can
  be scraped or tailed by lightweight dashboards.
* ``build_activity_entry`` / ``filter_activity_logs`` shape the in-state
  activity log that operators query through the agent's ``get_logs`` surface.
"""
from __future__ import annotations

import csv
import json
import logging
import os
import secrets
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, MutableMapping, Optional

import pandas as pd

_OBSERVABILITY_LOGGER = logging.getLogger("trading_agent.observability")

LOG_RETENTION_MAX = 1000

SEVERITIES = ("debug", "info", "warning", "error", "critical")
STATUSES = ("info", "started", "in_progress", "success", "warning", "failed", "skipped")
EVENT_TYPES = ("agent", "trade", "crypto", "research", "system", "swarm", "risk", "data", "api")

_SUMMARY_KEYS = (
    "symbol",
    "source",
    "reason",
    "message",
    "error",
    "count",
    "confidence",
    "verdict",
    "recommendation",
)
_MAX_STRING = 800
_MAX_ITEMS = 20
_MAX_KEYS = 30
_MAX_METADATA_BYTES = 6_000


def log_event(logger: Optional[logging.Logger], event: str, **fields: Any) -> None:
    """Emit a structured JSON log entry.

    Parameters
    ----------
    logger:
        Logger instance to use.  When ``None`` the module level observability
        logger is used.
    event:
        Short event identifier.  Stored under the ``event`` key in the emitted
        payload.
    **fields:
        Additional key/value pairs to include in the log entry.  Values that are
        not JSON serialisable are replaced by their ``repr``.
    """

    payload: MutableMapping[str, Any] = {"event": event, "ts": time.time()}
    payload.update(fields)
    target = logger or _OBSERVABILITY_LOGGER
    try:
        target.info(json.dumps(payload, sort_keys=True))
    except (TypeError, ValueError):
        serialisable = {k: _safe_json_value(v) for k, v in payload.items()}
        target.info(json.dumps(serialisable, sort_keys=True))


def _safe_json_value(value: Any) -> Any:
    try:
        json.dumps(value)
        return value
    except (TypeError, ValueError):
        return repr(value)


class _CsvMetricsSink:
    """Thread-safe CSV metrics recorder."""

    def __init__(self, path: Optional[str] = None) -> None:
        self._path = Path(path or os.getenv("METRICS_PATH", "metrics.csv"))
        self._lock = threading.Lock()
        self._initialised = False

    @property
    def path(self) -> Path:
        return self._path

    def record(self, metric: str, value: float, *, labels: Optional[Mapping[str, Any]] = None) -> None:
        row = {
            "ts": f"{time.time():.6f}",
            "metric": metric,
            "value": f"{float(value):.6f}",
            "labels": json.dumps(labels or {}, sort_keys=True, default=str),
        }
        with self._lock:
            need_header = not self._initialised or not self._path.exists()
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", newline="") as handle:
                writer = csv.DictWriter(handle, fieldnames=("ts", "metric", "value", "labels"))
                if need_header:
                    writer.writeheader()
                    self._initialised = True
                writer.writerow(row)


_metrics_sink = _CsvMetricsSink()


def set_metrics_path(path: str) -> None:
    """Redirect metric rows to ``path`` (tests and per-deployment sinks)."""

    global _metrics_sink
    _metrics_sink = _CsvMetricsSink(path)


def record_metric(metric: str, value: float, *, labels: Optional[Mapping[str, Any]] = None) -> None:
    """Record a numeric metric to the CSV sink."""

    try:
        _metrics_sink.record(metric, value, labels=labels)
    except (OSError, TypeError, ValueError):
        _OBSERVABILITY_LOGGER.debug("Failed to record metric %s", metric, exc_info=True)


# ---------------------------------------------------------------------------
# Activity log entries
# ---------------------------------------------------------------------------


def _normalise_choice(value: Any, choices: Iterable[str]) -> Optional[str]:
    if not isinstance(value, str):
        return None
    normalised = value.strip().lower()
    return normalised if normalised in choices else None


def _humanize_action(action: str) -> str:
    words = action.replace("_", " ").split()
    return " ".join(word[:1].upper() + word[1:] for word in words)


def sanitize_log_value(value: Any, depth: int = 0) -> Any:
    """Trim long strings, lists and mappings so a log entry stays small."""

    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        trimmed = value.strip()
        if len(trimmed) <= _MAX_STRING:
            return trimmed
        return f"{trimmed[:_MAX_STRING]}... [truncated {len(trimmed) - _MAX_STRING} chars]"
    if depth >= 2:
        try:
            serialised = json.dumps(value, default=str)
        except (TypeError, ValueError):
            return str(value)
        if len(serialised) <= _MAX_STRING:
            return json.loads(serialised)
        return f"{serialised[:_MAX_STRING]}... [truncated {len(serialised) - _MAX_STRING} chars]"
    if isinstance(value, (list, tuple)):
        items = [sanitize_log_value(item, depth + 1) for item in list(value)[:_MAX_ITEMS]]
        if len(value) > _MAX_ITEMS:
            items.append(f"[+{len(value) - _MAX_ITEMS} more items]")
        return items
    if isinstance(value, Mapping):
        entries = list(value.items())
        result: Dict[str, Any] = {}
        for key, item in entries[:_MAX_KEYS]:
            result[str(key)] = sanitize_log_value(item, depth + 1)
        if len(entries) > _MAX_KEYS:
            result["_truncated_keys"] = len(entries) - _MAX_KEYS
        return result
    return str(value)


def sanitize_log_details(details: Mapping[str, Any]) -> Dict[str, Any]:
    sanitized = {str(key): sanitize_log_value(value) for key, value in details.items()}
    try:
        encoded = json.dumps(sanitized, default=str)
    except (TypeError, ValueError):
        return {"_truncated": True, "_metadata_error": "metadata serialization failed"}
    size = len(encoded.encode("utf-8"))
    if size <= _MAX_METADATA_BYTES:
        return sanitized
    return {"_truncated": True, "_metadata_bytes": size, "preview": encoded[:1_200]}


def classify_event_type(agent: str, action: str, details: Mapping[str, Any]) -> str:
    """Bucket an activity into one of ``EVENT_TYPES`` from its names."""

    action_key = action.lower()
    agent_key = agent.lower()
    if any(word in action_key for word in ("research", "catalyst")) or "research" in agent_key or agent_key == "analyst":
        return "research"
    if agent_key == "crypto" or "crypto" in action_key or bool(details.get("is_crypto")):
        return "crypto"
    if any(word in action_key for word in ("buy", "sell", "order", "position", "execution")) or agent_key in {
        "executor",
        "trader",
    }:
        return "trade"
    if any(word in action_key for word in ("swarm", "registry", "heartbeat", "role_health")) or "swarm" in agent_key:
        return "swarm"
    if any(word in action_key for word in ("risk", "stress", "kill_switch")) or "risk" in agent_key:
        return "risk"
    if any(word in action_key for word in ("gather", "signal", "source_", "cache")) or agent_key in {
        "stocktwits",
        "reddit",
        "sec",
        "crypto_scout",
        "scout",
        "datagatherer",
    }:
        return "data"
    if any(word in action_key for word in ("api", "auth", "config")):
        return "api"
    if agent_key == "system":
        return "system"
    return "agent"


def classify_severity(action: str, details: Mapping[str, Any]) -> str:
    explicit = _normalise_choice(details.get("severity"), SEVERITIES)
    if explicit:
        return explicit
    action_key = action.lower()
    error_text = str(details.get("error") or "").lower()
    if action_key.startswith("kill_switch") or "panic" in error_text:
        return "critical"
    if "error" in action_key or "failed" in action_key or error_text:
        return "error"
    if any(word in action_key for word in ("warning", "skipped", "deferred", "blocked", "rejected")):
        return "warning"
    if "debug" in action_key:
        return "debug"
    return "info"


def classify_status(action: str, details: Mapping[str, Any]) -> str:
    explicit = _normalise_choice(details.get("status"), STATUSES)
    if explicit:
        return explicit
    action_key = action.lower()
    if "starting" in action_key or action_key.endswith("_start"):
        return "started"
    if "running" in action_key or "processing" in action_key:
        return "in_progress"
    if "failed" in action_key or "error" in action_key:
        return "failed"
    if "warning" in action_key:
        return "warning"
    if any(word in action_key for word in ("skipped", "blocked", "deferred", "rejected")):
        return "skipped"
    if any(
        word in action_key
        for word in ("complete", "success", "executed", "enabled", "disabled", "updated", "activated")
    ):
        return "success"
    return "info"


def summarize_details(action: str, details: Mapping[str, Any]) -> str:
    direct = details.get("description")
    if isinstance(direct, str) and direct.strip():
        return direct.strip()
    for key in ("reason", "message", "error"):
        value = details.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    fragments: List[str] = []
    symbol = details.get("symbol")
    if isinstance(symbol, str) and symbol.strip():
        fragments.append(symbol.strip())
    source = details.get("source")
    if isinstance(source, str) and source.strip():
        fragments.append(f"source {source.strip()}")
    count = details.get("count")
    if isinstance(count, (int, float)) and not isinstance(count, bool):
        fragments.append(f"count {count}")
    if fragments:
        return f"{_humanize_action(action)} ({', '.join(fragments)})"
    return _humanize_action(action)


def build_activity_entry(agent: str, action: str, details: Mapping[str, Any], *, now_ms: int) -> Dict[str, Any]:
    """Return a fully classified activity-log entry."""

    metadata = sanitize_log_details(details)
    entry: Dict[str, Any] = {
        "id": f"{now_ms:x}-{secrets.token_hex(3)}",
        "timestamp": datetime.fromtimestamp(now_ms / 1000, tz=timezone.utc).isoformat(),
        "timestamp_ms": int(now_ms),
        "agent": agent,
        "action": action,
    }
    for key in _SUMMARY_KEYS:
        if key in metadata:
            entry[key] = metadata[key]
    entry["event_type"] = _normalise_choice(metadata.get("event_type"), EVENT_TYPES) or classify_event_type(
        agent, action, metadata
    )
    entry["severity"] = classify_severity(action, metadata)
    entry["status"] = classify_status(action, metadata)
    entry["description"] = summarize_details(action, metadata)
    entry["metadata"] = metadata
    return entry


def append_activity(
    logs: List[Dict[str, Any]],
    agent: str,
    action: str,
    details: Optional[Mapping[str, Any]] = None,
    *,
    now_ms: Optional[int] = None,
    logger: Optional[logging.Logger] = None,
) -> Dict[str, Any]:
    """Append an entry to ``logs`` (retention 1000) and mirror it to ``logger``."""

    ts = int(time.time() * 1000) if now_ms is None else now_ms
    entry = build_activity_entry(agent, action, details or {}, now_ms=ts)
    logs.append(entry)
    if len(logs) > LOG_RETENTION_MAX:
        del logs[: len(logs) - LOG_RETENTION_MAX]
    log_event(
        logger,
        action,
        agent=agent,
        severity=entry["severity"],
        status=entry["status"],
        event_type=entry["event_type"],
        metadata=entry["metadata"],
    )
    return entry


def _parse_set(value: Optional[Iterable[str] | str]) -> set[str]:
    if value is None:
        return set()
    raw = [value] if isinstance(value, str) else list(value)
    parts = (part.strip().lower() for item in raw for part in str(item).split(","))
    return {part for part in parts if part}


def filter_activity_logs(
    logs: List[Mapping[str, Any]],
    *,
    limit: Optional[int] = 200,
    since: Optional[int] = None,
    until: Optional[int] = None,
    event_type: Optional[Iterable[str] | str] = None,
    severity: Optional[Iterable[str] | str] = None,
    status: Optional[Iterable[str] | str] = None,
    agent: Optional[Iterable[str] | str] = None,
    search: Optional[str] = None,
) -> Dict[str, Any]:
    """Filter and order the activity log, newest first.

    Parameters
    ----------
    logs:
        In-state activity entries as produced by :func:`build_activity_entry`.
    limit:
        Maximum number of entries to return, clamped to ``[1, 2000]``.
        Defaults to 200.
    since, until:
        Inclusive millisecond bounds on ``timestamp_ms``.
    event_type, severity, status, agent:
        Comma separated strings or iterables; matching is case-insensitive.
    search:
        Case-insensitive substring matched against agent, action, description
        and the serialised metadata.

    Returns
    -------
    dict
        ``logs``, ``total``, ``filtered`` and ``limit`` plus the available
        filter vocabularies.
    """

    try:
        safe_limit = max(1, min(int(limit if limit is not None else 200), 2_000))
    except (TypeError, ValueError):
        safe_limit = 200

    frame = pd.DataFrame(list(logs))
    if frame.empty:
        selected: List[Dict[str, Any]] = []
        filtered_count = 0
    else:
        for column in ("timestamp_ms", "event_type", "severity", "status", "agent", "action", "description"):
            if column not in frame.columns:
                frame[column] = None
        frame["_position"] = range(len(frame))
        mask = pd.Series(True, index=frame.index)
        stamps = pd.to_numeric(frame["timestamp_ms"], errors="coerce")
        if since is not None:
            mask &= stamps >= since
        if until is not None:
            mask &= stamps <= until
        for column, wanted in (("event_type", event_type), ("severity", severity), ("status", status)):
            values = _parse_set(wanted)
            if values:
                mask &= frame[column].isin(values)
        agents = _parse_set(agent)
        if agents:
            mask &= frame["agent"].astype(str).str.lower().isin(agents)
        needle = (search or "").strip().lower()
        if needle:
            haystack = frame.apply(
                lambda row: " ".join(
                    [
                        str(row["agent"]),
                        str(row["action"]),
                        str(row["description"]),
                        json.dumps(row.get("metadata"), default=str),
                    ]
                ).lower(),
                axis=1,
            )
            mask &= haystack.str.contains(needle, regex=False)
        matched = frame[mask].assign(_ts=stamps[mask])
        filtered_count = int(len(matched))
        ordered = matched.sort_values(["_ts", "_position"], ascending=[False, False], kind="mergesort")
        positions = ordered["_position"].head(safe_limit).tolist()
        selected = [dict(logs[int(pos)]) for pos in positions]

    return {
        "logs": selected,
        "total": len(logs),
        "filtered": filtered_count,
        "limit": safe_limit,
        "available_event_types": list(EVENT_TYPES),
        "available_severities": list(SEVERITIES),
        "available_statuses": list(STATUSES),
    }


__all__ = [
    "EVENT_TYPES",
    "LOG_RETENTION_MAX",
    "SEVERITIES",
    "STATUSES",
    "build_activity_entry",
    "classify_event_type",
    "classify_severity",
    "classify_status",
    "filter_activity_logs",
    "log_event",
    "record_metric",
    "sanitize_log_details",
    "set_metrics_path",
]
