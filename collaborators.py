"""Interfaces and HTTP clients for the agent's external collaborators.

Concrete broker, market-data and data-feed adapters live outside this
repository; the agent only depends on the small protocols declared here.  The
risk manager and swarm registry are plain HTTP services, so this module ships
``requests`` based clients for them.  Both clients are blocking and the agent
calls them through ``asyncio.to_thread``.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol

import requests

from log_utils import setup_logger

logger = setup_logger(__name__)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass
class Account:
    equity: float
    cash: float
    buying_power: float = 0.0
    last_equity: float = 0.0
    portfolio_value: float = 0.0
    status: str = "ACTIVE"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Position:
    symbol: str
    qty: float
    market_value: float
    unrealized_pl: float = 0.0
    current_price: float = 0.0
    avg_entry_price: float = 0.0
    side: str = "long"
    asset_class: str = "us_equity"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class MarketClock:
    is_open: bool
    timestamp: str = ""
    next_open: str = ""
    next_close: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Asset:
    symbol: str
    exchange: str
    tradable: bool = True
    asset_class: str = "us_equity"


@dataclass
class Bar:
    t: str
    o: float
    h: float
    l: float
    c: float
    v: float = 0.0


@dataclass
class OrderSpec:
    symbol: str
    side: str
    asset_class: str = "us_equity"
    qty: Optional[float] = None
    notional: Optional[float] = None
    order_type: str = "market"
    time_in_force: str = "day"
    client_order_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}


@dataclass
class BrokerOrder:
    id: str
    status: str = "accepted"
    client_order_id: Optional[str] = None


class BrokerError(RuntimeError):
    """Broker failure carrying a classification code."""

    def __init__(self, message: str, code: str = "PROVIDER_ERROR") -> None:
        super().__init__(message)
        self.code = code


AUTH_ERROR_CODES = frozenset({"UNAUTHORIZED", "FORBIDDEN"})


def is_broker_auth_error(error: BaseException) -> bool:
    return getattr(error, "code", None) in AUTH_ERROR_CODES


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


class Broker(Protocol):
    async def get_account(self) -> Account: ...

    async def get_positions(self) -> List[Position]: ...

    async def get_position(self, symbol: str) -> Optional[Position]: ...

    async def get_clock(self) -> MarketClock: ...

    async def create_order(self, spec: OrderSpec) -> BrokerOrder: ...

    async def get_asset(self, symbol: str) -> Optional[Asset]: ...

    async def get_portfolio_history(self, params: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]: ...


class MarketData(Protocol):
    async def get_bars(self, symbol: str, timeframe: str, limit: int = 40) -> List[Bar]: ...

    async def get_snapshot(self, symbol: str) -> Optional[Dict[str, Any]]: ...

    async def get_crypto_snapshot(self, symbol: str) -> Optional[Dict[str, Any]]: ...


# ---------------------------------------------------------------------------
# Symbols
# ---------------------------------------------------------------------------

_DASHED = re.compile(r"^([A-Z0-9]{2,15})-(USD|USDT|USDC)$")
_ALIAS = re.compile(r"^([A-Z0-9]{2,15})(?:[.\-_]?X)$")
_JOINED = re.compile(r"^([A-Z0-9]{2,15})(USD|USDT|USDC)$")
_PAIR = re.compile(r"^[A-Z]{2,5}/(USD|USDT|USDC)$")


def normalize_crypto_symbol(symbol: str) -> str:
    upper = symbol.strip().upper()
    if "/" in upper:
        return upper
    for pattern, quote in ((_DASHED, None), (_ALIAS, "USDT"), (_JOINED, None)):
        match = pattern.match(upper)
        if match:
            return f"{match.group(1)}/{quote or match.group(2)}"
    return upper


def is_crypto_symbol(symbol: str, crypto_symbols: Iterable[str]) -> bool:
    normalised = normalize_crypto_symbol(symbol)
    if any(normalize_crypto_symbol(item) == normalised for item in crypto_symbols):
        return True
    return bool(_PAIR.match(normalised))


# ---------------------------------------------------------------------------
# Risk manager
# ---------------------------------------------------------------------------


@dataclass
class RiskDecision:
    approved: bool
    reason: Optional[str] = None


class RiskManagerHTTPError(RuntimeError):
    """Risk manager answered with a non-2xx status."""

    def __init__(self, status: int) -> None:
        super().__init__(f"risk manager returned HTTP {status}")
        self.status = status


class RiskManagerClient:
    """Blocking client for the risk manager service."""

    def __init__(self, base_url: str, *, timeout: float = 5.0, session: Optional[requests.Session] = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()

    def validate(self, order: Mapping[str, Any]) -> RiskDecision:
        resp = self._session.post(f"{self.base_url}/validate", json=dict(order), timeout=self.timeout)
        if not resp.ok:
            raise RiskManagerHTTPError(resp.status_code)
        data = resp.json() or {}
        return RiskDecision(approved=bool(data.get("approved")), reason=data.get("reason"))

    def status(self) -> Dict[str, Any]:
        """Return the risk manager status; non-2xx yields an empty mapping."""

        resp = self._session.get(f"{self.base_url}/status", timeout=self.timeout)
        if not resp.ok:
            logger.warning("Risk manager status returned HTTP %s", resp.status_code)
            return {}
        data = resp.json()
        return data if isinstance(data, dict) else {}

    def update_loss(self, profit_loss: float) -> None:
        resp = self._session.post(
            f"{self.base_url}/update-loss", json={"profitLoss": profit_loss}, timeout=self.timeout
        )
        resp.raise_for_status()


# ---------------------------------------------------------------------------
# Swarm registry
# ---------------------------------------------------------------------------

SWARM_ROLES = ("scout", "analyst", "trader", "risk_manager", "learning")
HEARTBEAT_FRESH_MS = 300_000


class SwarmRegistryClient:
    """Blocking client for the swarm registry's health and agent listing."""

    def __init__(self, base_url: str, *, timeout: float = 5.0, session: Optional[requests.Session] = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()

    def health(self) -> Dict[str, Any]:
        resp = self._session.get(f"{self.base_url}/health", timeout=self.timeout)
        if not resp.ok:
            return {"healthy": False, "status": resp.status_code}
        data = resp.json() or {}
        return {"healthy": bool(data.get("healthy")), "status": resp.status_code}

    def agents(self) -> Dict[str, Dict[str, Any]]:
        resp = self._session.get(f"{self.base_url}/agents", timeout=self.timeout)
        resp.raise_for_status()
        data = resp.json()
        return data if isinstance(data, dict) else {}


def count_role_health(agents: Mapping[str, Any], now: int) -> Dict[str, int]:
    """Count agents per swarm role whose heartbeat is under five minutes old."""

    health: Dict[str, int] = {}
    for status in agents.values():
        if not isinstance(status, Mapping):
            continue
        role = status.get("type")
        if role not in SWARM_ROLES:
            continue
        heartbeat = status.get("lastHeartbeat")
        if isinstance(heartbeat, (int, float)) and now - heartbeat <= HEARTBEAT_FRESH_MS:
            health[role] = health.get(role, 0) + 1
    return health


__all__ = [
    "AUTH_ERROR_CODES",
    "Account",
    "Asset",
    "Bar",
    "Broker",
    "BrokerError",
    "BrokerOrder",
    "MarketClock",
    "MarketData",
    "OrderSpec",
    "Position",
    "RiskDecision",
    "RiskManagerClient",
    "RiskManagerHTTPError",
    "SWARM_ROLES",
    "SwarmRegistryClient",
    "count_role_health",
    "is_broker_auth_error",
    "is_crypto_symbol",
    "normalize_crypto_symbol",
]
