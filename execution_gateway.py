"""Idempotent order submission on top of the broker collaborator.

The gateway performs no risk checks: buys must already carry risk-manager
approval.  Callers treat anything but an accepted result, including an
exception, as "no position change".
"""

from __future__ import annotations

import hashlib
import math
import time
from dataclasses import dataclass
from typing import Optional

from collaborators import Broker, OrderSpec
from llm_safe import describe_error
from log_utils import setup_logger
from observability import log_event
from order_storage import OrderSubmission, OrderSubmissionStore

logger = setup_logger(__name__)

ACCEPTED_STATES = frozenset({"SUBMITTED", "SUBMITTING"})
IDEMPOTENCY_BUCKET_MS = 300_000
MAX_CLIENT_ORDER_ID = 32


class OrderSubmissionError(RuntimeError):
    """Submission refused or failed; ``code`` classifies the reason."""

    def __init__(self, message: str, code: str = "PROVIDER_ERROR") -> None:
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class ExecutionResult:
    submission: OrderSubmission
    broker_order_id: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return is_accepted_state(self.submission.state)


def is_accepted_state(state: str) -> bool:
    return state in ACCEPTED_STATES


def _bucket(now: int) -> int:
    return math.floor(now / IDEMPOTENCY_BUCKET_MS)


def build_buy_key(symbol: str, now: Optional[int] = None) -> str:
    ts = int(time.time() * 1000) if now is None else now
    return f"harness:buy:{symbol.upper()}:{_bucket(ts)}"


def build_sell_key(symbol: str, entry_time: Optional[int] = None, now: Optional[int] = None) -> str:
    """Sells of the same holding collapse onto its entry time."""

    ts = int(time.time() * 1000) if now is None else now
    anchor = entry_time if entry_time else _bucket(ts)
    return f"harness:sell:{symbol.upper()}:{anchor}"


def client_order_id_for(idempotency_key: str) -> str:
    if len(idempotency_key) <= MAX_CLIENT_ORDER_ID:
        return idempotency_key
    return hashlib.sha256(idempotency_key.encode("utf-8")).hexdigest()[:MAX_CLIENT_ORDER_ID]


class ExecutionGateway:
    def __init__(
        self,
        broker: Broker,
        store: OrderSubmissionStore,
        *,
        source: str = "harness",
        broker_provider: str = "default",
    ) -> None:
        self.broker = broker
        self.store = store
        self.source = source
        self.broker_provider = broker_provider

    async def submit_order(self, idempotency_key: str, order: OrderSpec) -> ExecutionResult:
        """Submit ``order`` at most once for ``idempotency_key``.

        Raises
        ------
        OrderSubmissionError
            ``CONFLICT`` when another submission owns the key,
            ``MARKET_CLOSED`` for equity day orders outside market hours and
            ``PROVIDER_ERROR`` for broker failures.
        """

        submission = self.store.reserve(
            idempotency_key,
            source=self.source,
            broker_provider=self.broker_provider,
            request=order.to_dict(),
        )
        if is_accepted_state(submission.state):
            log_event(logger, "order_submission_deduplicated", key=idempotency_key, state=submission.state)
            return ExecutionResult(submission, submission.broker_order_id)
        if submission.state not in ("RESERVED", "FAILED"):
            raise OrderSubmissionError(
                f"Order submission is in unexpected state: {submission.state}", code="CONFLICT"
            )

        if not self.store.try_transition(submission.id, ("RESERVED", "FAILED"), "SUBMITTING"):
            latest = self.store.get_by_key(idempotency_key)
            if latest and is_accepted_state(latest.state):
                return ExecutionResult(latest, latest.broker_order_id)
            raise OrderSubmissionError("Unable to transition submission to SUBMITTING", code="CONFLICT")

        try:
            is_crypto = order.asset_class == "crypto"
            if not is_crypto and order.time_in_force == "day":
                clock = await self.broker.get_clock()
                if not clock.is_open:
                    raise OrderSubmissionError("Market closed", code="MARKET_CLOSED")

            spec = OrderSpec(
                symbol=order.symbol,
                side=order.side,
                asset_class=order.asset_class,
                qty=order.qty,
                notional=order.notional,
                order_type=order.order_type,
                time_in_force=order.time_in_force,
                client_order_id=client_order_id_for(idempotency_key),
            )
            placed = await self.broker.create_order(spec)
            self.store.set_state(submission.id, "SUBMITTED", broker_order_id=placed.id)
        except Exception as exc:
            code = getattr(exc, "code", None) or "PROVIDER_ERROR"
            error = {"code": code, "message": describe_error(exc)}
            latest = self.store.get_by_key(idempotency_key)
            if latest is not None and (latest.state == "SUBMITTED" or latest.broker_order_id):
                self.store.set_state(latest.id, "SUBMITTED", last_error=error)
                return ExecutionResult(latest, latest.broker_order_id)
            self.store.set_state(submission.id, "FAILED", last_error=error)
            log_event(logger, "order_submission_failed", key=idempotency_key, code=code, error=error["message"])
            if isinstance(exc, OrderSubmissionError):
                raise
            raise OrderSubmissionError(describe_error(exc), code=str(code)) from exc

        stored = self.store.get_by_key(idempotency_key) or submission
        return ExecutionResult(stored, placed.id)


__all__ = [
    "ACCEPTED_STATES",
    "ExecutionGateway",
    "ExecutionResult",
    "OrderSubmissionError",
    "build_buy_key",
    "build_sell_key",
    "client_order_id_for",
    "is_accepted_state",
]
