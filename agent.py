"""
Main control loop for the adaptive trading agent.

One :class:`TradingAgent` owns one :class:`AgentState`.  A timer wakes the
agent every 30 seconds; each wake-up runs :meth:`TradingAgent.tick`, which
gathers social signals, researches the best candidates with the LLM, manages
exits and entries through the execution gateway and finally persists the
state and publishes a status snapshot for operators.

Ticks never overlap: an ``asyncio.Lock`` guards every state mutation and a
wake-up that arrives while a tick is running is skipped.  Operator reads go
through :class:`state_manager.StatusBoard` and never wait on the tick.
"""

from __future__ import annotations

import argparse
import asyncio
import hmac
import math
import sys
import time
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from agent_config import DEFAULT_SOURCE_CONFIG, ConfigValidationError, SourceConfig, apply_config_update
from agent_state import AgentState, PositionEntry
from collaborators import (
    Account,
    Broker,
    MarketClock,
    MarketData,
    OrderSpec,
    Position,
    RiskManagerClient,
    RiskManagerHTTPError,
    SwarmRegistryClient,
    count_role_health,
    is_broker_auth_error,
    is_crypto_symbol,
    normalize_crypto_symbol,
)
from config import RuntimeSettings, kill_switch_env_active, load_runtime_settings
from data_sources import DataSource, gather_signals
from execution_gateway import ExecutionGateway, build_buy_key, build_sell_key
from llm_safe import LLMProvider, describe_error
from log_utils import set_log_context, setup_logger
from memory_episodes import prune_memory_episodes, remember_episode
from observability import append_activity, filter_activity_logs, log_event, record_metric
from order_storage import OrderSubmissionStore
from predictive_model import build_performance_attribution
from research import (
    analyze_signals_with_llm,
    apply_research_outcome,
    research_position,
    research_signal,
    research_top_signals,
    score_symbol,
)
from risk_engine import (
    DynamicRiskProfile,
    StressTestResult,
    analyze_staleness,
    build_portfolio_risk_dashboard,
    compute_adaptive_exit_thresholds,
    compute_dynamic_position_scale,
    compute_portfolio_risk_metrics,
    dynamic_risk_profile,
    estimate_position_pnl_pct,
    estimate_symbol_volatility,
    position_size_pct,
    record_portfolio_snapshot,
    record_trade_outcome,
    regime_confidence_adjustment,
    run_stress_test,
)
from runtime_optimizer import PeriodicActivity, optimize_runtime_parameters, record_performance_sample
from signal_cache import build_signal_quality_metrics, should_block_correlated_trade
from state_manager import StatusBoard
from state_store import JsonStateStore, load_state, persist_state

logger = setup_logger(__name__)

TICK_INTERVAL_MS = 30_000
STRESS_TEST_INTERVAL_MS = 300_000
OPTIMIZATION_INTERVAL_MS = 180_000
POSITION_RESEARCH_INTERVAL_MS = 300_000
BROKER_AUTH_CACHE_MS = 60_000
CRYPTO_RESEARCH_REUSE_MS = 300_000
MIN_ORDER_NOTIONAL = 100
MAX_RESEARCHED_BUYS = 3
MAX_CRYPTO_CANDIDATES = 2
HIGH_CONFIDENCE_UNDER_STRESS = 0.85
LLM_CONFIDENCE_UNDER_STRESS = 0.9
VOLATILITY_BARS = 20

SWARM_ROLE_SYNC = PeriodicActivity("swarm_role_sync", interval_ms=120_000)
SWARM_BYPASS_NOTICE = PeriodicActivity("swarm_bypass_notice", interval_ms=300_000)


def _now_ms() -> int:
    return int(time.time() * 1000)


def handle_exception(exc_type, exc_value, exc_traceback):
    """Log uncaught exceptions with stack traces."""
    if issubclass(exc_type, KeyboardInterrupt):
        return
    logger.error("Uncaught exception", exc_info=(exc_type, exc_value, exc_traceback))


sys.excepthook = handle_exception


class TradingAgent:
    """Single-writer trading agent driven by :meth:`tick`."""

    def __init__(
        self,
        settings: RuntimeSettings,
        *,
        broker: Optional[Broker] = None,
        market_data: Optional[MarketData] = None,
        llm: Optional[LLMProvider] = None,
        sources: Sequence[DataSource] = (),
        risk_manager: Optional[RiskManagerClient] = None,
        swarm_registry: Optional[SwarmRegistryClient] = None,
        store: Optional[JsonStateStore] = None,
        gateway: Optional[ExecutionGateway] = None,
        source_config: SourceConfig = DEFAULT_SOURCE_CONFIG,
        clock: Optional[Callable[[], int]] = None,
        status_board: Optional[StatusBoard] = None,
    ) -> None:
        self.settings = settings
        set_log_context(environment=settings.environment)
        self.broker = broker
        self.market_data = market_data
        self.llm = llm
        self.sources = list(sources)
        self.risk_manager = risk_manager
        self.swarm_registry = swarm_registry
        self.store = store or JsonStateStore.from_settings(settings)
        if gateway is None and broker is not None:
            gateway = ExecutionGateway(broker, OrderSubmissionStore(settings.order_db_path))
        self.gateway = gateway
        self.source_config = source_config
        self._now = clock or _now_ms
        self.status_board = status_board or StatusBoard()
        self.tick_interval_ms = int(settings.tick_interval_seconds * 1000) or TICK_INTERVAL_MS
        self.next_wakeup_at: Optional[int] = None
        self._lock = asyncio.Lock()
        self._stopping: Optional[asyncio.Event] = None

        self.state: AgentState = load_state(self.store, settings)
        if self.state.enabled:
            self.next_wakeup_at = self._now()
        self._publish_status(self._now())

    @classmethod
    def from_settings(cls, settings: Optional[RuntimeSettings] = None, **collaborators: Any) -> "TradingAgent":
        """Build an agent with HTTP clients for the configured services."""

        settings = settings or load_runtime_settings()
        if settings.risk_manager_url and "risk_manager" not in collaborators:
            collaborators["risk_manager"] = RiskManagerClient(settings.risk_manager_url, timeout=settings.http_timeout)
        if settings.swarm_registry_url and "swarm_registry" not in collaborators:
            collaborators["swarm_registry"] = SwarmRegistryClient(
                settings.swarm_registry_url, timeout=settings.http_timeout
            )
        return cls(settings, **collaborators)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _log(self, agent: str, action: str, now: Optional[int] = None, **details: Any) -> None:
        append_activity(
            self.state.logs, agent, action, details, now_ms=self._now() if now is None else now, logger=logger
        )

    def _persist(self) -> None:
        outcome = persist_state(self.store, self.state)
        if not outcome.ok:
            self._log(
                "System",
                "persist_failed",
                size=outcome.size,
                limit=self.store.max_bytes,
                severity="error",
                event_type="system",
            )

    def _is_crypto(self, symbol: str) -> bool:
        return is_crypto_symbol(symbol, self.state.config.crypto_symbols) or "/" in symbol

    def _record_broker_auth_error(self, error: BaseException, now: int) -> None:
        self.state.last_broker_auth_error = {
            "at": now,
            "code": getattr(error, "code", None),
            "message": describe_error(error),
        }

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------
    async def tick(self) -> bool:
        """Run one wake-up.  Returns ``False`` when skipped as an overlap."""

        if self._lock.locked():
            log_event(logger, "tick_skipped_overlap")
            record_metric("tick_overlap_total", 1)
            return False
        async with self._lock:
            await self._tick()
        return True

    async def _tick(self) -> None:
        state = self.state
        if not state.enabled:
            self._persist()
            self._publish_status(self._now())
            return

        started = time.perf_counter()
        now = self._now()
        set_log_context(tick=now)
        try:
            if await self._kill_switch_active(now):
                self._log("System", "alarm_skipped", now, reason="Kill switch active", event_type="system")
                return

            if not await self._swarm_healthy(now):
                if self._swarm_bypass_allowed():
                    if SWARM_BYPASS_NOTICE.due(state.activity_runs, now):
                        SWARM_BYPASS_NOTICE.mark_ran(state.activity_runs, now)
                        self._log(
                            "System",
                            "swarm_health_bypass_active",
                            now,
                            reason="Proceeding without swarm quorum",
                            status="warning",
                            event_type="swarm",
                        )
                else:
                    self._log(
                        "System", "alarm_skipped", now, reason="Swarm unhealthy (quorum not met)", event_type="swarm"
                    )
                    return

            if SWARM_ROLE_SYNC.due(state.activity_runs, now):
                await self._sync_swarm_roles(now)

            optimization = state.optimization
            clock: Optional[MarketClock] = await self.broker.get_clock() if self.broker else None

            if now - state.last_data_gather_run >= optimization.adaptive_data_poll_interval_ms:
                await self.run_data_gatherers(now)

            positions: List[Position] = await self.broker.get_positions() if self.broker else []
            held = {position.symbol for position in positions}

            if now - state.last_research_run >= optimization.adaptive_research_interval_ms:
                await research_top_signals(state, self.llm, self.market_data, held, limit=5, now=now)
                state.last_research_run = now

            if self.broker is not None:
                await self._maybe_run_stress_test(positions, now)

                if state.config.crypto_enabled:
                    await self.run_crypto_trading(positions, now)

                if clock is not None and clock.is_open:
                    if now - state.last_analyst_run >= optimization.adaptive_analyst_interval_ms:
                        analyst_started = time.perf_counter()
                        await self.run_analyst(now)
                        duration = (time.perf_counter() - analyst_started) * 1000
                        record_performance_sample(optimization, "analyst", duration, False)
                        state.last_analyst_run = now

                    if positions and now - state.last_position_research_run >= POSITION_RESEARCH_INTERVAL_MS:
                        for position in positions:
                            if position.asset_class == "us_option":
                                continue
                            await research_position(state, self.llm, position, now=now)
                        state.last_position_research_run = now

            last_optimized = optimization.last_optimization_at
            if not last_optimized or now - last_optimized >= OPTIMIZATION_INTERVAL_MS:
                summary = optimize_runtime_parameters(
                    optimization,
                    data_poll_default_ms=state.config.data_poll_interval_ms,
                    analyst_default_ms=state.config.analyst_interval_ms,
                    now=now,
                )
                self._log("System", "runtime_optimized", now, event_type="system", **summary)
        except Exception as exc:
            if is_broker_auth_error(exc):
                self._record_broker_auth_error(exc, now)
            self._log("System", "alarm_error", now, error=describe_error(exc), event_type="system")
            logger.exception("Tick failed")
            record_performance_sample(
                state.optimization, "analyst", state.optimization.analyst_latency_ema_ms or 1000, True
            )
        finally:
            prune_memory_episodes(state.memory_episodes, now)
            self._persist()
            if state.enabled:
                self.next_wakeup_at = self._now() + self.tick_interval_ms
            self._publish_status(self._now())
            record_metric("tick_latency_ms", (time.perf_counter() - started) * 1000)

    async def _kill_switch_active(self, now: int) -> bool:
        """Local flag, env override, then the risk manager; errors block trading."""

        if self.state.kill_switch_engaged:
            return True
        if self.settings.kill_switch_active or kill_switch_env_active():
            return True
        if self.risk_manager is None:
            return False
        try:
            status = await asyncio.to_thread(self.risk_manager.status)
        except Exception as exc:
            self._log(
                "System",
                "kill_switch_check_failed",
                now,
                error=describe_error(exc),
                response="blocking_trading_as_precaution",
                event_type="risk",
            )
            return True
        if status.get("killSwitchActive"):
            self._log("System", "kill_switch_from_risk_manager", now, event_type="risk")
            return True
        return False

    async def _swarm_healthy(self, now: int) -> bool:
        if self.swarm_registry is None:
            return True
        try:
            health = await asyncio.to_thread(self.swarm_registry.health)
        except Exception as exc:
            self._log("System", "swarm_health_check_error", now, error=describe_error(exc), event_type="swarm")
            return False
        if not health.get("healthy"):
            self._log("System", "swarm_health_check_failed", now, http_status=health.get("status"), event_type="swarm")
            return False
        return True

    def _swarm_bypass_allowed(self) -> bool:
        if self.settings.is_production:
            return False
        return bool(self.state.config.allow_unhealthy_swarm or self.settings.swarm_bypass)

    async def _sync_swarm_roles(self, now: int) -> None:
        SWARM_ROLE_SYNC.mark_ran(self.state.activity_runs, now)
        if self.swarm_registry is None:
            return
        try:
            agents = await asyncio.to_thread(self.swarm_registry.agents)
        except Exception as exc:
            self._log("System", "swarm_role_sync_failed", now, error=describe_error(exc), event_type="swarm")
            return
        self.state.swarm_role_health = count_role_health(agents, now)

    # ------------------------------------------------------------------
    # Data gathering
    # ------------------------------------------------------------------
    async def run_data_gatherers(self, now: int) -> None:
        state = self.state
        started = time.perf_counter()
        report = await gather_signals(
            self.sources,
            state.breakers,
            config=self.source_config,
            bucket=state.confirmation_bucket,
            ticker_blacklist=state.config.ticker_blacklist,
            now=now,
        )
        for result in report.skipped:
            self._log("DataGather", "source_skipped", now, source=result.source, reason=result.error, event_type="data")
        for result in report.failures:
            self._log("DataGather", "source_failed", now, source=result.source, error=result.error, event_type="data")

        ingest = state.signal_cache.ingest(report.signals, now)
        if ingest.cleaned_up:
            self._log(
                "DataGather",
                "signal_cache_cleanup",
                now,
                estimated_bytes=ingest.estimated_bytes,
                kept=ingest.after_count,
                status="warning",
                event_type="data",
            )

        for symbol in state.position_entries:
            mentions = [signal for signal in report.signals if signal.symbol == symbol]
            if mentions:
                volume = sum(signal.volume for signal in mentions)
                sentiment = sum(signal.sentiment for signal in mentions) / len(mentions)
                state.record_social_snapshot(symbol, volume, sentiment, now)

        self._log(
            "DataGather",
            "data_gathered",
            now,
            signals=len(report.signals),
            cached=len(state.signal_cache),
            failed=len(report.failures),
            skipped=len(report.skipped),
            event_type="data",
        )
        state.last_data_gather_run = now
        had_error = bool(report.failures)
        record_performance_sample(state.optimization, "gather", (time.perf_counter() - started) * 1000, had_error)

    # ------------------------------------------------------------------
    # Risk
    # ------------------------------------------------------------------
    async def _maybe_run_stress_test(self, positions: Sequence[Position], now: int) -> None:
        last = self.state.last_stress_test
        if last is not None and now - last.timestamp < STRESS_TEST_INTERVAL_MS:
            return
        try:
            account = await self.broker.get_account()
            self.run_stress_test(account, positions, now)
        except Exception as exc:
            self._log("Risk", "stress_test_skipped", now, error=describe_error(exc), event_type="risk")
            record_performance_sample(self.state.optimization, "analyst", 0, True)

    def _refresh_risk_profile(self, account: Account, now: int) -> DynamicRiskProfile:
        state = self.state
        metrics, regime = compute_portfolio_risk_metrics(
            state.portfolio_equity_history, state.signal_cache, state.market_regime, now
        )
        if regime is not None:
            state.market_regime = regime
        profile = dynamic_risk_profile(
            metrics, account, state.config.position_size_pct_of_cash, state.last_stress_test, now
        )
        state.risk_profile = profile.to_dict()
        return profile

    def run_stress_test(self, account: Account, positions: Sequence[Position], now: int) -> StressTestResult:
        state = self.state
        result = run_stress_test(account, positions, state.portfolio_equity_history, state.config.crypto_symbols, now)
        state.last_stress_test = result
        metrics, _ = compute_portfolio_risk_metrics(
            state.portfolio_equity_history, state.signal_cache, state.market_regime, now
        )
        state.portfolio_risk_dashboard = build_portfolio_risk_dashboard(
            account, positions, state.portfolio_equity_history, metrics, now
        )
        self._log(
            "Risk",
            "stress_test_completed",
            now,
            passed=result.passed,
            worst_case_drawdown_pct=round(result.worst_case_drawdown_pct, 4),
            recommended_risk_multiplier=round(result.recommended_risk_multiplier, 3),
            status="success" if result.passed else "warning",
            event_type="risk",
        )
        return result

    # ------------------------------------------------------------------
    # Analyst
    # ------------------------------------------------------------------
    async def run_analyst(self, now: int) -> None:
        state = self.state
        config = state.config
        account, positions, clock = await asyncio.gather(
            self.broker.get_account(), self.broker.get_positions(), self.broker.get_clock()
        )
        if account is None or not clock.is_open:
            self._log("Analyst", "analyst_skipped", now, reason="Market closed or no account")
            return

        snapshot_at = record_portfolio_snapshot(
            state.portfolio_equity_history, account.equity, state.last_portfolio_snapshot_at, now
        )
        if snapshot_at is not None:
            state.last_portfolio_snapshot_at = snapshot_at

        profile = self._refresh_risk_profile(account, now)
        last = state.last_stress_test
        if last is None or now - last.timestamp >= STRESS_TEST_INTERVAL_MS:
            self.run_stress_test(account, positions, now)
        stress_failed = state.last_stress_test is not None and not state.last_stress_test.passed
        self._log(
            "Risk",
            "dynamic_profile",
            now,
            regime=profile.market_regime,
            multiplier=round(profile.multiplier, 3),
            suggested_position_pct=round(profile.suggested_position_pct, 2),
            stress_failed=stress_failed,
            event_type="risk",
        )

        await self._manage_exits(positions, profile, now)

        held = {position.symbol for position in positions}
        if len(positions) >= config.max_positions or not len(state.signal_cache):
            return

        researched = sorted(
            (
                result
                for symbol, result in state.signal_research.items()
                if result.verdict == "BUY" and result.confidence >= config.min_analyst_confidence and symbol not in held
            ),
            key=lambda result: result.confidence,
            reverse=True,
        )[:MAX_RESEARCHED_BUYS]

        for result in researched:
            if len(held) >= config.max_positions:
                break
            original = state.signal_cache.latest_for_symbol(result.symbol)
            sentiment = original.sentiment if original else result.confidence
            confidence = regime_confidence_adjustment(result.confidence, sentiment, state.market_regime)
            if confidence < config.min_analyst_confidence:
                continue
            if stress_failed and confidence < HIGH_CONFIDENCE_UNDER_STRESS:
                self._log(
                    "Analyst", "buy_deferred_stress_regime", now, symbol=result.symbol, confidence=confidence
                )
                continue
            if self._correlation_blocked(result.symbol, held, now):
                continue
            if await self.execute_buy(result.symbol, confidence, account, profile, reason=result.reasoning, now=now):
                sources = sorted({signal.source_detail for signal in state.signal_cache.signals_for_symbol(result.symbol)})
                self._record_entry(result.symbol, sentiment, sources or [original.source if original else "research"], result.reasoning, now)
                held.add(result.symbol)

        decision = await analyze_signals_with_llm(state, self.llm, positions, account, profile, now=now)
        researched_symbols = {result.symbol for result in researched}
        for recommendation in decision.recommendations:
            if recommendation.confidence < config.min_analyst_confidence:
                continue
            symbol = recommendation.symbol
            if recommendation.action == "SELL" and symbol in held:
                entry = state.position_entries.get(symbol)
                held_minutes = (now - entry.entry_time) / 60_000 if entry else math.inf
                if held_minutes < config.llm_min_hold_minutes:
                    self._log(
                        "Analyst",
                        "llm_sell_blocked",
                        now,
                        symbol=symbol,
                        reason=f"Held {held_minutes:.0f} min, minimum {config.llm_min_hold_minutes:.0f}",
                    )
                    continue
                if await self.execute_sell(symbol, f"LLM recommendation: {recommendation.reasoning}", now=now):
                    held.discard(symbol)
                    self._log("Analyst", "llm_sell_executed", now, symbol=symbol, confidence=recommendation.confidence)
            elif recommendation.action == "BUY":
                if len(held) >= config.max_positions or symbol in held or symbol in researched_symbols:
                    continue
                original = state.signal_cache.latest_for_symbol(symbol)
                sentiment = original.sentiment if original else recommendation.confidence
                confidence = regime_confidence_adjustment(recommendation.confidence, sentiment, state.market_regime)
                if stress_failed and confidence < LLM_CONFIDENCE_UNDER_STRESS:
                    continue
                if confidence < config.min_analyst_confidence:
                    continue
                if self._correlation_blocked(symbol, held, now):
                    continue
                if await self.execute_buy(symbol, confidence, account, profile, reason=recommendation.reasoning, now=now):
                    self._record_entry(symbol, sentiment, ["analyst"], recommendation.reasoning, now)
                    held.add(symbol)

    def _correlation_blocked(self, symbol: str, held: Iterable[str], now: int) -> bool:
        check = should_block_correlated_trade(self.state.signal_cache, symbol, held)
        if check["blocked"]:
            self._log(
                "Analyst",
                "buy_deferred_signal_correlation",
                now,
                symbol=symbol,
                peer=check["peer"],
                max_correlation=round(check["max_correlation"], 3),
            )
            return True
        return False

    def _record_entry(self, symbol: str, sentiment: float, sources: List[str], reason: str, now: int) -> None:
        state = self.state
        signals = state.signal_cache.signals_for_symbol(symbol)
        state.position_entries[symbol] = PositionEntry(
            symbol=symbol,
            entry_time=now,
            entry_price=0.0,
            entry_sentiment=sentiment,
            entry_social_volume=float(sum(signal.volume for signal in signals)),
            entry_sources=list(sources),
            entry_reason=reason,
            peak_price=0.0,
            peak_sentiment=sentiment,
            entry_prediction=score_symbol(state, symbol, sentiment),
            entry_regime=state.market_regime.type,
        )

    async def _manage_exits(self, positions: Sequence[Position], profile: DynamicRiskProfile, now: int) -> None:
        state = self.state
        config = state.config
        for position in positions:
            if position.asset_class in ("us_option", "crypto") or self._is_crypto(position.symbol):
                continue
            entry = state.position_entries.get(position.symbol)
            if entry is not None:
                if entry.entry_price <= 0 and position.avg_entry_price > 0:
                    entry.entry_price = position.avg_entry_price
                if position.current_price > entry.peak_price:
                    entry.peak_price = position.current_price

            pl_pct = estimate_position_pnl_pct(position, entry)
            thresholds = compute_adaptive_exit_thresholds(
                profile, position, entry, config.take_profit_pct, config.stop_loss_pct
            )
            take = thresholds["take_profit_pct"]
            stop = thresholds["stop_loss_pct"]
            trailing = thresholds["trailing_stop_pct"]

            if pl_pct >= take:
                await self.execute_sell(position.symbol, f"Take profit at +{pl_pct:.1f}% (target {take:.1f}%)", now=now)
                continue
            if pl_pct <= -stop:
                await self.execute_sell(position.symbol, f"Stop loss at {pl_pct:.1f}% (limit -{stop:.1f}%)", now=now)
                continue
            if pl_pct > 0 and thresholds["peak_drawdown_pct"] <= -trailing:
                await self.execute_sell(
                    position.symbol,
                    f"Trailing stop: {thresholds['peak_drawdown_pct']:.1f}% from peak (limit -{trailing:.1f}%)",
                    now=now,
                )
                continue

            if config.stale_position_enabled and entry is not None:
                volume = sum(signal.volume for signal in state.signal_cache.signals_for_symbol(position.symbol))
                staleness = analyze_staleness(entry, position.current_price, volume, config, now)
                state.staleness_analysis[position.symbol] = {**staleness, "timestamp": now}
                if staleness["is_stale"]:
                    await self.execute_sell(position.symbol, f"STALE: {staleness['reason']}", now=now)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------
    async def execute_buy(
        self,
        symbol: str,
        confidence: float,
        account: Account,
        profile: Optional[DynamicRiskProfile] = None,
        *,
        reason: str = "",
        now: Optional[int] = None,
    ) -> bool:
        """Size, risk-check and submit a buy.  ``True`` only when accepted."""

        ts = self._now() if now is None else now
        state = self.state
        config = state.config
        if not symbol or not symbol.strip():
            self._log("Executor", "buy_blocked", ts, reason="INVARIANT: Empty symbol", event_type="trade")
            return False
        if account.cash <= 0:
            self._log("Executor", "buy_blocked", ts, symbol=symbol, reason="INVARIANT: No cash available", event_type="trade")
            return False
        if not isinstance(confidence, (int, float)) or not math.isfinite(confidence) or not 0 < confidence <= 1:
            self._log(
                "Executor",
                "buy_blocked",
                ts,
                symbol=symbol,
                reason=f"INVARIANT: Invalid confidence {confidence!r}",
                event_type="trade",
            )
            return False
        if self.gateway is None:
            self._log("Executor", "buy_blocked", ts, symbol=symbol, reason="No execution gateway", event_type="trade")
            return False

        is_crypto = self._is_crypto(symbol)
        order_symbol = normalize_crypto_symbol(symbol) if is_crypto else symbol
        try:
            profile = profile or self._refresh_risk_profile(account, ts)
            bars = None
            if self.market_data is not None:
                try:
                    bars = await self.market_data.get_bars(order_symbol, "1Day", VOLATILITY_BARS)
                except Exception as exc:
                    log_event(logger, "volatility_bars_unavailable", symbol=order_symbol, error=describe_error(exc))
            volatility = estimate_symbol_volatility(bars)
            scale = compute_dynamic_position_scale(volatility, confidence, profile.multiplier, profile.market_regime)
            size_pct = position_size_pct(profile.suggested_position_pct, scale)
            cap = min(config.crypto_max_position_value, config.max_position_value) if is_crypto else config.max_position_value
            size = min(account.cash * size_pct / 100, cap)

            if not math.isfinite(size) or size > cap * 1.01:
                self._log(
                    "Executor",
                    "buy_blocked",
                    ts,
                    symbol=symbol,
                    reason=f"INVARIANT: Position size {size} outside cap {cap}",
                    event_type="trade",
                )
                return False
            if size < MIN_ORDER_NOTIONAL:
                self._log(
                    "Executor", "buy_skipped", ts, symbol=symbol, reason="Position too small", size=round(size, 2)
                )
                return False

            time_in_force = "gtc" if is_crypto else "day"
            if self.risk_manager is not None:
                positions, clock = await asyncio.gather(self.broker.get_positions(), self.broker.get_clock())
                payload = {
                    "symbol": order_symbol,
                    "notional": round(size, 2),
                    "side": "buy",
                    "asset_class": "crypto" if is_crypto else "us_equity",
                    "order_type": "market",
                    "time_in_force": time_in_force,
                    "account": account.to_dict(),
                    "positions": [position.to_dict() for position in positions],
                    "clock": clock.to_dict(),
                    "volatility": volatility,
                    "drawdownPct": profile.max_drawdown_pct * 100,
                    "riskMultiplier": profile.multiplier,
                    "marketRegime": profile.market_regime,
                }
                try:
                    decision = await asyncio.to_thread(self.risk_manager.validate, payload)
                except RiskManagerHTTPError as exc:
                    self._log(
                        "Executor", "risk_manager_http_error", ts, symbol=symbol, http_status=exc.status, event_type="risk"
                    )
                    return False
                except Exception as exc:
                    self._log(
                        "Executor",
                        "risk_manager_unreachable",
                        ts,
                        symbol=symbol,
                        error=describe_error(exc),
                        event_type="risk",
                    )
                    return False
                if not decision.approved:
                    self._log(
                        "Executor",
                        "buy_blocked_by_risk_manager",
                        ts,
                        symbol=symbol,
                        reason=decision.reason or "rejected",
                        event_type="risk",
                    )
                    return False

            if not is_crypto:
                try:
                    asset = await self.broker.get_asset(symbol)
                except Exception as exc:
                    self._log(
                        "Executor", "buy_blocked", ts, symbol=symbol, reason=f"Asset lookup failed: {describe_error(exc)}"
                    )
                    return False
                if asset is None:
                    self._log("Executor", "buy_blocked", ts, symbol=symbol, reason="Asset not found")
                    return False
                allowed = {exchange.upper() for exchange in config.allowed_exchanges}
                if (asset.exchange or "").upper() not in allowed:
                    self._log(
                        "Executor",
                        "buy_blocked",
                        ts,
                        symbol=symbol,
                        reason=f"Exchange {asset.exchange} not allowed",
                        event_type="trade",
                    )
                    return False

            result = await self.gateway.submit_order(
                build_buy_key(order_symbol, ts),
                OrderSpec(
                    symbol=order_symbol,
                    side="buy",
                    asset_class="crypto" if is_crypto else "us_equity",
                    notional=round(size, 2),
                    order_type="market",
                    time_in_force=time_in_force,
                ),
            )
            if not result.accepted:
                self._log(
                    "Executor", "buy_not_accepted", ts, symbol=symbol, state=result.submission.state, event_type="trade"
                )
                return False

            self._log(
                "Executor",
                "buy_executed",
                ts,
                symbol=order_symbol,
                notional=round(size, 2),
                size_pct=round(size_pct, 2),
                confidence=round(confidence, 3),
                volatility=round(volatility, 4),
                reason=reason,
                order_id=result.broker_order_id,
                event_type="crypto" if is_crypto else "trade",
            )
            remember_episode(
                state.memory_episodes,
                f"Buy executed for {order_symbol} (${size:.0f})",
                "success",
                ["trade", "buy", order_symbol, profile.market_regime],
                impact=min(1.0, size / config.max_position_value) if config.max_position_value > 0 else 0.5,
                confidence=confidence,
                novelty=0.45,
                metadata={"sizePct": size_pct, "volatility": volatility},
                now=ts,
            )
            return True
        except Exception as exc:
            self._log("Executor", "buy_failed", ts, symbol=symbol, error=describe_error(exc), event_type="trade")
            remember_episode(
                state.memory_episodes,
                f"Buy failed for {order_symbol}: {describe_error(exc)}",
                "failure",
                ["trade", "buy", order_symbol, "execution_error"],
                impact=0.4,
                confidence=confidence if math.isfinite(confidence) else 0.5,
                novelty=0.5,
                now=ts,
            )
            return False

    async def execute_sell(self, symbol: str, reason: str, *, now: Optional[int] = None) -> bool:
        """Close the whole position.  ``True`` only when accepted."""

        ts = self._now() if now is None else now
        state = self.state
        if not symbol or not symbol.strip():
            self._log("Executor", "sell_blocked", ts, reason="INVARIANT: Empty symbol", event_type="trade")
            return False
        if not reason or not reason.strip():
            self._log("Executor", "sell_blocked", ts, symbol=symbol, reason="INVARIANT: No sell reason", event_type="trade")
            return False
        if self.gateway is None:
            self._log("Executor", "sell_blocked", ts, symbol=symbol, reason="No execution gateway", event_type="trade")
            return False

        try:
            position = await self.broker.get_position(symbol)
            if position is None:
                self._log("Executor", "sell_skipped", ts, symbol=symbol, reason="Position not found")
                return False
            is_crypto = position.asset_class == "crypto" or self._is_crypto(symbol)
            entry = state.position_entries.get(symbol)
            result = await self.gateway.submit_order(
                build_sell_key(symbol, entry.entry_time if entry else None, ts),
                OrderSpec(
                    symbol=symbol,
                    side="sell",
                    asset_class="crypto" if is_crypto else "us_equity",
                    qty=abs(position.qty),
                    order_type="market",
                    time_in_force="gtc" if is_crypto else "day",
                ),
            )
            if not result.accepted:
                self._log(
                    "Executor", "sell_not_accepted", ts, symbol=symbol, state=result.submission.state, event_type="trade"
                )
                return False

            pnl = position.unrealized_pl
            self._log(
                "Executor",
                "sell_executed",
                ts,
                symbol=symbol,
                qty=position.qty,
                pnl=round(pnl, 2),
                reason=reason,
                order_id=result.broker_order_id,
                event_type="crypto" if is_crypto else "trade",
            )
            return_pct = pnl / position.market_value * 100 if position.market_value else 0.0
            history = state.portfolio_equity_history
            realized_equity = history[-1].equity + pnl if history else None
            record_trade_outcome(state.predictive_model, history, symbol, return_pct, entry, realized_equity, ts)
            state.forget_position(symbol)
            remember_episode(
                state.memory_episodes,
                f"Sell executed for {symbol}: {reason}",
                "success" if pnl >= 0 else "failure",
                ["trade", "sell", symbol],
                impact=min(1.0, abs(pnl) / position.market_value) if position.market_value else 0.5,
                confidence=0.75,
                novelty=0.35,
                metadata={"pnl": pnl, "returnPct": return_pct},
                now=ts,
            )
            if self.risk_manager is not None:
                try:
                    await asyncio.to_thread(self.risk_manager.update_loss, pnl)
                except Exception as exc:
                    self._log(
                        "Executor", "risk_pnl_report_failed", ts, symbol=symbol, error=describe_error(exc), event_type="risk"
                    )
            return True
        except Exception as exc:
            self._log("Executor", "sell_failed", ts, symbol=symbol, error=describe_error(exc), event_type="trade")
            remember_episode(
                state.memory_episodes,
                f"Sell failed for {symbol}: {describe_error(exc)}",
                "failure",
                ["trade", "sell", symbol, "execution_error"],
                impact=0.3,
                confidence=0.65,
                novelty=0.4,
                now=ts,
            )
            return False

    # ------------------------------------------------------------------
    # Crypto
    # ------------------------------------------------------------------
    async def run_crypto_trading(self, positions: Sequence[Position], now: int) -> None:
        state = self.state
        config = state.config
        if state.llm_auth.is_cooling_off(now):
            self._log(
                "Crypto", "crypto_skipped", now, reason="LLM auth cool-off", time_remaining_ms=state.llm_auth.remaining_ms(now)
            )
            return

        crypto_positions = [
            position for position in positions if position.asset_class == "crypto" or self._is_crypto(position.symbol)
        ]
        for position in crypto_positions:
            pl_pct = estimate_position_pnl_pct(position, state.position_entries.get(position.symbol))
            if pl_pct >= config.crypto_take_profit_pct:
                self._log("Crypto", "take_profit", now, symbol=position.symbol, pnl_pct=round(pl_pct, 2))
                await self.execute_sell(position.symbol, f"Crypto take profit at +{pl_pct:.1f}%", now=now)
            elif pl_pct <= -config.crypto_stop_loss_pct:
                self._log("Crypto", "stop_loss", now, symbol=position.symbol, pnl_pct=round(pl_pct, 2))
                await self.execute_sell(position.symbol, f"Crypto stop loss at {pl_pct:.1f}%", now=now)

        max_crypto = min(len(config.crypto_symbols) or 3, 3)
        if len(crypto_positions) >= max_crypto:
            return

        held = {normalize_crypto_symbol(position.symbol) for position in crypto_positions}
        seen: set = set()
        candidates = []
        for signal in sorted(
            (signal for signal in state.signal_cache.signals if signal.is_crypto and signal.sentiment > 0),
            key=lambda signal: signal.momentum or 0.0,
            reverse=True,
        ):
            symbol = normalize_crypto_symbol(signal.symbol)
            if symbol in held or symbol in seen:
                continue
            seen.add(symbol)
            candidates.append(signal)
            if len(candidates) >= MAX_CRYPTO_CANDIDATES:
                break
        if not candidates:
            return

        account: Optional[Account] = None
        for signal in candidates:
            symbol = signal.symbol
            result = state.signal_research.get(symbol)
            if result is None or now - result.timestamp >= CRYPTO_RESEARCH_REUSE_MS:
                outcome = await research_signal(
                    state, self.llm, self.market_data, symbol, signal.sentiment, [signal.source], now=now
                )
                result = apply_research_outcome(state, outcome, now)
            if result is None or result.verdict != "BUY":
                self._log(
                    "Crypto", "research_skip", now, symbol=symbol, verdict=result.verdict if result else None
                )
                continue
            if result.confidence < config.min_analyst_confidence:
                self._log("Crypto", "low_confidence", now, symbol=symbol, confidence=round(result.confidence, 3))
                continue
            if account is None:
                account = await self.broker.get_account()
            if await self.execute_buy(symbol, result.confidence, account, reason=result.reasoning, now=now):
                self._record_entry(symbol, signal.sentiment, [signal.source], result.reasoning, now)
                break

    # ------------------------------------------------------------------
    # Status publication
    # ------------------------------------------------------------------
    def _status_snapshot(self, now: int) -> Dict[str, Any]:
        state = self.state
        return {
            "enabled": state.enabled,
            "kill_switch_engaged": state.kill_switch_engaged,
            "environment": self.settings.environment,
            "config": state.config.to_dict(),
            "next_wakeup_at": self.next_wakeup_at,
            "last_data_gather_run": state.last_data_gather_run,
            "last_research_run": state.last_research_run,
            "last_analyst_run": state.last_analyst_run,
            "signal_count": len(state.signal_cache),
            "signal_research": {symbol: result.to_dict() for symbol, result in state.signal_research.items()},
            "position_research": state.position_research,
            "position_entries": {symbol: entry.to_dict() for symbol, entry in state.position_entries.items()},
            "staleness_analysis": state.staleness_analysis,
            "market_regime": state.market_regime.to_dict(),
            "risk_profile": state.risk_profile,
            "last_stress_test": state.last_stress_test.to_dict() if state.last_stress_test else None,
            "portfolio_risk_dashboard": state.portfolio_risk_dashboard,
            "swarm_role_health": state.swarm_role_health,
            "last_llm_auth_error": state.llm_auth.as_status(),
            "last_broker_auth_error": state.last_broker_auth_error,
            "cost_tracker": state.cost_tracker.to_dict(),
            "published_at": now,
        }

    def _metrics_snapshot(self, now: int) -> Dict[str, Any]:
        state = self.state
        cache = state.signal_cache
        model = state.predictive_model
        return {
            "timestamp": now,
            "optimization": state.optimization.to_dict(),
            "cost_tracker": state.cost_tracker.to_dict(),
            "breakers": state.breakers.to_dict(),
            "read_budget": {
                **state.confirmation_bucket.to_dict(),
                "daily_remaining": state.confirmation_bucket.daily_remaining(),
            },
            "signal_cache": {
                "count": len(cache),
                "bytes_estimate": cache.bytes_estimate,
                "peak_bytes": cache.peak_bytes,
                "cleanup_count": cache.cleanup_count,
                "last_cleanup_at": cache.last_cleanup_at,
            },
            "signal_quality": build_signal_quality_metrics(cache, set(state.position_entries), now),
            "predictive_model": {
                "samples": model.samples,
                "hit_rate": model.hit_rate,
                "mse": model.mse,
                "last_updated_at": model.last_updated_at,
            },
            "performance_attribution": build_performance_attribution(model, now),
            "memory_episodes": len(state.memory_episodes),
            "portfolio_points": len(state.portfolio_equity_history),
            "log_entries": len(state.logs),
        }

    def _publish_status(self, now: int) -> None:
        self.status_board.publish_many(
            {
                "status": self._status_snapshot(now),
                "metrics": self._metrics_snapshot(now),
                "logs": list(self.state.logs),
            },
            timestamp=now / 1000,
        )

    async def _write_if_idle(self, action: Callable[[], None]) -> bool:
        # Reads never wait on a running tick; their side effects wait for the next read.
        if self._lock.locked():
            log_event(logger, "status_write_deferred")
            return False
        async with self._lock:
            action()
            self._persist()
        return True

    # ------------------------------------------------------------------
    # Operator surface
    # ------------------------------------------------------------------
    async def enable(self) -> Dict[str, Any]:
        async with self._lock:
            now = self._now()
            self.state.enabled = True
            if self.state.kill_switch_engaged:
                self.state.kill_switch_engaged = False
                self._log("System", "kill_switch_cleared", now, event_type="system")
            self._log("System", "agent_enabled", now, event_type="agent")
            self._persist()
            self.next_wakeup_at = now
            self._publish_status(now)
        return {"enabled": True}

    async def disable(self) -> Dict[str, Any]:
        async with self._lock:
            now = self._now()
            self.state.enabled = False
            self._log("System", "agent_disabled", now, event_type="agent")
            self._persist()
            self.next_wakeup_at = None
            self._publish_status(now)
        return {"enabled": False}

    async def trigger_now(self) -> Dict[str, Any]:
        ran = await self.tick()
        return {"triggered": ran}

    def get_config(self) -> Dict[str, Any]:
        return self.state.config.to_dict()

    async def update_config(self, changes: Mapping[str, Any]) -> Dict[str, Any]:
        """Validate and apply a partial config update.

        Raises
        ------
        ConfigValidationError
            The update was rejected; the previous config stays in place.
        """

        async with self._lock:
            now = self._now()
            try:
                updated = apply_config_update(self.state.config, changes, production=self.settings.is_production)
            except ConfigValidationError as exc:
                self._log(
                    "System",
                    "config_update_rejected",
                    now,
                    error=str(exc),
                    field=exc.field,
                    errors=exc.errors,
                    event_type="system",
                )
                self._persist()
                raise
            self.state.config = updated
            self._log("System", "config_updated", now, changed=sorted(changes), event_type="system")
            self._persist()
            self._publish_status(now)
        return updated.to_dict()

    async def get_status(self) -> Dict[str, Any]:
        """Published snapshot plus best-effort live broker data.

        Broker failures never raise; they surface as ``broker_error``.  An
        auth-class failure is cached for a minute so repeated status polls do
        not hammer a broker that is rejecting our credentials.
        """

        now = self._now()
        status = self.status_board.get("status") or self._status_snapshot(now)
        live: Dict[str, Any] = {"account": None, "positions": [], "clock": None, "broker_error": None}
        cached = self.state.last_broker_auth_error
        if cached and now - int(cached.get("at") or 0) < BROKER_AUTH_CACHE_MS:
            live["broker_error"] = cached.get("message")
        elif self.broker is None:
            live["broker_error"] = "Broker not configured"
        else:
            try:
                account, positions, clock = await asyncio.gather(
                    self.broker.get_account(), self.broker.get_positions(), self.broker.get_clock()
                )
            except Exception as exc:
                live["broker_error"] = describe_error(exc)
                if is_broker_auth_error(exc):
                    await self._write_if_idle(lambda: self._record_broker_auth_error(exc, now))
            else:
                live.update(
                    account=account.to_dict(),
                    positions=[position.to_dict() for position in positions],
                    clock=clock.to_dict(),
                )
                await self._write_if_idle(lambda: self._observe_portfolio(account, positions, now))
        status.update(live)
        return status

    def _observe_portfolio(self, account: Account, positions: Sequence[Position], now: int) -> None:
        state = self.state
        state.last_broker_auth_error = None
        snapshot_at = record_portfolio_snapshot(
            state.portfolio_equity_history, account.equity, state.last_portfolio_snapshot_at, now
        )
        if snapshot_at is not None:
            state.last_portfolio_snapshot_at = snapshot_at
        for position in positions:
            entry = state.position_entries.get(position.symbol)
            if entry is not None and entry.entry_price <= 0 and position.avg_entry_price > 0:
                entry.entry_price = position.avg_entry_price

    def get_metrics(self) -> Dict[str, Any]:
        return self.status_board.get("metrics") or self._metrics_snapshot(self._now())

    def get_logs(self, limit: Optional[int] = 200, **filters: Any) -> Dict[str, Any]:
        """Filtered activity log from the last published snapshot."""

        return filter_activity_logs(self.status_board.get("logs", []), limit=limit, **filters)

    async def run_stress_test_now(self) -> Dict[str, Any]:
        if self.broker is None:
            raise RuntimeError("Broker not configured")
        async with self._lock:
            now = self._now()
            account, positions = await asyncio.gather(self.broker.get_account(), self.broker.get_positions())
            result = self.run_stress_test(account, positions, now)
            self._persist()
            self._publish_status(now)
        return result.to_dict()

    async def reset(self) -> Dict[str, Any]:
        """Drop all learned and cached state, keeping the current config."""

        async with self._lock:
            now = self._now()
            self.state = AgentState(config=self.state.config)
            self._log("System", "agent_reset", now, event_type="system")
            self._persist()
            self.next_wakeup_at = None
            self._publish_status(now)
        return {"reset": True}

    async def kill(self, secret: str) -> Dict[str, Any]:
        """Emergency stop guarded by ``KILL_SWITCH_SECRET``.

        Raises
        ------
        PermissionError
            No secret is configured or ``secret`` does not match it.
        """

        expected = self.settings.kill_switch_secret
        if not expected:
            raise PermissionError("Kill switch secret not configured")
        if not hmac.compare_digest(str(secret or "").encode("utf-8"), expected.encode("utf-8")):
            log_event(logger, "kill_switch_rejected")
            raise PermissionError("Invalid kill switch secret")
        async with self._lock:
            now = self._now()
            state = self.state
            state.enabled = False
            state.kill_switch_engaged = True
            state.signal_cache.clear()
            state.signal_research.clear()
            state.position_research.clear()
            self._log(
                "System",
                "kill_switch_activated",
                now,
                reason="Emergency kill via operator",
                status="warning",
                event_type="system",
            )
            self._persist()
            self.next_wakeup_at = None
            self._publish_status(now)
        return {"killed": True, "enabled": False}

    # ------------------------------------------------------------------
    # Timer
    # ------------------------------------------------------------------
    async def run_forever(self, *, interval_s: Optional[float] = None, max_ticks: Optional[int] = None) -> None:
        """Tick until :meth:`stop`, re-arming after every tick."""

        if interval_s:
            self.tick_interval_ms = int(interval_s * 1000)
        self._stopping = asyncio.Event()
        ticks = 0
        while not self._stopping.is_set():
            await self.tick()
            ticks += 1
            if max_ticks is not None and ticks >= max_ticks:
                break
            wake_at = self.next_wakeup_at
            delay = (wake_at - self._now()) / 1000 if wake_at is not None else self.tick_interval_ms / 1000
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=max(0.0, delay))
            except asyncio.TimeoutError:
                pass

    def stop(self) -> None:
        if self._stopping is not None:
            self._stopping.set()


def main(cli_args: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Run the adaptive trading agent loop.")
    parser.add_argument("--once", action="store_true", help="Run a single tick and exit")
    parser.add_argument("--interval", type=float, help="Seconds between ticks (default TICK_INTERVAL_SECONDS)")
    parser.add_argument("--enable", action="store_true", help="Enable the agent before the first tick")
    args = parser.parse_args(cli_args)

    settings = load_runtime_settings()
    agent = TradingAgent.from_settings(settings)

    async def _run() -> None:
        if args.enable:
            await agent.enable()
        if args.once:
            await agent.tick()
        else:
            await agent.run_forever(interval_s=args.interval)

    logger.info("Starting trading agent loop (environment=%s)...", settings.environment)
    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        logger.info("Trading agent stopped")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
