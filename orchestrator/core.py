"""
Orchestrator - Core.

============================================================
RESPONSIBILITY
============================================================
The trading engine. Wires planners, guards, managers and the
position tracker around one database session and runs the
periodic jobs an external scheduler invokes.

JOBS (one invocation per job at a time):
- process_signal         signal -> plan -> approval -> execution
- execute_approved_plan  risk gate, size reductions, buy or close
- run_position_cycle     exits, partial exits, DCA, conditional orders
- run_risk_checks        loss cool-down escalation, drawdown report
- run_maintenance        plan expiry, lock cleanup, order replacement

CONTROL SURFACE:
pause, resume, force_close, approve_plan, reject_plan,
unlock_pair, emergency_stop, get_status

============================================================
ARCHITECTURAL POSITION
============================================================
- The engine holds no trading rules of its own
- It never bypasses the risk gate or a pair lock
- Per-symbol failures are logged and isolated

============================================================
"""

import asyncio
import json
import logging
import math
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from core.clock import ClockProtocol, SystemClock
from core.exceptions import BrokerError, DataStalenessError
from conditional_orders import ConditionalOrderEngine, TriggeredAction
from execution_engine import (
    BrokerExecution,
    BuyRequest,
    CloseRequest,
    ExecutionResult,
    ExecutionStrategy,
    OrderManager,
    OrderReplacer,
    SimulatedExecution,
)
from execution_engine.adapters import BrokerAdapter
from monitoring.audit import AuditLogger
from monitoring.broadcast import BroadcastEventType, BroadcastHub
from position_management import DCAManager, PartialExitManager, PositionTracker, QuoteProvider
from risk_management import (
    CooldownAction,
    CorrelationAnalyzer,
    DrawdownReport,
    LossCooldown,
    PairLockManager,
    PortfolioState,
    PriceHistoryProvider,
    ProtectionLedger,
    RiskGuard,
    TradeProposal,
)
from storage.models.enums import AccountType, AuditSeverity, TradeSide
from storage.models.trading import Position, TradePlan
from storage.repositories import PortfolioSnapshotRepository, PositionRepository, TradeRepository
from trade_planning import ApprovalManager, ApprovalPolicy, ScoringSignal, SignalDecision, TimeoutPolicy, TradePlanner
from orchestrator.config import EngineConfig


logger = logging.getLogger(__name__)


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
UNKNOWN_SECTOR = "Unknown"


# ============================================================
# LOGGING SETUP
# ============================================================

class JsonFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def setup_logging(level: str = "INFO", log_format: str = "text") -> logging.Logger:
    """
    Configure the root logger to write to stdout.

    Args:
        level: Log level name
        log_format: "text" or "json"

    Returns:
        The engine logger
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    if log_format == "json":
        formatter: logging.Formatter = JsonFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s | %(levelname)-8s | %(name)s | %(message)s")

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = [handler]

    return logging.getLogger("orchestrator")


# ============================================================
# RESULTS
# ============================================================

@dataclass
class EmergencyStopResult:
    """Outcome of closing every position at once."""

    closed: int
    total: int
    failed: List[str] = field(default_factory=list)


@dataclass
class PositionCycleResult:
    prices_updated: int = 0
    closed: List[str] = field(default_factory=list)
    partial_exits: List[str] = field(default_factory=list)
    dca_rounds: List[str] = field(default_factory=list)
    conditional_triggered: List[TriggeredAction] = field(default_factory=list)
    conditional_buys: List[TriggeredAction] = field(default_factory=list)
    """Triggered buy actions; they need a signal and plan from the caller."""

    failures: List[str] = field(default_factory=list)


@dataclass
class RiskCheckResult:
    cooldown_action: CooldownAction = CooldownAction.NONE
    drawdown: Optional[DrawdownReport] = None
    emergency_stop: Optional[EmergencyStopResult] = None
    skipped: bool = False
    """Portfolio figures were stale; nothing was evaluated."""


@dataclass
class MaintenanceResult:
    plans_executed: int = 0
    locks_cleaned: int = 0
    conditional_expired: int = 0
    orders_replaced: int = 0
    externally_closed: List[str] = field(default_factory=list)


# ============================================================
# TRADING ENGINE
# ============================================================

class TradingEngine:
    """
    Main trading engine.

    All components share the injected session and clock. The
    execution strategy defaults to simulated fills in dry-run mode
    and to broker execution through ``adapter`` otherwise.
    """

    def __init__(
        self,
        session: Session,
        config: EngineConfig,
        quotes: QuoteProvider,
        adapter: Optional[BrokerAdapter] = None,
        clock: Optional[ClockProtocol] = None,
        history: Optional[PriceHistoryProvider] = None,
        strategy: Optional[ExecutionStrategy] = None,
        broadcaster: Optional[BroadcastHub] = None,
    ):
        config.validate()
        self._config = config
        self._clock = clock or SystemClock()
        self._quotes = quotes
        self._broadcaster = broadcaster or BroadcastHub(self._clock)
        self._audit = AuditLogger(session, self._clock)

        if strategy is None:
            if config.dry_run:
                strategy = SimulatedExecution()
            else:
                if adapter is None:
                    raise ValueError("A broker adapter is required when dry_run is off")
                strategy = BrokerExecution(adapter, config.execution)
        if adapter is None and isinstance(strategy, BrokerExecution):
            adapter = strategy.adapter
        self._adapter = adapter

        self._positions = PositionRepository(session)
        self._trades = TradeRepository(session)
        self._snapshots = PortfolioSnapshotRepository(session)

        # Risk
        self._locks = PairLockManager(session, self._clock, self._audit)
        correlation = (
            CorrelationAnalyzer(history, config.risk.correlation_lookback_days)
            if history is not None else None
        )
        self._risk_guard = RiskGuard(self._trades, self._locks, correlation, config.risk)
        self._cooldown = LossCooldown(
            config.risk.daily_loss_limit_pct, self._clock, config.cooldown, self._audit
        )
        self._protections = ProtectionLedger(self._trades, self._locks, self._clock, config.protections)

        # Planning
        self._planner = TradePlanner(session, self._clock, config.planning)
        self._approval = ApprovalManager(
            self._planner,
            ApprovalPolicy.MANUAL if config.planning.require_approval else ApprovalPolicy.AUTO,
            TimeoutPolicy(config.planning.timeout_policy),
            self._audit,
        )

        # Execution and positions
        self._order_manager = OrderManager(session, strategy, self._audit, self._clock, config.execution)
        self._replacer = OrderReplacer(session, strategy, quotes, self._clock, config.replacer, self._audit)
        self._tracker = PositionTracker(session, quotes, self._clock, config.exits)
        self._dca = DCAManager(session, self._order_manager, self._clock, config.dca)
        self._partial_exits = PartialExitManager(self._order_manager, config.partial_exits)
        self._conditional = ConditionalOrderEngine(session, self._clock, config.conditional_orders)

        # Runtime state
        self._paused = False
        self._pause_reason: Optional[str] = None
        self._cached_cash: Optional[Tuple[float, datetime]] = None
        self._started_at = self._clock.now()

        logger.info(
            f"TradingEngine initialized | dry_run={config.dry_run} | strategy={strategy.name} | "
            f"approval={self._approval.policy.value}"
        )

    # --------------------------------------------------------
    # Properties
    # --------------------------------------------------------

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def pause_reason(self) -> Optional[str]:
        return self._pause_reason

    @property
    def audit(self) -> AuditLogger:
        return self._audit

    @property
    def broadcaster(self) -> BroadcastHub:
        return self._broadcaster

    @property
    def planner(self) -> TradePlanner:
        return self._planner

    @property
    def order_manager(self) -> OrderManager:
        return self._order_manager

    @property
    def risk_guard(self) -> RiskGuard:
        return self._risk_guard

    @property
    def cooldown(self) -> LossCooldown:
        return self._cooldown

    @property
    def locks(self) -> PairLockManager:
        return self._locks

    @property
    def conditional_orders(self) -> ConditionalOrderEngine:
        return self._conditional

    # --------------------------------------------------------
    # Portfolio State
    # --------------------------------------------------------

    async def get_portfolio_state(self) -> PortfolioState:
        """
        Current portfolio figures.

        Cash comes from the broker on every call. When the broker is
        unavailable a cached figure younger than the configured age
        stands in; beyond that trading is paused and the state is
        flagged stale.
        """
        positions = self._positions.get_all()
        now = self._clock.now()
        stale = False

        try:
            cash = await self._fetch_cash(positions)
            self._cached_cash = (cash, now)
        except (BrokerError, asyncio.TimeoutError) as e:
            try:
                cash = self._cached_cash_or_raise(e)
            except DataStalenessError as stale_error:
                logger.error(f"{stale_error.message}, pausing trading")
                cash = self._cached_cash[0] if self._cached_cash is not None else 0.0
                stale = True
                self._pause("Portfolio data stale and broker unavailable", by="system")

        positions_value = sum(self._market_value(p) for p in positions)
        total_value = cash + positions_value

        unrealized = sum(
            ((p.current_price or p.entry_price) - p.entry_price) * p.shares for p in positions
        )
        today_pnl = self._trades.realized_pnl_since(self._clock.start_of_day()) + unrealized

        sector_exposure: Dict[str, int] = {}
        sector_value: Dict[str, float] = {}
        for position in positions:
            sector = position.sector or UNKNOWN_SECTOR
            sector_exposure[sector] = sector_exposure.get(sector, 0) + 1
            sector_value[sector] = sector_value.get(sector, 0.0) + self._market_value(position)
        if total_value > 0:
            sector_value = {sector: value / total_value for sector, value in sector_value.items()}

        peak_value = max(total_value, self._snapshots.get_peak_value())

        return PortfolioState(
            cash=cash,
            total_value=total_value,
            open_positions=len(positions),
            today_pnl=today_pnl,
            today_pnl_pct=today_pnl / total_value if total_value > 0 else 0.0,
            sector_exposure=sector_exposure,
            sector_exposure_value=sector_value,
            peak_value=peak_value,
            held_symbols=[p.symbol for p in positions],
            fetched_at=now,
            is_stale=stale,
        )

    async def _fetch_cash(self, positions: List[Position]) -> float:
        if self._order_manager.strategy.is_live and self._adapter is not None:
            account = await self._adapter.get_account_cash()
            return float(account.free)

        # Paper ledger: starting cash plus realized P&L less capital still invested
        invested = sum(p.total_invested or p.shares * p.entry_price for p in positions)
        return self._config.paper_cash + self._trades.realized_pnl_since(EPOCH) - invested

    def _cached_cash_or_raise(self, error: Exception) -> float:
        max_age = self._config.portfolio_cache_max_age_minutes
        if self._cached_cash is None:
            raise DataStalenessError(
                f"Broker cash unavailable ({error}) and nothing cached",
                data_type="cash",
                max_age_seconds=max_age * 60,
            )

        cash, fetched_at = self._cached_cash
        age = self._clock.minutes_since(fetched_at)
        if age >= max_age:
            raise DataStalenessError(
                f"Broker cash unavailable ({error}) and cached value is {age:.1f} minutes old",
                data_type="cash",
                age_seconds=age * 60,
                max_age_seconds=max_age * 60,
            )

        logger.warning(f"Broker cash unavailable ({error}), using cached value from {age:.1f} minutes ago")
        return cash

    @staticmethod
    def _market_value(position: Position) -> float:
        return (position.current_price or position.entry_price) * position.shares

    def _record_snapshot(self, portfolio: PortfolioState) -> None:
        self._snapshots.record_snapshot(
            taken_at=self._clock.now(),
            cash=portfolio.cash,
            total_value=portfolio.total_value,
            peak_value=portfolio.peak_value,
        )
        self._snapshots.commit()

    # --------------------------------------------------------
    # Signals and Plans
    # --------------------------------------------------------

    async def process_signal(
        self,
        signal: ScoringSignal,
        symbol: str,
        ticker: str,
        price: float,
        sector: Optional[str] = None,
    ) -> Optional[TradePlan]:
        """
        Turn a model signal into a plan and, when approved, a trade.

        Returns the plan, or None when no plan was created.
        """
        if self._paused:
            logger.info(f"Engine paused ({self._pause_reason}), ignoring signal for {symbol}")
            return None

        self._audit.log_signal(
            symbol,
            f"{signal.decision.value} signal, conviction {signal.conviction:.0f}",
            details=signal.model_dump(mode="json"),
        )
        self._broadcast(BroadcastEventType.SIGNAL, {
            "symbol": symbol,
            "decision": signal.decision.value,
            "conviction": signal.conviction,
        })

        if not signal.is_actionable:
            return None

        lock = self._locks.is_pair_locked(symbol)
        if lock is not None:
            logger.info(f"{symbol} is locked until {lock.lock_end.isoformat()} ({lock.reason}), skipping signal")
            return None

        portfolio = await self.get_portfolio_state()
        if portfolio.is_stale:
            return None

        if signal.decision == SignalDecision.SELL and symbol not in portfolio.held_symbols:
            logger.debug(f"SELL signal for {symbol} without a position, ignoring")
            return None

        if signal.decision == SignalDecision.BUY:
            correlation = self._risk_guard.check_correlation(symbol, portfolio.held_symbols)
            if not correlation.allowed:
                self._audit.log_risk(f"Signal blocked: {correlation.reason}", symbol, {"check": correlation.check})
                return None

        plan = self._planner.create_plan(signal, symbol, ticker, price, portfolio, sector)
        if plan is None:
            return None
        self._broadcast(BroadcastEventType.PLAN, {"id": plan.id, "symbol": symbol, "status": plan.status})

        decision = self._approval.process_new_plan(plan)
        if decision.should_execute:
            await self.execute_approved_plan(decision.plan)
        else:
            logger.info(f"Plan awaiting approval:\n{self._planner.format_plan_message(plan)}")
        return decision.plan

    async def execute_approved_plan(self, plan: TradePlan) -> Optional[ExecutionResult]:
        """
        Run the risk gate with fresh figures, then buy or close.

        A plan that cannot run because trading is paused or the
        portfolio figures are stale is rejected, never left approved.
        """
        if self._paused:
            logger.info(f"Engine paused ({self._pause_reason}), rejecting plan {plan.id}")
            self._planner.reject_plan(plan.id, rejected_by="paused")
            return None

        portfolio = await self.get_portfolio_state()
        if portfolio.is_stale:
            logger.warning(f"Portfolio figures stale, rejecting plan {plan.id}")
            self._planner.reject_plan(plan.id, rejected_by="stale-portfolio")
            return None

        side = TradeSide(plan.side)
        shares = plan.shares
        if side == TradeSide.BUY:
            streak = self._risk_guard.get_losing_streak_multiplier()
            if streak < 1.0 or self._cooldown.is_active():
                shares = self._cooldown.apply_size_reductions(plan.shares, streak)
                logger.info(f"Size reduced for {plan.symbol}: {plan.shares:g} -> {shares:g} shares")

        proposal = TradeProposal(
            symbol=plan.symbol,
            side=side,
            shares=shares,
            price=plan.entry_price,
            stop_loss_pct=plan.stop_loss_pct,
            position_size_pct=shares * plan.entry_price / portfolio.total_value if portfolio.total_value > 0 else 0.0,
            sector=plan.sector,
        )
        validation = self._risk_guard.validate_trade(proposal, portfolio)
        if not validation.allowed:
            self._audit.log_risk(
                f"Trade blocked: {validation.reason}",
                plan.symbol,
                {"check": validation.check, "plan_id": plan.id},
            )
            self._planner.reject_plan(plan.id, rejected_by=f"risk:{validation.check}")
            return None

        if side == TradeSide.BUY:
            result = await self._order_manager.execute_buy(BuyRequest(
                symbol=plan.symbol,
                ticker=plan.ticker,
                shares=shares,
                price=plan.entry_price,
                stop_loss_pct=plan.stop_loss_pct,
                take_profit_pct=plan.take_profit_pct,
                conviction=plan.conviction,
                reasoning=plan.reasoning or "",
                model_name=plan.model_name,
                account_type=AccountType(plan.account_type),
                plan_id=plan.id,
                sector=plan.sector,
                exit_conditions=plan.exit_conditions,
                max_hold_days=plan.max_hold_days,
            ))
            self._broadcast(BroadcastEventType.TRADE, result.to_dict())
        else:
            result = await self._close_position(plan.symbol, f"Model sell signal (plan {plan.id})", plan.entry_price)

        if result.success:
            self._planner.mark_executed(plan.id)
            if side == TradeSide.BUY:
                self._broadcast(BroadcastEventType.POSITION, {"symbol": plan.symbol, "status": "opened"})
        else:
            logger.warning(f"Plan {plan.id} execution failed: {result.code.value} {result.message}")
            self._planner.reject_plan(plan.id, rejected_by="execution")
        return result

    # --------------------------------------------------------
    # Closing
    # --------------------------------------------------------

    async def _close_position(
        self,
        symbol: str,
        reason: str,
        price: Optional[float] = None,
        protect: bool = True,
    ) -> ExecutionResult:
        position = self._positions.get_by_symbol(symbol)
        account_type = AccountType(position.account_type) if position is not None else AccountType.INVEST
        result = await self._order_manager.execute_close(
            CloseRequest(symbol=symbol, reason=reason, price=price, account_type=account_type)
        )
        self._broadcast(BroadcastEventType.TRADE, result.to_dict())
        if result.success:
            if protect:
                self._after_close(symbol, reason, result.pnl_pct or 0.0)
            self._broadcast(BroadcastEventType.POSITION, {"symbol": symbol, "status": "closed", "reason": reason})
        return result

    def _after_close(self, symbol: str, reason: str, pnl_pct: float) -> None:
        locks = self._protections.evaluate_after_close(symbol, reason, pnl_pct)
        for lock in locks:
            logger.info(f"Protection lock on {lock.symbol} until {lock.lock_end.isoformat()} ({lock.reason})")

    async def _close_all(self, reason: str) -> EmergencyStopResult:
        # one position at a time: every close shares the session
        symbols = [p.symbol for p in self._positions.get_all()]
        result = EmergencyStopResult(closed=0, total=len(symbols))
        for symbol in symbols:
            try:
                outcome = await self._close_position(symbol, reason, protect=False)
            except Exception as e:
                logger.error(f"Failed to close {symbol} during '{reason}': {e}", exc_info=True)
                result.failed.append(symbol)
                continue

            if outcome.success:
                result.closed += 1
            else:
                logger.error(f"Failed to close {symbol} during '{reason}': {outcome.code.value} {outcome.message}")
                result.failed.append(symbol)
        return result

    # --------------------------------------------------------
    # Position Cycle
    # --------------------------------------------------------

    async def run_position_cycle(
        self,
        indicators: Optional[Dict[str, Dict[str, float]]] = None,
    ) -> PositionCycleResult:
        """
        Mark to market, close what must close, then adjust the rest.

        ``indicators`` feeds indicator-triggered conditional orders
        (symbol -> indicator name -> value).
        """
        result = PositionCycleResult()

        exit_check = await self._tracker.run_cycle()
        result.prices_updated = exit_check.prices_updated
        for symbol in exit_check.positions_to_close:
            reason = exit_check.exit_reasons[symbol]
            try:
                outcome = await self._close_position(symbol, reason)
            except Exception as e:
                logger.error(f"Exit for {symbol} failed: {e}", exc_info=True)
                result.failures.append(symbol)
                continue
            if outcome.success:
                result.closed.append(symbol)
            else:
                result.failures.append(symbol)

        if self._partial_exits.enabled or self._dca.enabled:
            portfolio = await self.get_portfolio_state() if self._dca.enabled else None
            for position in self._positions.get_all():
                try:
                    await self._adjust_position(position, portfolio, result)
                except Exception as e:
                    logger.error(f"Position adjustment for {position.symbol} failed: {e}", exc_info=True)
                    result.failures.append(position.symbol)

        if self._conditional.enabled:
            prices = await self._conditional_prices()
            triggered = self._conditional.check_triggers(prices, indicators)
            result.conditional_triggered = triggered
            for action in triggered:
                try:
                    await self._execute_conditional(action, prices, result)
                except Exception as e:
                    logger.error(f"Conditional order {action.order_id} failed: {e}", exc_info=True)
                    result.failures.append(action.symbol)

        logger.info(
            f"Position cycle: {len(result.closed)} closed, {len(result.partial_exits)} partial, "
            f"{len(result.dca_rounds)} DCA, {len(result.conditional_triggered)} conditional"
        )
        return result

    async def _adjust_position(
        self,
        position: Position,
        portfolio: Optional[PortfolioState],
        result: PositionCycleResult,
    ) -> None:
        symbol = position.symbol

        if self._partial_exits.enabled:
            evaluation = self._partial_exits.evaluate_position(position)
            if evaluation.should_exit:
                outcome = await self._partial_exits.execute_partial_exit(
                    symbol, evaluation.shares_to_sell, evaluation.reason
                )
                self._broadcast(BroadcastEventType.TRADE, outcome.to_dict())
                if outcome.success:
                    result.partial_exits.append(symbol)
                return

        if not self._dca.enabled or self._paused or portfolio is None or portfolio.is_stale:
            return
        if not position.current_price:
            return

        evaluation = self._dca.evaluate_position(symbol, position.current_price, position, portfolio)
        if not evaluation.should_dca:
            return
        if self._locks.is_pair_locked(symbol) is not None:
            logger.info(f"DCA for {symbol} skipped, pair is locked")
            return

        outcome = await self._dca.execute_dca(symbol, evaluation.shares, position.current_price)
        self._broadcast(BroadcastEventType.TRADE, outcome.to_dict())
        if outcome.success:
            result.dca_rounds.append(symbol)
            portfolio.cash -= evaluation.shares * position.current_price

    async def _conditional_prices(self) -> Dict[str, float]:
        prices = {
            p.symbol: p.current_price for p in self._positions.get_all() if p.current_price
        }
        for symbol in self._conditional.pending_symbols():
            if symbol in prices:
                continue
            try:
                quote = await self._quotes.get_quote(symbol)
            except Exception as e:
                logger.error(f"Quote failed for {symbol}: {e}")
                continue
            if quote:
                prices[symbol] = quote
        return prices

    async def _execute_conditional(
        self,
        triggered: TriggeredAction,
        prices: Dict[str, float],
        result: PositionCycleResult,
    ) -> None:
        action = triggered.action
        symbol = triggered.symbol
        self._audit.log_trade(
            symbol,
            f"Conditional order {triggered.order_id} triggered: {action.type}",
            details={"order_id": triggered.order_id, "trigger_type": triggered.trigger_type.value, "action": action.to_dict()},
        )

        if action.type == "buy":
            # new entries need a signal and plan
            result.conditional_buys.append(triggered)
            return

        position = self._positions.get_by_symbol(symbol)
        if position is None:
            logger.warning(f"Conditional sell {triggered.order_id} fired but {symbol} is not held")
            return

        if action.shares:
            shares = math.floor(action.shares)
        elif action.pct:
            shares = math.floor(position.shares * action.pct)
        else:
            shares = position.shares
        if shares < 1:
            logger.warning(f"Conditional sell {triggered.order_id} resolves to less than 1 share")
            return

        reason = f"Conditional order {triggered.order_id} ({triggered.trigger_type.value})"
        price = prices.get(symbol)
        if shares >= position.shares:
            outcome = await self._close_position(symbol, reason, price)
        else:
            outcome = await self._order_manager.execute_partial_sell(symbol, shares, reason, price)
            self._broadcast(BroadcastEventType.TRADE, outcome.to_dict())

        if outcome.success:
            self._conditional.mark_executed(triggered.order_id)

    # --------------------------------------------------------
    # Risk Checks
    # --------------------------------------------------------

    async def run_risk_checks(self) -> RiskCheckResult:
        """Loss cool-down escalation and drawdown report."""
        portfolio = await self.get_portfolio_state()
        if portfolio.is_stale:
            return RiskCheckResult(skipped=True)

        self._record_snapshot(portfolio)
        result = RiskCheckResult()

        result.cooldown_action = self._cooldown.evaluate(portfolio)
        if result.cooldown_action == CooldownAction.ENTERED_COOLDOWN:
            self._broadcast(BroadcastEventType.BOT_STATUS, {
                "status": "cooldown",
                "message": f"Loss cool-down active until {self._cooldown.cooldown_until.isoformat()}",
            })
        elif result.cooldown_action == CooldownAction.CONTINUE_REDUCED:
            logger.warning(
                f"Daily loss {portfolio.today_pnl_pct:.2%} beyond limit during cool-down, "
                f"continuing with reduced sizing"
            )
        elif result.cooldown_action == CooldownAction.HARD_BREACH:
            self._pause("Hard loss limit emergency stop", by="risk")
            result.emergency_stop = await self._close_all("Hard loss limit emergency stop")
            self._audit.log_risk(
                f"Hard loss limit: {result.emergency_stop.closed}/{result.emergency_stop.total} positions closed",
                details={"failed": result.emergency_stop.failed},
                severity=AuditSeverity.CRITICAL,
            )
            return result

        result.drawdown = self._risk_guard.check_drawdown(portfolio)
        if result.drawdown.breached:
            self._audit.log_risk(
                f"Drawdown {result.drawdown.drawdown_pct:.2%} exceeds alert threshold "
                f"{result.drawdown.threshold:.2%}",
                details={"peak_value": result.drawdown.peak_value, "current_value": result.drawdown.current_value},
            )
        return result

    # --------------------------------------------------------
    # Maintenance
    # --------------------------------------------------------

    async def run_maintenance(self) -> MaintenanceResult:
        result = MaintenanceResult()

        for plan in self._approval.check_expired_plans():
            try:
                outcome = await self.execute_approved_plan(plan)
            except Exception as e:
                logger.error(f"Timed-out plan {plan.id} failed to execute: {e}", exc_info=True)
                continue
            if outcome is not None and outcome.success:
                result.plans_executed += 1

        result.locks_cleaned = self._locks.cleanup_expired()
        result.conditional_expired = self._conditional.expire_old_orders()

        replaced = await self._replacer.process_open_orders()
        result.orders_replaced = replaced.replaced

        if self._order_manager.strategy.is_live and self._adapter is not None:
            sync = await self._tracker.sync_with_broker(self._adapter)
            result.externally_closed = sync.externally_closed

        logger.info(
            f"Maintenance: {result.plans_executed} plans executed, {result.locks_cleaned} locks cleaned, "
            f"{result.conditional_expired} conditional expired, {result.orders_replaced} orders replaced"
        )
        return result

    # --------------------------------------------------------
    # Control Surface
    # --------------------------------------------------------

    def _pause(self, reason: str, by: str) -> None:
        if self._paused:
            return
        self._paused = True
        self._pause_reason = reason
        logger.warning(f"Trading paused by {by}: {reason}")
        self._audit.log_control("Trading paused", by, details={"reason": reason}, severity=AuditSeverity.WARN)
        self._broadcast(BroadcastEventType.BOT_STATUS, {"status": "paused", "message": reason})

    def pause(self, by: str = "manual", reason: str = "Manual pause") -> None:
        self._pause(reason, by)

    def resume(self, by: str = "manual") -> None:
        if not self._paused:
            return
        self._paused = False
        self._pause_reason = None
        logger.info(f"Trading resumed by {by}")
        self._audit.log_control("Trading resumed", by)
        self._broadcast(BroadcastEventType.BOT_STATUS, {"status": "running", "message": f"Resumed by {by}"})

    async def force_close(self, symbol: str, by: str = "manual") -> ExecutionResult:
        self._audit.log_control("Force close", by, symbol)
        return await self._close_position(symbol, f"Manual close by {by}")

    async def approve_plan(self, plan_id: int, by: str = "manual") -> Optional[ExecutionResult]:
        """
        Approve a pending plan and execute it.

        None when the plan was already resolved or trading is paused;
        a paused engine leaves the plan pending for the expiry sweep.
        """
        if self._paused:
            logger.warning(f"Approval of plan {plan_id} by {by} refused: trading paused ({self._pause_reason})")
            return None
        plan = self._approval.handle_approval(plan_id, True, by)
        if plan is None:
            return None
        return await self.execute_approved_plan(plan)

    def reject_plan(self, plan_id: int, by: str = "manual") -> Optional[TradePlan]:
        return self._approval.handle_approval(plan_id, False, by)

    def unlock_pair(self, symbol: str, by: str = "manual") -> int:
        return self._locks.unlock_pair(symbol, by)

    async def emergency_stop(self, by: str = "manual") -> EmergencyStopResult:
        """Pause, then close every position one at a time."""
        logger.warning(f"EMERGENCY STOP by {by}: closing all positions and pausing")
        self._pause("Emergency stop", by)
        self._audit.log_control("EMERGENCY STOP triggered", by, severity=AuditSeverity.CRITICAL)

        result = await self._close_all("Emergency stop")
        self._audit.log_control(
            f"Emergency stop finished: {result.closed}/{result.total} closed",
            by,
            details={"failed": result.failed},
            severity=AuditSeverity.CRITICAL if result.failed else AuditSeverity.WARN,
        )
        self._broadcast(BroadcastEventType.BOT_STATUS, {
            "status": "paused",
            "message": f"Emergency stop: {result.closed}/{result.total} positions closed",
        })
        return result

    def get_status(self) -> Dict[str, Any]:
        return {
            "paused": self._paused,
            "pause_reason": self._pause_reason,
            "dry_run": self._config.dry_run,
            "started_at": self._started_at.isoformat(),
            "open_positions": self._positions.count_open(),
            "pending_plans": len(self._planner.get_pending_plans()),
            "cooldown_until": (
                self._cooldown.cooldown_until.isoformat() if self._cooldown.is_active() else None
            ),
            "active_locks": [
                {"symbol": lock.symbol, "reason": lock.reason, "lock_end": lock.lock_end.isoformat()}
                for lock in self._locks.get_active_locks()
            ],
            "conditional_orders": self._conditional.get_status().active_count,
        }

    # --------------------------------------------------------
    # Broadcast
    # --------------------------------------------------------

    def _broadcast(self, event_type: BroadcastEventType, payload: Dict[str, Any]) -> None:
        self._broadcaster.broadcast(event_type, payload)
