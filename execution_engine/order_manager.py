"""
Execution Engine - Order Manager.

============================================================
PURPOSE
============================================================
The single chokepoint between trading decisions and the broker.

RESPONSIBILITIES:
- Write an Order record before the broker is contacted
- Fill through the injected ExecutionStrategy
- Move Order records through the order state machine
- Record fills in the Trade ledger and update Position records
- Place and cancel protective stop / take-profit orders
- Audit every outcome

CRITICAL PRINCIPLES:
- Broker failures come back as ExecutionResult values
- A failed fill never touches position state
- Dry run and live share one bookkeeping path
- No deduplication of concurrent calls for the same symbol

============================================================
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from core.clock import ClockProtocol, SystemClock
from core.exceptions import BrokerError, OrderError
from monitoring.audit import AuditLogger
from storage.models.enums import AuditSeverity, OrderStatus, OrderTag, OrderType, TradeSide
from storage.models.trading import Order, Position
from storage.repositories import OrderRepository, PositionRepository, TradeRepository
from storage.repositories.exceptions import DuplicateRecordError
from execution_engine.config import ExecutionConfig
from execution_engine.errors import ErrorSeverity, get_error_info
from execution_engine.state_machine import OrderStateMachine
from execution_engine.strategies import ExecutionStrategy
from execution_engine.types import (
    BuyRequest,
    CloseRequest,
    ExecutionResult,
    ExecutionResultCode,
    FillReport,
)


logger = logging.getLogger(__name__)


_AUDIT_SEVERITY = {
    ErrorSeverity.WARNING: AuditSeverity.WARN,
    ErrorSeverity.ERROR: AuditSeverity.ERROR,
    ErrorSeverity.CRITICAL: AuditSeverity.CRITICAL,
}


def resolve_exit_order_tag(reason: str) -> OrderTag:
    """Map an exit reason to the order tag used for the closing order."""
    lower = reason.lower()
    if "take profit" in lower or "take-profit" in lower or "tp " in lower:
        return OrderTag.TAKE_PROFIT
    if "stoploss" in lower or "stop-loss" in lower or "stop loss" in lower:
        return OrderTag.STOPLOSS
    if "partial" in lower:
        return OrderTag.PARTIAL_EXIT
    return OrderTag.EXIT


class OrderManager:
    """
    Executes buys, closes, DCA buys and partial sells.

    All repositories share the injected session; every completed
    step is committed before the next broker call so a crash never
    loses a fill that already happened.
    """

    def __init__(
        self,
        session: Session,
        strategy: ExecutionStrategy,
        audit: Optional[AuditLogger] = None,
        clock: Optional[ClockProtocol] = None,
        config: Optional[ExecutionConfig] = None,
    ):
        self._clock = clock or SystemClock()
        self._strategy = strategy
        self._config = config or ExecutionConfig()
        self._config.validate()

        self._positions = PositionRepository(session)
        self._trades = TradeRepository(session)
        self._orders = OrderRepository(session)
        self._state_machine = OrderStateMachine(self._orders, self._clock)
        self._audit = audit or AuditLogger(session, self._clock)

        logger.info(f"OrderManager initialized (strategy={strategy.name})")

    @property
    def strategy(self) -> ExecutionStrategy:
        return self._strategy

    @property
    def state_machine(self) -> OrderStateMachine:
        return self._state_machine

    # --------------------------------------------------------
    # BUY
    # --------------------------------------------------------

    async def execute_buy(self, request: BuyRequest) -> ExecutionResult:
        """
        Open a new position.

        Stop and target are recomputed from the actual fill price.
        """
        if request.shares <= 0 or request.price <= 0:
            return self._finish(self._result(
                ExecutionResultCode.INVALID_REQUEST, request.symbol, TradeSide.BUY, OrderTag.ENTRY,
                requested_quantity=request.shares,
                intended_price=request.price,
                message=f"Invalid buy: shares={request.shares}, price={request.price}",
            ))

        if self._positions.get_by_symbol(request.symbol) is not None:
            logger.warning(f"Position already exists for {request.symbol}, skipping buy")
            return self._finish(self._result(
                ExecutionResultCode.DUPLICATE_POSITION, request.symbol, TradeSide.BUY, OrderTag.ENTRY,
                requested_quantity=request.shares,
                intended_price=request.price,
                message=f"Position already exists for {request.symbol}",
            ))

        order = self._create_market_order(
            request.symbol, TradeSide.BUY, OrderTag.ENTRY, request.shares, request.price, request.account_type
        )
        report = await self._strategy.execute_market_order(
            request.ticker, TradeSide.BUY, request.shares, request.price
        )
        if not report.filled:
            return self._record_failure(order, report, request.price)

        fill_price = report.fill_price
        self._fill_order(order, report)

        now = self._clock.now()
        stop_loss = fill_price * (1 - request.stop_loss_pct)
        take_profit = fill_price * (1 + request.take_profit_pct)
        exit_conditions = dict(request.exit_conditions or {})
        if request.max_hold_days is not None:
            exit_conditions.setdefault("max_hold_days", request.max_hold_days)

        try:
            trade = self._trades.record_trade(
                symbol=request.symbol,
                ticker=request.ticker,
                side=TradeSide.BUY,
                shares=request.shares,
                entry_price=fill_price,
                entry_time=now,
                intended_price=request.price,
                slippage=request.price - fill_price,
                conviction=request.conviction,
                reasoning=request.reasoning,
                model_name=request.model_name,
                dca_round=0,
                plan_id=request.plan_id,
                account_type=request.account_type,
            )
            position = self._positions.create_position(
                symbol=request.symbol,
                ticker=request.ticker,
                shares=request.shares,
                entry_price=fill_price,
                entry_time=now,
                current_price=fill_price,
                pnl=0.0,
                pnl_pct=0.0,
                stop_loss=stop_loss,
                take_profit=take_profit,
                conviction=request.conviction,
                total_invested=request.shares * fill_price,
                exit_conditions=exit_conditions or None,
                sector=request.sector,
                account_type=request.account_type,
                plan_id=request.plan_id,
            )
            self._positions.commit()
        except DuplicateRecordError:
            # Another buy for the symbol landed while this one was in flight.
            self._audit.log_error(
                f"BUY {request.symbol} filled but a position already exists; reconcile with broker",
                symbol=request.symbol,
                details={"broker_order_id": report.broker_order_id, "fill_price": fill_price},
                severity=AuditSeverity.CRITICAL,
            )
            return self._result(
                ExecutionResultCode.DUPLICATE_POSITION, request.symbol, TradeSide.BUY, OrderTag.ENTRY,
                order_id=order.id,
                broker_order_id=report.broker_order_id,
                requested_quantity=request.shares,
                filled_quantity=report.filled_quantity,
                intended_price=request.price,
                fill_price=fill_price,
                message="Filled but position already exists",
            )

        logger.info(
            f"BUY {request.symbol}: {request.shares} @ {fill_price:.4f} "
            f"(stop {stop_loss:.4f}, target {take_profit:.4f}, {self._strategy.name})"
        )

        if self._config.place_protective_orders:
            await self._place_protective_orders(position, request.take_profit_pct > 0)

        return self._finish(self._result(
            ExecutionResultCode.SUCCESS, request.symbol, TradeSide.BUY, OrderTag.ENTRY,
            order_id=order.id,
            broker_order_id=report.broker_order_id,
            trade_id=trade.id,
            requested_quantity=request.shares,
            filled_quantity=report.filled_quantity,
            intended_price=request.price,
            fill_price=fill_price,
            slippage=request.price - fill_price,
            message="Position opened",
            details={"stop_loss": stop_loss, "take_profit": take_profit, "plan_id": request.plan_id},
        ))

    # --------------------------------------------------------
    # CLOSE
    # --------------------------------------------------------

    async def execute_close(self, request: CloseRequest) -> ExecutionResult:
        """Close a position fully and remove it."""
        position = self._positions.get_by_symbol(request.symbol)
        tag = resolve_exit_order_tag(request.reason)
        if position is None:
            logger.warning(f"No position found to close for {request.symbol}")
            return self._finish(self._result(
                ExecutionResultCode.NO_POSITION, request.symbol, TradeSide.SELL, tag,
                message=f"No position for {request.symbol}",
            ))

        intended = self._intended_exit_price(position, request.price)
        had_stop = position.stop_order_id is not None
        had_take_profit = position.take_profit_order_id is not None
        await self.cancel_protective_orders(position, "Position closing")

        shares = position.shares
        order = self._create_market_order(
            request.symbol, TradeSide.SELL, tag, shares, intended, request.account_type
        )
        report = await self._strategy.execute_market_order(position.ticker, TradeSide.SELL, shares, intended)
        if not report.filled:
            failure = self._record_failure(order, report, intended)
            # the position stays open: put its broker protection back
            if had_stop or had_take_profit:
                logger.warning(f"Close of {request.symbol} failed, restoring protective orders")
                await self._place_protective_orders(position, had_take_profit)
            return failure

        fill_price = report.fill_price
        self._fill_order(order, report)

        entry_price = position.entry_price
        pnl = (fill_price - entry_price) * shares
        pnl_pct = (fill_price - entry_price) / entry_price
        now = self._clock.now()

        trade = self._trades.record_trade(
            symbol=position.symbol,
            ticker=position.ticker,
            side=TradeSide.SELL,
            shares=shares,
            entry_price=entry_price,
            exit_price=fill_price,
            pnl=pnl,
            pnl_pct=pnl_pct,
            entry_time=position.entry_time,
            exit_time=now,
            exit_reason=request.reason,
            intended_price=intended,
            slippage=intended - fill_price,
            conviction=position.conviction,
            plan_id=position.plan_id,
            account_type=position.account_type,
        )
        self._positions.delete_position(position)
        self._positions.commit()

        logger.info(
            f"CLOSE {request.symbol}: {shares} @ {fill_price:.4f}, "
            f"pnl {pnl:.2f} ({pnl_pct:.2%}) - {request.reason}"
        )

        return self._finish(self._result(
            ExecutionResultCode.SUCCESS, request.symbol, TradeSide.SELL, tag,
            order_id=order.id,
            broker_order_id=report.broker_order_id,
            trade_id=trade.id,
            requested_quantity=shares,
            filled_quantity=report.filled_quantity,
            intended_price=intended,
            fill_price=fill_price,
            slippage=intended - fill_price,
            pnl=pnl,
            pnl_pct=pnl_pct,
            message=request.reason,
        ))

    # --------------------------------------------------------
    # DCA / PARTIAL
    # --------------------------------------------------------

    async def execute_dca_buy(self, symbol: str, shares: float, price: float) -> ExecutionResult:
        """Add to an existing position and re-blend the average entry."""
        position = self._positions.get_by_symbol(symbol)
        if position is None:
            return self._finish(self._result(
                ExecutionResultCode.NO_POSITION, symbol, TradeSide.BUY, OrderTag.DCA,
                message=f"No position found for {symbol}",
            ))
        if shares <= 0 or price <= 0:
            return self._finish(self._result(
                ExecutionResultCode.INVALID_REQUEST, symbol, TradeSide.BUY, OrderTag.DCA,
                requested_quantity=shares,
                intended_price=price,
                message=f"Invalid DCA buy: shares={shares}, price={price}",
            ))

        dca_round = (position.dca_count or 0) + 1
        order = self._create_market_order(symbol, TradeSide.BUY, OrderTag.DCA, shares, price, position.account_type)
        report = await self._strategy.execute_market_order(position.ticker, TradeSide.BUY, shares, price)
        if not report.filled:
            return self._record_failure(order, report, price)

        fill_price = report.fill_price
        self._fill_order(order, report)

        current_invested = position.total_invested or position.shares * position.entry_price
        total_invested = current_invested + shares * fill_price
        total_shares = position.shares + shares
        new_avg_price = total_invested / total_shares
        now = self._clock.now()

        trade = self._trades.record_trade(
            symbol=symbol,
            ticker=position.ticker,
            side=TradeSide.BUY,
            shares=shares,
            entry_price=fill_price,
            entry_time=now,
            intended_price=price,
            slippage=price - fill_price,
            conviction=0.0,
            reasoning=f"DCA round {dca_round}",
            dca_round=dca_round,
            plan_id=position.plan_id,
            account_type=position.account_type,
        )
        self._positions.update_position(
            position,
            now,
            shares=total_shares,
            entry_price=new_avg_price,
            dca_count=dca_round,
            total_invested=total_invested,
            current_price=fill_price,
            pnl=(fill_price - new_avg_price) * total_shares,
            pnl_pct=(fill_price - new_avg_price) / new_avg_price,
        )
        self._positions.commit()

        logger.info(
            f"DCA {symbol} round {dca_round}: +{shares} @ {fill_price:.4f}, "
            f"avg {new_avg_price:.4f}, total {total_shares}"
        )

        await self._resize_protective_orders(position)

        return self._finish(self._result(
            ExecutionResultCode.SUCCESS, symbol, TradeSide.BUY, OrderTag.DCA,
            order_id=order.id,
            broker_order_id=report.broker_order_id,
            trade_id=trade.id,
            requested_quantity=shares,
            filled_quantity=report.filled_quantity,
            intended_price=price,
            fill_price=fill_price,
            slippage=price - fill_price,
            message=f"DCA round {dca_round}",
            details={"dca_round": dca_round, "new_avg_price": new_avg_price, "total_shares": total_shares},
        ))

    async def execute_partial_sell(
        self,
        symbol: str,
        shares: float,
        reason: str = "Partial exit",
        price: Optional[float] = None,
    ) -> ExecutionResult:
        """
        Sell part of a position.

        Stop and target on the remainder are left unchanged; the
        partial-exit counter advances by one.
        """
        position = self._positions.get_by_symbol(symbol)
        if position is None:
            return self._finish(self._result(
                ExecutionResultCode.NO_POSITION, symbol, TradeSide.SELL, OrderTag.PARTIAL_EXIT,
                message=f"No position found for {symbol}",
            ))
        if shares < 1 or shares >= position.shares:
            return self._finish(self._result(
                ExecutionResultCode.INVALID_REQUEST, symbol, TradeSide.SELL, OrderTag.PARTIAL_EXIT,
                requested_quantity=shares,
                message=f"Partial sell of {shares} invalid for position of {position.shares}",
            ))

        intended = self._intended_exit_price(position, price)
        order = self._create_market_order(
            symbol, TradeSide.SELL, OrderTag.PARTIAL_EXIT, shares, intended, position.account_type
        )
        report = await self._strategy.execute_market_order(position.ticker, TradeSide.SELL, shares, intended)
        if not report.filled:
            return self._record_failure(order, report, intended)

        fill_price = report.fill_price
        self._fill_order(order, report)

        entry_price = position.entry_price
        pnl = (fill_price - entry_price) * shares
        pnl_pct = (fill_price - entry_price) / entry_price
        remaining = position.shares - shares
        now = self._clock.now()

        trade = self._trades.record_trade(
            symbol=symbol,
            ticker=position.ticker,
            side=TradeSide.SELL,
            shares=shares,
            entry_price=entry_price,
            exit_price=fill_price,
            pnl=pnl,
            pnl_pct=pnl_pct,
            entry_time=position.entry_time,
            exit_time=now,
            exit_reason=reason,
            intended_price=intended,
            slippage=intended - fill_price,
            conviction=position.conviction,
            is_partial_exit=True,
            plan_id=position.plan_id,
            account_type=position.account_type,
        )
        invested = position.total_invested or position.shares * entry_price
        self._positions.update_position(
            position,
            now,
            shares=remaining,
            partial_exit_count=(position.partial_exit_count or 0) + 1,
            total_invested=invested * remaining / position.shares,
            current_price=fill_price,
            pnl=(fill_price - entry_price) * remaining,
            pnl_pct=pnl_pct,
        )
        self._positions.commit()

        logger.info(
            f"PARTIAL {symbol}: -{shares} @ {fill_price:.4f}, pnl {pnl:.2f}, {remaining} remaining - {reason}"
        )

        await self._resize_protective_orders(position)

        return self._finish(self._result(
            ExecutionResultCode.SUCCESS, symbol, TradeSide.SELL, OrderTag.PARTIAL_EXIT,
            order_id=order.id,
            broker_order_id=report.broker_order_id,
            trade_id=trade.id,
            requested_quantity=shares,
            filled_quantity=report.filled_quantity,
            intended_price=intended,
            fill_price=fill_price,
            slippage=intended - fill_price,
            pnl=pnl,
            pnl_pct=pnl_pct,
            message=reason,
            details={"remaining_shares": remaining, "partial_exit_count": position.partial_exit_count},
        ))

    # --------------------------------------------------------
    # PROTECTIVE ORDERS
    # --------------------------------------------------------

    async def cancel_protective_orders(self, position: Position, reason: str) -> None:
        """
        Cancel the broker stop and take-profit orders of ``position``.

        A refused cancel is logged; the order may already have filled.
        """
        for field_name in ("stop_order_id", "take_profit_order_id"):
            broker_order_id = getattr(position, field_name)
            if not broker_order_id:
                continue

            cancelled = await self._strategy.cancel_order(broker_order_id)
            if cancelled:
                logger.info(f"Cancelled {field_name} {broker_order_id} for {position.symbol}")
            else:
                logger.warning(
                    f"Failed to cancel {field_name} {broker_order_id} for {position.symbol} "
                    f"(may already be filled)"
                )

            record = self._orders.get_by_broker_id(broker_order_id)
            if record is not None and not OrderStatus(record.status).is_terminal():
                self._state_machine.mark_cancelled(record, reason)

        self._positions.update_position(position, self._clock.now(), stop_order_id=None, take_profit_order_id=None)
        self._positions.commit()

    async def _place_protective_orders(self, position: Position, with_take_profit: bool) -> None:
        """Best effort: a failure is audited, the tracker's software stop still applies."""
        if self._config.protective_order_delay_seconds > 0:
            await asyncio.sleep(self._config.protective_order_delay_seconds)

        values: Dict[str, Any] = {}
        if position.stop_loss:
            values["stop_order_id"] = await self._place_protective(
                position, OrderTag.STOPLOSS, OrderType.STOP, position.stop_loss
            )
        if with_take_profit and position.take_profit:
            values["take_profit_order_id"] = await self._place_protective(
                position, OrderTag.TAKE_PROFIT, OrderType.LIMIT, position.take_profit
            )

        self._positions.update_position(position, self._clock.now(), **values)
        self._positions.commit()

    async def _resize_protective_orders(self, position: Position) -> None:
        if not self._config.place_protective_orders:
            return
        if not (position.stop_order_id or position.take_profit_order_id):
            return

        had_take_profit = position.take_profit_order_id is not None
        await self.cancel_protective_orders(position, "Position size changed")
        await self._place_protective_orders(position, had_take_profit)

    async def _place_protective(
        self,
        position: Position,
        tag: OrderTag,
        order_type: OrderType,
        price: float,
    ) -> Optional[str]:
        now = self._clock.now()
        order = self._orders.create_order(
            symbol=position.symbol,
            side=TradeSide.SELL,
            tag=tag,
            requested_quantity=position.shares,
            now=now,
            order_type=order_type,
            requested_price=price if order_type == OrderType.LIMIT else None,
            stop_price=price if order_type == OrderType.STOP else None,
            account_type=position.account_type,
        )
        self._orders.commit()

        try:
            broker_order_id = await self._strategy.place_resting_order(
                position.ticker, TradeSide.SELL, order_type, position.shares, price
            )
        except (BrokerError, OrderError) as e:
            self._state_machine.mark_failed(order, str(e))
            self._orders.commit()
            self._audit.log_error(
                f"Failed to place {tag.value} order for {position.symbol}: {e}",
                symbol=position.symbol,
                details={"price": price, "shares": position.shares},
                severity=AuditSeverity.ERROR,
            )
            return None

        self._state_machine.mark_open(order, broker_order_id)
        self._orders.commit()
        logger.info(f"{tag.value} order placed for {position.symbol} @ {price:.4f}: {broker_order_id}")
        return broker_order_id

    # --------------------------------------------------------
    # INTERNAL
    # --------------------------------------------------------

    def _create_market_order(
        self,
        symbol: str,
        side: TradeSide,
        tag: OrderTag,
        quantity: float,
        price: float,
        account_type: Any,
    ) -> Order:
        order = self._orders.create_order(
            symbol=symbol,
            side=side,
            tag=tag,
            requested_quantity=quantity,
            now=self._clock.now(),
            order_type=OrderType.MARKET,
            requested_price=price,
            account_type=account_type,
        )
        self._orders.commit()
        return order

    def _fill_order(self, order: Order, report: FillReport) -> None:
        self._state_machine.transition(
            order,
            OrderStatus.FILLED,
            "Order filled",
            broker_order_id=report.broker_order_id,
            filled_quantity=report.filled_quantity,
            filled_price=report.fill_price,
        )
        self._orders.commit()

    def _record_failure(self, order: Order, report: FillReport, intended_price: float) -> ExecutionResult:
        """Move the Order record to its failure state; position state is untouched."""
        code = report.code
        message = report.message or code.value
        values = {"broker_order_id": report.broker_order_id}

        if code == ExecutionResultCode.PARTIAL_FILL:
            self._state_machine.transition(
                order,
                OrderStatus.PARTIALLY_FILLED,
                "Partial fill",
                filled_quantity=report.filled_quantity,
                filled_price=report.fill_price,
                **values,
            )
            self._state_machine.mark_cancelled(order, message)
        elif code in (ExecutionResultCode.REJECTED, ExecutionResultCode.TIMEOUT) and report.broker_order_id:
            self._state_machine.transition(order, OrderStatus.CANCELLED, message, cancel_reason=message, **values)
        else:
            self._state_machine.transition(order, OrderStatus.FAILED, message, cancel_reason=message, **values)
        self._orders.commit()

        logger.error(f"{order.side} {order.symbol} ({order.tag}) failed: {code.value} - {message}")

        return self._finish(self._result(
            code, order.symbol, TradeSide(order.side), OrderTag(order.tag),
            order_id=order.id,
            broker_order_id=report.broker_order_id,
            requested_quantity=order.requested_quantity,
            filled_quantity=report.filled_quantity,
            intended_price=intended_price,
            fill_price=report.fill_price,
            message=message,
        ))

    @staticmethod
    def _intended_exit_price(position: Position, price: Optional[float]) -> float:
        if price is not None and price > 0:
            return price
        if position.current_price is not None:
            return position.current_price
        return position.entry_price

    def _result(
        self,
        code: ExecutionResultCode,
        symbol: str,
        side: TradeSide,
        tag: OrderTag,
        **fields: Any,
    ) -> ExecutionResult:
        return ExecutionResult(code=code, symbol=symbol, side=side, tag=tag, timestamp=self._clock.now(), **fields)

    def _finish(self, result: ExecutionResult) -> ExecutionResult:
        """Audit ``result`` and hand it back."""
        details = result.to_dict()
        details.update(result.details)

        if result.success:
            summary = f"{result.side.value} {result.symbol} ({result.tag.value}) filled"
            if result.fill_price is not None:
                summary += f" {result.filled_quantity} @ {result.fill_price:.4f}"
            self._audit.log_trade(result.symbol, summary, details)
        else:
            info = get_error_info(result.code.value)
            self._audit.log_trade(
                result.symbol,
                f"{result.side.value} {result.symbol} ({result.tag.value}) {result.code.value}: {result.message}",
                details,
                severity=_AUDIT_SEVERITY[info.severity],
            )
        return result
