"""Copytrade engine - polls the target account and mirrors its trades."""
import asyncio
import time
from typing import Callable, Dict, List, Optional
from decimal import Decimal
import structlog

from copytrader.accounting.budget_tracker import BudgetTracker
from copytrader.core.config import copytrade_settings
from copytrader.core.exceptions import (
    DuplicateTradeError, ExchangeError, ExchangeNetworkError, InsufficientFundsError
)
from copytrader.core.models import (
    CopyDecision, CopytradeConfig, CycleReport, ObservedTrade, OrderRequest,
    OrderResult, SessionPosition, SessionSummary, TradeOutcome, TradeSide, TradeStatus, ZERO
)
from copytrader.exchange.polymarket_client import PolymarketClient
from copytrader.sizing.decision_engine import CopyDecisionEngine
from copytrader.sizing.reconciliation import PositionReconciler
from copytrader.storage.database import Database

logger = structlog.get_logger(__name__)

DRY_RUN_ORDER_ID = "dry-run"

STOP_REQUESTED = "stop requested"
BUDGET_EXHAUSTED = "budget exhausted"
INSUFFICIENT_FUNDS = "insufficient funds"


class CopytradeEngine:
    """
    Polling scheduler that drives a copy session.

    Responsibilities:
    - Polls the target account's trades on a fixed cadence
    - Filters out trades already seen (watermark + ledger dedup)
    - Sizes each new trade through the decision engine
    - Executes orders and records exactly one outcome per trade
    - Terminates on stop request, budget exhaustion or insufficient funds
    """

    def __init__(
        self,
        client: PolymarketClient,
        database: Database,
        poll_interval: Optional[float] = None,
        min_order_size: Optional[Decimal] = None,
        clock: Optional[Callable[[], float]] = None
    ):
        self.client = client
        self.database = database
        self.poll_interval = (
            copytrade_settings.poll_interval_seconds if poll_interval is None else poll_interval
        )
        self.decision_engine = CopyDecisionEngine(min_order_size)
        self.reconciler = PositionReconciler(self._fetch_remote_shares)
        self._clock = clock or time.time

        # Session state
        self.config: Optional[CopytradeConfig] = None
        self.budget: Optional[BudgetTracker] = None
        self.dry_run = False
        self.allow_add_to_position = False
        self.watermark = 0
        self.poll_count = 0

        # Control
        self._running = False
        self._stop_event = asyncio.Event()
        self._stop_reason: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(
        self,
        config: CopytradeConfig,
        dry_run: bool = False,
        allow_add_to_position: bool = False
    ) -> SessionSummary:
        """Run a copy session until it terminates and return its summary."""
        logger.info(
            "copytrade.starting",
            trader=config.trader_address,
            budget=str(config.budget),
            copy_ratio=str(config.copy_ratio),
            max_trade_size=str(config.max_trade_size),
            reinvest=config.reinvest,
            dry_run=dry_run
        )

        await self.begin_session(config, dry_run, allow_add_to_position)

        try:
            while self._running:
                report = await self.run_cycle()

                if report.stopped or not self._running:
                    break

                if self.budget.is_exhausted:
                    logger.info(
                        "copytrade.budget_exhausted",
                        remaining=str(self.budget.remaining_budget)
                    )
                    self.stop(BUDGET_EXHAUSTED)
                    break

                await self._wait_for_next_poll()
        except Exception as e:
            logger.error(
                "copytrade.session_aborted",
                config_id=self.config.id,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True
            )
            await self._deactivate_after_abort()
            raise
        finally:
            self._running = False

        return await self.terminate()

    async def begin_session(
        self,
        config: CopytradeConfig,
        dry_run: bool = False,
        allow_add_to_position: bool = False
    ) -> CopytradeConfig:
        """Persist the config and anchor the watermark at the current time."""
        self.config = await self.database.save_config(config)
        self.budget = BudgetTracker(self.database, self.config)
        self.dry_run = dry_run
        self.allow_add_to_position = allow_add_to_position
        self.watermark = int(self._clock())
        self.poll_count = 0
        self._stop_reason = None
        self._stop_event.clear()
        self._running = True

        logger.info(
            "copytrade.started",
            config_id=self.config.id,
            watermark=self.watermark,
            poll_interval=self.poll_interval
        )
        return self.config

    def stop(self, reason: str = STOP_REQUESTED):
        """Request termination; observed between trades and between polls."""
        if self._stop_reason is None:
            self._stop_reason = reason
        self._running = False
        self._stop_event.set()
        logger.info("copytrade.stopping", reason=self._stop_reason)

    async def _deactivate_after_abort(self):
        # The original error is re-raised by the caller
        try:
            await self.database.deactivate_config(self.config.id)
            self.config.is_active = False
        except Exception as e:
            logger.error(
                "copytrade.deactivate_failed",
                config_id=self.config.id,
                error=str(e)
            )

    async def terminate(self) -> SessionSummary:
        """Deactivate the config and produce the session summary."""
        self._running = False
        await self.database.deactivate_config(self.config.id)
        self.config.is_active = False

        summary = await self.budget.summary(self._stop_reason)
        logger.info(
            "copytrade.session_summary",
            config_id=self.config.id,
            polls=self.poll_count,
            buys_executed=summary.buys_executed,
            sells_executed=summary.sells_executed,
            failed=summary.failed,
            skipped=summary.skipped,
            total_bought=str(summary.total_bought),
            total_sold=str(summary.total_sold),
            net_deployed=str(summary.net_deployed),
            realized_pnl=str(summary.realized_pnl),
            remaining_budget=str(summary.remaining_budget),
            markets_entered=summary.markets_entered,
            stop_reason=summary.stop_reason
        )
        return summary

    async def _wait_for_next_poll(self):
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
        except asyncio.TimeoutError:
            pass

    # =========================================================================
    # Poll cycle
    # =========================================================================

    async def run_cycle(self) -> CycleReport:
        """Fetch, filter and process one batch of target trades."""
        self.poll_count += 1
        self.reconciler.reset()

        report = CycleReport(poll_number=self.poll_count, watermark=self.watermark)

        trades = await self.client.fetch_trades(self.config.trader_address)
        report.fetched = len(trades)

        new_trades = await self._select_new_trades(trades)
        report.new = len(new_trades)

        handled_max: Optional[int] = None
        deferred_min: Optional[int] = None

        for index, trade in enumerate(new_trades):
            if not self._running:
                # Leave the rest for a later cycle
                remaining = new_trades[index:]
                report.deferred += len(remaining)
                earliest = min(t.timestamp for t in remaining)
                deferred_min = earliest if deferred_min is None else min(deferred_min, earliest)
                break

            status = await self._process_trade(trade)

            if status is None:
                report.deferred += 1
                deferred_min = trade.timestamp if deferred_min is None else min(deferred_min, trade.timestamp)
                continue

            handled_max = trade.timestamp if handled_max is None else max(handled_max, trade.timestamp)
            if status == TradeStatus.SUCCESS:
                report.copied += 1
            elif status == TradeStatus.SKIPPED:
                report.skipped += 1
            else:
                report.failed += 1

        self._advance_watermark(handled_max, deferred_min)
        report.watermark = self.watermark
        report.stopped = not self._running

        log = logger.info if report.new else logger.debug
        log(
            "copytrade.cycle_complete",
            poll=report.poll_number,
            fetched=report.fetched,
            new=report.new,
            copied=report.copied,
            skipped=report.skipped,
            failed=report.failed,
            deferred=report.deferred,
            watermark=report.watermark,
            remaining_budget=str(self.budget.remaining_budget)
        )
        return report

    async def _select_new_trades(self, trades: List[ObservedTrade]) -> List[ObservedTrade]:
        """Trades newer than the watermark and not yet recorded, oldest first."""
        selected = []
        seen = set()

        for trade in sorted(trades, key=lambda t: t.timestamp):
            if trade.timestamp <= self.watermark:
                continue
            if trade.transaction_hash in seen:
                continue
            seen.add(trade.transaction_hash)

            if await self.database.is_trade_processed(trade.transaction_hash):
                logger.debug("copytrade.already_processed", trade_id=trade.transaction_hash)
                continue

            selected.append(trade)

        return selected

    def _advance_watermark(self, handled_max: Optional[int], deferred_min: Optional[int]):
        if handled_max is None:
            return
        candidate = handled_max
        if deferred_min is not None:
            candidate = min(candidate, deferred_min - 1)
        self.watermark = max(self.watermark, candidate)

    # =========================================================================
    # Trade processing
    # =========================================================================

    async def _process_trade(self, trade: ObservedTrade) -> Optional[TradeStatus]:
        """Handle one new trade.

        Returns the recorded status, or None when the trade was deferred
        (recoverable error) or aborted the session (insufficient funds).
        """
        await self.budget.refresh()
        position = await self.database.get_session_position(self.config.id, trade.asset_id)

        try:
            decision = await self.decision_engine.decide(
                trade, self.config, position, self.reconciler, self.allow_add_to_position
            )

            if decision.is_skipped:
                await self._record(trade, TradeStatus.SKIPPED, error_message=decision.reason)
                logger.info(
                    "copytrade.trade_skipped",
                    trade_id=trade.transaction_hash,
                    side=trade.side.value,
                    market=trade.title,
                    reason=decision.reason
                )
                return TradeStatus.SKIPPED

            request = self._build_order(trade, decision)
            result = await self._place_order(request)

        except InsufficientFundsError as e:
            logger.error(
                "copytrade.insufficient_funds",
                trade_id=trade.transaction_hash,
                error=str(e)
            )
            self.stop(INSUFFICIENT_FUNDS)
            return None
        except ExchangeNetworkError as e:
            logger.warning(
                "copytrade.trade_deferred",
                trade_id=trade.transaction_hash,
                error=str(e),
                error_type=type(e).__name__
            )
            return None
        except ExchangeError as e:
            result = OrderResult.failed(str(e))

        if not result.success:
            failure = CopyDecision.fail(trade.side, result.error_message or "order not filled")
            await self._record(
                trade,
                TradeStatus.FAILED,
                order_id=result.order_id,
                error_message=failure.reason
            )
            logger.warning(
                "copytrade.trade_failed",
                trade_id=trade.transaction_hash,
                side=trade.side.value,
                market=trade.title,
                error=failure.reason
            )
            return TradeStatus.FAILED

        if trade.side == TradeSide.BUY:
            await self._apply_buy(trade, decision, result)
        else:
            await self._apply_sell(trade, decision, result, position)
        return TradeStatus.SUCCESS

    def _build_order(self, trade: ObservedTrade, decision: CopyDecision) -> OrderRequest:
        amount = decision.amount if trade.side == TradeSide.BUY else decision.shares
        return OrderRequest(asset_id=trade.asset_id, side=trade.side, amount=amount)

    async def _apply_buy(self, trade: ObservedTrade, decision: CopyDecision, result: OrderResult):
        shares = result.filled_shares or decision.amount / trade.price
        await self._record(
            trade,
            TradeStatus.SUCCESS,
            executed_size=shares,
            notional=decision.amount,
            order_id=result.order_id
        )
        await self.budget.debit(decision.amount)

        logger.info(
            "copytrade.buy_executed",
            trade_id=trade.transaction_hash,
            market=trade.title,
            outcome=trade.outcome,
            amount=str(decision.amount),
            shares=str(shares),
            order_id=result.order_id,
            capped_by_max_trade=decision.capped_by_max_trade,
            capped_by_budget=decision.capped_by_budget,
            remaining_budget=str(self.budget.remaining_budget)
        )

    async def _apply_sell(
        self,
        trade: ObservedTrade,
        decision: CopyDecision,
        result: OrderResult,
        position: SessionPosition
    ):
        # Never record more shares than were reconciled for the sale
        if result.filled_shares:
            shares = min(result.filled_shares, decision.shares)
        else:
            shares = decision.shares
        proceeds = shares * trade.price
        await self._record(
            trade,
            TradeStatus.SUCCESS,
            executed_size=shares,
            notional=proceeds,
            order_id=result.order_id
        )
        self.reconciler.record_sell(trade.asset_id, shares)
        await self.budget.credit(proceeds)

        logger.info(
            "copytrade.sell_executed",
            trade_id=trade.transaction_hash,
            market=trade.title,
            outcome=trade.outcome,
            shares=str(shares),
            proceeds=str(proceeds),
            average_cost=str(position.average_cost),
            order_id=result.order_id,
            capped_by_position=decision.capped_by_position,
            remaining_budget=str(self.budget.remaining_budget)
        )

    async def _record(self, trade: ObservedTrade, status: TradeStatus, **kwargs):
        outcome = TradeOutcome.from_trade(
            trade,
            config_id=self.config.id,
            trader_address=self.config.trader_address,
            status=status,
            **kwargs
        )
        try:
            await self.database.save_trade(outcome)
        except DuplicateTradeError:
            logger.debug("copytrade.duplicate_trade", trade_id=trade.transaction_hash)

    # =========================================================================
    # Execution (live or simulated)
    # =========================================================================

    async def _place_order(self, request: OrderRequest) -> OrderResult:
        if not self.dry_run:
            return await self.client.place_market_order(request)

        logger.info(
            "copytrade.dry_run_order",
            asset_id=request.asset_id,
            side=request.side.value,
            amount=str(request.amount)
        )
        return OrderResult.filled(order_id=DRY_RUN_ORDER_ID)

    async def _fetch_remote_shares(self, asset_id: str) -> Decimal:
        if not self.dry_run:
            return await self.client.get_share_balance(asset_id)

        position = await self.database.get_session_position(self.config.id, asset_id)
        return max(ZERO, position.shares)

    def get_status(self) -> Dict:
        """Get current engine status."""
        return {
            "running": self._running,
            "config_id": self.config.id if self.config else None,
            "trader": self.config.trader_address if self.config else None,
            "dry_run": self.dry_run,
            "polls": self.poll_count,
            "watermark": self.watermark,
            "remaining_budget": str(self.budget.remaining_budget) if self.budget else None,
            "stop_reason": self._stop_reason,
        }
