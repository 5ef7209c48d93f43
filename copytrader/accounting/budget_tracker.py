"""Budget and realized P&L tracking for a copy session.

The remaining budget is owned by the ledger: every debit and credit is written
through immediately, and the tracker reloads it before each trade so the
in-memory value never drifts from what a restarted process would see.
"""
from collections import Counter
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

import structlog

from copytrader.core.models import (
    CopytradeConfig, SessionSummary, TradeOutcome, TradeSide, TradeStatus, ZERO
)
from copytrader.storage.database import Database

logger = structlog.get_logger(__name__)


@dataclass
class AssetPnL:
    """Realized P&L breakdown for one asset.

    Attributes:
        asset_id: CLOB token id
        bought_shares: Shares bought across the session
        average_buy_price: Weighted-average buy price (0 if nothing bought)
        sold_shares: Shares sold across the session
        realized_pnl: Proceeds minus weighted-average cost of sold shares
        sells_without_cost_basis: Sells of an asset with no recorded buys
    """
    asset_id: str
    bought_shares: Decimal = ZERO
    average_buy_price: Decimal = ZERO
    sold_shares: Decimal = ZERO
    realized_pnl: Decimal = ZERO
    sells_without_cost_basis: int = 0


def pnl_by_asset(records: Iterable[TradeOutcome]) -> Dict[str, AssetPnL]:
    """Group SUCCESS records by asset and compute weighted-average P&L."""
    buys: Dict[str, List[TradeOutcome]] = {}
    sells: Dict[str, List[TradeOutcome]] = {}

    for record in records:
        if not record.is_success:
            continue
        bucket = buys if record.side == TradeSide.BUY else sells
        bucket.setdefault(record.asset_id, []).append(record)

    result: Dict[str, AssetPnL] = {}
    for asset_id in list(buys) + [a for a in sells if a not in buys]:
        asset_buys = buys.get(asset_id, [])
        asset_sells = sells.get(asset_id, [])

        bought = sum((r.executed_size for r in asset_buys), ZERO)
        buy_value = sum((r.executed_size * r.price for r in asset_buys), ZERO)
        avg_price = buy_value / bought if bought > 0 else ZERO

        entry = AssetPnL(asset_id=asset_id, bought_shares=bought, average_buy_price=avg_price)
        for sell in asset_sells:
            entry.sold_shares += sell.executed_size
            entry.realized_pnl += sell.executed_size * sell.price - sell.executed_size * avg_price
            if bought <= 0:
                entry.sells_without_cost_basis += 1

        result[asset_id] = entry

    return result


class BudgetTracker:
    """Tracks the remaining budget of a copy session and reports its results.

    Debits happen on successful buys. Sell proceeds are credited back only
    when the session reinvests; otherwise they are reported but not spent.
    """

    def __init__(self, database: Database, config: CopytradeConfig):
        if config.id is None:
            raise ValueError("BudgetTracker requires a saved config")
        self.database = database
        self.config = config

    @property
    def remaining_budget(self) -> Decimal:
        return self.config.remaining_budget

    @property
    def is_exhausted(self) -> bool:
        """True when the remaining budget is zero or less."""
        return self.config.is_exhausted

    async def refresh(self) -> Decimal:
        """Reload the remaining budget from the ledger."""
        stored = await self.database.get_config(self.config.id)
        if stored is not None:
            self.config.remaining_budget = stored.remaining_budget
        return self.config.remaining_budget

    async def debit(self, amount: Decimal) -> Decimal:
        """Spend `amount` on a successful buy and persist the new balance."""
        self.config.remaining_budget = self.config.remaining_budget - amount
        await self.database.update_budget(self.config.id, self.config.remaining_budget)

        logger.info(
            "budget_tracker.debited",
            config_id=self.config.id,
            amount=str(amount),
            remaining=str(self.config.remaining_budget)
        )
        return self.config.remaining_budget

    async def credit(self, proceeds: Decimal) -> Decimal:
        """Credit sell proceeds back to the budget if the session reinvests."""
        if not self.config.reinvest:
            logger.info(
                "budget_tracker.proceeds_not_reinvested",
                config_id=self.config.id,
                proceeds=str(proceeds)
            )
            return self.config.remaining_budget

        self.config.remaining_budget = self.config.remaining_budget + proceeds
        await self.database.update_budget(self.config.id, self.config.remaining_budget)

        logger.info(
            "budget_tracker.credited",
            config_id=self.config.id,
            proceeds=str(proceeds),
            remaining=str(self.config.remaining_budget)
        )
        return self.config.remaining_budget

    # ------------------------------------------------------------------
    # Pure accounting
    # ------------------------------------------------------------------

    @staticmethod
    def realized_pnl(records: Iterable[TradeOutcome]) -> Decimal:
        """Total realized P&L over SUCCESS records, weighted-average cost basis."""
        return sum((p.realized_pnl for p in pnl_by_asset(records).values()), ZERO)

    @staticmethod
    def replay_remaining_budget(config: CopytradeConfig, records: Iterable[TradeOutcome]) -> Decimal:
        """Recompute the remaining budget from the outcome log."""
        remaining = config.budget
        for record in records:
            if not record.is_success:
                continue
            if record.side == TradeSide.BUY:
                remaining -= record.notional
            elif config.reinvest:
                remaining += record.notional
        return remaining

    @staticmethod
    def summarize(
        config: CopytradeConfig,
        records: Iterable[TradeOutcome],
        stop_reason: Optional[str] = None
    ) -> SessionSummary:
        """Build the end-of-session summary from the outcome log."""
        records = list(records)
        summary = SessionSummary(
            config_id=config.id,
            remaining_budget=config.remaining_budget,
            stop_reason=stop_reason,
        )
        skip_reasons: Counter = Counter()
        markets: List[str] = []

        for record in records:
            is_buy = record.side == TradeSide.BUY
            if record.is_success:
                if is_buy:
                    summary.buys_executed += 1
                    summary.total_bought += record.notional
                    # YES and NO tokens of one market share a title
                    market = record.market or record.asset_id
                    if market not in markets:
                        markets.append(market)
                else:
                    summary.sells_executed += 1
                    summary.total_sold += record.notional
            elif record.status == TradeStatus.FAILED:
                if is_buy:
                    summary.buys_failed += 1
                else:
                    summary.sells_failed += 1
            elif record.status == TradeStatus.SKIPPED:
                summary.skipped += 1
                skip_reasons[record.error_message or "unknown"] += 1

        per_asset = pnl_by_asset(records)
        summary.skip_reasons = dict(skip_reasons)
        summary.net_deployed = summary.total_bought - summary.total_sold
        summary.realized_pnl = sum((p.realized_pnl for p in per_asset.values()), ZERO)
        summary.sells_without_cost_basis = sum(p.sells_without_cost_basis for p in per_asset.values())
        summary.markets = markets
        return summary

    async def summary(self, stop_reason: Optional[str] = None) -> SessionSummary:
        """Load the session's outcomes from the ledger and summarize them."""
        await self.refresh()
        records = await self.database.get_trades_by_config(self.config.id)
        return self.summarize(self.config, records, stop_reason)
