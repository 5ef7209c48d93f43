"""Copy decision engine.

Decides, for each observed trade, whether to copy it and how large the copy
should be. Sizing rules:

BUY
    amount = notional * copy_ratio, capped by max_trade_size and then by the
    remaining budget. Never scaled up: anything under the venue minimum is
    skipped.

SELL
    Only assets bought in this session are sold. The dollar value
    notional * copy_ratio is capped by the value of the reconciled holdings,
    then converted to shares at the target's price. No minimum applies.
"""

from decimal import Decimal
from typing import Optional

import structlog

from copytrader.core.config import copytrade_settings
from copytrader.core.models import (
    CopyDecision, CopytradeConfig, ObservedTrade, SessionPosition, SkipReason,
    TradeSide
)
from copytrader.sizing.reconciliation import PositionReconciler

logger = structlog.get_logger(__name__)


class CopyDecisionEngine:
    """Sizes observed trades against a session's budget, cap and ratio.

    decide_buy and decide_sell are pure; decide dispatches on side and
    consults the reconciler only for sells that pass the session check.
    """

    def __init__(self, min_order_size: Optional[Decimal] = None):
        if min_order_size is None:
            min_order_size = copytrade_settings.min_order_size_usd
        self.min_order_size = Decimal(str(min_order_size))

    def decide_buy(
        self,
        trade: ObservedTrade,
        config: CopytradeConfig,
        position: SessionPosition,
        allow_add_to_position: bool = False
    ) -> CopyDecision:
        """Size a copied buy."""
        if not allow_add_to_position and position.is_open:
            return CopyDecision.skip(TradeSide.BUY, SkipReason.ALREADY_HOLD_POSITION)

        amount = trade.notional * config.copy_ratio
        capped_by_max_trade = False
        capped_by_budget = False

        if amount > config.max_trade_size:
            amount = config.max_trade_size
            capped_by_max_trade = True

        remaining = config.remaining_budget
        if config.is_exhausted or remaining < self.min_order_size:
            return CopyDecision.skip(TradeSide.BUY, SkipReason.NO_BUDGET)

        if amount > remaining:
            amount = remaining
            capped_by_budget = True

        if amount <= 0:
            return CopyDecision.skip(TradeSide.BUY, SkipReason.AMOUNT_TOO_SMALL)

        if amount < self.min_order_size:
            return CopyDecision.skip(TradeSide.BUY, SkipReason.BELOW_MINIMUM)

        return CopyDecision.accept_buy(
            amount=amount,
            estimated_shares=amount / trade.price,
            capped_by_max_trade=capped_by_max_trade,
            capped_by_budget=capped_by_budget,
        )

    def decide_sell(
        self,
        trade: ObservedTrade,
        config: CopytradeConfig,
        position: SessionPosition,
        reconciled_shares: Decimal
    ) -> CopyDecision:
        """Size a copied sell against reconciled holdings."""
        if not position.is_open:
            return CopyDecision.skip(TradeSide.SELL, SkipReason.NO_POSITION_IN_SESSION)

        if reconciled_shares <= 0:
            return CopyDecision.skip(TradeSide.SELL, SkipReason.NO_ACTUAL_POSITION)

        sell_value = trade.notional * config.copy_ratio
        holdings_value = reconciled_shares * trade.price
        capped_value = min(sell_value, holdings_value)
        shares = min(capped_value / trade.price, reconciled_shares)

        if shares <= 0:
            return CopyDecision.skip(TradeSide.SELL, SkipReason.AMOUNT_TOO_SMALL)

        return CopyDecision.accept_sell(
            shares=shares,
            capped_by_position=sell_value > holdings_value,
        )

    async def decide(
        self,
        trade: ObservedTrade,
        config: CopytradeConfig,
        position: SessionPosition,
        reconciler: PositionReconciler,
        allow_add_to_position: bool = False
    ) -> CopyDecision:
        """Decide how to handle an observed trade.

        Raises whatever the reconciler's remote query raises.
        """
        if trade.side == TradeSide.BUY:
            decision = self.decide_buy(trade, config, position, allow_add_to_position)
        elif not position.is_open:
            decision = CopyDecision.skip(TradeSide.SELL, SkipReason.NO_POSITION_IN_SESSION)
        else:
            reconciled = await reconciler.reconcile(trade.asset_id)
            decision = self.decide_sell(trade, config, position, reconciled)

        logger.debug(
            "decision_engine.decided",
            trade_id=trade.transaction_hash,
            side=trade.side.value,
            action=decision.action.value,
            amount=str(decision.amount) if decision.amount is not None else None,
            shares=str(decision.shares) if decision.shares is not None else None,
            reason=decision.reason
        )
        return decision


__all__ = ["CopyDecisionEngine"]
