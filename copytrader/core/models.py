"""Data models for the Polymarket copytrader.

This module defines the data structures shared by the copy loop:
- Session configuration (budget, copy ratio, per-trade cap)
- Observed target-account trades and the outcome recorded for each
- Order requests/results exchanged with the execution adapter
- Decisions, derived positions and end-of-session summaries

All monetary values and share counts use Decimal for precision.
All timestamps are timezone-aware UTC datetime objects, except the
trade feed timestamp which is kept as unix seconds for watermark comparison.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

ZERO = Decimal("0")


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


# =============================================================================
# Enums
# =============================================================================

class TradeSide(str, Enum):
    """Trade side as reported by the Polymarket Data API."""
    BUY = "BUY"
    SELL = "SELL"


class TradeStatus(str, Enum):
    """Status of a recorded trade outcome."""
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    PENDING = "PENDING"
    SKIPPED = "SKIPPED"


class DecisionAction(str, Enum):
    """What the decision engine wants done with an observed trade."""
    ACCEPT = "accept"
    SKIP = "skip"
    FAIL = "fail"


class SkipReason(str, Enum):
    """Reasons an observed trade is not copied."""
    ALREADY_HOLD_POSITION = "already hold position"
    NO_BUDGET = "no budget"
    AMOUNT_TOO_SMALL = "amount too small"
    BELOW_MINIMUM = "below minimum"
    NO_POSITION_IN_SESSION = "no position in session"
    NO_ACTUAL_POSITION = "no actual position"


# =============================================================================
# Configuration Models
# =============================================================================

class CopytradeConfig(BaseModel):
    """Configuration of one copy session.

    Attributes:
        id: Ledger-assigned identifier (None until saved)
        trader_address: Target account whose trades are mirrored
        budget: Initial session budget in USDC
        remaining_budget: Budget still available; may exceed budget when
            sell proceeds are reinvested
        copy_ratio: Fraction of the target's notional to copy, in (0, 1]
        max_trade_size: Per-trade dollar cap
        is_active: False once the session has terminated
        reinvest: Whether sell proceeds are credited back to the budget
        created_at: Creation time (UTC)
    """
    model_config = ConfigDict(json_encoders={Decimal: str})

    id: Optional[int] = Field(default=None, description="Ledger id")
    trader_address: str = Field(..., min_length=1, description="Target account address")
    budget: Decimal = Field(..., gt=0, description="Initial budget (USDC)")
    remaining_budget: Optional[Decimal] = Field(default=None, description="Remaining budget (USDC)")
    copy_ratio: Decimal = Field(..., gt=0, le=1, description="Copy ratio")
    max_trade_size: Decimal = Field(..., gt=0, description="Per-trade cap (USDC)")
    is_active: bool = Field(default=True, description="Session active flag")
    reinvest: bool = Field(default=False, description="Reinvest sell proceeds")
    created_at: datetime = Field(default_factory=utc_now, description="Creation time")

    @model_validator(mode="after")
    def default_remaining_budget(self) -> "CopytradeConfig":
        if self.remaining_budget is None:
            self.remaining_budget = self.budget
        return self

    @property
    def is_exhausted(self) -> bool:
        """True when there is nothing left to spend."""
        return self.remaining_budget <= 0


# =============================================================================
# Trade Feed Models
# =============================================================================

class ObservedTrade(BaseModel):
    """A trade made by the target account, as returned by the activity feed.

    Immutable. The transaction hash is the external identifier used for
    deduplication.
    """
    model_config = ConfigDict(frozen=True, json_encoders={Decimal: str})

    side: TradeSide = Field(..., description="BUY or SELL")
    asset_id: str = Field(..., min_length=1, description="CLOB token id")
    size: Decimal = Field(..., ge=0, description="Shares traded")
    price: Decimal = Field(..., gt=0, description="Price per share")
    timestamp: int = Field(..., description="Unix seconds")
    title: str = Field(default="", description="Market title")
    outcome: str = Field(default="", description="Outcome name (e.g. Yes/No)")
    transaction_hash: str = Field(..., min_length=1, description="External trade id")
    condition_id: Optional[str] = Field(default=None, description="Market condition id")
    slug: Optional[str] = Field(default=None, description="Market slug")
    proxy_wallet: Optional[str] = Field(default=None, description="Trader proxy wallet")

    @property
    def notional(self) -> Decimal:
        """Dollar value of the trade."""
        return self.size * self.price


class TradeOutcome(BaseModel):
    """Record of how one observed trade was handled.

    Exactly one outcome exists per external trade id. Skips and failures
    carry zero executed size and zero notional.
    """
    model_config = ConfigDict(json_encoders={Decimal: str})

    id: Optional[int] = Field(default=None, description="Ledger id")
    config_id: int = Field(..., description="Owning copy session")
    original_trade_id: str = Field(..., min_length=1, description="External trade id")
    trader_address: str = Field(..., description="Target account address")
    market: str = Field(default="", description="Market title")
    outcome: str = Field(default="", description="Outcome name")
    asset_id: str = Field(..., description="CLOB token id")
    side: TradeSide = Field(..., description="BUY or SELL")
    original_size: Decimal = Field(..., ge=0, description="Target's share size")
    executed_size: Decimal = Field(default=ZERO, ge=0, description="Shares we traded")
    notional: Decimal = Field(default=ZERO, ge=0, description="Dollars spent/received")
    price: Decimal = Field(..., ge=0, description="Target's fill price")
    status: TradeStatus = Field(..., description="Outcome status")
    order_id: Optional[str] = Field(default=None, description="Exchange order id")
    error_message: Optional[str] = Field(default=None, description="Skip reason or error")
    created_at: datetime = Field(default_factory=utc_now, description="Record time")

    @property
    def is_success(self) -> bool:
        return self.status == TradeStatus.SUCCESS

    @classmethod
    def from_trade(
        cls,
        trade: ObservedTrade,
        config_id: int,
        trader_address: str,
        status: TradeStatus,
        **kwargs
    ) -> "TradeOutcome":
        """Build an outcome record from the observed trade it describes."""
        return cls(
            config_id=config_id,
            original_trade_id=trade.transaction_hash,
            trader_address=trader_address,
            market=trade.title,
            outcome=trade.outcome,
            asset_id=trade.asset_id,
            side=trade.side,
            original_size=trade.size,
            price=trade.price,
            status=status,
            **kwargs
        )


# =============================================================================
# Order Models
# =============================================================================

class OrderRequest(BaseModel):
    """Market order to send to the execution adapter.

    amount is dollars for BUY and shares for SELL.
    """
    model_config = ConfigDict(json_encoders={Decimal: str})

    asset_id: str = Field(..., min_length=1, description="CLOB token id")
    side: TradeSide = Field(..., description="BUY or SELL")
    amount: Decimal = Field(..., gt=0, description="Dollars (BUY) or shares (SELL)")


class OrderResult(BaseModel):
    """Result of a market order placement."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    success: bool = Field(..., description="Whether the order was accepted")
    order_id: Optional[str] = Field(default=None, description="Exchange order id")
    error_message: Optional[str] = Field(default=None, description="Failure reason")
    filled_shares: Optional[Decimal] = Field(default=None, description="Venue-reported fill")

    @classmethod
    def filled(cls, order_id: str, filled_shares: Optional[Decimal] = None) -> "OrderResult":
        return cls(success=True, order_id=order_id, filled_shares=filled_shares)

    @classmethod
    def failed(cls, error_message: str) -> "OrderResult":
        return cls(success=False, error_message=error_message)


# =============================================================================
# Decision Models
# =============================================================================

class CopyDecision(BaseModel):
    """Result of sizing an observed trade.

    Attributes:
        action: ACCEPT, SKIP or FAIL
        side: Side of the observed trade
        amount: Dollars to spend (accepted buys)
        shares: Shares to sell (accepted sells)
        estimated_shares: amount / price for buys; advisory only
        reason: Skip reason or failure text
        capped_by_max_trade: Size was reduced by the per-trade cap
        capped_by_budget: Size was reduced to the remaining budget
        capped_by_position: Sell was reduced to reconciled holdings
    """
    model_config = ConfigDict(json_encoders={Decimal: str})

    action: DecisionAction = Field(..., description="Decision")
    side: TradeSide = Field(..., description="Trade side")
    amount: Optional[Decimal] = Field(default=None, description="Buy amount (USDC)")
    shares: Optional[Decimal] = Field(default=None, description="Sell shares")
    estimated_shares: Optional[Decimal] = Field(default=None, description="Advisory buy shares")
    reason: Optional[str] = Field(default=None, description="Skip/failure reason")
    capped_by_max_trade: bool = Field(default=False)
    capped_by_budget: bool = Field(default=False)
    capped_by_position: bool = Field(default=False)

    @property
    def is_accepted(self) -> bool:
        return self.action == DecisionAction.ACCEPT

    @property
    def is_skipped(self) -> bool:
        return self.action == DecisionAction.SKIP

    @classmethod
    def accept_buy(cls, amount: Decimal, estimated_shares: Optional[Decimal] = None, **kwargs) -> "CopyDecision":
        """Create an accepted buy of `amount` dollars."""
        return cls(
            action=DecisionAction.ACCEPT,
            side=TradeSide.BUY,
            amount=amount,
            estimated_shares=estimated_shares,
            **kwargs
        )

    @classmethod
    def accept_sell(cls, shares: Decimal, **kwargs) -> "CopyDecision":
        """Create an accepted sell of `shares` shares."""
        return cls(action=DecisionAction.ACCEPT, side=TradeSide.SELL, shares=shares, **kwargs)

    @classmethod
    def skip(cls, side: TradeSide, reason: str) -> "CopyDecision":
        """Create a skip decision."""
        return cls(action=DecisionAction.SKIP, side=side, reason=str(getattr(reason, "value", reason)))

    @classmethod
    def fail(cls, side: TradeSide, reason: str) -> "CopyDecision":
        """Create a failure; only used after an execution attempt."""
        return cls(action=DecisionAction.FAIL, side=side, reason=reason)


# =============================================================================
# Position Models
# =============================================================================

class SessionPosition(BaseModel):
    """Position in one asset built up during a copy session.

    Derived from SUCCESS outcome records, never stored.
    """
    model_config = ConfigDict(json_encoders={Decimal: str})

    config_id: int = Field(..., description="Copy session")
    asset_id: str = Field(..., description="CLOB token id")
    shares: Decimal = Field(default=ZERO, description="Bought minus sold shares")
    cost_basis: Decimal = Field(default=ZERO, description="Remaining cost of held shares")
    bought_shares: Decimal = Field(default=ZERO, description="Total shares bought")
    sold_shares: Decimal = Field(default=ZERO, description="Total shares sold")

    @property
    def is_open(self) -> bool:
        return self.shares > 0

    @property
    def average_cost(self) -> Decimal:
        """Cost per held share."""
        if self.shares <= 0:
            return ZERO
        return self.cost_basis / self.shares


def derive_session_position(
    config_id: int,
    asset_id: str,
    records: Iterable[TradeOutcome]
) -> SessionPosition:
    """Replay outcome records into the session position for one asset.

    shares = sum of buy shares - sum of sell shares over SUCCESS records.
    cost_basis = buy notional reduced by the fraction of bought shares sold.
    """
    bought = ZERO
    sold = ZERO
    buy_notional = ZERO

    for record in records:
        if record.config_id != config_id or record.asset_id != asset_id:
            continue
        if not record.is_success:
            continue
        if record.side == TradeSide.BUY:
            bought += record.executed_size
            buy_notional += record.notional
        else:
            sold += record.executed_size

    cost_basis = ZERO
    if bought > 0:
        remaining_fraction = max(ZERO, Decimal("1") - min(sold / bought, Decimal("1")))
        cost_basis = buy_notional * remaining_fraction

    return SessionPosition(
        config_id=config_id,
        asset_id=asset_id,
        shares=bought - sold,
        cost_basis=cost_basis,
        bought_shares=bought,
        sold_shares=sold,
    )


# =============================================================================
# Reporting Models
# =============================================================================

class CycleReport(BaseModel):
    """What happened during one poll cycle."""

    poll_number: int = Field(default=0, description="1-based poll counter")
    fetched: int = Field(default=0, description="Trades returned by the feed")
    new: int = Field(default=0, description="Trades not seen before")
    copied: int = Field(default=0, description="Trades copied successfully")
    skipped: int = Field(default=0, description="Trades skipped")
    failed: int = Field(default=0, description="Copies that failed")
    deferred: int = Field(default=0, description="Trades left for the next cycle")
    watermark: int = Field(default=0, description="Watermark after the cycle")
    stopped: bool = Field(default=False, description="Session must terminate")


class SessionSummary(BaseModel):
    """End-of-session report."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    config_id: Optional[int] = Field(default=None, description="Copy session")
    buys_executed: int = Field(default=0)
    sells_executed: int = Field(default=0)
    buys_failed: int = Field(default=0)
    sells_failed: int = Field(default=0)
    skipped: int = Field(default=0)
    skip_reasons: Dict[str, int] = Field(default_factory=dict)
    total_bought: Decimal = Field(default=ZERO, description="USDC spent on buys")
    total_sold: Decimal = Field(default=ZERO, description="USDC received from sells")
    net_deployed: Decimal = Field(default=ZERO, description="Bought minus sold")
    realized_pnl: Decimal = Field(default=ZERO, description="Weighted-average realized P&L")
    sells_without_cost_basis: int = Field(default=0)
    remaining_budget: Decimal = Field(default=ZERO)
    markets: List[str] = Field(default_factory=list, description="Titles of markets bought into")
    stop_reason: Optional[str] = Field(default=None)

    @property
    def failed(self) -> int:
        return self.buys_failed + self.sells_failed

    @property
    def markets_entered(self) -> int:
        return len(self.markets)


__all__ = [
    "ZERO",
    "utc_now",
    "TradeSide",
    "TradeStatus",
    "DecisionAction",
    "SkipReason",
    "CopytradeConfig",
    "ObservedTrade",
    "TradeOutcome",
    "OrderRequest",
    "OrderResult",
    "CopyDecision",
    "SessionPosition",
    "derive_session_position",
    "CycleReport",
    "SessionSummary",
]
