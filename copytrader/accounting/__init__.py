"""Budget and P&L accounting for copy sessions."""

from copytrader.accounting.budget_tracker import AssetPnL, BudgetTracker, pnl_by_asset

__all__ = [
    "AssetPnL",
    "BudgetTracker",
    "pnl_by_asset",
]
