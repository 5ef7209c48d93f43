"""Trade sizing for the copytrader.

This module decides how much of each observed trade to copy:
- Buy sizing against copy ratio, per-trade cap, budget and venue minimum
- Sell sizing against reconciled holdings
- Same-cycle position cache guarding against stale balance reads
"""

from copytrader.sizing.decision_engine import CopyDecisionEngine
from copytrader.sizing.reconciliation import PositionReconciler

__all__ = [
    "CopyDecisionEngine",
    "PositionReconciler",
]
