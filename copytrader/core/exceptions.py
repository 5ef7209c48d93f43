"""Exception hierarchy for the copytrader.

Exchange errors are split by how the copy loop reacts to them:
- ExchangeNetworkError / RateLimitError: recoverable, the trade is retried
  on the next poll cycle
- InsufficientFundsError: fatal for the session, the loop stops
- OrderRejectedError: the trade is recorded as FAILED
"""

from typing import Optional


class CopytraderError(Exception):
    """Base class for all copytrader errors."""


# =============================================================================
# Exchange Errors
# =============================================================================

class ExchangeError(CopytraderError):
    """Error reported by, or while talking to, the exchange."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ExchangeNetworkError(ExchangeError):
    """Transport failure or timeout. Safe to retry."""


class RateLimitError(ExchangeNetworkError):
    """HTTP 429 from the exchange."""


class InsufficientFundsError(ExchangeError):
    """Not enough collateral balance or token allowance to place the order."""


class OrderRejectedError(ExchangeError):
    """The exchange refused the order for a non-transient reason."""


# =============================================================================
# Ledger Errors
# =============================================================================

class LedgerError(CopytraderError):
    """Error reading or writing the session ledger."""


class DuplicateTradeError(LedgerError):
    """A trade outcome for this external id has already been recorded."""

    def __init__(self, original_trade_id: str):
        super().__init__(f"Trade {original_trade_id} already recorded")
        self.original_trade_id = original_trade_id


__all__ = [
    "CopytraderError",
    "ExchangeError",
    "ExchangeNetworkError",
    "RateLimitError",
    "InsufficientFundsError",
    "OrderRejectedError",
    "LedgerError",
    "DuplicateTradeError",
]
