"""Exchange integration module for the Polymarket copytrader."""

from copytrader.exchange.polymarket_client import (
    PolymarketClient,
    RetryConfig,
    classify_api_error,
    with_retry,
)

__all__ = [
    "PolymarketClient",
    "RetryConfig",
    "classify_api_error",
    "with_retry",
]
