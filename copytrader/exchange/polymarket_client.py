"""Polymarket client for the copytrader.

This module wraps the two Polymarket surfaces the copy loop needs:
- Data API (public, aiohttp): the target account's recent activity
- CLOB API (py-clob-client): market orders and balance queries

py-clob-client is synchronous, so every CLOB call runs in a thread pool
executor. Its exceptions are translated into the copytrader exception
hierarchy so the copy loop can tell recoverable errors from fatal ones.
"""
import asyncio
import functools
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

import aiohttp
import structlog
from py_clob_client.client import ClobClient
from py_clob_client.clob_types import (
    AssetType, BalanceAllowanceParams, MarketOrderArgs, OrderType
)
from py_clob_client.exceptions import PolyApiException
from py_clob_client.order_builder.constants import BUY, SELL

from copytrader.core.config import PolymarketAPIConfig, polymarket_config
from copytrader.core.exceptions import (
    ExchangeError, ExchangeNetworkError, InsufficientFundsError,
    OrderRejectedError, RateLimitError
)
from copytrader.core.models import ObservedTrade, OrderRequest, OrderResult, TradeSide

logger = structlog.get_logger(__name__)

# USDC and conditional tokens both use 6 decimals on Polygon
TOKEN_DECIMALS = Decimal("1000000")

INSUFFICIENT_FUNDS_MARKERS = ("not enough balance", "allowance")


class RetryConfig:
    """Configuration for retry logic."""
    DEFAULT_MAX_RETRIES = 3
    DEFAULT_BASE_DELAY = 1.0  # seconds
    DEFAULT_MAX_DELAY = 30.0  # seconds
    DEFAULT_EXPONENTIAL_BASE = 2.0
    RATE_LIMIT_BASE_DELAY = 60.0  # seconds
    RATE_LIMIT_MAX_DELAY = 300.0  # seconds


def with_retry(
    max_retries: Optional[int] = None,
    base_delay: float = RetryConfig.DEFAULT_BASE_DELAY,
    max_delay: float = RetryConfig.DEFAULT_MAX_DELAY,
    exponential_base: float = RetryConfig.DEFAULT_EXPONENTIAL_BASE,
    retryable_exceptions: tuple = (ExchangeNetworkError,)
):
    """Decorator for adding retry logic with exponential backoff.

    Rate limits are always retried, with a longer delay, regardless of
    retryable_exceptions.

    Args:
        max_retries: Maximum number of retry attempts. When None, the
            decorated method's `self.config.retry_attempts` is used, falling
            back to RetryConfig.DEFAULT_MAX_RETRIES.
        base_delay: Initial delay between retries in seconds
        max_delay: Maximum delay between retries in seconds
        exponential_base: Base for exponential backoff calculation
        retryable_exceptions: Tuple of exceptions that should trigger a retry
    """
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            last_exception = None
            retries = _resolve_max_retries(max_retries, args)

            for attempt in range(retries + 1):
                try:
                    return await func(*args, **kwargs)
                except RateLimitError as e:
                    last_exception = e
                    if attempt < retries:
                        delay = min(
                            RetryConfig.RATE_LIMIT_BASE_DELAY * (2 ** attempt),
                            RetryConfig.RATE_LIMIT_MAX_DELAY
                        )
                        logger.warning(
                            "polymarket_client.rate_limit_hit",
                            operation=func.__name__,
                            attempt=attempt + 1,
                            delay=delay
                        )
                        await asyncio.sleep(delay)
                    else:
                        break
                except retryable_exceptions as e:
                    last_exception = e
                    if attempt < retries:
                        delay = min(
                            base_delay * (exponential_base ** attempt),
                            max_delay
                        )
                        logger.warning(
                            "polymarket_client.retry_attempt",
                            operation=func.__name__,
                            attempt=attempt + 1,
                            max_retries=retries,
                            delay=delay,
                            error=str(e)
                        )
                        await asyncio.sleep(delay)
                    else:
                        break

            # All retries exhausted
            logger.error(
                "polymarket_client.max_retries_exceeded",
                operation=func.__name__,
                max_retries=retries,
                last_error=str(last_exception)
            )
            raise last_exception

        return wrapper
    return decorator


def _resolve_max_retries(max_retries: Optional[int], args: tuple) -> int:
    if max_retries is not None:
        return max_retries
    config = getattr(args[0], "config", None) if args else None
    return getattr(config, "retry_attempts", RetryConfig.DEFAULT_MAX_RETRIES)


def classify_api_error(error: PolyApiException) -> ExchangeError:
    """Map a py-clob-client error onto the copytrader exception hierarchy."""
    message = str(error.error_msg if error.error_msg is not None else error)
    status_code = error.status_code
    lowered = message.lower()

    if any(marker in lowered for marker in INSUFFICIENT_FUNDS_MARKERS):
        return InsufficientFundsError(message, status_code=status_code)
    if status_code == 429:
        return RateLimitError(message, status_code=status_code)
    # py-clob-client reports transport failures without a response
    if status_code is None or status_code >= 500:
        return ExchangeNetworkError(message, status_code=status_code)
    return OrderRejectedError(message, status_code=status_code)


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


class PolymarketClient:
    """Async client for the Polymarket Data and CLOB APIs.

    Attributes:
        config: API configuration
        _session: aiohttp session for the Data API (created lazily)
        _clob: Authenticated py-clob-client instance (None until initialized)
        _executor: Thread pool for synchronous py-clob-client calls
    """

    def __init__(self, config: Optional[PolymarketAPIConfig] = None):
        self.config = config or polymarket_config
        self._session: Optional[aiohttp.ClientSession] = None
        self._clob: Optional[ClobClient] = None
        self._executor = ThreadPoolExecutor(max_workers=4)

    @property
    def is_trading_enabled(self) -> bool:
        """True once an authenticated CLOB client is available."""
        return self._clob is not None

    async def initialize(self, trading: bool = True):
        """Open the Data API session and, if requested, authenticate the CLOB client.

        Args:
            trading: Derive CLOB API credentials for order placement. Requires
                PRIVATE_KEY and FUNDER_ADDRESS.
        """
        self._get_session()

        if not trading:
            logger.info("polymarket_client.initialized", trading=False)
            return

        if not self.config.has_credentials:
            raise ExchangeError("PRIVATE_KEY and FUNDER_ADDRESS are required for trading")

        await self.derive_api_credentials()
        logger.info(
            "polymarket_client.initialized",
            trading=True,
            funder=self.config.funder_address,
            signature_type=self.config.signature_type
        )

    async def derive_api_credentials(self):
        """Create or derive L2 API credentials and attach them to the CLOB client."""
        clob = ClobClient(
            self.config.clob_api_url,
            key=self.config.private_key,
            chain_id=self.config.chain_id,
            signature_type=self.config.signature_type,
            funder=self.config.funder_address,
        )
        creds = await self._run_clob(clob.create_or_derive_api_creds)
        clob.set_api_creds(creds)
        self._clob = clob

        logger.info("polymarket_client.api_credentials_derived")
        return creds

    async def close(self):
        """Close the HTTP session and the executor."""
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
        self._executor.shutdown(wait=False)
        logger.info("polymarket_client.closed")

    # =========================================================================
    # Trade Feed
    # =========================================================================

    async def fetch_trades(self, address: str) -> List[ObservedTrade]:
        """Fetch the address's recent trades from the activity feed.

        Never raises on API failures; returns an empty list instead so the
        copy loop simply tries again on its next poll.
        """
        try:
            activities = await self._fetch_activity(address)
        except ExchangeError as e:
            logger.warning(
                "polymarket_client.fetch_trades_failed",
                address=address,
                error=str(e),
                error_type=type(e).__name__
            )
            return []

        trades = []
        for activity in activities:
            if not isinstance(activity, dict) or activity.get("type") != "TRADE":
                continue
            trade = self._parse_trade(activity)
            if trade is not None:
                trades.append(trade)

        logger.debug(
            "polymarket_client.trades_fetched",
            address=address,
            activities=len(activities),
            trades=len(trades)
        )
        return trades

    @with_retry()
    async def _fetch_activity(self, address: str) -> List[Dict[str, Any]]:
        url = f"{self.config.data_api_url}/activity"
        params = {"user": address, "limit": str(self.config.activity_limit)}
        session = self._get_session()

        try:
            async with session.get(url, params=params) as response:
                if response.status == 429:
                    raise RateLimitError("Data API rate limit", status_code=429)
                if response.status >= 500:
                    raise ExchangeNetworkError(
                        f"Data API error {response.status}", status_code=response.status
                    )
                if response.status != 200:
                    raise ExchangeError(
                        f"Data API error {response.status}", status_code=response.status
                    )
                data = await response.json()
        except aiohttp.ClientError as e:
            raise ExchangeNetworkError(f"Network error: {e}") from e
        except asyncio.TimeoutError as e:
            raise ExchangeNetworkError("Data API request timeout") from e
        except ValueError as e:
            # Truncated or non-JSON body on a 200
            raise ExchangeNetworkError(f"Malformed Data API response: {e}") from e

        if not isinstance(data, list):
            return []
        return data

    def _parse_trade(self, activity: Dict[str, Any]) -> Optional[ObservedTrade]:
        """Convert an activity entry into an ObservedTrade, or None if malformed."""
        try:
            return ObservedTrade(
                side=TradeSide(str(activity["side"]).upper()),
                asset_id=str(activity["asset"]),
                size=Decimal(str(activity["size"])),
                price=Decimal(str(activity["price"])),
                timestamp=int(activity["timestamp"]),
                title=activity.get("title") or "",
                outcome=activity.get("outcome") or "",
                transaction_hash=str(activity["transactionHash"]),
                condition_id=activity.get("conditionId"),
                slug=activity.get("slug"),
                proxy_wallet=activity.get("proxyWallet"),
            )
        except (KeyError, TypeError, ValueError, InvalidOperation) as e:
            logger.warning(
                "polymarket_client.malformed_activity",
                transaction_hash=activity.get("transactionHash"),
                error=str(e)
            )
            return None

    # =========================================================================
    # Order Execution
    # =========================================================================

    async def place_market_order(self, request: OrderRequest) -> OrderResult:
        """Place a fill-or-kill market order.

        BUY amounts are dollars, SELL amounts are shares. Orders are not
        retried here: a lost response could mean the order was placed.

        Raises:
            InsufficientFundsError: Not enough balance or allowance
            RateLimitError: HTTP 429
            ExchangeNetworkError: Transport failure
            OrderRejectedError: Any other API rejection
        """
        clob = self._require_clob()
        side = BUY if request.side == TradeSide.BUY else SELL
        order_args = MarketOrderArgs(
            token_id=request.asset_id,
            amount=float(request.amount),
            side=side,
            order_type=OrderType.FOK,
        )

        def submit():
            signed_order = clob.create_market_order(order_args)
            return clob.post_order(signed_order, OrderType.FOK)

        try:
            response = await self._run_clob(submit)
        except ExchangeError:
            raise
        except Exception as e:
            # Order building fails locally, e.g. empty order book
            raise OrderRejectedError(str(e)) from e

        result = self._parse_order_response(request, response)
        logger.info(
            "polymarket_client.order_placed" if result.success else "polymarket_client.order_failed",
            asset_id=request.asset_id,
            side=request.side.value,
            amount=str(request.amount),
            order_id=result.order_id,
            filled_shares=str(result.filled_shares) if result.filled_shares is not None else None,
            error=result.error_message
        )
        return result

    def _parse_order_response(self, request: OrderRequest, response: Any) -> OrderResult:
        if not isinstance(response, dict):
            return OrderResult.failed(f"Unexpected order response: {response!r}")

        order_id = response.get("orderID") or response.get("orderId")
        if response.get("success") is False or not order_id:
            return OrderResult.failed(
                response.get("errorMsg") or "No order ID returned from API"
            )

        # takingAmount is what we receive: shares on a BUY, USDC on a SELL
        if request.side == TradeSide.BUY:
            filled = _to_decimal(response.get("takingAmount"))
        else:
            filled = _to_decimal(response.get("makingAmount"))

        return OrderResult.filled(order_id=str(order_id), filled_shares=filled or None)

    # =========================================================================
    # Balances
    # =========================================================================

    @with_retry()
    async def get_share_balance(self, asset_id: str) -> Decimal:
        """Shares of a conditional token held by the funder wallet."""
        return await self._get_balance(AssetType.CONDITIONAL, asset_id)

    @with_retry()
    async def get_collateral_balance(self) -> Decimal:
        """USDC collateral available for trading."""
        return await self._get_balance(AssetType.COLLATERAL, "")

    async def _get_balance(self, asset_type, token_id: str) -> Decimal:
        clob = self._require_clob()
        params = BalanceAllowanceParams(
            asset_type=asset_type,
            token_id=token_id,
            signature_type=self.config.signature_type,
        )
        response = await self._run_clob(clob.get_balance_allowance, params)

        raw = _to_decimal(response.get("balance")) if isinstance(response, dict) else None
        if raw is None:
            return Decimal("0")
        return raw / TOKEN_DECIMALS

    async def validate_connection(self) -> bool:
        """Check that the CLOB accepts our API credentials."""
        try:
            clob = self._require_clob()
            api_keys = await self._run_clob(clob.get_api_keys)
        except ExchangeError as e:
            logger.error("polymarket_client.validation_failed", error=str(e))
            return False
        return api_keys is not None

    # =========================================================================
    # Helpers
    # =========================================================================

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.config.timeout)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    def _require_clob(self) -> ClobClient:
        if self._clob is None:
            raise ExchangeError("CLOB client not initialized; call initialize(trading=True)")
        return self._clob

    async def _run_clob(self, func, *args):
        """Run a synchronous py-clob-client call in the executor."""
        loop = asyncio.get_event_loop()
        try:
            return await loop.run_in_executor(
                self._executor,
                functools.partial(func, *args)
            )
        except PolyApiException as e:
            raise classify_api_error(e) from e
