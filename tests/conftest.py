"""Pytest fixtures and utilities for the copytrader test suite."""
import pytest
import pytest_asyncio
from decimal import Decimal
from unittest.mock import AsyncMock

from copytrader.core.models import (
    CopytradeConfig, ObservedTrade, OrderResult, SessionPosition, TradeSide
)
from copytrader.exchange.polymarket_client import PolymarketClient
from copytrader.storage.database import Database


TRADER = "0x1111111111111111111111111111111111111111"
START_TIME = 1_700_000_000


# =============================================================================
# Configuration Fixtures
# =============================================================================

@pytest.fixture
def sample_config():
    """Scenario config: $100 budget, copy 100%, $20 cap."""
    return CopytradeConfig(
        trader_address=TRADER,
        budget=Decimal("100"),
        copy_ratio=Decimal("1"),
        max_trade_size=Decimal("20"),
    )


@pytest.fixture
def saved_config(sample_config):
    """Config as it looks after the ledger assigned it an id."""
    return sample_config.model_copy(update={"id": 1})


# =============================================================================
# Trade Fixtures
# =============================================================================

def build_trade(
    tx: str = "0xtx1",
    side: TradeSide = TradeSide.BUY,
    asset_id: str = "token-yes",
    size: str = "100",
    price: str = "0.5",
    timestamp: int = START_TIME + 10,
    title: str = "Will it rain tomorrow?",
    outcome: str = "Yes",
) -> ObservedTrade:
    """Build an observed trade with sensible defaults."""
    return ObservedTrade(
        side=side,
        asset_id=asset_id,
        size=Decimal(size),
        price=Decimal(price),
        timestamp=timestamp,
        title=title,
        outcome=outcome,
        transaction_hash=tx,
    )


@pytest.fixture
def make_trade():
    """Factory fixture for observed trades."""
    return build_trade


def position(shares: str = "0", config_id: int = 1, asset_id: str = "token-yes") -> SessionPosition:
    return SessionPosition(config_id=config_id, asset_id=asset_id, shares=Decimal(shares))


@pytest.fixture
def make_position():
    """Factory fixture for session positions."""
    return position


# =============================================================================
# Component Fixtures
# =============================================================================

@pytest_asyncio.fixture
async def database(tmp_path):
    """File-backed SQLite ledger in a temp directory."""
    db = Database(f"sqlite+aiosqlite:///{tmp_path}/test.db", echo=False)
    await db.initialize()
    yield db
    await db.close()


@pytest.fixture
def mock_client():
    """Polymarket client double: empty feed, orders succeed, no shares held."""
    client = AsyncMock(spec=PolymarketClient)
    client.fetch_trades.return_value = []
    client.place_market_order.return_value = OrderResult(success=True, order_id="order-1")
    client.get_share_balance.return_value = Decimal("0")
    return client


class FakeClock:
    """Settable clock for the engine's watermark anchor."""

    def __init__(self, now: float = START_TIME):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()
