"""Unit tests for the copytrade engine."""
import pytest
from decimal import Decimal

from conftest import START_TIME, build_trade
from copytrader.core.engine import (
    BUDGET_EXHAUSTED, DRY_RUN_ORDER_ID, INSUFFICIENT_FUNDS, STOP_REQUESTED, CopytradeEngine
)
from copytrader.core.exceptions import (
    ExchangeNetworkError, InsufficientFundsError, OrderRejectedError, RateLimitError
)
from copytrader.core.models import OrderResult, TradeSide, TradeStatus


@pytest.fixture
def engine(mock_client, database, clock):
    return CopytradeEngine(
        mock_client, database, poll_interval=0, min_order_size=Decimal("1"), clock=clock
    )


async def records_for(engine):
    return await engine.database.get_trades_by_config(engine.config.id)


def order_amounts(mock_client):
    return [c.args[0].amount for c in mock_client.place_market_order.await_args_list]


# =============================================================================
# Session Lifecycle
# =============================================================================

class TestSessionLifecycle:
    """Test session start and termination."""

    @pytest.mark.asyncio
    async def test_begin_session_anchors_watermark(self, engine, sample_config):
        config = await engine.begin_session(sample_config)

        assert config.id is not None
        assert engine.watermark == START_TIME
        assert engine.is_running is True
        assert engine.get_status()["config_id"] == config.id

    @pytest.mark.asyncio
    async def test_historical_trades_ignored(self, engine, mock_client, sample_config):
        mock_client.fetch_trades.return_value = [
            build_trade("0xold", timestamp=START_TIME - 100),
            build_trade("0xedge", timestamp=START_TIME),
        ]
        await engine.begin_session(sample_config)

        report = await engine.run_cycle()

        assert report.fetched == 2
        assert report.new == 0
        mock_client.place_market_order.assert_not_awaited()
        assert await records_for(engine) == []

    @pytest.mark.asyncio
    async def test_terminate_deactivates_config(self, engine, database, sample_config):
        await engine.begin_session(sample_config)
        engine.stop()

        summary = await engine.terminate()

        assert summary.stop_reason == STOP_REQUESTED
        assert (await database.get_config(engine.config.id)).is_active is False
        assert await database.get_active_configs() == []

    @pytest.mark.asyncio
    async def test_start_terminates_on_budget_exhaustion(self, engine, mock_client, sample_config):
        mock_client.fetch_trades.return_value = [build_trade("0xbuy")]
        config = sample_config.model_copy(update={"budget": Decimal("20")})
        config.remaining_budget = Decimal("20")

        summary = await engine.start(config)

        assert summary.stop_reason == BUDGET_EXHAUSTED
        assert summary.buys_executed == 1
        assert summary.remaining_budget == Decimal("0")
        assert engine.is_running is False

    @pytest.mark.asyncio
    async def test_start_honors_stop_request(self, engine, mock_client, sample_config):
        polls = []

        def feed(address):
            polls.append(address)
            if len(polls) == 3:
                engine.stop()
            return []

        mock_client.fetch_trades.side_effect = feed

        summary = await engine.start(sample_config)

        assert len(polls) == 3
        assert summary.stop_reason == STOP_REQUESTED
        assert summary.buys_executed == 0

    @pytest.mark.asyncio
    async def test_unexpected_error_deactivates_config(
        self, engine, mock_client, database, sample_config
    ):
        mock_client.fetch_trades.side_effect = RuntimeError("feed exploded")

        with pytest.raises(RuntimeError, match="feed exploded"):
            await engine.start(sample_config)

        assert engine.is_running is False
        assert engine.config.is_active is False
        assert await database.get_active_configs() == []


# =============================================================================
# Buy Copying
# =============================================================================

class TestBuyCopying:
    """Test copying target buys."""

    @pytest.mark.asyncio
    async def test_buy_capped_and_debited(self, engine, mock_client, database, sample_config):
        mock_client.fetch_trades.return_value = [build_trade("0xbuy", size="100", price="0.5")]
        await engine.begin_session(sample_config)

        report = await engine.run_cycle()

        assert report.copied == 1
        request = mock_client.place_market_order.await_args.args[0]
        assert request.side == TradeSide.BUY
        assert request.asset_id == "token-yes"
        assert request.amount == Decimal("20")

        [record] = await records_for(engine)
        assert record.status == TradeStatus.SUCCESS
        assert record.executed_size == Decimal("40")
        assert record.notional == Decimal("20")
        assert record.order_id == "order-1"
        assert (await database.get_config(engine.config.id)).remaining_budget == Decimal("80")
        assert report.watermark == START_TIME + 10

    @pytest.mark.asyncio
    async def test_venue_fill_used_for_shares(self, engine, mock_client, sample_config):
        mock_client.fetch_trades.return_value = [build_trade("0xbuy")]
        mock_client.place_market_order.return_value = OrderResult.filled("order-2", Decimal("38.5"))
        await engine.begin_session(sample_config)

        await engine.run_cycle()

        [record] = await records_for(engine)
        assert record.executed_size == Decimal("38.5")
        assert record.notional == Decimal("20")

    @pytest.mark.asyncio
    async def test_second_buy_same_asset_skipped(self, engine, mock_client, sample_config):
        mock_client.fetch_trades.return_value = [
            build_trade("0x1", timestamp=START_TIME + 10),
            build_trade("0x2", timestamp=START_TIME + 20),
        ]
        await engine.begin_session(sample_config)

        report = await engine.run_cycle()

        assert report.copied == 1
        assert report.skipped == 1
        records = await records_for(engine)
        assert [r.status for r in records] == [TradeStatus.SUCCESS, TradeStatus.SKIPPED]
        assert records[1].error_message == "already hold position"
        assert records[1].executed_size == Decimal("0")

    @pytest.mark.asyncio
    async def test_trades_processed_oldest_first(self, engine, mock_client, sample_config):
        mock_client.fetch_trades.return_value = [
            build_trade("0xlate", asset_id="b", size="10", timestamp=START_TIME + 30),
            build_trade("0xearly", asset_id="a", size="20", timestamp=START_TIME + 10),
        ]
        await engine.begin_session(sample_config)

        await engine.run_cycle()

        assert [r.original_trade_id for r in await records_for(engine)] == ["0xearly", "0xlate"]
        assert order_amounts(mock_client) == [Decimal("10"), Decimal("5")]


# =============================================================================
# Deduplication and Watermark
# =============================================================================

class TestDeduplication:
    """Test that every external trade is handled once."""

    @pytest.mark.asyncio
    async def test_same_trade_across_polls_copied_once(self, engine, mock_client, clock, sample_config):
        mock_client.fetch_trades.return_value = [build_trade("0xabc")]
        await engine.begin_session(sample_config)

        await engine.run_cycle()
        clock.now += 2
        second = await engine.run_cycle()

        assert second.new == 0
        assert mock_client.place_market_order.await_count == 1
        assert len(await records_for(engine)) == 1

    @pytest.mark.asyncio
    async def test_duplicate_hash_in_batch(self, engine, mock_client, sample_config):
        mock_client.fetch_trades.return_value = [build_trade("0xabc"), build_trade("0xabc")]
        await engine.begin_session(sample_config)

        report = await engine.run_cycle()

        assert report.new == 1
        assert len(await records_for(engine)) == 1

    @pytest.mark.asyncio
    async def test_ledger_dedup_survives_watermark_reset(self, engine, mock_client, sample_config):
        mock_client.fetch_trades.return_value = [build_trade("0xabc")]
        await engine.begin_session(sample_config)
        await engine.run_cycle()

        engine.watermark = 0
        report = await engine.run_cycle()

        assert report.new == 0
        assert mock_client.place_market_order.await_count == 1

    @pytest.mark.asyncio
    async def test_empty_feed_keeps_watermark(self, engine, sample_config):
        await engine.begin_session(sample_config)

        report = await engine.run_cycle()

        assert report.fetched == 0
        assert report.watermark == START_TIME


# =============================================================================
# Error Handling
# =============================================================================

class TestErrorHandling:
    """Test recoverable and fatal execution errors."""

    @pytest.mark.asyncio
    async def test_network_error_defers_trade(self, engine, mock_client, sample_config):
        mock_client.fetch_trades.return_value = [build_trade("0xabc")]
        mock_client.place_market_order.side_effect = [
            ExchangeNetworkError("timeout"),
            OrderResult.filled("order-1"),
        ]
        await engine.begin_session(sample_config)

        first = await engine.run_cycle()

        assert first.deferred == 1
        assert first.watermark == START_TIME
        assert await records_for(engine) == []

        second = await engine.run_cycle()

        assert second.copied == 1
        [record] = await records_for(engine)
        assert record.status == TradeStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_watermark_held_below_deferred_trade(self, engine, mock_client, sample_config):
        mock_client.fetch_trades.return_value = [
            build_trade("0x1", asset_id="a", timestamp=START_TIME + 10),
            build_trade("0x2", asset_id="b", timestamp=START_TIME + 20),
        ]
        mock_client.place_market_order.side_effect = [
            RateLimitError("slow down", status_code=429),
            OrderResult.filled("order-2"),
            OrderResult.filled("order-3"),
        ]
        await engine.begin_session(sample_config)

        first = await engine.run_cycle()

        assert first.copied == 1
        assert first.deferred == 1
        assert first.watermark == START_TIME + 9

        second = await engine.run_cycle()

        assert second.new == 1
        assert second.copied == 1
        assert second.watermark == START_TIME + 10
        assert mock_client.place_market_order.await_count == 3

    @pytest.mark.asyncio
    async def test_insufficient_funds_stops_session(self, engine, mock_client, database, sample_config):
        mock_client.fetch_trades.return_value = [
            build_trade("0x1", asset_id="a", timestamp=START_TIME + 10),
            build_trade("0x2", asset_id="b", timestamp=START_TIME + 20),
        ]
        mock_client.place_market_order.side_effect = InsufficientFundsError("not enough balance")
        await engine.begin_session(sample_config)

        report = await engine.run_cycle()

        assert report.stopped is True
        assert report.deferred == 2
        assert mock_client.place_market_order.await_count == 1
        assert await records_for(engine) == []
        assert (await database.get_config(engine.config.id)).remaining_budget == Decimal("100")

        summary = await engine.terminate()
        assert summary.stop_reason == INSUFFICIENT_FUNDS

    @pytest.mark.asyncio
    async def test_rejected_order_recorded_as_failed(self, engine, mock_client, database, sample_config):
        mock_client.fetch_trades.return_value = [build_trade("0xabc")]
        mock_client.place_market_order.side_effect = OrderRejectedError("market closed", status_code=400)
        await engine.begin_session(sample_config)

        report = await engine.run_cycle()

        assert report.failed == 1
        [record] = await records_for(engine)
        assert record.status == TradeStatus.FAILED
        assert record.error_message == "market closed"
        assert record.executed_size == Decimal("0")
        assert record.notional == Decimal("0")
        assert (await database.get_config(engine.config.id)).remaining_budget == Decimal("100")

    @pytest.mark.asyncio
    async def test_unsuccessful_result_recorded_as_failed(self, engine, mock_client, sample_config):
        mock_client.fetch_trades.return_value = [build_trade("0xabc")]
        mock_client.place_market_order.return_value = OrderResult.failed("not filled")
        await engine.begin_session(sample_config)

        report = await engine.run_cycle()

        assert report.failed == 1
        assert report.watermark == START_TIME + 10
        [record] = await records_for(engine)
        assert record.status == TradeStatus.FAILED
        assert record.error_message == "not filled"

    @pytest.mark.asyncio
    async def test_unfilled_result_without_reason(self, engine, mock_client, sample_config):
        mock_client.fetch_trades.return_value = [build_trade("0xabc")]
        mock_client.place_market_order.return_value = OrderResult(success=False)
        await engine.begin_session(sample_config)

        report = await engine.run_cycle()

        assert report.failed == 1
        [record] = await records_for(engine)
        assert record.status == TradeStatus.FAILED
        assert record.error_message == "order not filled"

    @pytest.mark.asyncio
    async def test_stop_between_trades(self, engine, mock_client, sample_config):
        mock_client.fetch_trades.return_value = [
            build_trade("0x1", asset_id="a", timestamp=START_TIME + 10),
            build_trade("0x2", asset_id="b", timestamp=START_TIME + 20),
        ]

        def place(request):
            engine.stop()
            return OrderResult.filled("order-1")

        mock_client.place_market_order.side_effect = place
        await engine.begin_session(sample_config)

        report = await engine.run_cycle()

        assert report.copied == 1
        assert report.deferred == 1
        assert report.stopped is True
        assert report.watermark == START_TIME + 10
        assert [r.original_trade_id for r in await records_for(engine)] == ["0x1"]


# =============================================================================
# Sell Copying
# =============================================================================

class TestSellCopying:
    """Test copying target sells against the session position."""

    async def _buy_forty(self, engine, mock_client, config):
        mock_client.fetch_trades.return_value = [build_trade("0xbuy", timestamp=START_TIME + 10)]
        await engine.begin_session(config)
        await engine.run_cycle()

    @pytest.mark.asyncio
    async def test_sell_without_position_skipped(self, engine, mock_client, sample_config):
        mock_client.fetch_trades.return_value = [build_trade("0xsell", side=TradeSide.SELL)]
        await engine.begin_session(sample_config)

        report = await engine.run_cycle()

        assert report.skipped == 1
        [record] = await records_for(engine)
        assert record.error_message == "no position in session"
        mock_client.get_share_balance.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_proportional_sell_without_reinvest(
        self, engine, mock_client, database, sample_config
    ):
        await self._buy_forty(engine, mock_client, sample_config)
        mock_client.get_share_balance.return_value = Decimal("40")
        mock_client.fetch_trades.return_value = [
            build_trade("0xsell", side=TradeSide.SELL, size="12", timestamp=START_TIME + 20)
        ]

        report = await engine.run_cycle()

        assert report.copied == 1
        assert order_amounts(mock_client)[-1] == Decimal("12")
        sell = (await records_for(engine))[-1]
        assert sell.side == TradeSide.SELL
        assert sell.executed_size == Decimal("12")
        assert sell.notional == Decimal("6")
        assert (await database.get_config(engine.config.id)).remaining_budget == Decimal("80")
        assert (await database.get_session_position(engine.config.id, "token-yes")).shares == Decimal("28")

    @pytest.mark.asyncio
    async def test_venue_fill_clamped_to_order_size(
        self, engine, mock_client, database, sample_config
    ):
        await self._buy_forty(engine, mock_client, sample_config)
        mock_client.get_share_balance.return_value = Decimal("40")
        mock_client.place_market_order.return_value = OrderResult.filled("order-2", Decimal("50"))
        mock_client.fetch_trades.return_value = [
            build_trade("0xsell", side=TradeSide.SELL, size="12", timestamp=START_TIME + 20)
        ]

        await engine.run_cycle()

        sell = (await records_for(engine))[-1]
        assert sell.executed_size == Decimal("12")
        assert sell.notional == Decimal("6")
        assert (await database.get_session_position(engine.config.id, "token-yes")).shares == Decimal("28")

    @pytest.mark.asyncio
    async def test_sell_proceeds_reinvested(self, engine, mock_client, database, sample_config):
        config = sample_config.model_copy(update={"reinvest": True})
        await self._buy_forty(engine, mock_client, config)
        mock_client.get_share_balance.return_value = Decimal("40")
        mock_client.fetch_trades.return_value = [
            build_trade("0xsell", side=TradeSide.SELL, size="12", timestamp=START_TIME + 20)
        ]

        await engine.run_cycle()

        assert (await database.get_config(engine.config.id)).remaining_budget == Decimal("86")

    @pytest.mark.asyncio
    async def test_stale_remote_balance_within_cycle(self, engine, mock_client, sample_config):
        await self._buy_forty(engine, mock_client, sample_config)
        # Remote keeps reporting the pre-sell balance
        mock_client.get_share_balance.return_value = Decimal("40")
        mock_client.fetch_trades.return_value = [
            build_trade("0xs1", side=TradeSide.SELL, size="30", timestamp=START_TIME + 20),
            build_trade("0xs2", side=TradeSide.SELL, size="30", timestamp=START_TIME + 21),
        ]

        report = await engine.run_cycle()

        assert report.copied == 2
        assert order_amounts(mock_client)[-2:] == [Decimal("30"), Decimal("10")]
        last = (await records_for(engine))[-1]
        assert last.executed_size == Decimal("10")

    @pytest.mark.asyncio
    async def test_sell_when_wallet_empty(self, engine, mock_client, sample_config):
        await self._buy_forty(engine, mock_client, sample_config)
        mock_client.get_share_balance.return_value = Decimal("0")
        mock_client.fetch_trades.return_value = [
            build_trade("0xsell", side=TradeSide.SELL, size="12", timestamp=START_TIME + 20)
        ]

        report = await engine.run_cycle()

        assert report.skipped == 1
        assert (await records_for(engine))[-1].error_message == "no actual position"

    @pytest.mark.asyncio
    async def test_balance_lookup_failure_defers_sell(self, engine, mock_client, sample_config):
        await self._buy_forty(engine, mock_client, sample_config)
        mock_client.get_share_balance.side_effect = ExchangeNetworkError("timeout")
        mock_client.fetch_trades.return_value = [
            build_trade("0xsell", side=TradeSide.SELL, size="12", timestamp=START_TIME + 20)
        ]

        report = await engine.run_cycle()

        assert report.deferred == 1
        assert len(await records_for(engine)) == 1


# =============================================================================
# Dry Run
# =============================================================================

class TestDryRun:
    """Test simulated execution."""

    @pytest.mark.asyncio
    async def test_dry_run_places_no_orders(self, engine, mock_client, database, sample_config):
        mock_client.fetch_trades.return_value = [
            build_trade("0xbuy", timestamp=START_TIME + 10),
            build_trade("0xsell", side=TradeSide.SELL, size="12", timestamp=START_TIME + 20),
        ]
        await engine.begin_session(sample_config, dry_run=True)

        report = await engine.run_cycle()

        assert report.copied == 2
        mock_client.place_market_order.assert_not_awaited()
        mock_client.get_share_balance.assert_not_awaited()
        buy, sell = await records_for(engine)
        assert buy.order_id == DRY_RUN_ORDER_ID
        assert sell.executed_size == Decimal("12")
        assert (await database.get_config(engine.config.id)).remaining_budget == Decimal("80")
