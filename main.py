"""
Polymarket Copytrader - Main Entry Point

Mirrors a target wallet's Polymarket trades into proportionally sized trades
for your own account, within a fixed budget.

Usage:
    # Check configuration
    python main.py check

    # Verify API credentials and show USDC balance
    python main.py setup-account

    # Copy 10% of a trader's size, $5 max per trade, $100 budget
    python main.py copytrade -t 0xTRADER -b 100 -p 10 -m 5

    # Same, without sending orders
    python main.py copytrade -t 0xTRADER -b 100 -p 10 -m 5 --dry-run

    # Show active sessions and recent trades
    python main.py status -l 20
"""

import argparse
import asyncio
import signal
import sys
from decimal import Decimal, InvalidOperation
from typing import List, Optional

import structlog

from copytrader.core.config import copytrader_config
from copytrader.core.engine import CopytradeEngine
from copytrader.core.models import CopytradeConfig, SessionSummary
from copytrader.exchange.polymarket_client import PolymarketClient
from copytrader.storage.database import Database
from copytrader.utils.logging_config import setup_logging

logger = structlog.get_logger(__name__)


class CopytraderApp:
    """
    Wires the copytrader components together for one CLI invocation.

    Owns the database and Polymarket client, runs a copy session and
    translates SIGINT/SIGTERM into a cooperative engine stop.
    """

    def __init__(self):
        self.database: Optional[Database] = None
        self.client: Optional[PolymarketClient] = None
        self.engine: Optional[CopytradeEngine] = None

    async def initialize(self, trading: bool = True):
        """Initialize the ledger and the exchange client."""
        self.database = Database()
        await self.database.initialize()

        self.client = PolymarketClient()
        await self.client.initialize(trading=trading)

        self.engine = CopytradeEngine(client=self.client, database=self.database)
        logger.info(
            "app.initialized",
            app=copytrader_config.system.app_name,
            version=copytrader_config.system.app_version,
            environment=copytrader_config.system.environment,
            trading=trading
        )

    async def run_copytrade(
        self,
        config: CopytradeConfig,
        dry_run: bool = False,
        allow_add_to_position: bool = False
    ) -> SessionSummary:
        """Run a copy session until it stops and return its summary."""
        loop = asyncio.get_event_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._signal_handler)

        try:
            return await self.engine.start(
                config, dry_run=dry_run, allow_add_to_position=allow_add_to_position
            )
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)

    async def shutdown(self):
        """Release network and database resources."""
        if self.client:
            await self.client.close()

        if self.database:
            await self.database.close()

        logger.info("app.shutdown_complete")

    def _signal_handler(self):
        """Handle shutdown signals."""
        logger.info("app.shutdown_signal_received")
        print("\nStopping after the current trade...")
        if self.engine:
            self.engine.stop()


# =============================================================================
# Argument parsing
# =============================================================================

def _decimal_arg(value: str) -> Decimal:
    try:
        return Decimal(value)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"invalid number: {value!r}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Polymarket Copytrader - mirror a trader's positions within a budget"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    copytrade = subparsers.add_parser("copytrade", help="Start copytrading a target wallet")
    copytrade.add_argument(
        "-t", "--trader", required=True, help="Wallet address of the trader to copy"
    )
    copytrade.add_argument(
        "-b", "--budget", required=True, type=_decimal_arg,
        help="Total budget for copytrading (USDC)"
    )
    copytrade.add_argument(
        "-p", "--percentage", required=True, type=_decimal_arg,
        help="Copy percentage (e.g. 10 = 10%% of their trade size)"
    )
    copytrade.add_argument(
        "-m", "--max-trade", required=True, type=_decimal_arg,
        help="Maximum amount per individual trade (USDC)"
    )
    copytrade.add_argument(
        "--reinvest", action="store_true",
        default=copytrader_config.copytrade.default_reinvest,
        help="Add sell proceeds back to the budget"
    )
    copytrade.add_argument(
        "--allow-add", action="store_true",
        default=copytrader_config.copytrade.default_allow_add_to_position,
        help="Copy buys into assets already held this session"
    )
    copytrade.add_argument(
        "--dry-run", action="store_true",
        default=copytrader_config.is_dry_run,
        help="Simulate trades without executing"
    )

    status = subparsers.add_parser("status", help="Show copytrade status and recent trades")
    status.add_argument("-c", "--config", type=int, help="Show trades for a specific config ID")
    status.add_argument("-l", "--limit", type=int, default=20, help="Number of trades to show")

    subparsers.add_parser("setup-account", help="Verify API credentials and show balance")
    subparsers.add_parser("check", help="Check configuration and exit")

    return parser


def build_copytrade_config(args: argparse.Namespace) -> CopytradeConfig:
    """Validate copytrade arguments and build the session config.

    Raises:
        ValueError: On out-of-range budget, percentage or max trade size
    """
    if args.budget <= 0:
        raise ValueError("Budget must be greater than 0")
    if args.percentage <= 0 or args.percentage > 100:
        raise ValueError("Percentage must be between 0 and 100")
    if args.max_trade <= 0:
        raise ValueError("Max trade size must be greater than 0")

    return CopytradeConfig(
        trader_address=args.trader,
        budget=args.budget,
        remaining_budget=args.budget,
        copy_ratio=args.percentage / Decimal("100"),
        max_trade_size=args.max_trade,
        reinvest=args.reinvest,
    )


# =============================================================================
# Output
# =============================================================================

def print_summary(summary: SessionSummary):
    print("\n" + "=" * 60)
    print("           COPYTRADE SESSION SUMMARY")
    print("=" * 60)
    print(f"\nStopped: {summary.stop_reason or 'n/a'}")
    print(f"\nBuys executed:   {summary.buys_executed}")
    print(f"Sells executed:  {summary.sells_executed}")
    print(f"Failed:          {summary.failed}")
    print(f"Skipped:         {summary.skipped}")
    for reason, count in sorted(summary.skip_reasons.items()):
        print(f"   - {reason}: {count}")
    print(f"\nTotal bought:    ${summary.total_bought:.2f}")
    print(f"Total sold:      ${summary.total_sold:.2f}")
    print(f"Net deployed:    ${summary.net_deployed:.2f}")
    print(f"Realized P&L:    ${summary.realized_pnl:.2f}")
    if summary.sells_without_cost_basis:
        print(f"   ({summary.sells_without_cost_basis} sells had no recorded cost basis)")
    print(f"Remaining budget: ${summary.remaining_budget:.2f}")
    print(f"Markets entered: {summary.markets_entered}")
    for market in summary.markets:
        print(f"   - {market}")
    print("\n" + "=" * 60)


async def show_status(database: Database, config_id: Optional[int], limit: int):
    print("\n" + "=" * 60)
    print("           COPYTRADER STATUS")
    print("=" * 60)

    configs = await database.get_active_configs()
    print(f"\nActive sessions: {len(configs)}")
    for config in configs:
        print(
            f"   [{config.id}] {config.trader_address} "
            f"budget ${config.budget:.2f} remaining ${config.remaining_budget:.2f} "
            f"copy {config.copy_ratio * 100:.1f}% max ${config.max_trade_size:.2f}"
        )

    if config_id is not None:
        trades = await database.get_trades_by_config(config_id)
        trades = trades[-limit:]
        print(f"\nTrades for config {config_id}:")
    else:
        trades = await database.get_recent_trades(limit)
        print("\nRecent trades:")

    if not trades:
        print("   No trades recorded")
    for trade in trades:
        line = (
            f"   {trade.created_at:%Y-%m-%d %H:%M:%S} {trade.side.value:<4} "
            f"{trade.status.value:<7} {trade.executed_size:.2f} sh ${trade.notional:.2f} "
            f"{trade.market} ({trade.outcome})"
        )
        if trade.error_message:
            line += f" - {trade.error_message}"
        print(line)

    print("\n" + "=" * 60)


def print_check(result: dict):
    print("\n" + "=" * 60)
    print("           CONFIGURATION CHECK")
    print("=" * 60)

    if result["valid"]:
        print("\n✓ Configuration is valid")
    else:
        print("\n✗ Configuration errors:")
        for issue in result["issues"]:
            print(f"   - {issue}")

    system = copytrader_config.system
    print(f"\n{system.app_name} v{system.app_version} ({system.environment})")
    print(f"CLOB API: {copytrader_config.polymarket.clob_api_url}")
    print(f"Data API: {copytrader_config.polymarket.data_api_url}")
    print(f"Database: {copytrader_config.database.database_url}")
    print(f"Poll interval: {copytrader_config.copytrade.poll_interval_seconds}s")
    print("\n" + "=" * 60)


# =============================================================================
# Commands
# =============================================================================

async def run_copytrade_command(args: argparse.Namespace) -> int:
    try:
        config = build_copytrade_config(args)
    except ValueError as e:
        print(f"Error: {e}")
        return 1

    if not args.dry_run:
        check = copytrader_config.validate_configuration(require_credentials=True)
        if not check["valid"]:
            print("Error: PRIVATE_KEY and FUNDER_ADDRESS must be set in .env")
            print('Run "python main.py setup-account" first.')
            return 1

    print("\nStarting copytrading...")
    print(f"  Trader:    {config.trader_address}")
    print(f"  Budget:    ${config.budget}")
    print(f"  Copy %:    {args.percentage}%")
    print(f"  Max trade: ${config.max_trade_size}")
    print(f"  Reinvest:  {'Yes' if config.reinvest else 'No'}")
    print(f"  Dry run:   {'Yes' if args.dry_run else 'No'}")
    print("\nMonitoring for new trades... (Press Ctrl+C to stop)\n")

    app = CopytraderApp()
    try:
        await app.initialize(trading=not args.dry_run)
        summary = await app.run_copytrade(
            config, dry_run=args.dry_run, allow_add_to_position=args.allow_add
        )
        print_summary(summary)
    finally:
        await app.shutdown()
    return 0


async def run_status_command(args: argparse.Namespace) -> int:
    database = Database()
    try:
        await database.initialize()
        await show_status(database, args.config, args.limit)
    finally:
        await database.close()
    return 0


async def run_setup_account_command() -> int:
    check = copytrader_config.validate_configuration(require_credentials=True)
    if not check["valid"]:
        print_check(check)
        return 1

    client = PolymarketClient()
    try:
        print("\nDeriving API credentials...")
        await client.initialize(trading=True)
        print("✓ API credentials derived")

        if not await client.validate_connection():
            print("✗ Connection validation failed")
            return 1
        print("✓ Connection validated")

        balance = await client.get_collateral_balance()
        print(f"\nFunder: {copytrader_config.polymarket.funder_address}")
        print(f"USDC balance: ${balance:.2f}")
        if balance <= 0:
            print("⚠ No USDC available; fund the wallet before copytrading")
    finally:
        await client.close()
    return 0


async def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    # Setup logging
    setup_logging()

    if args.command == "check":
        result = copytrader_config.validate_configuration(require_credentials=True)
        print_check(result)
        return 0 if result["valid"] else 1

    try:
        if args.command == "copytrade":
            return await run_copytrade_command(args)
        if args.command == "status":
            return await run_status_command(args)
        if args.command == "setup-account":
            return await run_setup_account_command()
    except Exception as e:
        logger.error("main.error", error=str(e), exc_info=True)
        print(f"\n✗ Fatal error: {e}")
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
