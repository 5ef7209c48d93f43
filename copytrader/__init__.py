"""Polymarket Copytrader - mirrors a target wallet's trades within a budget."""

__version__ = "1.0.0"
