"""Liquidity depth probing against rate-limited quote APIs."""

__version__ = "0.1.0"
