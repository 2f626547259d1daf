"""Crypto Tracker Indexer - tails EVM chains and records watched-wallet transfers."""

__version__ = "0.1.0"
