"""Watchlist reconciliation and multi-source torrent aggregation engine."""

__version__ = "0.4.0"
