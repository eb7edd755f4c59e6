"""tradeflow: signal lifecycle and target reconciliation."""

__version__ = "0.1.0"
