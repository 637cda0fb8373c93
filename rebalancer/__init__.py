"""Risk-adjusted yield rebalancer for lending protocols."""

__version__ = "0.1.0"
