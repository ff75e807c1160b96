"""Transaction reconciliation matching core."""

__version__ = "0.1.0"
