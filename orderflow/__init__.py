"""Orderflow: order lifecycle and refund reconciliation backend."""

__version__ = "1.0.0"
