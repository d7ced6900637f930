"""Unified access layer for Canadian economic and housing data."""

__version__ = "0.1.0"
