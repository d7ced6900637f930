"""Data source adapters."""
