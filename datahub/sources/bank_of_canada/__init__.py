"""
Bank of Canada Valet source module.

Provides policy interest rates and daily exchange rates.

The Valet API is public and does not require an API key.
"""

__all__ = ["client"]
