"""
Sogolo - Escrow transactions for a peer-to-peer marketplace.

Buyers open a transaction, sellers join and submit a product, and the
funds move through admin-verified escrow states until they are released.
"""

from .config import EscrowConfig

try:
    from importlib.metadata import version

    __version__ = version("sogolo")
except Exception:
    __version__ = "0.0.0"

__all__ = ["EscrowConfig"]
