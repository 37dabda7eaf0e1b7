"""
Trading-layer seam: the Trade hand-off model and the trade/product tables
that settlement reads and updates.
"""

from .models import Product, ProductStatus, Trade, TradeStatus
from .repository import ProductRepository, TradeRepository

__all__ = [
    "Product",
    "ProductStatus",
    "ProductRepository",
    "Trade",
    "TradeStatus",
    "TradeRepository",
]
