from .models import Holding, Portfolio
from .repository import PortfolioStore

__all__ = ["Holding", "Portfolio", "PortfolioStore"]
