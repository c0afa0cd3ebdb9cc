from __future__ import annotations

from stockcast.data.price_refresh import refresh_instrument_prices
from stockcast.data.price_source import (
    PriceSource,
    RegistryPriceSource,
    build_price_source,
)
from stockcast.data.yfinance_client import (
    CircuitBreaker,
    YFinanceClient,
)

__all__ = [
    "CircuitBreaker",
    "PriceSource",
    "RegistryPriceSource",
    "YFinanceClient",
    "build_price_source",
    "refresh_instrument_prices",
]
