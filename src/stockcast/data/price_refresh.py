from __future__ import annotations

import logging
from datetime import UTC, datetime

from stockcast.data.yfinance_client import YFinanceClient
from stockcast.registry.queries import Registry

logger = logging.getLogger(__name__)


def refresh_instrument_prices(
    registry: Registry,
    client: YFinanceClient,
    chunk_size: int = 100,
) -> dict:
    """Pull current prices for every registered instrument into the registry.

    Returns counts of requested, updated and missing tickers.
    """
    tickers = registry.get_instrument_ids()
    if not tickers:
        logger.info("No instruments registered, nothing to refresh")
        return {"requested": 0, "updated": 0, "missing": []}

    updated = 0
    missing: list[str] = []
    for i in range(0, len(tickers), chunk_size):
        chunk = tickers[i : i + chunk_size]
        prices = client.get_prices_batch(chunk)
        if prices:
            updated += registry.upsert_instrument_prices(prices, datetime.now(UTC))
        missing.extend(t for t in chunk if t not in prices)

    if missing:
        logger.warning("No price for %d instruments: %s", len(missing), ", ".join(missing[:20]))
    logger.info("Refreshed prices: %d/%d instruments", updated, len(tickers))
    return {"requested": len(tickers), "updated": updated, "missing": missing}
