"""Price sources used at admission and evaluation time."""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from stockcast.errors import TransientSourceError, UnknownInstrumentError

if TYPE_CHECKING:
    from stockcast.config import AppConfig
    from stockcast.registry.queries import Registry

logger = logging.getLogger(__name__)


@runtime_checkable
class PriceSource(Protocol):
    def current_price(self, instrument_id: str) -> Decimal:
        """Return the latest known price (> 0).

        Raises UnknownInstrumentError or TransientSourceError.
        """
        ...


class RegistryPriceSource:
    """Reads prices kept in ``stockcast.instruments`` by the price refresher.

    A stored price older than ``max_age`` is treated as a transient failure,
    so evaluation waits for a fresh quote instead of judging on stale data.
    """

    def __init__(self, registry: Registry, max_age_seconds: int = 900) -> None:
        self._registry = registry
        self._max_age = timedelta(seconds=max_age_seconds)

    def current_price(self, instrument_id: str) -> Decimal:
        try:
            found = self._registry.get_instrument_price(instrument_id)
        except Exception as exc:
            raise TransientSourceError(f"Price lookup failed for {instrument_id}") from exc

        if found is None:
            raise UnknownInstrumentError(f"Unknown instrument: {instrument_id}")

        price, updated_at = found
        if price is None or price <= 0 or updated_at is None:
            raise TransientSourceError(f"No price available for {instrument_id}")

        age = datetime.now(UTC) - updated_at
        if self._max_age.total_seconds() > 0 and age > self._max_age:
            logger.debug("Stale price for %s (age %s)", instrument_id, age)
            raise TransientSourceError(f"Price for {instrument_id} is stale")
        return price


def build_price_source(config: AppConfig, registry: Registry) -> PriceSource:
    """Pick the configured price source (``registry`` or ``yfinance``)."""
    if config.price_source == "yfinance":
        from stockcast.data.yfinance_client import YFinanceClient

        return YFinanceClient()
    if config.price_source != "registry":
        raise ValueError(f"Unknown price source: {config.price_source}")
    return RegistryPriceSource(registry, max_age_seconds=config.price_max_age_seconds)
