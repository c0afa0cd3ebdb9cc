from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any

import yfinance as yf

from stockcast.errors import TransientSourceError, UnknownInstrumentError

logger = logging.getLogger(__name__)


def _to_decimal(value: Any) -> Decimal | None:
    """Safely convert a value to a finite, positive Decimal."""
    if value is None:
        return None
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return None
    if not result.is_finite() or result <= 0:
        return None
    return result


@dataclass
class CircuitBreaker:
    """Trips when failure rate exceeds threshold over a window."""

    threshold: float = 0.50  # 50% failure rate
    window_seconds: int = 300  # 5-minute window
    min_calls: int = 20
    _successes: deque[float] = field(default_factory=deque)
    _failures: deque[float] = field(default_factory=deque)

    def record_success(self) -> None:
        self._prune()
        self._successes.append(time.monotonic())

    def record_failure(self) -> None:
        self._prune()
        self._failures.append(time.monotonic())

    def _prune(self) -> None:
        cutoff = time.monotonic() - self.window_seconds
        while self._successes and self._successes[0] < cutoff:
            self._successes.popleft()
        while self._failures and self._failures[0] < cutoff:
            self._failures.popleft()

    @property
    def is_tripped(self) -> bool:
        self._prune()
        total = len(self._successes) + len(self._failures)
        if total < self.min_calls:
            return False
        return self.failure_rate >= self.threshold

    @property
    def failure_rate(self) -> float:
        self._prune()
        total = len(self._successes) + len(self._failures)
        if total == 0:
            return 0.0
        return len(self._failures) / total


class YFinanceClient:
    """Live price source backed by yfinance, with a short TTL cache and circuit breaking.

    Implements the ``PriceSource`` protocol: ``current_price`` either returns a
    positive Decimal or raises ``UnknownInstrumentError`` / ``TransientSourceError``.
    """

    def __init__(self, cache_ttl_seconds: int = 60) -> None:
        self._cache: dict[str, tuple[Decimal, datetime]] = {}
        self._cache_ttl = timedelta(seconds=cache_ttl_seconds)
        self._circuit_breaker = CircuitBreaker()

    def current_price(self, instrument_id: str) -> Decimal:
        cached = self._get_cached(instrument_id)
        if cached is not None:
            return cached

        if self._circuit_breaker.is_tripped:
            logger.warning(
                "Circuit breaker tripped (failure_rate=%.2f), skipping %s",
                self._circuit_breaker.failure_rate,
                instrument_id,
            )
            raise TransientSourceError(f"Price source unavailable for {instrument_id}")

        try:
            info = yf.Ticker(instrument_id).info
        except Exception as exc:
            self._circuit_breaker.record_failure()
            logger.warning("Error fetching price for %s", instrument_id, exc_info=True)
            raise TransientSourceError(f"Price lookup failed for {instrument_id}") from exc

        if not info or info.get("quoteType") is None:
            # Yahoo answered, it just doesn't know the symbol.
            self._circuit_breaker.record_success()
            raise UnknownInstrumentError(f"Unknown instrument: {instrument_id}")

        price = _to_decimal(info.get("currentPrice") or info.get("regularMarketPrice"))
        if price is None:
            self._circuit_breaker.record_failure()
            raise TransientSourceError(f"No current price for {instrument_id}")

        self._circuit_breaker.record_success()
        self._set_cached(instrument_id, price)
        return price

    def get_prices_batch(self, tickers: list[str]) -> dict[str, Decimal]:
        """Get current prices for multiple tickers. Uses yf.download for efficiency.

        Tickers without a usable close are left out of the result.
        """
        if not tickers:
            return {}

        try:
            df = yf.download(tickers, period="1d", progress=False)
        except Exception:
            self._circuit_breaker.record_failure()
            logger.exception("Error in batch price fetch")
            return {}
        if df is None or df.empty:
            return {}

        prices: dict[str, Decimal] = {}
        # yf.download returns MultiIndex columns for multiple tickers
        if len(tickers) == 1:
            val = _to_decimal(df["Close"].iloc[-1])
            if val is not None:
                prices[tickers[0]] = val
        else:
            close_row = df["Close"].iloc[-1]
            for t in tickers:
                if t in close_row.index:
                    val = _to_decimal(close_row[t])
                    if val is not None:
                        prices[t] = val

        for ticker, price in prices.items():
            self._set_cached(ticker, price)
        return prices

    @property
    def is_healthy(self) -> bool:
        return not self._circuit_breaker.is_tripped

    @property
    def failure_rate(self) -> float:
        return self._circuit_breaker.failure_rate

    def _get_cached(self, key: str) -> Decimal | None:
        if key in self._cache:
            value, cached_at = self._cache[key]
            if datetime.now(UTC) - cached_at < self._cache_ttl:
                return value
            del self._cache[key]
        return None

    def _set_cached(self, key: str, value: Decimal) -> None:
        self._cache[key] = (value, datetime.now(UTC))
