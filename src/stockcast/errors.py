"""Exceptions raised by admission and price resolution.

Rejections carry no partial side effects. A losing concurrent commit is not
an exception: ``Registry.commit_evaluation`` returns ``None`` instead.
"""

from __future__ import annotations


class PredictionError(Exception):
    """Base class for prediction lifecycle errors."""


class ValidationError(PredictionError, ValueError):
    """Malformed submission payload."""


class ConflictError(PredictionError):
    """The user already has a pending prediction for this instrument."""

    def __init__(self, user_id: str, instrument_id: str) -> None:
        super().__init__(
            f"User {user_id} already has an active prediction for {instrument_id}"
        )
        self.user_id = user_id
        self.instrument_id = instrument_id


class RateLimitError(PredictionError):
    """Too many submissions by one user inside the rolling window."""

    def __init__(self, limit: int, window_minutes: int, retry_after_seconds: int = 0) -> None:
        super().__init__(
            f"Rate limit exceeded. Max {limit} predictions per {window_minutes} minutes."
        )
        self.limit = limit
        self.window_minutes = window_minutes
        self.retry_after_seconds = retry_after_seconds


class UnknownInstrumentError(PredictionError, LookupError):
    """The price source does not know the instrument."""


class TransientSourceError(PredictionError):
    """The price source failed or timed out; retry later."""
