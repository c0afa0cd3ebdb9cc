from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal, InvalidOperation

from stockcast.config import AppConfig
from stockcast.data.price_source import PriceSource
from stockcast.errors import ConflictError, RateLimitError, ValidationError
from stockcast.models.prediction import (
    REASONING_MAX_LENGTH,
    Direction,
    Prediction,
    PredictionDraft,
    PredictionKind,
    Timeframe,
)
from stockcast.registry.queries import Registry

logger = logging.getLogger(__name__)

FLAG_REASON_PUMP = "Potential Pump Activity: High frequency predictions"


@dataclass(frozen=True)
class AdmissionPolicy:
    rate_limit_max: int = 5
    rate_limit_window: timedelta = timedelta(minutes=60)
    abuse_threshold: int = 10
    abuse_window: timedelta = timedelta(seconds=60)

    @classmethod
    def from_config(cls, config: AppConfig) -> AdmissionPolicy:
        return cls(
            rate_limit_max=config.rate_limit_max,
            rate_limit_window=timedelta(minutes=config.rate_limit_window_minutes),
            abuse_threshold=config.abuse_threshold,
            abuse_window=timedelta(seconds=config.abuse_window_seconds),
        )


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _parse_enum(enum_cls, value, field_name: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).lower())
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(f"Invalid {field_name} '{value}' (expected one of: {allowed})") from None


def _parse_target_price(value) -> Decimal:
    try:
        price = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"Invalid target price '{value}'") from None
    if not price.is_finite() or price <= 0:
        raise ValidationError("Target price must be a positive number")
    return price


class AdmissionController:
    """Validates prediction submissions and persists the accepted ones.

    Checks run in a fixed order and every rejection happens before anything
    is written. The single-pending rule is checked up front for a clean error
    and enforced again by the store's unique index on insert.
    """

    def __init__(
        self,
        registry: Registry,
        price_source: PriceSource,
        policy: AdmissionPolicy | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._registry = registry
        self._price_source = price_source
        self._policy = policy or AdmissionPolicy()
        self._clock = clock

    def submit(
        self,
        user_id: str,
        instrument_id: str,
        kind: PredictionKind | str,
        timeframe: Timeframe | str,
        target_price: Decimal | float | str | None = None,
        direction: Direction | str | None = None,
        reasoning: str | None = None,
    ) -> Prediction:
        """Admit a prediction or raise a PredictionError subclass.

        Raises ValidationError, ConflictError, RateLimitError, and, from the
        price lookup, UnknownInstrumentError or TransientSourceError.
        """
        if not user_id:
            raise ValidationError("user_id is required")
        instrument_id = (instrument_id or "").strip().upper()
        if not instrument_id:
            raise ValidationError("instrumentId is required")

        # 1. kind-consistent payload
        kind = _parse_enum(PredictionKind, kind, "kind")
        if kind == PredictionKind.PRICE:
            if direction is not None:
                raise ValidationError("Price predictions must not set a direction")
            if target_price is None:
                raise ValidationError("Target price is required for price predictions")
            target_price = _parse_target_price(target_price)
        else:
            if target_price is not None:
                raise ValidationError("Direction predictions must not set a target price")
            if direction is None:
                raise ValidationError("Direction is required for direction predictions")
            direction = _parse_enum(Direction, direction, "direction")

        reasoning = reasoning or ""
        if len(reasoning) > REASONING_MAX_LENGTH:
            raise ValidationError(
                f"Reasoning must be at most {REASONING_MAX_LENGTH} characters"
            )

        # 2. timeframe
        timeframe = _parse_enum(Timeframe, timeframe, "timeframe")

        # 3. single active forecast
        if self._registry.has_pending_prediction(user_id, instrument_id):
            raise ConflictError(user_id, instrument_id)

        now = self._clock()

        # 4. rolling rate limit
        policy = self._policy
        recent, oldest = self._registry.count_user_predictions_since(
            user_id, now - policy.rate_limit_window
        )
        if recent >= policy.rate_limit_max:
            retry_after = 0
            if oldest is not None:
                retry_after = max(
                    0, math.ceil((oldest + policy.rate_limit_window - now).total_seconds())
                )
            logger.info("Rate limit hit for user %s (%d recent)", user_id, recent)
            raise RateLimitError(
                policy.rate_limit_max,
                int(policy.rate_limit_window.total_seconds() // 60),
                retry_after,
            )

        # 5. abuse heuristic: this submission counts toward the window
        burst = self._registry.count_instrument_predictions_since(
            instrument_id, now - policy.abuse_window
        )
        flagged = burst + 1 >= policy.abuse_threshold
        if flagged:
            logger.warning(
                "Flagging prediction by %s on %s: %d submissions in %ss",
                user_id, instrument_id, burst + 1, int(policy.abuse_window.total_seconds()),
            )

        initial_price = self._price_source.current_price(instrument_id)

        draft = PredictionDraft(
            user_id=user_id,
            instrument_id=instrument_id,
            kind=kind,
            timeframe=timeframe,
            initial_price=initial_price,
            created_at=now,
            target_price=target_price if kind == PredictionKind.PRICE else None,
            direction=direction if kind == PredictionKind.DIRECTION else None,
            reasoning=reasoning,
            flagged=flagged,
            flag_reason=FLAG_REASON_PUMP if flagged else None,
        )
        prediction = self._registry.create_prediction(draft)
        logger.info(
            "Accepted %s prediction %s by %s on %s (%s, initial %s)",
            kind.value, prediction.id, user_id, instrument_id, timeframe.value, initial_price,
        )
        return prediction
