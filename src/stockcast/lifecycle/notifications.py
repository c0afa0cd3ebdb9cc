from __future__ import annotations

import logging
from typing import Protocol

from stockcast.models.prediction import OutcomeEvent, Prediction
from stockcast.registry.queries import Registry

logger = logging.getLogger(__name__)


class EventPublisher(Protocol):
    def publish(self, user_id: str, event: dict) -> None: ...


class NotificationDispatcher:
    """Produces one outcome event per evaluated prediction.

    The event is first written to the notifications table (unique per
    prediction), then handed to the realtime publisher if one is attached.
    Only the call that stored the row publishes it.
    """

    def __init__(self, registry: Registry, publisher: EventPublisher | None = None) -> None:
        self._registry = registry
        self._publisher = publisher

    def attach(self, publisher: EventPublisher | None) -> None:
        self._publisher = publisher

    def emit(self, prediction: Prediction) -> bool:
        event = OutcomeEvent.from_prediction(prediction)
        notification_id = self._registry.insert_notification(event)
        if notification_id is None:
            logger.debug("Outcome for prediction %d already emitted", event.prediction_id)
            return False

        if self._publisher is not None:
            try:
                self._publisher.publish(event.user_id, event.to_dict())
            except Exception:
                # Stored event is still readable via the notifications API.
                logger.warning(
                    "Realtime delivery failed for prediction %d", event.prediction_id,
                    exc_info=True,
                )
        logger.debug("Emitted outcome for prediction %d to %s", event.prediction_id, event.user_id)
        return True
