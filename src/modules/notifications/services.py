"""Notification collaborator boundary.

Notifications are fire-and-forget and best-effort: they are published
after the fulfillment operation has been persisted, and a failure to
publish is logged but never rolls that operation back.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import asdict
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict
from uuid import UUID

import structlog

from shared.domain.events import DomainEvent

logger = structlog.get_logger(__name__)


class INotifier(ABC):
    """Publishes domain events to the notification service."""

    @abstractmethod
    def publish(self, event: DomainEvent) -> None:
        """Hand ``event`` off; must not raise."""


class CeleryNotifier(INotifier):
    """Dispatches events as ``notifications.send_order_notification`` tasks."""

    def publish(self, event: DomainEvent) -> None:
        from modules.notifications.tasks import send_order_notification

        payload = serialize_event_payload(event)
        try:
            send_order_notification.delay(event.event_name, payload)
        except Exception:
            logger.warning(
                "notification.dispatch_failed",
                event_name=event.event_name,
                order_id=str(event.aggregate_id),
                exc_info=True,
            )
            return
        logger.info(
            "notification.dispatched",
            event_name=event.event_name,
            order_id=str(event.aggregate_id),
        )


def serialize_event_payload(event: DomainEvent) -> Dict[str, Any]:
    data = asdict(event)
    normalized = _normalize_for_json(data)
    return json.loads(json.dumps(normalized))


def _normalize_for_json(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, list):
        return [_normalize_for_json(item) for item in value]
    if isinstance(value, dict):
        return {key: _normalize_for_json(val) for key, val in value.items()}
    return value
