from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Protocol

from redemption_app.core.types import NotificationEvent

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    def notify(self, event: NotificationEvent, payload: Dict[str, Any]) -> None:
        ...


class LoggingNotificationSink:
    """Default sink: status transitions go to the structured log."""

    def notify(self, event: NotificationEvent, payload: Dict[str, Any]) -> None:
        logger.info("notification %s", event.value, extra={"event": event.value, "payload": payload})


def safe_notify(sink: Optional[NotificationSink], event: NotificationEvent, payload: Dict[str, Any]) -> None:
    """
    Fire-and-forget delivery. A failing sink is logged and never blocks
    the state transition that triggered it.
    """
    if sink is None:
        return
    try:
        sink.notify(event, payload)
    except Exception:
        logger.exception("notification sink failed for %s", event.value)
