from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any

from academy.config import settings


logger = logging.getLogger(__name__)

EventHandler = Callable[[str, dict[str, Any]], None]

RESCHEDULE_REQUESTED = 'reschedule_requested'
RESCHEDULE_APPROVED = 'reschedule_approved'
RESCHEDULE_REJECTED = 'reschedule_rejected'
CLASS_CANCELLED = 'class_cancelled'
ABSENCE_MARKED = 'absence_marked'
SESSION_RESCHEDULED = 'session_rescheduled'
INVOICE_ISSUED = 'invoice_issued'


class NotificationSink:
    """Fire-and-forget in-process emitter.

    Handlers run synchronously after the triggering transaction has committed.
    A failing handler is logged and never reaches the caller.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = {}
        self._lock = threading.Lock()

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        with self._lock:
            self._handlers.setdefault(event_name, []).append(handler)

    def unsubscribe(self, event_name: str, handler: EventHandler) -> None:
        with self._lock:
            handlers = self._handlers.get(event_name, [])
            if handler in handlers:
                handlers.remove(handler)

    def emit(self, event_name: str, data: dict[str, Any]) -> int:
        if not settings.enable_notifications:
            return 0
        with self._lock:
            handlers = list(self._handlers.get(event_name, [])) + list(self._handlers.get('*', []))
        delivered = 0
        for handler in handlers:
            try:
                handler(event_name, dict(data))
                delivered += 1
            except Exception:
                logger.exception('notification_handler_failed event=%s handler=%s', event_name, getattr(handler, '__name__', handler))
        return delivered


def log_notification(event_name: str, data: dict[str, Any]) -> None:
    logger.info('notification_emitted event=%s', event_name, extra={'event_payload': data})


notification_sink = NotificationSink()
notification_sink.subscribe('*', log_notification)


def notify(event_name: str, **data: Any) -> int:
    return notification_sink.emit(event_name, data)
