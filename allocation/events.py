"""Notification port for booking lifecycle events."""

from __future__ import annotations

from typing import Iterable, Protocol

from allocation.schema import BookingEvent
from logger import get_logger

logger = get_logger(__name__)


class NotificationPort(Protocol):
    def emit(self, event: BookingEvent) -> None:
        ...


class LoggingNotifier:
    def emit(self, event: BookingEvent) -> None:
        logger.info(
            "Booking event | type=%s | booking_id=%s | reference=%s | user_id=%s | resource_id=%s | reason=%s",
            event.type.value,
            event.booking_id,
            event.booking_reference,
            event.user_id,
            event.resource_id,
            event.reason,
        )


class RecordingNotifier:
    """Keeps emitted events in memory; handy for embedding and tests."""

    def __init__(self) -> None:
        self.events: list[BookingEvent] = []

    def emit(self, event: BookingEvent) -> None:
        self.events.append(event)


def dispatch_events(notifier: NotificationPort, events: Iterable[BookingEvent]) -> int:
    """Deliver committed events. A failing notifier is logged; the booking stands."""
    delivered = 0
    for event in events:
        try:
            notifier.emit(event)
            delivered += 1
        except Exception:
            logger.exception("Notification failed | type=%s | booking_id=%s", event.type.value, event.booking_id)
    return delivered
