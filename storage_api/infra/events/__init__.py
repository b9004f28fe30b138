"""Outbound event publishing."""

from .publisher import (
    OBJECT_UPLOADED,
    EventPublisher,
    EventPublishError,
    LoggingEventPublisher,
    ObjectUploadedEvent,
    build_event_publisher,
)

__all__ = [
    "OBJECT_UPLOADED",
    "EventPublisher",
    "EventPublishError",
    "LoggingEventPublisher",
    "ObjectUploadedEvent",
    "build_event_publisher",
]
