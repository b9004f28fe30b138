"""Outbound domain events.

The upload lifecycle announces finished uploads so that a separate
post-processing worker can finalize size, scan content and so on. Delivery is
fire-and-forget from the caller's point of view; consumers live elsewhere.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from storage_api.common.config import Settings

OBJECT_UPLOADED = "storage.object.uploaded"


class EventPublishError(RuntimeError):
    """Raised when an event could not be handed to the message broker."""


@dataclass(frozen=True, slots=True)
class ObjectUploadedEvent:
    object_id: str
    user_id: str
    storage_key: str
    mime_type: str
    bucket: str
    occurred_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    name = OBJECT_UPLOADED

    def to_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["occurred_at"] = self.occurred_at.isoformat()
        payload["event"] = self.name
        return payload


class EventPublisher(Protocol):
    def publish(self, event: ObjectUploadedEvent) -> None:
        """Hand ``event`` to the transport, raising EventPublishError on failure."""
        ...


class LoggingEventPublisher:
    """Writes events to the ``events`` logger.

    Useful where no broker is deployed; a log shipper can forward the lines.
    """

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or logging.getLogger("events")

    def publish(self, event: ObjectUploadedEvent) -> None:
        payload = event.to_payload()
        self._logger.info(
            "event_published name=%s object_id=%s",
            event.name,
            event.object_id,
            extra={"extra": payload},
        )


def build_event_publisher(settings: "Settings") -> EventPublisher:
    backend = (settings.EVENTS_BACKEND or "log").strip().lower()
    if backend == "log":
        return LoggingEventPublisher()
    if backend == "rabbitmq":
        from storage_api.infra.events.rabbitmq import RabbitMQEventPublisher

        return RabbitMQEventPublisher(
            url=settings.RABBITMQ_URL,
            exchange=settings.EVENTS_EXCHANGE,
        )
    raise ValueError(f"Unsupported EVENTS_BACKEND: {backend}")
