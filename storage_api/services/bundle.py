from __future__ import annotations

from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from storage_api.common.config import Settings, get_settings
from storage_api.domain.repositories import StorageObjectRepository
from storage_api.infra.events.publisher import EventPublisher
from storage_api.infra.storage.client import StorageClient

from .object_service import ObjectService


@dataclass
class ServiceBundle:
    """Lazily constructs application services sharing one session and backend."""

    session: Session
    storage_client: StorageClient
    event_publisher: EventPublisher
    settings: Settings = field(default_factory=get_settings)
    _objects: ObjectService | None = field(default=None, init=False, repr=False)

    def objects(self) -> ObjectService:
        if self._objects is None:
            self._objects = ObjectService(
                self.session,
                storage_client=self.storage_client,
                event_publisher=self.event_publisher,
                settings=self.settings,
                repository=StorageObjectRepository(self.session),
            )
        return self._objects


def get_service_bundle(
    session: Session,
    *,
    storage_client: StorageClient,
    event_publisher: EventPublisher,
    settings: Settings | None = None,
) -> ServiceBundle:
    return ServiceBundle(
        session=session,
        storage_client=storage_client,
        event_publisher=event_publisher,
        settings=settings or get_settings(),
    )
