"""Storage object repository.

Data access for storage objects and their upload parts. Part writes go through
a dialect-level ``INSERT ... ON CONFLICT`` so that concurrent reports of the
same part converge on one row.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from storage_api.infra.db.models import StorageObject, StorageObjectPart


@dataclass(frozen=True, slots=True)
class PartRecord:
    """A part to be written; ``size_bytes`` is None when the client did not say."""

    part_number: int
    etag: str
    size_bytes: int | None = None


@dataclass(frozen=True, slots=True)
class PartProgress:
    part_numbers: list[int]
    uploaded_bytes: int


class StorageObjectRepository:
    """Repository for StorageObject and StorageObjectPart rows."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def get(self, object_id: str) -> StorageObject | None:
        """Return the object with ``object_id``, read fresh from the database."""
        stmt = (
            select(StorageObject)
            .where(StorageObject.id == object_id)
            .execution_options(populate_existing=True)
        )
        return self._session.execute(stmt).scalar_one_or_none()

    def add(self, storage_object: StorageObject) -> StorageObject:
        self._session.add(storage_object)
        return storage_object

    def delete(self, storage_object: StorageObject) -> None:
        """Delete the object; its parts go with it through the ORM cascade."""
        self._session.delete(storage_object)

    def part_progress(self, object_id: str) -> PartProgress:
        """Return recorded part numbers (ascending) and the sum of their sizes."""
        rows = self._session.execute(
            select(StorageObjectPart.part_number, StorageObjectPart.size_bytes)
            .where(StorageObjectPart.object_id == object_id)
            .order_by(StorageObjectPart.part_number.asc())
        ).all()
        return PartProgress(
            part_numbers=[int(row.part_number) for row in rows],
            uploaded_bytes=sum(int(row.size_bytes or 0) for row in rows),
        )

    def upsert_parts(self, object_id: str, parts: Sequence[PartRecord]) -> None:
        """Insert parts, overwriting the etag of part numbers already recorded.

        A reported size overwrites the stored size; a missing size leaves it
        untouched (new rows start at 0).
        """
        if not parts:
            return

        insert = self._dialect_insert()
        now = func.now()
        with_size = [p for p in parts if p.size_bytes is not None]
        without_size = [p for p in parts if p.size_bytes is None]

        if with_size:
            stmt = insert(StorageObjectPart).values(
                [
                    {
                        "object_id": object_id,
                        "part_number": p.part_number,
                        "etag": p.etag,
                        "size_bytes": p.size_bytes,
                    }
                    for p in with_size
                ]
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[
                    StorageObjectPart.object_id,
                    StorageObjectPart.part_number,
                ],
                set_={
                    "etag": stmt.excluded.etag,
                    "size_bytes": stmt.excluded.size_bytes,
                    "updated_at": now,
                },
            )
            self._session.execute(stmt)

        if without_size:
            stmt = insert(StorageObjectPart).values(
                [
                    {
                        "object_id": object_id,
                        "part_number": p.part_number,
                        "etag": p.etag,
                        "size_bytes": 0,
                    }
                    for p in without_size
                ]
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[
                    StorageObjectPart.object_id,
                    StorageObjectPart.part_number,
                ],
                set_={"etag": stmt.excluded.etag, "updated_at": now},
            )
            self._session.execute(stmt)

    def _dialect_insert(self):
        dialect = self._session.get_bind().dialect.name
        if dialect == "postgresql":
            return postgresql.insert
        if dialect == "sqlite":
            return sqlite.insert
        raise NotImplementedError(f"Part upserts are not supported on {dialect}")
