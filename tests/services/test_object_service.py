"""Tests for ObjectService upload lifecycle.

Covers multipart init, part signing and recording, status, completion, abort
and simple uploads against an in-memory storage backend.
"""

from __future__ import annotations

import dataclasses
import io
import logging
import re

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from storage_api.domain.repositories import PartRecord
from storage_api.infra.db.models import ObjectStatus, StorageObject, StorageObjectPart
from storage_api.infra.events.publisher import OBJECT_UPLOADED
from storage_api.infra.storage.client import CompletedPart, StorageBackendError
from storage_api.services import (
    InitUploadData,
    InvalidUploadOperationError,
    MissingUserError,
    ObjectAccessDeniedError,
    ObjectNotFoundError,
    ObjectService,
    SimpleUploadData,
    UploadConfigurationError,
    UploadValidationError,
    build_storage_key,
    total_parts_for,
)

MIB = 1024 * 1024
OWNER = "user-a"
OTHER = "user-b"


def _init(service: ObjectService, *, size: int = 50 * MIB, name: str = "a.zip", user: str = OWNER):
    return service.init_upload(
        InitUploadData(name=name, size_bytes=size, mime_type="application/zip"),
        user_id=user,
    )


def _reload(session, object_id: str) -> StorageObject | None:
    session.expire_all()
    return session.get(StorageObject, object_id)


def _part_rows(session, object_id: str) -> int:
    return session.execute(
        select(func.count())
        .select_from(StorageObjectPart)
        .where(StorageObjectPart.object_id == object_id)
    ).scalar_one()


def _service_with(db_session, storage, publisher, settings, **overrides) -> ObjectService:
    return ObjectService(
        db_session,
        storage_client=storage,
        event_publisher=publisher,
        settings=dataclasses.replace(settings, **overrides),
    )


class TestHelpers:
    def test_total_parts_rounds_up(self):
        assert total_parts_for(0, 10 * MIB) == 0
        assert total_parts_for(1, 10 * MIB) == 1
        assert total_parts_for(10 * MIB, 10 * MIB) == 1
        assert total_parts_for(10 * MIB + 1, 10 * MIB) == 2

    def test_storage_key_layout(self):
        key = build_storage_key("uploads/", "report.final.pdf", now_ms=1700000000000)
        assert re.fullmatch(r"uploads/1700000000000/[0-9a-f]{32}\.pdf", key)

    def test_storage_key_normalizes_prefix_and_drops_odd_extension(self):
        key = build_storage_key("/incoming", "noext", now_ms=1)
        assert re.fullmatch(r"incoming/1/[0-9a-f]{32}", key)
        odd = build_storage_key("uploads/", "evil.p h?p", now_ms=1)
        assert re.fullmatch(r"uploads/1/[0-9a-f]{32}", odd)


class TestInitUpload:
    def test_fifty_mib_file_gets_five_parts_and_urls(self, object_service, storage, db_session):
        result = _init(object_service, size=52428800)

        assert result.total_parts == 5
        assert len(result.presigned_urls) == 5
        assert [u.part_number for u in result.presigned_urls] == [1, 2, 3, 4, 5]
        assert result.part_size_bytes == 10 * MIB
        assert result.upload_session_id == "mock-upload-1"

        stored = _reload(db_session, result.storage_object.id)
        assert stored is not None
        assert stored.status == ObjectStatus.PENDING
        assert stored.upload_session_id == "mock-upload-1"
        assert stored.part_size_bytes == 10 * MIB
        assert stored.uploaded_by == OWNER
        assert stored.bucket == "test-bucket"
        assert stored.storage_key.startswith("uploads/")
        assert stored.storage_key.endswith(".zip")
        assert storage.uploads["mock-upload-1"]["object_key"] == stored.storage_key

    def test_initial_url_batch_is_capped(self, object_service):
        result = _init(object_service, size=25 * 10 * MIB)
        assert result.total_parts == 25
        assert [u.part_number for u in result.presigned_urls] == list(range(1, 11))

    def test_zero_size_has_no_parts(self, object_service, db_session):
        result = _init(object_service, size=0)
        assert result.total_parts == 0
        assert result.presigned_urls == []
        stored = _reload(db_session, result.storage_object.id)
        assert stored.status == ObjectStatus.PENDING
        assert stored.upload_session_id == result.upload_session_id

    def test_too_many_parts_is_rejected_before_backend(self, object_service, storage):
        with pytest.raises(UploadValidationError):
            _init(object_service, size=10_001 * 10 * MIB)
        assert storage.calls == []

    def test_exactly_max_parts_is_accepted(self, object_service):
        result = _init(object_service, size=10_000 * 10 * MIB)
        assert result.total_parts == 10_000

    def test_negative_size_is_rejected(self, object_service):
        with pytest.raises(UploadValidationError):
            _init(object_service, size=-1)

    def test_missing_user_is_rejected(self, object_service):
        with pytest.raises(MissingUserError):
            _init(object_service, user="")

    def test_part_size_below_floor_fails_before_any_access(
        self, db_session, storage, publisher, settings
    ):
        service = _service_with(
            db_session, storage, publisher, settings, STORAGE_PART_SIZE_BYTES=MIB
        )
        with pytest.raises(UploadConfigurationError):
            _init(service)
        assert storage.calls == []
        assert db_session.execute(select(func.count()).select_from(StorageObject)).scalar_one() == 0

    def test_backend_init_failure_persists_nothing(self, object_service, storage, db_session):
        storage.fail_on.add("init")
        with pytest.raises(StorageBackendError):
            _init(object_service)
        assert db_session.execute(select(func.count()).select_from(StorageObject)).scalar_one() == 0

    def test_presign_failure_releases_session(self, object_service, storage, db_session):
        storage.fail_on.add("presign")
        with pytest.raises(StorageBackendError):
            _init(object_service)
        assert storage.uploads["mock-upload-1"]["aborted"] is True
        assert db_session.execute(select(func.count()).select_from(StorageObject)).scalar_one() == 0

    def test_concurrent_inits_get_distinct_keys(self, object_service):
        first = _init(object_service)
        second = _init(object_service)
        assert first.storage_object.storage_key != second.storage_object.storage_key
        assert first.storage_object.id != second.storage_object.id


class TestUploadStatus:
    def test_fresh_upload(self, object_service):
        init = _init(object_service, size=52428800)
        status = object_service.get_upload_status(init.storage_object.id, user_id=OWNER)
        assert status.status == ObjectStatus.PENDING
        assert status.uploaded_parts == []
        assert status.total_parts == 5
        assert status.uploaded_bytes == 0
        assert status.total_bytes == 52428800

    def test_parts_are_sorted_and_bytes_summed(self, object_service):
        init = _init(object_service, size=52428800)
        object_id = init.storage_object.id
        for number in (3, 1, 2):
            object_service.record_part(
                object_id,
                PartRecord(part_number=number, etag=f"etag-{number}", size_bytes=10 * MIB),
                user_id=OWNER,
            )
        status = object_service.get_upload_status(object_id, user_id=OWNER)
        assert status.uploaded_parts == [1, 2, 3]
        assert status.uploaded_bytes == 30 * MIB

    def test_total_parts_stays_frozen_after_config_change(
        self, object_service, db_session, storage, publisher, settings
    ):
        init = _init(object_service, size=52428800)
        reconfigured = _service_with(
            db_session, storage, publisher, settings, STORAGE_PART_SIZE_BYTES=5 * MIB
        )
        status = reconfigured.get_upload_status(init.storage_object.id, user_id=OWNER)
        assert status.total_parts == 5

    def test_other_user_is_forbidden(self, object_service):
        init = _init(object_service)
        with pytest.raises(ObjectAccessDeniedError):
            object_service.get_upload_status(init.storage_object.id, user_id=OTHER)

    def test_unknown_object(self, object_service):
        with pytest.raises(ObjectNotFoundError):
            object_service.get_upload_status("does-not-exist", user_id=OWNER)


class TestSignPartUrls:
    def test_signs_requested_parts_once(self, object_service):
        init = _init(object_service, size=25 * 10 * MIB)
        batch = object_service.sign_part_urls(
            init.storage_object.id, [11, 12, 11], user_id=OWNER
        )
        assert batch.upload_session_id == init.upload_session_id
        assert [u.part_number for u in batch.urls] == [11, 12]
        assert all("partNumber=" in u.url for u in batch.urls)

    def test_rejects_out_of_range(self, object_service):
        init = _init(object_service)
        with pytest.raises(UploadValidationError):
            object_service.sign_part_urls(init.storage_object.id, [0], user_id=OWNER)
        with pytest.raises(UploadValidationError):
            object_service.sign_part_urls(init.storage_object.id, [10_001], user_id=OWNER)

    def test_rejects_parts_beyond_total(self, object_service, storage):
        init = _init(object_service, size=52428800)
        with pytest.raises(UploadValidationError):
            object_service.sign_part_urls(init.storage_object.id, [5, 6], user_id=OWNER)
        assert storage.calls.count("presign") == 5

    def test_rejects_oversized_batch(self, object_service):
        init = _init(object_service)
        with pytest.raises(UploadValidationError):
            object_service.sign_part_urls(
                init.storage_object.id, list(range(1, 1002)), user_id=OWNER
            )

    def test_other_user_is_forbidden(self, object_service):
        init = _init(object_service)
        with pytest.raises(ObjectAccessDeniedError):
            object_service.sign_part_urls(init.storage_object.id, [1], user_id=OTHER)


class TestRecordPart:
    def test_rerecording_overwrites_in_place(self, object_service, db_session):
        init = _init(object_service)
        object_id = init.storage_object.id
        object_service.record_part(
            object_id, PartRecord(part_number=1, etag="first", size_bytes=100), user_id=OWNER
        )
        status = object_service.record_part(
            object_id, PartRecord(part_number=1, etag="second", size_bytes=200), user_id=OWNER
        )
        assert status.uploaded_parts == [1]
        assert status.uploaded_bytes == 200
        assert _part_rows(db_session, object_id) == 1
        db_session.expire_all()
        part = db_session.get(StorageObjectPart, (object_id, 1))
        assert part.etag == "second"

    def test_rejects_part_beyond_total(self, object_service):
        init = _init(object_service, size=20 * MIB)
        object_id = init.storage_object.id
        with pytest.raises(UploadValidationError):
            object_service.record_part(
                object_id, PartRecord(part_number=9000, etag="e", size_bytes=1), user_id=OWNER
            )
        status = object_service.get_upload_status(object_id, user_id=OWNER)
        assert status.total_parts == 2
        assert status.uploaded_parts == []

    def test_rejects_empty_etag(self, object_service):
        init = _init(object_service)
        with pytest.raises(UploadValidationError):
            object_service.record_part(
                init.storage_object.id, PartRecord(part_number=1, etag=" "), user_id=OWNER
            )


class TestCompleteUpload:
    def test_completes_and_announces(self, object_service, storage, publisher, db_session):
        init = _init(object_service, size=52428800)
        object_id = init.storage_object.id
        parts = [CompletedPart(part_number=n, etag=f"etag-{n}") for n in (2, 1, 3, 5, 4)]

        completed = object_service.complete_upload(object_id, parts, user_id=OWNER)

        assert completed.status == ObjectStatus.PROCESSING
        assert completed.upload_session_id is None
        assert completed.metadata_["multipart"]["upload_session_id"] == init.upload_session_id
        assert completed.metadata_["multipart"]["part_count"] == 5
        assert storage.uploads[init.upload_session_id]["completed"] is True
        assert [n for n, _ in storage.uploads[init.upload_session_id]["parts"]] == [1, 2, 3, 4, 5]
        assert _part_rows(db_session, object_id) == 5

        assert len(publisher.events) == 1
        event = publisher.events[0]
        assert event.name == OBJECT_UPLOADED
        assert event.object_id == object_id
        assert event.user_id == OWNER
        assert event.storage_key == completed.storage_key
        assert event.mime_type == "application/zip"

    def test_second_completion_is_bad_request(self, object_service, storage):
        init = _init(object_service, size=52428800)
        parts = [CompletedPart(part_number=n, etag=f"etag-{n}") for n in range(1, 6)]
        object_service.complete_upload(init.storage_object.id, parts, user_id=OWNER)
        with pytest.raises(InvalidUploadOperationError):
            object_service.complete_upload(init.storage_object.id, parts, user_id=OWNER)
        assert storage.calls.count("complete") == 1

    def test_reported_parts_are_not_duplicated(self, object_service, db_session):
        init = _init(object_service, size=20 * MIB)
        object_id = init.storage_object.id
        object_service.record_part(
            object_id, PartRecord(part_number=1, etag="etag-1", size_bytes=10 * MIB), user_id=OWNER
        )
        object_service.complete_upload(
            object_id,
            [CompletedPart(1, "etag-1"), CompletedPart(2, "etag-2")],
            user_id=OWNER,
        )
        assert _part_rows(db_session, object_id) == 2
        db_session.expire_all()
        # size reported earlier is kept when completion only carries the etag
        assert db_session.get(StorageObjectPart, (object_id, 1)).size_bytes == 10 * MIB

    def test_backend_rejection_keeps_object_pending(self, object_service, storage, publisher, db_session):
        init = _init(object_service, size=20 * MIB)
        object_id = init.storage_object.id
        storage.fail_on.add("complete")

        with pytest.raises(StorageBackendError):
            object_service.complete_upload(
                object_id,
                [CompletedPart(1, "etag-1"), CompletedPart(2, "etag-2")],
                user_id=OWNER,
            )

        stored = _reload(db_session, object_id)
        assert stored.status == ObjectStatus.PENDING
        assert stored.upload_session_id == init.upload_session_id
        assert _part_rows(db_session, object_id) == 2
        assert publisher.events == []

    def test_other_user_is_forbidden(self, object_service, storage):
        init = _init(object_service)
        with pytest.raises(ObjectAccessDeniedError):
            object_service.complete_upload(
                init.storage_object.id, [CompletedPart(1, "etag-1")], user_id=OTHER
            )
        assert "complete" not in storage.calls

    def test_unknown_object(self, object_service):
        with pytest.raises(ObjectNotFoundError):
            object_service.complete_upload("missing", [CompletedPart(1, "e")], user_id=OWNER)

    def test_duplicate_part_numbers_are_rejected(self, object_service):
        init = _init(object_service)
        with pytest.raises(UploadValidationError):
            object_service.complete_upload(
                init.storage_object.id,
                [CompletedPart(1, "a"), CompletedPart(1, "b")],
                user_id=OWNER,
            )

    def test_parts_beyond_total_are_rejected(self, object_service, storage, db_session):
        init = _init(object_service, size=20 * MIB)
        with pytest.raises(UploadValidationError):
            object_service.complete_upload(
                init.storage_object.id,
                [CompletedPart(1, "a"), CompletedPart(2, "b"), CompletedPart(3, "c")],
                user_id=OWNER,
            )
        assert "complete" not in storage.calls
        assert _part_rows(db_session, init.storage_object.id) == 0

    def test_commit_failure_after_assembly_logs_session(
        self, object_service, storage, publisher, db_session, monkeypatch, caplog
    ):
        init = _init(object_service, size=10 * MIB)
        object_id = init.storage_object.id
        real_commit = db_session.commit
        commits = []

        def flaky_commit():
            commits.append(1)
            if len(commits) == 2:
                raise OperationalError("COMMIT", {}, Exception("connection lost"))
            real_commit()

        monkeypatch.setattr(db_session, "commit", flaky_commit)
        with caplog.at_level(logging.ERROR, logger="storage.objects"):
            with pytest.raises(OperationalError):
                object_service.complete_upload(
                    object_id, [CompletedPart(1, "etag-1")], user_id=OWNER
                )

        assert storage.uploads[init.upload_session_id]["completed"] is True
        records = [r for r in caplog.records if r.levelno == logging.ERROR]
        assert records
        assert records[-1].extra["upload_session_id"] == init.upload_session_id
        assert records[-1].extra["object_id"] == object_id
        stored = _reload(db_session, object_id)
        assert stored.status == ObjectStatus.PENDING
        assert stored.upload_session_id == init.upload_session_id
        assert publisher.events == []

    def test_empty_part_list_for_non_empty_object(self, object_service):
        init = _init(object_service)
        with pytest.raises(UploadValidationError):
            object_service.complete_upload(init.storage_object.id, [], user_id=OWNER)

    def test_zero_byte_object_completes_without_parts(self, object_service, storage, publisher):
        init = _init(object_service, size=0)
        completed = object_service.complete_upload(init.storage_object.id, [], user_id=OWNER)

        assert completed.status == ObjectStatus.PROCESSING
        assert completed.upload_session_id is None
        assert storage.objects[completed.storage_key] == b""
        assert storage.uploads[init.upload_session_id]["aborted"] is True
        assert len(publisher.events) == 1

    def test_simple_upload_cannot_be_completed(self, object_service):
        stored = object_service.simple_upload(
            SimpleUploadData(file_name="a.txt", mime_type="text/plain", body=io.BytesIO(b"hi")),
            user_id=OWNER,
        )
        with pytest.raises(InvalidUploadOperationError):
            object_service.complete_upload(stored.id, [CompletedPart(1, "e")], user_id=OWNER)

    def test_publish_failure_does_not_fail_completion(self, object_service, publisher, db_session):
        publisher.fail = True
        init = _init(object_service, size=10 * MIB)
        completed = object_service.complete_upload(
            init.storage_object.id, [CompletedPart(1, "etag-1")], user_id=OWNER
        )
        assert completed.status == ObjectStatus.PROCESSING
        assert _reload(db_session, completed.id).status == ObjectStatus.PROCESSING


class TestAbortUpload:
    def test_abort_releases_session_and_deletes(self, object_service, storage, db_session):
        init = _init(object_service)
        object_id = init.storage_object.id
        object_service.record_part(
            object_id, PartRecord(part_number=1, etag="etag-1", size_bytes=5), user_id=OWNER
        )

        object_service.abort_upload(object_id, user_id=OWNER)

        assert storage.uploads[init.upload_session_id]["aborted"] is True
        assert _reload(db_session, object_id) is None
        assert _part_rows(db_session, object_id) == 0

    def test_backend_failure_keeps_record(self, object_service, storage, db_session):
        init = _init(object_service)
        object_id = init.storage_object.id
        storage.fail_on.add("abort")

        with pytest.raises(StorageBackendError):
            object_service.abort_upload(object_id, user_id=OWNER)

        stored = _reload(db_session, object_id)
        assert stored is not None
        assert stored.upload_session_id == init.upload_session_id

    def test_other_user_is_forbidden(self, object_service, storage, db_session):
        init = _init(object_service)
        with pytest.raises(ObjectAccessDeniedError):
            object_service.abort_upload(init.storage_object.id, user_id=OTHER)
        assert "abort" not in storage.calls
        assert _reload(db_session, init.storage_object.id) is not None

    def test_completed_upload_cannot_be_aborted(self, object_service):
        init = _init(object_service, size=10 * MIB)
        object_service.complete_upload(
            init.storage_object.id, [CompletedPart(1, "etag-1")], user_id=OWNER
        )
        with pytest.raises(InvalidUploadOperationError):
            object_service.abort_upload(init.storage_object.id, user_id=OWNER)


class TestSimpleUpload:
    def test_streams_and_persists(self, object_service, storage, publisher, db_session):
        stored = object_service.simple_upload(
            SimpleUploadData(
                file_name="notes.txt", mime_type="text/plain", body=io.BytesIO(b"hello")
            ),
            user_id=OWNER,
        )

        assert storage.objects[stored.storage_key] == b"hello"
        assert stored.storage_key.endswith(".txt")
        reloaded = _reload(db_session, stored.id)
        assert reloaded.status == ObjectStatus.PROCESSING
        assert reloaded.size_bytes == 0
        assert reloaded.upload_session_id is None
        assert reloaded.part_size_bytes is None
        assert [e.object_id for e in publisher.events] == [stored.id]

    def test_backend_failure_persists_nothing(self, object_service, storage, publisher, db_session):
        storage.fail_on.add("put")
        with pytest.raises(StorageBackendError):
            object_service.simple_upload(
                SimpleUploadData(file_name="a.bin", mime_type="", body=io.BytesIO(b"x")),
                user_id=OWNER,
            )
        assert db_session.execute(select(func.count()).select_from(StorageObject)).scalar_one() == 0
        assert publisher.events == []

    def test_status_reports_zero_parts(self, object_service):
        stored = object_service.simple_upload(
            SimpleUploadData(file_name="a.bin", mime_type="", body=io.BytesIO(b"x")),
            user_id=OWNER,
        )
        status = object_service.get_upload_status(stored.id, user_id=OWNER)
        assert status.total_parts == 0
        assert status.status == ObjectStatus.PROCESSING
