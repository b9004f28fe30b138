from __future__ import annotations

import dataclasses
import os
import tempfile
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import delete


def _resolve_test_db_url() -> str:
    explicit = os.environ.get("TEST_DB_URL")
    if explicit:
        return explicit
    # 默认使用临时 SQLite 文件，PostgreSQL 通过 TEST_DB_URL 指定
    tmp_dir = Path(tempfile.mkdtemp(prefix="storage-api-tests-"))
    return f"sqlite:///{tmp_dir / 'test.db'}"


test_db_url = _resolve_test_db_url()

os.environ["DB_URL"] = test_db_url
os.environ["AUTO_APPLY_MIGRATIONS"] = "false"
os.environ["AUTH_ENABLED"] = "false"
os.environ["API_KEY_ENABLED"] = "false"
os.environ["EVENTS_BACKEND"] = "log"
os.environ.setdefault("S3_BUCKET", "test-bucket")

from storage_api.common.config import get_settings  # noqa: E402

get_settings.cache_clear()  # type: ignore[attr-defined]

from storage_api.infra.db.alembic_support import upgrade_to_head  # noqa: E402
from storage_api.infra.db.models import (  # noqa: E402
    IdempotencyRecord,
    StorageObject,
    StorageObjectPart,
)
from storage_api.infra.db.session import Database  # noqa: E402
from storage_api.main import create_app  # noqa: E402
from storage_api.services.object_service import ObjectService  # noqa: E402
from tests.services.mock_storage import (  # noqa: E402
    MockStorageClient,
    RecordingEventPublisher,
)


def _wipe(database: Database) -> None:
    with database.session_scope() as session:
        session.execute(delete(StorageObjectPart))
        session.execute(delete(StorageObject))
        session.execute(delete(IdempotencyRecord))


@pytest.fixture(scope="session")
def database():
    get_settings.cache_clear()  # type: ignore[attr-defined]
    upgrade_to_head(test_db_url)
    db = Database(test_db_url)
    yield db
    db.dispose()


@pytest.fixture(autouse=True)
def cleanup_tables(database):
    _wipe(database)
    yield
    _wipe(database)


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def db_session(database):
    session = database.new_session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def storage():
    return MockStorageClient()


@pytest.fixture
def publisher():
    return RecordingEventPublisher()


@pytest.fixture
def object_service(db_session, storage, publisher, settings) -> ObjectService:
    return ObjectService(
        db_session,
        storage_client=storage,
        event_publisher=publisher,
        settings=settings,
    )


@pytest.fixture
def make_client(database, storage, publisher, settings):
    """Build a TestClient; keyword arguments override settings fields."""

    clients: list[TestClient] = []

    def factory(**overrides) -> TestClient:
        app_settings = dataclasses.replace(settings, **overrides)
        app = create_app(
            settings=app_settings,
            database=database,
            storage_client=storage,
            event_publisher=publisher,
        )
        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client

    yield factory
    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def client(make_client):
    return make_client()
