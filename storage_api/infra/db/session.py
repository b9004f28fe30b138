from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from storage_api.common.config import Settings


def _build_connect_args(db_url: str, timeout: int) -> dict[str, Any]:
    lowered = db_url.lower()
    if lowered.startswith("postgresql"):
        return {"connect_timeout": timeout}
    if lowered.startswith("sqlite"):
        # request handlers run in a threadpool
        return {"check_same_thread": False}
    return {}


class Database:
    """Owns the engine and session factory for one process.

    Created by the application factory at startup and disposed at shutdown;
    request handlers reach it through ``app.state.database``.
    """

    def __init__(self, url: str, *, connect_timeout: int = 5) -> None:
        self.url = url
        self._engine: Engine = create_engine(
            url,
            pool_pre_ping=True,
            connect_args=_build_connect_args(url, connect_timeout),
        )
        self._session_factory = sessionmaker(
            bind=self._engine,
            autoflush=False,
            autocommit=False,
            expire_on_commit=False,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        return cls(settings.DB_URL, connect_timeout=settings.DB_CONNECT_TIMEOUT)

    @property
    def engine(self) -> Engine:
        return self._engine

    @property
    def session_factory(self) -> sessionmaker:
        return self._session_factory

    def new_session(self) -> Session:
        return self._session_factory()

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        self._engine.dispose()
