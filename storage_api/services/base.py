from __future__ import annotations

from sqlalchemy.orm import Session


class ServiceError(Exception):
    """Base class for application service level exceptions."""


class MissingUserError(ServiceError):
    """Raised when an operation lacks a valid user identifier."""


class BaseService:
    """Provides guard rails and helpers shared by application services."""

    def __init__(self, session: Session):
        self._session = session

    @property
    def session(self) -> Session:
        return self._session

    def _ensure_user(self, user_id: str | None) -> str:
        if not user_id:
            raise MissingUserError("user_id is required for this operation")
        return user_id

    def _commit(self) -> None:
        try:
            self._session.commit()
        except Exception:
            self._session.rollback()
            raise
