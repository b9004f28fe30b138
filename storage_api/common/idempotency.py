from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from fastapi import HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from storage_api.infra.db.models import IdempotencyRecord

DEFAULT_EXPIRATION_HOURS = 24
IDEMPOTENCY_HEADER = "Idempotency-Key"

logger = logging.getLogger("idempotency")


@dataclass
class IdempotencyResult:
    replay: bool
    status_code: int
    response: Any


class IdempotencyService:
    """Replays the stored response for a repeated ``Idempotency-Key``.

    Keys are scoped per user, so two users may pick the same key without
    seeing each other's responses. Only successful executions are stored.
    """

    def __init__(self, db: Session, *, ttl_hours: int = DEFAULT_EXPIRATION_HOURS):
        self.db = db
        self.ttl = timedelta(hours=ttl_hours)

    @staticmethod
    def _scoped_key(raw_key: str, user_id: str | None) -> str:
        return f"{user_id or '-'}:{raw_key}"

    def _hash_payload(self, request: Request, payload: dict[str, Any]) -> str:
        payload_json = json.dumps(
            jsonable_encoder(payload), sort_keys=True, separators=(",", ":")
        )
        raw = f"{request.method}:{request.url.path}:{payload_json}"
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    def handle(
        self,
        request: Request,
        payload: dict[str, Any],
        status_code: int,
        executor: Callable[[], Any],
        *,
        user_id: str | None = None,
        discard: Callable[[Any], None] | None = None,
    ) -> IdempotencyResult:
        """Run ``executor`` once per key, replaying its stored response afterwards.

        When a concurrent request with the same key stores its response first,
        this call replays that response instead and hands its own result to
        ``discard`` so the caller can undo the duplicate side effects.
        """
        raw_key = request.headers.get(IDEMPOTENCY_HEADER)
        if not raw_key:
            return IdempotencyResult(
                replay=False, status_code=status_code, response=executor()
            )

        key = self._scoped_key(raw_key, user_id)
        payload_hash = self._hash_payload(request, payload)
        now = datetime.now(tz=timezone.utc)
        existing = self.db.execute(
            select(IdempotencyRecord).where(IdempotencyRecord.key == key)
        ).scalar_one_or_none()
        if existing is not None and _is_expired(existing, now):
            self.db.delete(existing)
            self.db.commit()
            existing = None
        if existing is not None:
            return _replay(existing, payload_hash, raw_key)

        response = executor()
        record = IdempotencyRecord(
            key=key,
            request_hash=payload_hash,
            status_code=status_code,
            response_body=jsonable_encoder(response, by_alias=True),
            expires_at=now + self.ttl,
        )
        self.db.add(record)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            winner = self.db.get(IdempotencyRecord, key)
            if winner is None:
                raise
            logger.warning("idempotent_race_lost key=%s", raw_key)
            if discard is not None:
                _discard(discard, response, raw_key)
            return _replay(winner, payload_hash, raw_key)
        return IdempotencyResult(
            replay=False, status_code=status_code, response=response
        )


def _is_expired(record: IdempotencyRecord, now: datetime) -> bool:
    expires_at = record.expires_at
    if expires_at is None:
        return False
    # SQLite hands back naive datetimes
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return expires_at <= now


def _replay(
    record: IdempotencyRecord, payload_hash: str, raw_key: str
) -> IdempotencyResult:
    if record.request_hash != payload_hash:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "message": "Idempotency key was already used for a different request",
                "error_code": "idempotency_conflict",
            },
        )
    logger.info("idempotent_replay key=%s", raw_key)
    return IdempotencyResult(
        replay=True,
        status_code=record.status_code,
        response=record.response_body,
    )


def _discard(discard: Callable[[Any], None], response: Any, raw_key: str) -> None:
    try:
        discard(response)
    except Exception:
        # the stored response is still valid; the duplicate is left for cleanup
        logger.warning("idempotent_discard_failed key=%s", raw_key, exc_info=True)
