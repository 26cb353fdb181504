from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Protocol

import redis
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.models.common import as_utc
from app.models.otp_token import OtpToken
from app.services.otp_errors import OtpStoreUnavailable

_LOG = logging.getLogger("app.otp")


@dataclass(frozen=True)
class OtpRecord:
    identifier: str
    code_hash: str
    expires_at: datetime
    retry_count: int
    resend_count: int
    last_sent_at: datetime
    created_at: datetime
    updated_at: datetime


class OtpStore(Protocol):
    def get(self, identifier: str) -> OtpRecord | None:
        ...

    def upsert(
        self,
        identifier: str,
        *,
        code_hash: str,
        expires_at: datetime,
        reset_resend_count: bool,
        now: datetime,
    ) -> OtpRecord:
        ...

    def increment_retry(self, identifier: str, *, now: datetime) -> int | None:
        ...

    def delete(self, identifier: str) -> bool:
        ...

    def purge_expired(self, *, now: datetime, sent_before: datetime) -> int:
        ...


class InMemoryOtpStore:
    def __init__(self):
        self._data: dict[str, OtpRecord] = {}
        self._lock = Lock()

    def get(self, identifier: str) -> OtpRecord | None:
        with self._lock:
            return self._data.get(identifier)

    def upsert(self, identifier, *, code_hash, expires_at, reset_resend_count, now):
        with self._lock:
            current = self._data.get(identifier)
            if current is None:
                record = OtpRecord(
                    identifier=identifier,
                    code_hash=code_hash,
                    expires_at=expires_at,
                    retry_count=0,
                    resend_count=1,
                    last_sent_at=now,
                    created_at=now,
                    updated_at=now,
                )
            else:
                record = replace(
                    current,
                    code_hash=code_hash,
                    expires_at=expires_at,
                    retry_count=0,
                    resend_count=1 if reset_resend_count else current.resend_count + 1,
                    last_sent_at=now,
                    updated_at=now,
                )
            self._data[identifier] = record
            return record

    def increment_retry(self, identifier, *, now):
        with self._lock:
            current = self._data.get(identifier)
            if current is None:
                return None
            record = replace(current, retry_count=current.retry_count + 1, updated_at=now)
            self._data[identifier] = record
            return record.retry_count

    def delete(self, identifier):
        with self._lock:
            return self._data.pop(identifier, None) is not None

    def purge_expired(self, *, now, sent_before):
        with self._lock:
            stale = [
                key
                for key, record in self._data.items()
                if record.expires_at <= now and record.last_sent_at < sent_before
            ]
            for key in stale:
                del self._data[key]
        return len(stale)


class SqlAlchemyOtpStore:
    """OTP records kept as rows of ``otp_tokens``, one per (channel, identifier).

    Counters are changed with ``UPDATE ... SET x = x + 1`` so concurrent verify
    attempts on the same identifier serialize on the row lock instead of
    overwriting each other.
    """

    def __init__(self, db: Session, channel: str):
        self.db = db
        self.channel = channel

    def _where(self, identifier: str):
        return (OtpToken.channel == self.channel, OtpToken.identifier == identifier)

    def _fail(self, exc: SQLAlchemyError) -> None:
        self.db.rollback()
        _LOG.exception("OTP store failure channel=%s", self.channel)
        raise OtpStoreUnavailable() from exc

    @staticmethod
    def _to_record(row: OtpToken) -> OtpRecord:
        return OtpRecord(
            identifier=row.identifier,
            code_hash=row.code_hash,
            expires_at=as_utc(row.expires_at),
            retry_count=int(row.retry_count or 0),
            resend_count=int(row.resend_count or 0),
            last_sent_at=as_utc(row.last_sent_at),
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
        )

    def get(self, identifier: str) -> OtpRecord | None:
        try:
            row = self.db.execute(select(OtpToken).where(*self._where(identifier))).scalar_one_or_none()
        except SQLAlchemyError as exc:
            self._fail(exc)
        if row is None:
            return None
        return self._to_record(row)

    def _update_existing(self, identifier, *, code_hash, expires_at, reset_resend_count, now) -> int:
        stmt = (
            update(OtpToken)
            .where(*self._where(identifier))
            .values(
                code_hash=code_hash,
                expires_at=expires_at,
                retry_count=0,
                resend_count=1 if reset_resend_count else OtpToken.resend_count + 1,
                last_sent_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return int(self.db.execute(stmt).rowcount or 0)

    def upsert(self, identifier, *, code_hash, expires_at, reset_resend_count, now):
        values = {
            "code_hash": code_hash,
            "expires_at": expires_at,
            "reset_resend_count": reset_resend_count,
            "now": now,
        }
        try:
            if self._update_existing(identifier, **values):
                self.db.commit()
            else:
                try:
                    self.db.add(
                        OtpToken(
                            channel=self.channel,
                            identifier=identifier,
                            code_hash=code_hash,
                            expires_at=expires_at,
                            retry_count=0,
                            resend_count=1,
                            last_sent_at=now,
                            created_at=now,
                            updated_at=now,
                        )
                    )
                    self.db.commit()
                except IntegrityError:
                    # Another request created the row between our UPDATE and INSERT.
                    self.db.rollback()
                    self._update_existing(identifier, **values)
                    self.db.commit()
        except SQLAlchemyError as exc:
            self._fail(exc)

        record = self.get(identifier)
        if record is None:
            raise OtpStoreUnavailable("OTP record vanished right after it was written")
        return record

    def increment_retry(self, identifier, *, now):
        try:
            result = self.db.execute(
                update(OtpToken)
                .where(*self._where(identifier))
                .values(retry_count=OtpToken.retry_count + 1, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if not result.rowcount:
                self.db.rollback()
                return None
            count = self.db.execute(select(OtpToken.retry_count).where(*self._where(identifier))).scalar_one()
            self.db.commit()
        except SQLAlchemyError as exc:
            self._fail(exc)
        return int(count)

    def delete(self, identifier):
        try:
            result = self.db.execute(delete(OtpToken).where(*self._where(identifier)))
            self.db.commit()
        except SQLAlchemyError as exc:
            self._fail(exc)
        return bool(result.rowcount)

    def purge_expired(self, *, now, sent_before):
        try:
            result = self.db.execute(
                delete(OtpToken).where(
                    OtpToken.channel == self.channel,
                    OtpToken.expires_at <= now,
                    OtpToken.last_sent_at < sent_before,
                )
            )
            self.db.commit()
        except SQLAlchemyError as exc:
            self._fail(exc)
        return int(result.rowcount or 0)


class RedisOtpStore:
    """One Redis hash per identifier.

    The key lives for at least ``retention_seconds`` after the last issuance so
    resend throttling survives code expiry; Redis evicts the key afterwards.
    """

    def __init__(self, client: redis.Redis, channel: str, *, retention_seconds: int = 3600):
        self.client = client
        self.channel = channel
        self.retention_seconds = max(int(retention_seconds), 1)

    def _key(self, identifier: str) -> str:
        return f"otp:{self.channel}:{identifier}"

    @staticmethod
    def _parse_dt(raw: str | None) -> datetime:
        value = datetime.fromisoformat(str(raw))
        return as_utc(value)

    def get(self, identifier):
        try:
            data = self.client.hgetall(self._key(identifier))
        except redis.RedisError as exc:
            raise OtpStoreUnavailable() from exc
        if not data or "code_hash" not in data:
            return None
        return OtpRecord(
            identifier=identifier,
            code_hash=str(data["code_hash"]),
            expires_at=self._parse_dt(data.get("expires_at")),
            retry_count=int(data.get("retry_count") or 0),
            resend_count=int(data.get("resend_count") or 0),
            last_sent_at=self._parse_dt(data.get("last_sent_at")),
            created_at=self._parse_dt(data.get("created_at") or data.get("last_sent_at")),
            updated_at=self._parse_dt(data.get("updated_at") or data.get("last_sent_at")),
        )

    def upsert(self, identifier, *, code_hash, expires_at, reset_resend_count, now):
        key = self._key(identifier)
        stamp = now.astimezone(timezone.utc).isoformat()
        ttl_seconds = max(self.retention_seconds, math.ceil((expires_at - now).total_seconds()))
        try:
            pipe = self.client.pipeline(transaction=True)
            pipe.hset(
                key,
                mapping={
                    "code_hash": code_hash,
                    "expires_at": expires_at.astimezone(timezone.utc).isoformat(),
                    "retry_count": 0,
                    "last_sent_at": stamp,
                    "updated_at": stamp,
                },
            )
            pipe.hsetnx(key, "created_at", stamp)
            if reset_resend_count:
                pipe.hset(key, "resend_count", 1)
            else:
                pipe.hincrby(key, "resend_count", 1)
            pipe.expire(key, ttl_seconds)
            pipe.execute()
        except redis.RedisError as exc:
            raise OtpStoreUnavailable() from exc

        record = self.get(identifier)
        if record is None:
            raise OtpStoreUnavailable("OTP record vanished right after it was written")
        return record

    def increment_retry(self, identifier, *, now):
        key = self._key(identifier)
        stamp = now.astimezone(timezone.utc).isoformat()
        try:
            with self.client.pipeline() as pipe:
                while True:
                    try:
                        pipe.watch(key)
                        if not pipe.exists(key):
                            pipe.unwatch()
                            return None
                        pipe.multi()
                        pipe.hincrby(key, "retry_count", 1)
                        pipe.hset(key, "updated_at", stamp)
                        result = pipe.execute()
                        return int(result[0])
                    except redis.WatchError:
                        continue
        except redis.RedisError as exc:
            raise OtpStoreUnavailable() from exc

    def delete(self, identifier):
        try:
            return bool(self.client.delete(self._key(identifier)))
        except redis.RedisError as exc:
            raise OtpStoreUnavailable() from exc

    def purge_expired(self, *, now, sent_before):
        # Keys carry their own TTL.
        return 0


def retention_cutoff(now: datetime, window_seconds: int) -> datetime:
    return now - timedelta(seconds=max(int(window_seconds), 1))
