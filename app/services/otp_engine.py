from __future__ import annotations

import logging
import math
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from app.core.config import settings
from app.core.security import hash_password, verify_password
from app.services.identifiers import mask_identifier
from app.services.otp_errors import (
    DeliveryError,
    OtpDeliveryFailed,
    OtpExpired,
    OtpInvalid,
    OtpLockedOut,
    OtpNotFound,
    OtpRateLimited,
)
from app.services.otp_store import OtpRecord, OtpStore

_LOG = logging.getLogger("app.otp")

DeliverFn = Callable[[str, str], Any]


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class OtpPolicy:
    code_length: int = 6
    ttl_minutes: int = 10
    resend_interval_seconds: int = 60
    max_resends_per_hour: int = 5
    max_verify_attempts: int = 5
    resend_window_seconds: int = 3600

    def __post_init__(self):
        for name in (
            "code_length",
            "ttl_minutes",
            "resend_interval_seconds",
            "max_resends_per_hour",
            "max_verify_attempts",
            "resend_window_seconds",
        ):
            if int(getattr(self, name)) < 1:
                raise ValueError(f"OtpPolicy.{name} must be positive")

    @property
    def ttl_seconds(self) -> int:
        return int(self.ttl_minutes) * 60


def phone_policy() -> OtpPolicy:
    return OtpPolicy(
        code_length=settings.OTP_CODE_LENGTH,
        ttl_minutes=settings.OTP_TTL_MINUTES,
        resend_interval_seconds=settings.OTP_RESEND_INTERVAL_SECONDS,
        max_resends_per_hour=settings.OTP_MAX_RESENDS_PER_HOUR,
        max_verify_attempts=settings.OTP_MAX_VERIFY_ATTEMPTS,
        resend_window_seconds=settings.OTP_RESEND_WINDOW_SECONDS,
    )


def merchant_email_policy() -> OtpPolicy:
    return OtpPolicy(
        code_length=settings.OTP_CODE_LENGTH,
        ttl_minutes=settings.MERCHANT_OTP_TTL_MIN,
        resend_interval_seconds=settings.OTP_RESEND_INTERVAL_SECONDS,
        max_resends_per_hour=settings.OTP_MAX_RESENDS_PER_HOUR,
        max_verify_attempts=settings.OTP_MAX_VERIFY_ATTEMPTS,
        resend_window_seconds=settings.OTP_RESEND_WINDOW_SECONDS,
    )


def generate_code(length: int) -> str:
    """Uniform pick from ``10**(length-1) .. 10**length - 1``, so no leading zeros."""
    low = 10 ** (int(length) - 1)
    high = 10 ** int(length) - 1
    return str(low + secrets.randbelow(high - low + 1))


@dataclass(frozen=True)
class OtpIssued:
    identifier: str
    channel: str
    expires_at: datetime
    ttl_seconds: int
    resend_count: int


@dataclass(frozen=True)
class VerifiedIdentifier:
    identifier: str
    channel: str
    verified_at: datetime


class OtpEngine:
    """Issues and checks one-time codes bound to a normalized identifier.

    The plaintext code only ever leaves through ``deliver``; the store keeps a
    hash. Delivery happens before the record is written, so a failed delivery
    leaves no throttle state behind and the caller may retry at once.
    """

    def __init__(
        self,
        store: OtpStore,
        deliver: DeliverFn,
        *,
        channel: str,
        policy: OtpPolicy | None = None,
        hash_code: Callable[[str], str] = hash_password,
        check_code: Callable[[str, str], bool] = verify_password,
        clock: Callable[[], datetime] | None = None,
        code_generator: Callable[[int], str] | None = None,
    ):
        self.store = store
        self.channel = channel
        self.policy = policy or OtpPolicy()
        self._deliver = deliver
        self._hash_code = hash_code
        self._check_code = check_code
        self._clock = clock or _now_utc
        self._code_generator = code_generator or generate_code

    def _check_throttle(self, record: OtpRecord, now: datetime) -> None:
        elapsed = (now - record.last_sent_at).total_seconds()
        if elapsed < self.policy.resend_interval_seconds:
            raise OtpRateLimited(
                OtpRateLimited.REASON_COOLDOWN,
                math.ceil(self.policy.resend_interval_seconds - elapsed),
            )
        if elapsed < self.policy.resend_window_seconds and record.resend_count >= self.policy.max_resends_per_hour:
            raise OtpRateLimited(
                OtpRateLimited.REASON_HOURLY_CAP,
                math.ceil(self.policy.resend_window_seconds - elapsed),
            )

    def request_code(self, identifier: str) -> OtpIssued:
        now = self._clock()
        existing = self.store.get(identifier)
        if existing is not None:
            try:
                self._check_throttle(existing, now)
            except OtpRateLimited as exc:
                _LOG.info(
                    "otp issue rejected channel=%s identifier=%s reason=%s",
                    self.channel,
                    mask_identifier(identifier),
                    exc.reason,
                )
                raise

        code = self._code_generator(self.policy.code_length)
        code_hash = self._hash_code(code)
        expires_at = now + timedelta(seconds=self.policy.ttl_seconds)
        reset_resend_count = (
            existing is None
            or (now - existing.last_sent_at).total_seconds() > self.policy.resend_window_seconds
        )

        try:
            self._deliver(identifier, code)
        except DeliveryError as exc:
            _LOG.warning(
                "otp delivery failed channel=%s identifier=%s error=%s",
                self.channel,
                mask_identifier(identifier),
                exc,
            )
            raise OtpDeliveryFailed(f"Failed to deliver OTP: {exc}") from exc

        record = self.store.upsert(
            identifier,
            code_hash=code_hash,
            expires_at=expires_at,
            reset_resend_count=reset_resend_count,
            now=now,
        )
        _LOG.info(
            "otp issued channel=%s identifier=%s resend_count=%s",
            self.channel,
            mask_identifier(identifier),
            record.resend_count,
        )
        return OtpIssued(
            identifier=identifier,
            channel=self.channel,
            expires_at=record.expires_at,
            ttl_seconds=self.policy.ttl_seconds,
            resend_count=record.resend_count,
        )

    def verify_code(self, identifier: str, code: str) -> VerifiedIdentifier:
        record = self.store.get(identifier)
        if record is None:
            raise OtpNotFound()

        now = self._clock()
        # An expired code is rejected even when it matches.
        if now >= record.expires_at:
            self.store.delete(identifier)
            raise OtpExpired()

        submitted = str(code or "").strip()
        if not submitted or not self._check_code(submitted, record.code_hash):
            retry_count = self.store.increment_retry(identifier, now=now)
            if retry_count is None:
                raise OtpNotFound()
            if retry_count >= self.policy.max_verify_attempts:
                if not self.store.delete(identifier):
                    # Another attempt already hit the limit and removed the record.
                    raise OtpNotFound()
                _LOG.warning(
                    "otp locked out channel=%s identifier=%s attempts=%s",
                    self.channel,
                    mask_identifier(identifier),
                    retry_count,
                )
                raise OtpLockedOut()
            raise OtpInvalid(self.policy.max_verify_attempts - retry_count)

        if not self.store.delete(identifier):
            # A concurrent verify consumed the same code first.
            raise OtpNotFound()
        _LOG.info("otp verified channel=%s identifier=%s", self.channel, mask_identifier(identifier))
        return VerifiedIdentifier(identifier=identifier, channel=self.channel, verified_at=now)
