from __future__ import annotations

from typing import Any


class DeliveryError(Exception):
    """Raised by a code delivery channel when the provider rejects or cannot be reached."""


class OtpError(Exception):
    status_code = 400
    code = "otp_error"
    default_detail = "OTP request failed"

    def __init__(self, detail: str | None = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)

    def extra(self) -> dict[str, Any]:
        return {}


class OtpRateLimited(OtpError):
    status_code = 429
    code = "otp_rate_limited"

    REASON_COOLDOWN = "cooldown"
    REASON_HOURLY_CAP = "hourly-cap"

    def __init__(self, reason: str, retry_after_seconds: int):
        self.reason = reason
        self.retry_after_seconds = max(int(retry_after_seconds), 1)
        if reason == self.REASON_COOLDOWN:
            detail = "Please wait before requesting another OTP"
        else:
            detail = "OTP resend limit reached. Try again later."
        super().__init__(detail)

    def extra(self) -> dict[str, Any]:
        return {"reason": self.reason, "retry_after_seconds": self.retry_after_seconds}


class OtpDeliveryFailed(OtpError):
    status_code = 502
    code = "otp_delivery_failed"
    default_detail = "Failed to deliver OTP"


class OtpStoreUnavailable(OtpError):
    status_code = 503
    code = "otp_store_unavailable"
    default_detail = "OTP storage is temporarily unavailable"


class OtpVerificationError(OtpError):
    pass


class OtpNotFound(OtpVerificationError):
    code = "otp_not_found"
    default_detail = "OTP expired or not found. Please request a new OTP."


class OtpExpired(OtpVerificationError):
    code = "otp_expired"
    default_detail = "OTP has expired. Please request a new OTP."


class OtpInvalid(OtpVerificationError):
    code = "otp_invalid"
    default_detail = "Invalid verification code"

    def __init__(self, attempts_remaining: int):
        self.attempts_remaining = max(int(attempts_remaining), 0)
        super().__init__()

    def extra(self) -> dict[str, Any]:
        return {"attempts_remaining": self.attempts_remaining}


class OtpLockedOut(OtpVerificationError):
    status_code = 429
    code = "otp_locked_out"
    default_detail = "Too many invalid attempts. Please request a new OTP."
