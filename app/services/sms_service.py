from __future__ import annotations

import logging
from typing import Any

import httpx

from app.core.config import settings
from app.services.identifiers import mask_identifier, normalize_phone
from app.services.otp_errors import DeliveryError

logger = logging.getLogger("app.delivery")

MOCK_PROVIDERS = {"", "dummy", "mock", "console"}


class SmsDeliveryError(DeliveryError):
    pass


def _provider() -> str:
    return str(settings.SMS_PROVIDER or "dummy").strip().lower()


def _otp_dev_mode_enabled() -> bool:
    return bool(getattr(settings, "OTP_DEV_MODE", False))


def _mock_sms_send(*, phone: str, code: str) -> dict[str, Any]:
    logger.warning("[OTP SMS MOCK] phone=%s code=%s", phone, code)
    return {
        "provider": "mock_sms",
        "status": "accepted",
        "message": "SMS provider response mocked",
        "sent": False,
        "mocked": True,
        "dev_mode": _otp_dev_mode_enabled(),
    }


def _error_message(response: httpx.Response) -> str:
    fallback = f"MSG91 request failed with status {response.status_code}"
    try:
        payload = response.json() if response.content else {}
    except ValueError:
        return fallback
    if isinstance(payload, dict):
        return str(payload.get("message") or fallback)
    return fallback


def _send_msg91(*, phone: str, code: str) -> dict[str, Any]:
    auth_key = str(settings.MSG91_AUTH_KEY or "").strip()
    template_id = str(settings.MSG91_TEMPLATE_ID or "").strip()
    if not auth_key:
        raise SmsDeliveryError("MSG91 auth key is not configured")
    if not template_id:
        raise SmsDeliveryError("MSG91 template ID is not configured")

    try:
        mobile = normalize_phone(phone, settings.MSG91_DEFAULT_COUNTRY_CODE)
    except ValueError as exc:
        raise SmsDeliveryError(str(exc)) from exc

    base_url = str(settings.MSG91_BASE_URL or "").strip().rstrip("/")
    try:
        with httpx.Client(timeout=float(settings.MSG91_TIMEOUT_SECONDS)) as client:
            response = client.post(
                f"{base_url}/api/v5/otp",
                headers={"authkey": auth_key, "Content-Type": "application/json"},
                json={"template_id": template_id, "mobile": mobile, "otp": code, "otp_length": len(code)},
            )
    except httpx.HTTPError as exc:
        raise SmsDeliveryError(f"MSG91 is unreachable: {exc}") from exc

    if response.status_code >= 400:
        raise SmsDeliveryError(_error_message(response))

    logger.info("otp sms accepted by msg91 phone=%s", mask_identifier(mobile))
    return {
        "provider": "msg91",
        "status": "accepted",
        "message": "SMS sent",
        "sent": True,
    }


def sms_provider_health() -> dict[str, Any]:
    provider = _provider()
    if _otp_dev_mode_enabled() or provider in MOCK_PROVIDERS:
        return {
            "provider": provider or "dummy",
            "status": "ok",
            "mode": "mock",
            "dev_mode": _otp_dev_mode_enabled(),
            "can_send": True,
            "checks": {"mock_mode": True},
            "issues": [],
        }

    if provider == "msg91":
        checks = {
            "auth_key_configured": bool(str(settings.MSG91_AUTH_KEY or "").strip()),
            "template_id_configured": bool(str(settings.MSG91_TEMPLATE_ID or "").strip()),
            "base_url_configured": bool(str(settings.MSG91_BASE_URL or "").strip()),
        }
        issues: list[str] = []
        if not checks["auth_key_configured"]:
            issues.append("MSG91_AUTH_KEY is not set")
        if not checks["template_id_configured"]:
            issues.append("MSG91_TEMPLATE_ID is not set")
        if not checks["base_url_configured"]:
            issues.append("MSG91_BASE_URL is not set")
        can_send = all(checks.values())
        return {
            "provider": "msg91",
            "status": "ok" if can_send else "degraded",
            "mode": "real",
            "dev_mode": False,
            "can_send": can_send,
            "checks": checks,
            "issues": issues,
        }

    return {
        "provider": provider,
        "status": "error",
        "mode": "unknown",
        "dev_mode": False,
        "can_send": False,
        "checks": {"provider_supported": False},
        "issues": [f"Unknown SMS_PROVIDER: {provider}"],
    }


def send_otp_message(phone: str, code: str) -> dict[str, Any]:
    if _otp_dev_mode_enabled():
        return _mock_sms_send(phone=phone, code=code)
    provider = _provider()
    if provider in MOCK_PROVIDERS:
        return _mock_sms_send(phone=phone, code=code)
    if provider == "msg91":
        return _send_msg91(phone=phone, code=code)
    raise SmsDeliveryError(f"Unknown SMS_PROVIDER: {provider}")
