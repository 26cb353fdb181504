from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Any
import httpx

from app.core.config import settings
from app.services.identifiers import mask_identifier, normalize_email
from app.services.otp_errors import DeliveryError


class EmailDeliveryError(DeliveryError):
    pass


logger = logging.getLogger("app.delivery")

MOCK_PROVIDERS = {"", "dummy", "mock", "console"}
SERVICE_PROVIDERS = {"service", "notification_service"}


@dataclass(frozen=True)
class SmtpConfig:
    host: str
    port: int
    username: str
    password: str
    sender: str
    use_tls: bool
    use_ssl: bool

    @classmethod
    def from_settings(cls) -> "SmtpConfig":
        return cls(
            host=str(settings.SMTP_HOST or "").strip(),
            port=int(settings.SMTP_PORT or 0),
            username=str(settings.SMTP_USER or "").strip(),
            password=str(settings.SMTP_PASSWORD or "").strip(),
            sender=str(settings.SMTP_FROM or "").strip(),
            use_tls=bool(settings.SMTP_USE_TLS),
            use_ssl=bool(settings.SMTP_USE_SSL),
        )

    def problems(self) -> list[str]:
        issues = []
        if not self.host:
            issues.append("SMTP_HOST is not set")
        if not self.port:
            issues.append("SMTP_PORT is not set")
        if not self.sender:
            issues.append("SMTP_FROM is not set")
        if self.use_tls and self.use_ssl:
            issues.append("SMTP_USE_TLS and SMTP_USE_SSL cannot both be enabled")
        return issues


def _provider() -> str:
    return str(settings.EMAIL_PROVIDER or "dummy").strip().lower()


def _otp_dev_mode_enabled() -> bool:
    return bool(getattr(settings, "OTP_DEV_MODE", False))


def _render_message(*, code: str, ttl_minutes: int) -> tuple[str, str]:
    subject = str(settings.MERCHANT_OTP_EMAIL_SUBJECT or "").strip() or "Your Merchant Login OTP"
    template = str(settings.MERCHANT_OTP_EMAIL_TEMPLATE or "").strip() or "Your OTP code is: {code}"
    try:
        body = template.format(code=code, ttl_minutes=ttl_minutes)
    except (KeyError, IndexError, ValueError):
        # Broken template in the environment; fall back to a plain line.
        body = f"Your OTP code is: {code}"
    return subject, body


def _mock_send(*, email: str, code: str) -> dict[str, Any]:
    logger.warning("[OTP EMAIL MOCK] email=%s code=%s", email, code)
    return {
        "provider": "mock_email",
        "status": "accepted",
        "message": "Email provider response mocked",
        "sent": False,
        "mocked": True,
        "dev_mode": _otp_dev_mode_enabled(),
    }


def _send_smtp(*, email: str, subject: str, body: str) -> dict[str, Any]:
    config = SmtpConfig.from_settings()
    issues = config.problems()
    if issues:
        raise EmailDeliveryError("; ".join(issues))

    msg = EmailMessage()
    msg["From"] = config.sender
    msg["To"] = email
    msg["Subject"] = subject
    msg.set_content(body)

    smtp_class = smtplib.SMTP_SSL if config.use_ssl else smtplib.SMTP
    try:
        with smtp_class(host=config.host, port=config.port, timeout=15) as client:
            if config.use_tls:
                client.starttls()
            if config.username:
                client.login(config.username, config.password)
            client.send_message(msg)
    except (smtplib.SMTPException, OSError) as exc:
        raise EmailDeliveryError(f"SMTP delivery failed: {exc}") from exc

    logger.info("otp email accepted by smtp email=%s", mask_identifier(email))
    return {"provider": "smtp", "status": "accepted", "message": "Email sent", "sent": True}


def _notification_service_target() -> tuple[str, str]:
    return (
        str(settings.NOTIFICATION_SERVICE_URL or "").strip().rstrip("/"),
        str(settings.SERVICE_API_KEY or "").strip(),
    )


def _send_via_notification_service(*, email: str, subject: str, body: str) -> dict[str, Any]:
    base_url, api_key = _notification_service_target()
    if not base_url:
        raise EmailDeliveryError("NOTIFICATION_SERVICE_URL is not configured")
    if not api_key:
        raise EmailDeliveryError("SERVICE_API_KEY is not configured")

    request_body = {"email": email, "subject": subject, "message": body, "type": "merchant_login_otp"}
    try:
        with httpx.Client(timeout=15.0) as client:
            response = client.post(
                f"{base_url}/api/notifications/internal/email",
                headers={"X-Service-API-Key": api_key},
                json=request_body,
            )
    except httpx.HTTPError as exc:
        raise EmailDeliveryError(f"notification-service is unreachable: {exc}") from exc

    try:
        payload = response.json() if response.content else {}
    except ValueError:
        payload = {}
    if not isinstance(payload, dict):
        payload = {}
    if response.status_code >= 400:
        reason = payload.get("error") or payload.get("detail") or f"HTTP {response.status_code}"
        raise EmailDeliveryError(f"notification-service error: {reason}")

    logger.info("otp email accepted by notification-service email=%s", mask_identifier(email))
    return {
        "provider": "notification-service",
        "status": "accepted",
        "message": "Email sent via notification-service",
        "sent": True,
        "response": payload,
    }


def send_otp_email_message(email: str, code: str, *, ttl_minutes: int | None = None) -> dict[str, Any]:
    address = normalize_email(email)
    if not address:
        raise EmailDeliveryError("Invalid email")

    provider = _provider()
    if _otp_dev_mode_enabled() or provider in MOCK_PROVIDERS:
        return _mock_send(email=address, code=code)

    subject, body = _render_message(code=code, ttl_minutes=int(ttl_minutes or settings.MERCHANT_OTP_TTL_MIN))
    if provider in SERVICE_PROVIDERS:
        return _send_via_notification_service(email=address, subject=subject, body=body)
    if provider == "smtp":
        return _send_smtp(email=address, subject=subject, body=body)
    raise EmailDeliveryError(f"Unknown EMAIL_PROVIDER: {provider}")


def _probe_notification_service(base_url: str) -> str | None:
    try:
        with httpx.Client(timeout=5.0) as client:
            response = client.get(f"{base_url}/health")
    except httpx.HTTPError as exc:
        return f"notification-service unavailable: {exc}"
    if response.status_code >= 400:
        return f"notification-service unavailable: HTTP {response.status_code}"
    return None


def _health(provider: str, mode: str, checks: dict[str, bool], issues: list[str], **extra) -> dict[str, Any]:
    can_send = not issues
    report = {
        "provider": provider,
        "status": "ok" if can_send else "degraded",
        "mode": mode,
        "dev_mode": _otp_dev_mode_enabled(),
        "can_send": can_send,
        "checks": checks,
        "issues": issues,
    }
    report.update(extra)
    return report


def email_provider_health() -> dict[str, Any]:
    provider = _provider()
    if _otp_dev_mode_enabled():
        report = _health(provider or "dummy", "mock", {"otp_dev_mode": True}, [], effective_provider="mock_email")
        report["issues"] = ["OTP_DEV_MODE is on: real email delivery is disabled"]
        return report

    if provider in MOCK_PROVIDERS:
        return _health("dummy", "mock", {"mock_mode": True}, [])

    if provider in SERVICE_PROVIDERS:
        base_url, api_key = _notification_service_target()
        checks = {"notification_service_url_configured": bool(base_url), "service_api_key_configured": bool(api_key)}
        issues = [
            f"{name} is not set"
            for name, ok in (("NOTIFICATION_SERVICE_URL", bool(base_url)), ("SERVICE_API_KEY", bool(api_key)))
            if not ok
        ]
        if not issues:
            probe_issue = _probe_notification_service(base_url)
            if probe_issue:
                issues.append(probe_issue)
        return _health("notification-service", "service", checks, issues)

    if provider == "smtp":
        config = SmtpConfig.from_settings()
        checks = {"smtp_host_configured": bool(config.host), "smtp_from_configured": bool(config.sender)}
        return _health("smtp", "real", checks, config.problems())

    report = _health(provider, "unknown", {"provider_supported": False}, [f"Unknown EMAIL_PROVIDER: {provider}"])
    report["status"] = "error"
    return report
