from fastapi import APIRouter

from app.core.config import settings
from app.services.email_service import email_provider_health
from app.services.sms_service import sms_provider_health

router = APIRouter()


@router.get("/health")
def health():
    return {"service": settings.APP_NAME, "status": "ok"}


@router.get("/health/providers")
def providers_health():
    sms = sms_provider_health()
    email = email_provider_health()
    status = "ok" if sms.get("can_send") and email.get("can_send") else "degraded"
    return {"status": status, "sms": sms, "email": email}
