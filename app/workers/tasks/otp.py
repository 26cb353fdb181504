from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import func, select

from app.core.config import settings
from app.db.session import SessionLocal
from app.models.otp_token import OTP_CHANNEL_MERCHANT_EMAIL, OTP_CHANNEL_PHONE, OtpToken
from app.services.otp_store import SqlAlchemyOtpStore, retention_cutoff
from app.workers.celery_app import celery_app


@celery_app.task(name="app.workers.tasks.otp.cleanup_expired_otps")
def cleanup_expired_otps():
    # Rows stay while their resend window is open so throttling still applies.
    now = datetime.now(timezone.utc)
    sent_before = retention_cutoff(now, settings.OTP_RESEND_WINDOW_SECONDS)
    db = SessionLocal()
    try:
        total = db.execute(select(func.count()).select_from(OtpToken)).scalar_one()
        deleted = 0
        for channel in (OTP_CHANNEL_PHONE, OTP_CHANNEL_MERCHANT_EMAIL):
            deleted += SqlAlchemyOtpStore(db, channel).purge_expired(now=now, sent_before=sent_before)
        return {"checked": int(total), "deleted": int(deleted)}
    finally:
        db.close()
