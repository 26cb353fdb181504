from celery import Celery
from app.core.config import settings

celery_app = Celery(
    "fluence_auth",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=["app.workers.tasks.otp"],
)

celery_app.conf.beat_schedule = {
    "cleanup_expired_otps": {"task": "app.workers.tasks.otp.cleanup_expired_otps", "schedule": 3600.0},
}
celery_app.conf.timezone = "UTC"
