from functools import partial
from uuid import UUID

import redis
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.security import decode_jwt
from app.db.session import get_db
from app.models.otp_token import OTP_CHANNEL_MERCHANT_EMAIL, OTP_CHANNEL_PHONE
from app.models.user import User
from app.services.email_service import send_otp_email_message
from app.services.otp_engine import OtpEngine, merchant_email_policy, phone_policy
from app.services.otp_errors import OtpStoreUnavailable
from app.services.otp_store import OtpStore, RedisOtpStore, SqlAlchemyOtpStore
from app.services.sms_service import send_otp_message

bearer = HTTPBearer(auto_error=False)

def get_token_claims(creds: HTTPAuthorizationCredentials = Depends(bearer)) -> dict:
    if not creds:
        raise HTTPException(status_code=401, detail="Missing authorization token")
    try:
        return decode_jwt(creds.credentials, settings.JWT_SECRET)
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")

def get_current_user(claims: dict = Depends(get_token_claims), db: Session = Depends(get_db)) -> User:
    if claims.get("role") == "merchant":
        raise HTTPException(status_code=403, detail="Merchant tokens cannot access user endpoints")
    user = db.execute(select(User).where(User.id == _uuid_or_401(claims.get("sub")))).scalar_one_or_none()
    if user is None:
        raise HTTPException(status_code=401, detail="User not found")
    if user.status != "active":
        raise HTTPException(status_code=403, detail="Account is not active")
    return user

def _uuid_or_401(raw) -> UUID:
    try:
        return UUID(str(raw))
    except (TypeError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid token")

def get_redis(request: Request) -> redis.Redis:
    client = getattr(request.app.state, "redis", None)
    if client is None:
        raise OtpStoreUnavailable("Redis client is not configured")
    return client

def get_phone_otp_engine(db: Session = Depends(get_db)) -> OtpEngine:
    return OtpEngine(
        SqlAlchemyOtpStore(db, OTP_CHANNEL_PHONE),
        send_otp_message,
        channel=OTP_CHANNEL_PHONE,
        policy=phone_policy(),
    )

def get_merchant_otp_store(request: Request, db: Session = Depends(get_db)) -> OtpStore:
    backend = str(settings.MERCHANT_OTP_STORE or "redis").strip().lower()
    if backend == "database":
        return SqlAlchemyOtpStore(db, OTP_CHANNEL_MERCHANT_EMAIL)
    if backend == "memory":
        return request.app.state.merchant_otp_memory_store
    return RedisOtpStore(
        get_redis(request),
        OTP_CHANNEL_MERCHANT_EMAIL,
        retention_seconds=settings.OTP_RESEND_WINDOW_SECONDS,
    )

def get_merchant_otp_engine(store: OtpStore = Depends(get_merchant_otp_store)) -> OtpEngine:
    policy = merchant_email_policy()
    return OtpEngine(
        store,
        partial(send_otp_email_message, ttl_minutes=policy.ttl_minutes),
        channel=OTP_CHANNEL_MERCHANT_EMAIL,
        policy=policy,
    )
