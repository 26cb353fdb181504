from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.deps import get_merchant_otp_engine
from app.core.security import create_access_token, verify_password
from app.db.session import get_db
from app.models.common import utcnow
from app.models.merchant_profile import MERCHANT_STATUS_ACTIVE, MerchantProfile
from app.schemas.merchant import (
    MerchantLogin,
    MerchantLoginResult,
    MerchantOtpRequest,
    MerchantOtpSent,
    MerchantRead,
    MerchantSession,
)
from app.services.identifiers import normalize_email
from app.services.otp_engine import OtpEngine
from app.services.otp_errors import OtpExpired, OtpInvalid, OtpLockedOut, OtpNotFound, OtpVerificationError
from app.services.rate_limit import enforce_ip_limit

router = APIRouter()

_OTP_FAILURE_MESSAGES = {
    OtpExpired: "OTP expired",
    OtpInvalid: "Invalid OTP",
    OtpNotFound: "OTP not found",
}


def _find_merchant(db: Session, email: str) -> MerchantProfile | None:
    return db.execute(select(MerchantProfile).where(MerchantProfile.email == email)).scalar_one_or_none()


def _ensure_can_login(merchant: MerchantProfile) -> None:
    if merchant.status != MERCHANT_STATUS_ACTIVE:
        raise HTTPException(status_code=403, detail="Merchant not active")
    if merchant.login_enabled is False:
        raise HTTPException(status_code=403, detail="Login disabled")


@router.post("/request-otp", response_model=MerchantOtpSent)
def request_merchant_otp(
    payload: MerchantOtpRequest,
    request: Request,
    engine: OtpEngine = Depends(get_merchant_otp_engine),
    db: Session = Depends(get_db),
):
    email = normalize_email(payload.email)
    enforce_ip_limit(request, scope="merchant", action="send")
    merchant = _find_merchant(db, email)
    if merchant is None:
        raise HTTPException(status_code=404, detail="Merchant not found")
    _ensure_can_login(merchant)

    issued = engine.request_code(email)
    return MerchantOtpSent(expires_in=issued.ttl_seconds)


@router.post("/login", response_model=MerchantLoginResult)
def merchant_login(
    payload: MerchantLogin,
    request: Request,
    engine: OtpEngine = Depends(get_merchant_otp_engine),
    db: Session = Depends(get_db),
):
    email = normalize_email(payload.email)
    enforce_ip_limit(request, scope="merchant", action="verify")
    merchant = _find_merchant(db, email)
    if merchant is None:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    _ensure_can_login(merchant)
    if not verify_password(payload.password, merchant.password_hash):
        raise HTTPException(status_code=401, detail="Invalid credentials")

    try:
        engine.verify_code(email, payload.otp)
    except OtpLockedOut:
        raise
    except OtpVerificationError as exc:
        message = _OTP_FAILURE_MESSAGES.get(type(exc), "OTP verification failed")
        raise HTTPException(status_code=401, detail=message)

    merchant.last_login_at = utcnow()
    db.add(merchant)
    db.commit()
    db.refresh(merchant)

    token = create_access_token(subject=str(merchant.id), role="merchant", email=merchant.email)
    return MerchantLoginResult(
        data=MerchantSession(
            token=token,
            merchant=MerchantRead(
                id=merchant.id,
                email=merchant.email,
                businessName=merchant.business_name,
                status=merchant.status,
            ),
        )
    )
