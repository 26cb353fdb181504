from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.deps import get_phone_otp_engine
from app.core.security import create_access_token
from app.db.session import get_db
from app.models.user import User
from app.schemas.auth import OtpSent, PhoneLoginResult, PhoneOtpRequest, PhoneOtpVerify, UserRead
from app.services.identifiers import normalize_phone
from app.services.otp_engine import OtpEngine
from app.services.phone_identity import AccountConflict, requires_profile_completion, resolve_phone_account
from app.services.rate_limit import enforce_ip_limit

router = APIRouter()


def _normalize_or_400(raw: str) -> str:
    try:
        return normalize_phone(raw, settings.MSG91_DEFAULT_COUNTRY_CODE)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid phone number")


def user_payload(user: User) -> UserRead:
    return UserRead(
        id=user.id,
        name=user.name,
        email=user.email,
        phone=user.phone,
        phoneVerified=user.phone_verified_at is not None,
        emailVerified=user.email_verified_at is not None,
        status=user.status,
        role=user.role,
        createdAt=user.created_at,
    )


@router.post("/request-otp", response_model=OtpSent)
def request_phone_otp(
    payload: PhoneOtpRequest,
    request: Request,
    engine: OtpEngine = Depends(get_phone_otp_engine),
):
    phone = _normalize_or_400(payload.phone)
    enforce_ip_limit(request, scope="phone", action="send")
    issued = engine.request_code(phone)
    return OtpSent(message="OTP sent successfully", expires_in=issued.ttl_seconds)


@router.post("/verify-otp", response_model=PhoneLoginResult)
def verify_phone_otp(
    payload: PhoneOtpVerify,
    request: Request,
    engine: OtpEngine = Depends(get_phone_otp_engine),
    db: Session = Depends(get_db),
):
    phone = _normalize_or_400(payload.phone)
    enforce_ip_limit(request, scope="phone", action="verify")
    verified = engine.verify_code(phone, payload.otp)

    try:
        user = resolve_phone_account(db, verified.identifier, name=payload.name, email=payload.email)
    except AccountConflict as exc:
        raise HTTPException(status_code=409, detail=str(exc))

    token = create_access_token(subject=str(user.id), role=user.role, email=user.email)
    return PhoneLoginResult(
        token=token,
        user=user_payload(user),
        requiresProfileCompletion=requires_profile_completion(user),
    )
