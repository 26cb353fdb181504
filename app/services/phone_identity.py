from __future__ import annotations

import logging
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.security import hash_password
from app.models.common import utcnow
from app.models.user import User
from app.services.identifiers import mask_identifier, normalize_email

_LOG = logging.getLogger("app.otp")


class AccountConflict(Exception):
    pass


def _placeholder_email(phone: str) -> str:
    return f"phone-user-{phone}@{settings.PHONE_USER_EMAIL_DOMAIN}"


def _provisional_name(phone: str) -> str:
    return f"{settings.PHONE_USER_NAME_PREFIX} {phone[-4:]}"


def has_placeholder_email(user: User) -> bool:
    return str(user.email or "").lower().endswith(f"@{settings.PHONE_USER_EMAIL_DOMAIN}".lower())


def requires_profile_completion(user: User) -> bool:
    name = str(user.name or "")
    return (
        not user.email
        or has_placeholder_email(user)
        or not name
        or name.lower().startswith(settings.PHONE_USER_NAME_PREFIX.lower())
    )


def resolve_phone_account(
    db: Session,
    phone: str,
    *,
    name: str | None = None,
    email: str | None = None,
) -> User:
    """Find or create the account behind a freshly verified phone number."""
    user = db.execute(select(User).where(User.phone == phone)).scalar_one_or_none()
    normalized_email = normalize_email(email) or None

    if normalized_email:
        owner = db.execute(select(User).where(User.email == normalized_email)).scalar_one_or_none()
        if owner is not None and (user is None or owner.id != user.id):
            raise AccountConflict("Email is already associated with another account")

    now = utcnow()
    if user is None:
        user = User(
            name=(name or "").strip() or _provisional_name(phone),
            email=normalized_email or _placeholder_email(phone),
            # Random secret nobody knows: the account is reachable through OTP login only.
            password_hash=hash_password(f"otp-login-{uuid4()}"),
            auth_provider="phone",
            phone=phone,
            phone_verified_at=now,
            status="active",
        )
        db.add(user)
        try:
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise AccountConflict("Account for this phone or email already exists") from exc
        db.refresh(user)
        _LOG.info("phone account created user_id=%s phone=%s", user.id, mask_identifier(phone))
        return user

    user.phone_verified_at = now
    if normalized_email and (not user.email or has_placeholder_email(user)):
        user.email = normalized_email
    db.add(user)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise AccountConflict("Email is already associated with another account") from exc
    db.refresh(user)
    return user
