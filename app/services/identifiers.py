from __future__ import annotations

# E.164 caps a full number, country code included, at 15 digits.
PHONE_MIN_DIGITS = 8
PHONE_MAX_DIGITS = 15


def normalize_phone(raw: str | None, default_country_code: str) -> str:
    phone = str(raw or "").strip()
    digits = "".join(ch for ch in phone if ch.isdigit())
    if not digits:
        raise ValueError("Phone number is required")
    country_code = "".join(ch for ch in str(default_country_code or "") if ch.isdigit())
    if country_code and not digits.startswith(country_code) and not phone.startswith("+"):
        digits = f"{country_code}{digits}"
    if not PHONE_MIN_DIGITS <= len(digits) <= PHONE_MAX_DIGITS:
        raise ValueError(f"Phone number must have {PHONE_MIN_DIGITS} to {PHONE_MAX_DIGITS} digits")
    return digits


def normalize_email(raw: str | None) -> str:
    return str(raw or "").strip().lower()


def _mask_tail(raw: str) -> str:
    if len(raw) <= 4:
        return "*" * len(raw)
    return "*" * (len(raw) - 4) + raw[-4:]


def mask_identifier(value: str | None) -> str:
    raw = str(value or "")
    local, at, domain = raw.rpartition("@")
    if at and local:
        # Emails keep the first letter and the domain.
        return f"{local[0]}{'*' * (len(local) - 1)}@{domain}"
    return _mask_tail(raw)
