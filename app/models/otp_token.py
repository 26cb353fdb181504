from datetime import datetime

from sqlalchemy import DateTime, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.db.session import Base
from app.models.common import TimestampMixin, UUIDMixin, utcnow

OTP_CHANNEL_PHONE = "phone"
OTP_CHANNEL_MERCHANT_EMAIL = "merchant_email"


class OtpToken(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "otp_tokens"
    __table_args__ = (UniqueConstraint("channel", "identifier", name="uq_otp_tokens_channel_identifier"),)

    channel: Mapped[str] = mapped_column(String(30), nullable=False)
    identifier: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    code_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    resend_count: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    last_sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
