from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field

OTP_PATTERN = r"^\d{4,8}$"


class PhoneOtpRequest(BaseModel):
    phone: str = Field(min_length=6, max_length=20)


class PhoneOtpVerify(BaseModel):
    phone: str = Field(min_length=6, max_length=20)
    otp: str = Field(pattern=OTP_PATTERN)
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    email: Optional[EmailStr] = None


class OtpSent(BaseModel):
    success: bool = True
    message: str
    expires_in: int


class UserRead(BaseModel):
    id: UUID
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    phoneVerified: bool
    emailVerified: bool
    status: str
    role: str
    createdAt: Optional[datetime] = None


class PhoneLoginResult(BaseModel):
    success: bool = True
    token: str
    user: UserRead
    requiresProfileCompletion: bool
