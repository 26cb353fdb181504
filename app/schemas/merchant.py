from typing import Optional
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field

from app.schemas.auth import OTP_PATTERN


class MerchantOtpRequest(BaseModel):
    email: EmailStr


class MerchantLogin(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1, max_length=256)
    otp: str = Field(pattern=OTP_PATTERN)


class MerchantRead(BaseModel):
    id: UUID
    email: str
    businessName: str
    status: str


class MerchantSession(BaseModel):
    token: str
    merchant: MerchantRead


class MerchantLoginResult(BaseModel):
    success: bool = True
    message: str = "Login successful"
    data: MerchantSession


class MerchantOtpSent(BaseModel):
    success: bool = True
    message: str = "OTP sent to email"
    expires_in: Optional[int] = None
