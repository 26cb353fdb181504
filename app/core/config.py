from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List

class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    APP_NAME: str = "fluence-auth-service"

    JWT_SECRET: str = "change_me"
    JWT_EXPIRES_MINUTES: int = 1440

    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:8081"

    DATABASE_URL: str
    REDIS_URL: str

    RATE_LIMIT_WINDOW_SECONDS: int = 900
    OTP_SEND_RATE_LIMIT: int = 20
    OTP_VERIFY_RATE_LIMIT: int = 60

    OTP_CODE_LENGTH: int = 6
    OTP_TTL_MINUTES: int = 10
    OTP_RESEND_INTERVAL_SECONDS: int = 60
    OTP_MAX_RESENDS_PER_HOUR: int = 5
    OTP_RESEND_WINDOW_SECONDS: int = 3600
    OTP_MAX_VERIFY_ATTEMPTS: int = 5
    OTP_DEV_MODE: bool = False

    MERCHANT_OTP_TTL_MIN: int = 10
    MERCHANT_OTP_STORE: str = "redis"  # redis | database | memory

    SMS_PROVIDER: str = "dummy"  # dummy | msg91
    MSG91_AUTH_KEY: str = ""
    MSG91_TEMPLATE_ID: str = ""
    MSG91_BASE_URL: str = "https://control.msg91.com"
    MSG91_DEFAULT_COUNTRY_CODE: str = "91"
    MSG91_TIMEOUT_SECONDS: float = 10.0

    EMAIL_PROVIDER: str = "dummy"  # dummy | notification_service | smtp
    NOTIFICATION_SERVICE_URL: str = "http://notification-service:4004"
    SERVICE_API_KEY: str = "internal-service-key"
    SMTP_HOST: str = ""
    SMTP_PORT: int = 587
    SMTP_USER: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_FROM: str = "noreply@fluencepay.com"
    SMTP_USE_TLS: bool = True
    SMTP_USE_SSL: bool = False
    MERCHANT_OTP_EMAIL_SUBJECT: str = "Your Merchant Login OTP"
    MERCHANT_OTP_EMAIL_TEMPLATE: str = (
        "Your OTP code is: {code}\n\n"
        "This code will expire in {ttl_minutes} minutes.\n"
        "If you did not request this, you can ignore this email."
    )

    PHONE_USER_NAME_PREFIX: str = "Fluence User"
    PHONE_USER_EMAIL_DOMAIN: str = "pending.fluence"

    @property
    def cors_origins_list(self) -> List[str]:
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

settings = Settings()
