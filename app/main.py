import redis
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from app.core.config import settings
from app.core.errors import install_error_handlers
from app.core.http_hardening import install_http_hardening
from app.api.auth.router import router as auth_router
from app.api.merchant.router import router as merchant_router
from app.api.system import router as system_router
from app.services.otp_store import InMemoryOtpStore

app = FastAPI(title=settings.APP_NAME, version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
install_http_hardening(app)
install_error_handlers(app)

# Connections are opened lazily on first command.
app.state.redis = redis.Redis.from_url(
    settings.REDIS_URL,
    decode_responses=True,
    socket_timeout=1.0,
    socket_connect_timeout=1.0,
)
app.state.merchant_otp_memory_store = InMemoryOtpStore()

app.include_router(auth_router, prefix="/api/auth")
app.include_router(merchant_router, prefix="/api/merchant")
app.include_router(system_router, tags=["System"])
