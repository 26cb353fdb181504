from fastapi import APIRouter
from app.api.auth import me, phone

router = APIRouter()
router.include_router(phone.router, prefix="/phone", tags=["Auth"])
router.include_router(me.router, tags=["Auth"])
