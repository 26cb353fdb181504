from fastapi import APIRouter
from app.api.merchant import auth

router = APIRouter()
router.include_router(auth.router, prefix="/auth", tags=["MerchantAuth"])
