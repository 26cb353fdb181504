from fastapi import APIRouter, Depends

from app.api.auth.phone import user_payload
from app.core.deps import get_current_user
from app.models.user import User
from app.schemas.auth import UserRead
from app.services.phone_identity import requires_profile_completion

router = APIRouter()


@router.get("/me")
def get_me(user: User = Depends(get_current_user)):
    data: UserRead = user_payload(user)
    return {"success": True, "user": data, "requiresProfileCompletion": requires_profile_completion(user)}
