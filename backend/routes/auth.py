"""Auth Routes - account signup. Login happens through one-time codes (routes/otp.py)."""
from fastapi import APIRouter, Depends
from pydantic import BaseModel, EmailStr, Field, field_validator
import logging

from database import get_db
from models import AuditAction, User
from services.errors import ConflictError
from services.user_store import UserStore
from utils.api_response import success_response
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/auth", tags=["auth"])


class SignupRequest(BaseModel):
    first_name: str = Field(..., min_length=2, max_length=80)
    last_name: str = Field(..., min_length=2, max_length=80)
    email: EmailStr

    @field_validator("first_name", "last_name", mode="before")
    @classmethod
    def strip_names(cls, value):
        return value.strip() if isinstance(value, str) else value


@router.post("/signup")
async def signup(data: SignupRequest, db=Depends(get_db)):
    users = UserStore(db)
    email = data.email.lower().strip()
    if await users.get_by_email(email):
        raise ConflictError("An account with this email already exists. Please sign in instead.")

    user = await users.insert(User(email=email, first_name=data.first_name, last_name=data.last_name))
    logger.info(f"User signed up user_id={user.user_id}")
    await create_audit_log(
        db,
        action=AuditAction.USER_SIGNED_UP,
        actor_id=user.user_id,
        resource_type="user",
        resource_id=user.user_id,
    )
    return success_response(
        {
            "id": user.user_id,
            "email": user.email,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "full_name": user.full_name,
        },
        "Account created successfully. You can now sign in.",
        status_code=201,
    )
