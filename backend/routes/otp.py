"""
One-time code login: POST /api/auth/otp/send and POST /api/auth/otp/verify.
Codes go out through the notification collaborator (services/email_service.py).
"""
from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, EmailStr, Field
import logging

from auth import create_user_token
from database import get_db
from models import AuditAction, utc_now
from services.email_service import EmailService
from services.errors import NotFound, NotificationFailed, RateLimited, Unauthorized
from services.otp_service import COOLDOWN_CODE, send_login_code, verify_login_code
from services.user_store import UserStore
from utils.api_response import success_response
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/auth/otp", tags=["otp"])


def get_notifier(request: Request) -> EmailService:
    return request.app.state.notifier


class OtpSendBody(BaseModel):
    email: EmailStr


class OtpVerifyBody(BaseModel):
    email: EmailStr
    code: str = Field(..., pattern="^[0-9]{6}$")


@router.post("/send")
async def otp_send_endpoint(
    data: OtpSendBody,
    db=Depends(get_db),
    notifier: EmailService = Depends(get_notifier),
):
    """Send a login code to an existing account."""
    user = await UserStore(db).get_by_email(data.email)
    if not user:
        raise NotFound("User not found. Please sign up first.", details={"user_exists": False})

    result = await send_login_code(db, notifier, user.email)
    if not result.success:
        if result.code == COOLDOWN_CODE:
            raise RateLimited(result.reason)
        raise NotificationFailed("Failed to send login code", details={"reason": result.reason})
    return success_response({"email": user.email}, "Login code sent. Please check your email.")


@router.post("/verify")
async def otp_verify_endpoint(data: OtpVerifyBody, db=Depends(get_db)):
    """Exchange a valid login code for an access token."""
    users = UserStore(db)
    user = await users.get_by_email(data.email)
    if not user or not await verify_login_code(db, user.email, data.code):
        raise Unauthorized("Invalid or expired code")

    user = await users.save(user.model_copy(update={"last_login_at": utc_now()}))
    await create_audit_log(
        db,
        action=AuditAction.LOGIN_SUCCESS,
        actor_id=user.user_id,
        actor_role=user.role,
        resource_type="user",
        resource_id=user.user_id,
    )
    return success_response(
        {"access_token": create_user_token(user), "token_type": "bearer", "user": user.to_public()},
        "Signed in successfully",
    )
