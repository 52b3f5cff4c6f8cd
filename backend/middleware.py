from fastapi import Depends, Request
from typing import Optional
import logging
from auth import decode_access_token, identity_from_payload
from database import get_db
from models import AuditAction, Identity, User
from services.access_evaluator import AccessEvaluator
from services.errors import Forbidden, Unauthorized
from services.user_store import UserStore
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

async def get_current_identity(request: Request) -> Optional[Identity]:
    """Extract the caller identity from the bearer token."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None

    token = auth_header.split(" ", 1)[1]
    return identity_from_payload(decode_access_token(token))

async def require_identity(request: Request) -> Identity:
    """Require valid authentication."""
    identity = await get_current_identity(request)
    if not identity:
        raise Unauthorized("Authentication required")
    return identity

async def require_user(
    identity: Identity = Depends(require_identity),
    db=Depends(get_db),
) -> User:
    """Current user document; the stored role is authoritative over the token's."""
    user = await UserStore(db).get(identity.owner_id)
    if not user:
        raise Unauthorized("User not found")
    return user

async def require_plan_access(
    request: Request,
    user: User = Depends(require_user),
    db=Depends(get_db),
) -> Identity:
    """Guard for plan and explore routes.

    Access is evaluated on every request so an expiry is noticed at the next call.
    """
    decision = await AccessEvaluator(UserStore(db)).evaluate(user)
    if not decision.has_access:
        await log_access_denied(db, user, str(request.url.path), decision.redirect_to)
        raise Forbidden(
            "Subscription expired or not found",
            details={"has_access": False, "is_admin": decision.is_admin, "redirect_to": decision.redirect_to},
        )
    return Identity(owner_id=user.user_id, email=user.email, role=user.role)

async def log_access_denied(db, user: User, path: str, redirect_to: Optional[str]):
    """Log access-gate denial for audit."""
    logger.info(f"Access denied user_id={user.user_id} path={path}")
    await create_audit_log(
        db,
        action=AuditAction.ACCESS_DENIED,
        actor_id=user.user_id,
        actor_role=user.role,
        metadata={
            "path": path,
            "redirect_to": redirect_to,
        }
    )
