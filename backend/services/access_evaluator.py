"""Access Evaluator - time-gated access to plan-editing and explore screens.

Admins always pass. Everyone else needs a selected tier whose subscription window is
still open. is_subscription_active on the user document is a cached flag: every
evaluation reconciles it against subscription_expires_at and writes the flip back
before answering. Evaluations are never cached across requests.
"""
import logging
import os
from datetime import datetime, timedelta
from typing import Optional, Tuple, Union

from pydantic import BaseModel

from models import AuditAction, SubscriptionTier, User, UserRole, utc_now
from services.errors import ConflictError, NotFound, ValidationError
from services.user_store import UserStore
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

FREE_TIER_DURATION_DAYS = int(os.getenv("FREE_TIER_DURATION_DAYS", "3"))
PAID_TIER_DURATION_DAYS = int(os.getenv("PAID_TIER_DURATION_DAYS", "30"))

TIER_DURATIONS = {
    SubscriptionTier.FREE: timedelta(days=FREE_TIER_DURATION_DAYS),
    SubscriptionTier.PLUS: timedelta(days=PAID_TIER_DURATION_DAYS),
    SubscriptionTier.PREMIUM: timedelta(days=PAID_TIER_DURATION_DAYS),
    SubscriptionTier.PRO: timedelta(days=PAID_TIER_DURATION_DAYS),
}

# Where the client should send a user who cannot reach plan screens
TIER_SELECTION_PATH = "/plans"


class AccessDecision(BaseModel):
    has_access: bool
    is_admin: bool
    selected_tier: Optional[SubscriptionTier] = None
    expires_at: Optional[datetime] = None
    redirect_to: Optional[str] = None


def reconcile_subscription(user: User, now: datetime) -> Tuple[User, bool]:
    """Flip is_subscription_active off once the window has closed. Pure."""
    expires_at = user.subscription_expires_at
    if user.is_subscription_active and expires_at is not None and now >= expires_at:
        return user.model_copy(update={"is_subscription_active": False}), True
    return user, False


def subscription_open(user: User, now: datetime) -> bool:
    return bool(
        user.is_subscription_active
        and user.subscription_expires_at is not None
        and now < user.subscription_expires_at
    )


def parse_tier(tier: Union[str, SubscriptionTier, None]) -> SubscriptionTier:
    try:
        return SubscriptionTier(tier)
    except ValueError:
        raise ValidationError(
            "Invalid plan selection",
            details={"allowed": [t.value for t in SubscriptionTier]},
        )


class AccessEvaluator:

    def __init__(self, users: UserStore):
        self.users = users

    async def evaluate(self, user: User, now: Optional[datetime] = None) -> AccessDecision:
        now = now or utc_now()
        if user.role == UserRole.ADMIN:
            return AccessDecision(
                has_access=True,
                is_admin=True,
                selected_tier=user.selected_plan_tier,
                expires_at=user.subscription_expires_at,
            )

        user = await self._reconcile(user, now)
        has_access = subscription_open(user, now)
        redirect_to = None
        if not has_access or user.selected_plan_tier is None:
            redirect_to = TIER_SELECTION_PATH
        return AccessDecision(
            has_access=has_access,
            is_admin=False,
            selected_tier=user.selected_plan_tier,
            expires_at=user.subscription_expires_at,
            redirect_to=redirect_to,
        )

    async def select_tier(
        self,
        user: User,
        tier: Union[str, SubscriptionTier],
        now: Optional[datetime] = None,
    ) -> User:
        now = now or utc_now()
        tier = parse_tier(tier)
        if tier == SubscriptionTier.FREE and user.has_used_free_tier and user.role != UserRole.ADMIN:
            raise ValidationError("Free tier can only be used once per user")

        updated = user.model_copy(update={
            "selected_plan_tier": tier,
            "plan_selected_at": now,
            "subscription_expires_at": now + TIER_DURATIONS[tier],
            "is_subscription_active": True,
            "has_used_free_tier": user.has_used_free_tier or tier == SubscriptionTier.FREE,
        })
        saved = await self.users.save(updated)
        logger.info(
            f"Tier selected user_id={user.user_id} tier={tier.value} "
            f"expires_at={saved.subscription_expires_at.isoformat()}"
        )
        await create_audit_log(
            self.users.db,
            action=AuditAction.SUBSCRIPTION_TIER_SELECTED,
            actor_id=user.user_id,
            actor_role=user.role,
            resource_type="user",
            resource_id=user.user_id,
            before_state=_subscription_state(user),
            after_state=_subscription_state(saved),
            metadata={"tier": tier.value},
        )
        return saved

    async def _reconcile(self, user: User, now: datetime) -> User:
        reconciled, transitioned = reconcile_subscription(user, now)
        if not transitioned:
            return reconciled
        try:
            saved = await self.users.save(reconciled)
        except ConflictError:
            # Another request wrote first; re-read and settle on whatever is stored now.
            fresh = await self.users.get(user.user_id)
            if not fresh:
                raise NotFound("User not found")
            fresh, transitioned = reconcile_subscription(fresh, now)
            if not transitioned:
                return fresh
            saved = await self.users.save(fresh)
        logger.info(f"Subscription lazily deactivated user_id={user.user_id}")
        await create_audit_log(
            self.users.db,
            action=AuditAction.SUBSCRIPTION_EXPIRED,
            actor_id=user.user_id,
            resource_type="user",
            resource_id=user.user_id,
            metadata={"expired_at": user.subscription_expires_at.isoformat()},
        )
        return saved


def _subscription_state(user: User) -> dict:
    return {
        "selected_plan_tier": user.selected_plan_tier.value if user.selected_plan_tier else None,
        "subscription_expires_at": (
            user.subscription_expires_at.isoformat() if user.subscription_expires_at else None
        ),
        "is_subscription_active": user.is_subscription_active,
    }
