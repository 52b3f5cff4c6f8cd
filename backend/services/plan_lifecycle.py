"""Plan Lifecycle - the draft -> confirmed -> expired state machine.

States:
    draft      initial; has a bounded lifetime (PLAN_DRAFT_TTL_HOURS)
    confirmed  reached exactly once via confirm(); lifetime restarts (PLAN_CONFIRMED_TTL_HOURS)
    expired    terminal; reached explicitly or lazily when now >= expires_at

Soft deletion (is_active=False) is orthogonal to status.

All methods are pure: they return a new Plan and never touch storage. PlanService
persists whatever they return.
"""
import logging
import os
from datetime import datetime, timedelta
from typing import Optional, Tuple

from models import Plan, PlanStatus
from services.errors import Expired, InvalidState, ValidationError

logger = logging.getLogger(__name__)

PLAN_DRAFT_TTL_HOURS = int(os.getenv("PLAN_DRAFT_TTL_HOURS", "24"))
PLAN_CONFIRMED_TTL_HOURS = int(os.getenv("PLAN_CONFIRMED_TTL_HOURS", "24"))
MAX_VINEYARDS = 10


class PlanLifecycle:

    def __init__(
        self,
        draft_ttl: Optional[timedelta] = None,
        confirmed_ttl: Optional[timedelta] = None,
    ):
        self.draft_ttl = draft_ttl or timedelta(hours=PLAN_DRAFT_TTL_HOURS)
        self.confirmed_ttl = confirmed_ttl or timedelta(hours=PLAN_CONFIRMED_TTL_HOURS)

    def new_draft(self, owner_id: str, now: datetime, **fields) -> Plan:
        plan = Plan(
            owner_id=owner_id,
            status=PlanStatus.DRAFT,
            expires_at=now + self.draft_ttl,
            created_at=now,
            updated_at=now,
            **fields,
        )
        self.validate(plan)
        return self.with_default_title(plan)

    def is_expired(self, plan: Plan, now: datetime) -> bool:
        return plan.expires_at is not None and now >= plan.expires_at

    def expire(self, plan: Plan) -> Plan:
        """Move to expired; a no-op on a plan that is already expired."""
        if plan.status == PlanStatus.EXPIRED:
            return plan
        return plan.model_copy(update={"status": PlanStatus.EXPIRED})

    def reconcile(self, plan: Plan, now: datetime) -> Tuple[Plan, bool]:
        """Apply any time-driven transition that is due.

        Returns (plan', transitioned). Callers persist plan' before answering
        when transitioned is True.
        """
        if plan.status != PlanStatus.EXPIRED and self.is_expired(plan, now):
            logger.info(f"Plan lazily expired plan_id={plan.plan_id} status_was={plan.status.value}")
            return self.expire(plan), True
        return plan, False

    def ensure_mutable(self, plan: Plan) -> None:
        if plan.status == PlanStatus.EXPIRED:
            raise Expired("Plan has expired", details={"plan_id": plan.plan_id})

    def confirm(self, plan: Plan, now: datetime) -> Plan:
        if plan.status == PlanStatus.EXPIRED or self.is_expired(plan, now):
            raise Expired("Plan has expired", details={"plan_id": plan.plan_id})
        if plan.status != PlanStatus.DRAFT:
            raise InvalidState(
                f"Plan is {plan.status.value}; only draft plans can be confirmed",
                details={"plan_id": plan.plan_id, "status": plan.status.value},
            )
        if not plan.vineyards:
            raise ValidationError("Plan must have at least one vineyard")

        return plan.model_copy(update={
            "status": PlanStatus.CONFIRMED,
            "confirmed_at": now,
            "expires_at": now + self.confirmed_ttl,
        })

    def soft_delete(self, plan: Plan) -> Plan:
        return plan.model_copy(update={"is_active": False})

    def validate(self, plan: Plan) -> None:
        """Structural rules that hold in every status."""
        if len(plan.vineyards) > MAX_VINEYARDS:
            raise ValidationError(
                f"Maximum {MAX_VINEYARDS} vineyards allowed",
                details={"count": len(plan.vineyards)},
            )
        dangling = [ref.item_id for ref in plan.custom_order if not plan.has_item(ref)]
        if dangling:
            raise ValidationError("Custom order references missing items", details={"item_ids": dangling})

    def with_default_title(self, plan: Plan) -> Plan:
        """Name an untitled plan after its first two vineyards."""
        if plan.title or not plan.vineyards:
            return plan
        names = [_vineyard_name(v.vineyard) for v in plan.vineyards[:2]]
        title = f"{' & '.join(names)} Tour"
        if len(plan.vineyards) > 2:
            title += f" +{len(plan.vineyards) - 2} more"
        return plan.model_copy(update={"title": title})


def _vineyard_name(snapshot: dict) -> str:
    return str(snapshot.get("vineyard") or snapshot.get("name") or "Vineyard")
