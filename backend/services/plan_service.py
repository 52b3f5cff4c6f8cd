"""
Plan Service - the operations API handlers call on a user's plans.

Each operation:
1. loads the plan for the calling owner (another owner's plan is never returned;
   addressing one fails with Unauthorized, an absent one with NotFound),
2. applies lazy expiry and persists it before looking at anything else,
3. delegates the change to the ordering engine / lifecycle,
4. persists the whole new state in one versioned write.

Reorder and time updates are idempotent and are retried once on a version conflict;
every other conflict is surfaced to the caller.
"""
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from models import AuditAction, ItemRef, Plan, PlanRestaurant, PlanStatus, PlanVineyard, utc_now
from services import ordering_engine
from services.errors import ConflictError, NotFound, Unauthorized, ValidationError
from services.plan_lifecycle import MAX_VINEYARDS, PlanLifecycle
from services.plan_store import PlanStore
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("title", "vineyards", "restaurant")


class PlanService:

    def __init__(
        self,
        store: PlanStore,
        lifecycle: Optional[PlanLifecycle] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.lifecycle = lifecycle or PlanLifecycle()
        self.clock = clock

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_plan(self, owner_id: str, plan_id: str) -> Plan:
        return await self._load(owner_id, plan_id, self.clock())

    async def list_plans(self, owner_id: str, status: Optional[PlanStatus] = None) -> List[Plan]:
        now = self.clock()
        plans = []
        for plan in await self.store.list_for_owner(owner_id, status, now):
            plan = await self._reconcile(plan, now)
            if status is None or plan.status == status:
                plans.append(plan)
        return plans

    async def get_active_plan(self, owner_id: str) -> Optional[Plan]:
        """The owner's most recent plan that is still draft or confirmed."""
        now = self.clock()
        active = None
        for plan in await self.store.list_open_for_owner(owner_id):
            plan = await self._reconcile(plan, now)
            if active is None and plan.status != PlanStatus.EXPIRED:
                active = plan
        return active

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def save_draft(self, owner_id: str, fields: Dict[str, Any]) -> Plan:
        """Update the owner's working draft, or start a new one."""
        _check_vineyard_count(fields.get("vineyards"))
        current = await self.get_active_plan(owner_id)
        if current is not None and current.status == PlanStatus.DRAFT:
            return await self.update_plan(owner_id, current.plan_id, fields)

        now = self.clock()
        plan = self.lifecycle.new_draft(owner_id, now, **_coerce_fields(fields))
        plan = await self.store.insert(plan)
        await self._audit(AuditAction.PLAN_CREATED, plan, {"vineyard_count": len(plan.vineyards)})
        return plan

    async def update_plan(self, owner_id: str, plan_id: str, fields: Dict[str, Any]) -> Plan:
        _check_vineyard_count(fields.get("vineyards"))
        changes = _coerce_fields(fields)

        def apply(plan: Plan, now: datetime) -> Plan:
            updated = ordering_engine.heal_custom_order(plan.model_copy(update=changes))
            return self.lifecycle.with_default_title(updated)

        return await self._mutate(
            owner_id, plan_id, apply,
            action=AuditAction.PLAN_UPDATED,
            metadata={"fields": sorted(changes)},
        )

    async def confirm_plan(self, owner_id: str, plan_id: str) -> Plan:
        now = self.clock()
        plan = await self._load(owner_id, plan_id, now)
        confirmed = self.lifecycle.confirm(plan, now)
        saved = await self.store.save(confirmed)
        logger.info(f"Plan confirmed plan_id={plan_id} expires_at={saved.expires_at.isoformat()}")
        await self._audit(AuditAction.PLAN_CONFIRMED, saved, {"expires_at": saved.expires_at.isoformat()})
        return saved

    async def delete_plan(self, owner_id: str, plan_id: str) -> Plan:
        """Soft delete; allowed in any status."""
        plan = await self._load(owner_id, plan_id, self.clock())
        deleted = await self.store.save(self.lifecycle.soft_delete(plan))
        logger.info(f"Plan soft-deleted plan_id={plan_id} status={deleted.status.value}")
        await self._audit(AuditAction.PLAN_DELETED, deleted, {"status": deleted.status.value})
        return deleted

    async def remove_item(self, owner_id: str, plan_id: str, ref: ItemRef) -> Plan:
        return await self._mutate(
            owner_id, plan_id,
            lambda plan, now: ordering_engine.remove_item(plan, ref),
            action=AuditAction.PLAN_ITEM_REMOVED,
            metadata={"item_id": ref.item_id},
        )

    async def reorder(self, owner_id: str, plan_id: str, order: List[ItemRef]) -> Plan:
        return await self._mutate(
            owner_id, plan_id,
            lambda plan, now: ordering_engine.set_custom_order(plan, order),
            action=AuditAction.PLAN_REORDERED,
            metadata={"order": [ref.item_id for ref in order]},
            retry_on_conflict=True,
        )

    async def update_item_time(self, owner_id: str, plan_id: str, ref: ItemRef, time: Optional[str]) -> Plan:
        return await self._mutate(
            owner_id, plan_id,
            lambda plan, now: ordering_engine.update_item_time(plan, ref, time),
            action=AuditAction.PLAN_ITEM_TIME_UPDATED,
            metadata={"item_id": ref.item_id, "time": time},
            retry_on_conflict=True,
        )

    async def expire_due_plans(self) -> int:
        count = await self.store.expire_due(self.clock())
        if count:
            logger.info(f"Plan expiry sweep expired {count} plan(s)")
        return count

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _load(self, owner_id: str, plan_id: str, now: datetime) -> Plan:
        plan = await self.store.load(owner_id, plan_id)
        if not plan:
            owner = await self.store.owner_of(plan_id)
            if owner is not None and owner != owner_id:
                logger.warning(f"Plan ownership mismatch plan_id={plan_id} caller={owner_id}")
                raise Unauthorized("Plan belongs to another user", details={"plan_id": plan_id})
            raise NotFound("Plan not found", details={"plan_id": plan_id})
        return await self._reconcile(plan, now)

    async def _reconcile(self, plan: Plan, now: datetime) -> Plan:
        """Persist a due expiry before the plan is used for anything else."""
        reconciled, transitioned = self.lifecycle.reconcile(plan, now)
        if not transitioned:
            return reconciled
        try:
            saved = await self.store.save(reconciled)
        except ConflictError:
            # A concurrent request wrote first; the stored copy is at least as new.
            fresh = await self.store.load(plan.owner_id, plan.plan_id)
            if not fresh:
                raise NotFound("Plan not found", details={"plan_id": plan.plan_id})
            fresh, transitioned = self.lifecycle.reconcile(fresh, now)
            if not transitioned:
                return fresh
            saved = await self.store.save(fresh)
        await self._audit(AuditAction.PLAN_EXPIRED, saved, {"expires_at": saved.expires_at.isoformat()})
        return saved

    async def _mutate(
        self,
        owner_id: str,
        plan_id: str,
        mutation: Callable[[Plan, datetime], Plan],
        action: AuditAction,
        metadata: Optional[Dict[str, Any]] = None,
        retry_on_conflict: bool = False,
    ) -> Plan:
        attempts = 2 if retry_on_conflict else 1
        for attempt in range(1, attempts + 1):
            now = self.clock()
            plan = await self._load(owner_id, plan_id, now)
            self.lifecycle.ensure_mutable(plan)
            updated = mutation(plan, now)
            self.lifecycle.validate(updated)
            try:
                saved = await self.store.save(updated)
            except ConflictError:
                if attempt < attempts:
                    logger.info(f"Retrying {action.value} after version conflict plan_id={plan_id}")
                    continue
                raise
            await self._audit(action, saved, metadata)
            return saved

    async def _audit(self, action: AuditAction, plan: Plan, metadata: Optional[Dict[str, Any]] = None):
        await create_audit_log(
            self.store.db,
            action=action,
            actor_id=plan.owner_id,
            resource_type="plan",
            resource_id=plan.plan_id,
            metadata=metadata,
        )


def _check_vineyard_count(vineyards) -> None:
    if vineyards is not None and len(vineyards) > MAX_VINEYARDS:
        raise ValidationError(f"Maximum {MAX_VINEYARDS} vineyards allowed", details={"count": len(vineyards)})


def _coerce_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Keep only updatable keys and build typed stop entries."""
    changes = {}
    for key in UPDATABLE_FIELDS:
        if key not in fields:
            continue
        value = fields[key]
        if key == "vineyards":
            value = [v if isinstance(v, PlanVineyard) else PlanVineyard(**v) for v in (value or [])]
        elif key == "restaurant" and value is not None and not isinstance(value, PlanRestaurant):
            value = PlanRestaurant(**value)
        changes[key] = value
    return changes
