"""
Plan Store - persistence boundary for Plan documents.

Every read filters by owner_id and is_active; writes use optimistic concurrency:
a save only lands if the stored version still equals the version that was loaded.
"""
import logging
from datetime import datetime
from typing import List, Optional

from models import Plan, PlanStatus, utc_now
from services.document_store import DocumentStore
from services.errors import ConflictError

logger = logging.getLogger(__name__)

MAX_PLANS_LISTED = 100

# Fields fixed at creation; never rewritten by save()
_IMMUTABLE_FIELDS = ("plan_id", "owner_id", "created_at")


class PlanStore(DocumentStore):
    collection_name = "plans"

    async def load(self, owner_id: str, plan_id: str) -> Optional[Plan]:
        async with self.guarded("load"):
            doc = await self.collection.find_one(
                {"plan_id": plan_id, "owner_id": owner_id, "is_active": True},
                {"_id": 0},
            )
        return Plan(**doc) if doc else None

    async def owner_of(self, plan_id: str) -> Optional[str]:
        """Owner of an active plan, without exposing the plan itself."""
        async with self.guarded("owner_of"):
            doc = await self.collection.find_one(
                {"plan_id": plan_id, "is_active": True},
                {"_id": 0, "owner_id": 1},
            )
        return doc.get("owner_id") if doc else None

    async def list_for_owner(
        self,
        owner_id: str,
        status: Optional[PlanStatus] = None,
        now: Optional[datetime] = None,
    ) -> List[Plan]:
        """Owner's active plans, newest first.

        With status=expired and a clock reading, plans still stored as draft/confirmed but
        already past expires_at are included so the caller can expire them lazily.
        """
        query = {"owner_id": owner_id, "is_active": True}
        if status == PlanStatus.EXPIRED and now is not None:
            query["$or"] = [
                {"status": PlanStatus.EXPIRED.value},
                {
                    "status": {"$in": [PlanStatus.DRAFT.value, PlanStatus.CONFIRMED.value]},
                    "expires_at": {"$lte": now},
                },
            ]
        elif status:
            query["status"] = status.value
        async with self.guarded("list_for_owner"):
            cursor = self.collection.find(query, {"_id": 0}).sort("created_at", -1)
            docs = await cursor.to_list(length=MAX_PLANS_LISTED)
        return [Plan(**doc) for doc in docs]

    async def list_open_for_owner(self, owner_id: str) -> List[Plan]:
        """Active plans not yet marked expired, most recently touched first."""
        query = {
            "owner_id": owner_id,
            "is_active": True,
            "status": {"$in": [PlanStatus.DRAFT.value, PlanStatus.CONFIRMED.value]},
        }
        async with self.guarded("list_open_for_owner"):
            cursor = self.collection.find(query, {"_id": 0}).sort("updated_at", -1)
            docs = await cursor.to_list(length=MAX_PLANS_LISTED)
        return [Plan(**doc) for doc in docs]

    async def insert(self, plan: Plan) -> Plan:
        async with self.guarded("insert"):
            await self.collection.insert_one(plan.to_document())
        logger.info(f"Plan created plan_id={plan.plan_id} owner_id={plan.owner_id}")
        return plan

    async def save(self, plan: Plan) -> Plan:
        """Persist the full plan state in one conditional write.

        Raises ConflictError when another writer bumped the version since load.
        """
        saved = plan.model_copy(update={"version": plan.version + 1, "updated_at": utc_now()})
        doc = saved.to_document()
        for field in _IMMUTABLE_FIELDS:
            doc.pop(field, None)

        async with self.guarded("save"):
            result = await self.collection.update_one(
                {"plan_id": plan.plan_id, "owner_id": plan.owner_id, "version": plan.version},
                {"$set": doc},
            )
        if result.matched_count == 0:
            logger.warning(
                f"Plan save conflict plan_id={plan.plan_id} expected_version={plan.version}"
            )
            raise ConflictError(
                "Plan was modified by another request",
                details={"plan_id": plan.plan_id},
            )
        return saved

    async def expire_due(self, now: datetime) -> int:
        """Bulk form of the lazy expiry transition; safe to run concurrently with reads."""
        async with self.guarded("expire_due"):
            result = await self.collection.update_many(
                {
                    "status": {"$in": [PlanStatus.DRAFT.value, PlanStatus.CONFIRMED.value]},
                    "expires_at": {"$lte": now},
                },
                {
                    "$set": {"status": PlanStatus.EXPIRED.value, "updated_at": now},
                    "$inc": {"version": 1},
                },
            )
        return result.modified_count
