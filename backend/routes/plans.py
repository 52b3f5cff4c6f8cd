"""
Plan Routes - the user's working plan, confirmation and itinerary ordering.
Every route sits behind the subscription access gate.
"""
from fastapi import APIRouter, Depends, Query
from pydantic import AliasChoices, BaseModel, Field
from typing import Any, Dict, List, Optional
import logging

from database import get_db
from middleware import require_plan_access
from models import Identity, ItemRef, PlanStatus
from services.errors import ValidationError
from services.plan_service import PlanService
from services.plan_store import PlanStore
from utils.api_response import success_response

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/plans", tags=["plans"])


def get_plan_service(db=Depends(get_db)) -> PlanService:
    return PlanService(PlanStore(db))


class VineyardSelection(BaseModel):
    vineyard: Dict[str, Any]  # vineyard snapshot; must carry vineyard_id
    offer: Optional[Dict[str, Any]] = None
    time: Optional[str] = Field(None, max_length=32)

class RestaurantSelection(BaseModel):
    restaurant: Dict[str, Any]  # restaurant snapshot; must carry restaurant_id
    time: Optional[str] = Field(None, max_length=32)

class SavePlanRequest(BaseModel):
    title: Optional[str] = Field(None, max_length=200)
    vineyards: List[VineyardSelection] = Field(default_factory=list)
    restaurant: Optional[RestaurantSelection] = None

class UpdatePlanRequest(BaseModel):
    title: Optional[str] = Field(None, max_length=200)
    vineyards: Optional[List[VineyardSelection]] = None
    restaurant: Optional[RestaurantSelection] = None

class RemoveItemRequest(BaseModel):
    plan_id: str = Field(..., validation_alias=AliasChoices("plan_id", "planId"))
    item_id: str = Field(..., validation_alias=AliasChoices("item_id", "locationId"))

class OrderEntry(BaseModel):
    item_id: str = Field(..., validation_alias=AliasChoices("item_id", "id"))
    kind: Optional[str] = None

class ReorderRequest(BaseModel):
    plan_id: str = Field(..., validation_alias=AliasChoices("plan_id", "planId"))
    order: List[OrderEntry]

class UpdateTimeRequest(BaseModel):
    plan_id: str = Field(..., validation_alias=AliasChoices("plan_id", "planId"))
    item_id: str = Field(..., validation_alias=AliasChoices("item_id", "locationId"))
    time: Optional[str] = Field(..., max_length=32)


def _vineyard_entry(selection: VineyardSelection) -> Dict[str, Any]:
    vineyard_id = selection.vineyard.get("vineyard_id")
    if not vineyard_id:
        raise ValidationError("Each vineyard must include a vineyard_id")
    return {
        "vineyard_id": str(vineyard_id),
        "vineyard": selection.vineyard,
        "offer": selection.offer,
        "time": selection.time,
    }

def _restaurant_entry(selection: Optional[RestaurantSelection]) -> Optional[Dict[str, Any]]:
    if selection is None:
        return None
    restaurant_id = selection.restaurant.get("restaurant_id") or selection.restaurant.get("restaurants")
    if not restaurant_id:
        raise ValidationError("Restaurant must include a restaurant_id")
    return {
        "restaurant_id": str(restaurant_id),
        "restaurant": selection.restaurant,
        "time": selection.time,
    }

def _plan_fields(data: BaseModel) -> Dict[str, Any]:
    """Translate the fields the client actually sent into service fields."""
    sent = data.model_fields_set
    fields: Dict[str, Any] = {}
    if "title" in sent and data.title is not None:
        fields["title"] = data.title
    if "vineyards" in sent and data.vineyards is not None:
        fields["vineyards"] = [_vineyard_entry(v) for v in data.vineyards]
    if "restaurant" in sent:
        fields["restaurant"] = _restaurant_entry(data.restaurant)
    return fields

def _order_refs(entries: List[OrderEntry]) -> List[ItemRef]:
    refs = []
    for entry in entries:
        ref = ItemRef.parse(entry.item_id)
        if entry.kind is not None and entry.kind != ref.kind.value:
            raise ValidationError(
                "Order entry kind does not match its item id",
                details={"item_id": entry.item_id, "kind": entry.kind},
            )
        refs.append(ref)
    return refs


@router.get("")
async def list_plans(
    status: Optional[PlanStatus] = Query(None),
    plan_type: Optional[str] = Query(None, alias="type", pattern="^(active|all)$"),
    identity: Identity = Depends(require_plan_access),
    service: PlanService = Depends(get_plan_service),
):
    """List the caller's plans, or just the working plan with ?type=active."""
    if plan_type == "active":
        plan = await service.get_active_plan(identity.owner_id)
        return success_response(
            {"plan": plan.to_public() if plan else None},
            "Active plan found" if plan else "No active plan",
        )
    plans = await service.list_plans(identity.owner_id, status)
    return success_response({"plans": [p.to_public() for p in plans]}, "Plans retrieved successfully")


@router.post("")
async def save_plan(
    data: SavePlanRequest,
    identity: Identity = Depends(require_plan_access),
    service: PlanService = Depends(get_plan_service),
):
    """Create the caller's working draft or update it in place."""
    fields = _plan_fields(data)
    fields.setdefault("vineyards", [])
    plan = await service.save_draft(identity.owner_id, fields)
    return success_response({"plan": plan.to_public()}, "Plan saved successfully")


@router.post("/remove-item")
async def remove_plan_item(
    data: RemoveItemRequest,
    identity: Identity = Depends(require_plan_access),
    service: PlanService = Depends(get_plan_service),
):
    ref = ItemRef.parse(data.item_id)
    plan = await service.remove_item(identity.owner_id, data.plan_id, ref)
    return success_response({"plan": plan.to_public()}, "Item removed successfully")


@router.post("/update-order")
async def update_plan_order(
    data: ReorderRequest,
    identity: Identity = Depends(require_plan_access),
    service: PlanService = Depends(get_plan_service),
):
    refs = _order_refs(data.order)
    plan = await service.reorder(identity.owner_id, data.plan_id, refs)
    return success_response(
        {"custom_order": [ref.model_dump() for ref in plan.custom_order]},
        "Order updated successfully",
    )


@router.post("/update-time")
async def update_plan_item_time(
    data: UpdateTimeRequest,
    identity: Identity = Depends(require_plan_access),
    service: PlanService = Depends(get_plan_service),
):
    ref = ItemRef.parse(data.item_id)
    await service.update_item_time(identity.owner_id, data.plan_id, ref, data.time)
    return success_response({"item_id": ref.item_id, "time": data.time}, "Time updated successfully")


@router.get("/{plan_id}")
async def get_plan(
    plan_id: str,
    identity: Identity = Depends(require_plan_access),
    service: PlanService = Depends(get_plan_service),
):
    plan = await service.get_plan(identity.owner_id, plan_id)
    return success_response({"plan": plan.to_public()}, "Plan retrieved successfully")


@router.put("/{plan_id}")
async def update_plan(
    plan_id: str,
    data: UpdatePlanRequest,
    identity: Identity = Depends(require_plan_access),
    service: PlanService = Depends(get_plan_service),
):
    plan = await service.update_plan(identity.owner_id, plan_id, _plan_fields(data))
    return success_response({"plan": plan.to_public()}, "Plan updated successfully")


@router.delete("/{plan_id}")
async def delete_plan(
    plan_id: str,
    identity: Identity = Depends(require_plan_access),
    service: PlanService = Depends(get_plan_service),
):
    await service.delete_plan(identity.owner_id, plan_id)
    return success_response({"plan_id": plan_id}, "Plan deleted successfully")


@router.post("/{plan_id}/confirm")
async def confirm_plan(
    plan_id: str,
    identity: Identity = Depends(require_plan_access),
    service: PlanService = Depends(get_plan_service),
):
    plan = await service.confirm_plan(identity.owner_id, plan_id)
    return success_response({"plan": plan.to_public()}, "Plan confirmed successfully")
