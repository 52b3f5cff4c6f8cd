"""User Routes - profile, access evaluation and subscription tier selection."""
from fastapi import APIRouter, Depends
from pydantic import BaseModel
import logging

from database import get_db
from middleware import require_user
from models import User
from services.access_evaluator import AccessEvaluator
from services.user_store import UserStore
from utils.api_response import success_response

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/users", tags=["users"])


def get_access_evaluator(db=Depends(get_db)) -> AccessEvaluator:
    return AccessEvaluator(UserStore(db))


class SelectTierRequest(BaseModel):
    plan: str


@router.get("/me")
async def get_me(user: User = Depends(require_user)):
    return success_response(user.to_public(), "User retrieved successfully")


@router.get("/access")
async def get_access(
    user: User = Depends(require_user),
    evaluator: AccessEvaluator = Depends(get_access_evaluator),
):
    """Fresh access decision for the caller; reconciles an expired subscription."""
    decision = await evaluator.evaluate(user)
    return success_response(decision.model_dump(), "Access evaluated")


@router.get("/plan")
async def get_selected_tier(user: User = Depends(require_user)):
    return success_response({
        "selected_plan": user.selected_plan_tier.value if user.selected_plan_tier else None,
        "plan_selected_at": user.plan_selected_at,
        "subscription_expires_at": user.subscription_expires_at,
    })


@router.post("/plan")
async def select_tier(
    data: SelectTierRequest,
    user: User = Depends(require_user),
    evaluator: AccessEvaluator = Depends(get_access_evaluator),
):
    updated = await evaluator.select_tier(user, data.plan)
    return success_response(
        {
            "selected_plan": updated.selected_plan_tier.value,
            "plan_selected_at": updated.plan_selected_at,
            "expires_at": updated.subscription_expires_at,
        },
        "Plan updated successfully",
    )
