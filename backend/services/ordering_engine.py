"""
Ordering Engine - keeps a plan's custom visiting order consistent with its stops.

custom_order is a denormalized list of ItemRefs pointing into plan.vineyards (by
position) and the single restaurant slot. Vineyard positions shift when a vineyard is
removed, so every removal rewrites the affected refs in the same step as the splice.

Two consistency policies:
- server-driven changes (removal, collection replacement) self-heal: refs that no
  longer resolve are dropped;
- client-driven reorders must be exact: any ref that does not resolve is rejected.

Functions are pure and return a new Plan; the input plan is never modified.
"""
import logging
from typing import Iterable, List, Optional

from models import ItemKind, ItemRef, Plan
from services.errors import InvalidTarget, OutOfRange, ValidationError

logger = logging.getLogger(__name__)


def _check_target(plan: Plan, ref: ItemRef) -> None:
    if ref.kind == ItemKind.VINEYARD:
        if ref.index is None or not 0 <= ref.index < len(plan.vineyards):
            raise OutOfRange(
                "Invalid vineyard index",
                details={"item_id": ref.item_id, "vineyard_count": len(plan.vineyards)},
            )
    elif plan.restaurant is None:
        raise InvalidTarget("Plan has no restaurant", details={"item_id": ref.item_id})


def _resolving(plan: Plan, refs: Iterable[ItemRef]) -> List[ItemRef]:
    """Refs that resolve against plan, first occurrence only."""
    seen = set()
    kept = []
    for ref in refs:
        if ref in seen or not plan.has_item(ref):
            continue
        seen.add(ref)
        kept.append(ref)
    return kept


def heal_custom_order(plan: Plan) -> Plan:
    """Drop refs that no longer point at a present item."""
    healed = _resolving(plan, plan.custom_order)
    if len(healed) != len(plan.custom_order):
        logger.info(
            f"Custom order healed plan_id={plan.plan_id} dropped={len(plan.custom_order) - len(healed)}"
        )
    return plan.model_copy(update={"custom_order": healed})


def _shift_after_removal(refs: Iterable[ItemRef], removed_index: int) -> List[ItemRef]:
    shifted = []
    for ref in refs:
        if ref.kind == ItemKind.VINEYARD:
            if ref.index == removed_index:
                continue
            if ref.index > removed_index:
                ref = ItemRef.vineyard(ref.index - 1)
        shifted.append(ref)
    return shifted


def remove_item(plan: Plan, ref: ItemRef) -> Plan:
    """Remove one stop and reindex the custom order with it.

    The result is rejected as a whole if it would leave the plan without vineyards.
    """
    _check_target(plan, ref)

    if ref.kind == ItemKind.VINEYARD:
        vineyards = plan.vineyards[:ref.index] + plan.vineyards[ref.index + 1:]
        order = _shift_after_removal(plan.custom_order, ref.index)
        updated = plan.model_copy(update={"vineyards": vineyards, "custom_order": order})
    else:
        order = [entry for entry in plan.custom_order if entry.kind != ItemKind.RESTAURANT]
        updated = plan.model_copy(update={"restaurant": None, "custom_order": order})

    if not updated.vineyards:
        raise ValidationError(
            "Cannot remove the last vineyard. At least one vineyard is required.",
            details={"item_id": ref.item_id},
        )
    return heal_custom_order(updated)


def set_custom_order(plan: Plan, order: List[ItemRef]) -> Plan:
    """Replace the custom order wholesale; every ref must resolve and appear once."""
    missing = [ref.item_id for ref in order if not plan.has_item(ref)]
    if missing:
        raise ValidationError("Order references items not in the plan", details={"item_ids": missing})
    if len(set(order)) != len(order):
        raise ValidationError("Order contains duplicate items")
    return plan.model_copy(update={"custom_order": list(order)})


def update_item_time(plan: Plan, ref: ItemRef, time: Optional[str]) -> Plan:
    _check_target(plan, ref)
    if ref.kind == ItemKind.VINEYARD:
        vineyards = list(plan.vineyards)
        vineyards[ref.index] = vineyards[ref.index].model_copy(update={"time": time})
        return plan.model_copy(update={"vineyards": vineyards})
    restaurant = plan.restaurant.model_copy(update={"time": time})
    return plan.model_copy(update={"restaurant": restaurant})
