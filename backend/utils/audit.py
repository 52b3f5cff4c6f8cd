from models import AuditLog, AuditAction, UserRole
from typing import Optional, Dict, Any
import logging

logger = logging.getLogger(__name__)

def calculate_diff(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Any]:
    """Calculate the differences between before and after states.

    Returns a dict with:
    - added: fields that exist in after but not in before
    - removed: fields that exist in before but not in after
    - changed: fields that exist in both but have different values
    """
    if not before and not after:
        return {}

    if not before:
        return {"added": after, "removed": {}, "changed": {}}

    if not after:
        return {"added": {}, "removed": before, "changed": {}}

    diff = {"added": {}, "removed": {}, "changed": {}}

    for key in set(before.keys()) | set(after.keys()):
        before_val = before.get(key)
        after_val = after.get(key)

        if key not in before:
            diff["added"][key] = after_val
        elif key not in after:
            diff["removed"][key] = before_val
        elif before_val != after_val:
            diff["changed"][key] = {
                "from": before_val,
                "to": after_val
            }

    # Remove empty categories
    return {k: v for k, v in diff.items() if v}

async def create_audit_log(
    db,
    action: AuditAction,
    actor_id: Optional[str] = None,
    actor_role: Optional[UserRole] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    before_state: Optional[Dict[str, Any]] = None,
    after_state: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
    auto_diff: bool = True
) -> str:
    """Create an audit log entry with optional automatic diff calculation.

    Args:
        db: Database handle to write to
        action: The audit action type
        actor_id: ID of the user performing the action
        actor_role: Role of the user performing the action
        resource_type: Type of resource being modified (e.g., 'plan', 'user')
        resource_id: ID of the specific resource
        before_state: State before the change
        after_state: State after the change
        metadata: Additional metadata
        auto_diff: If True, automatically calculate and store diff
    """
    try:
        diff = None
        if auto_diff and before_state and after_state:
            diff = calculate_diff(before_state, after_state)

        enriched_metadata = metadata.copy() if metadata else {}
        if diff:
            enriched_metadata["diff"] = diff
            enriched_metadata["changes_count"] = (
                len(diff.get("added", {})) +
                len(diff.get("removed", {})) +
                len(diff.get("changed", {}))
            )

        audit_log = AuditLog(
            action=action,
            actor_id=actor_id,
            actor_role=actor_role,
            resource_type=resource_type,
            resource_id=resource_id,
            before_state=before_state,
            after_state=after_state,
            metadata=enriched_metadata if enriched_metadata else None,
        )

        await db.audit_logs.insert_one(audit_log.model_dump())
        logger.info(f"Audit log created: {action.value}" + (f" with {enriched_metadata.get('changes_count', 0)} changes" if diff else ""))
        return audit_log.audit_id
    except Exception as e:
        logger.error(f"Failed to create audit log: {e}")
        # Never fail the main operation due to audit log failure
        return ""
