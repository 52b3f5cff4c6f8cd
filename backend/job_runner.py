"""
Shared job runner for scheduled background jobs.
Used by server (scheduler); can also be run by hand from a shell.
Each run_* returns a dict with "message" and "count".
"""
import logging

logger = logging.getLogger(__name__)


async def run_plan_expiry_sweep():
    """Mark every draft/confirmed plan whose expires_at has passed as expired."""
    try:
        from database import get_db_context
        from services.plan_service import PlanService
        from services.plan_store import PlanStore

        async with get_db_context() as db:
            count = await PlanService(PlanStore(db)).expire_due_plans()
        logger.info(f"Plan expiry sweep completed: {count} plans expired")
        return {"message": f"Plans expired: {count}", "count": count}
    except Exception as e:
        logger.error(f"Plan expiry sweep failed: {e}")
        raise


if __name__ == "__main__":
    import asyncio
    from pathlib import Path
    from dotenv import load_dotenv

    load_dotenv(Path(__file__).parent / '.env')
    logging.basicConfig(level=logging.INFO)
    print(asyncio.run(run_plan_expiry_sweep()))
