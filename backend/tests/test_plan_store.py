"""
Unit tests for PlanStore and UserStore: owner-scoped reads, versioned writes,
storage failure mapping.
"""
import pytest
import sys
from pathlib import Path
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

from pymongo.errors import DuplicateKeyError, ServerSelectionTimeoutError

from models import Plan, PlanStatus, PlanVineyard, User
from services.errors import ConflictError, StorageUnavailable
from services.plan_store import PlanStore
from services.user_store import UserStore

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


def stored_plan(**kw):
    fields = dict(
        plan_id="plan-1",
        owner_id="owner-1",
        vineyards=[PlanVineyard(vineyard_id="v1", vineyard={"vineyard": "A"})],
        expires_at=NOW,
        version=3,
    )
    fields.update(kw)
    return Plan(**fields)


@pytest.mark.asyncio
async def test_load_filters_by_owner_and_active(mock_db):
    mock_db.plans.find_one = AsyncMock(return_value=stored_plan().to_document())

    plan = await PlanStore(mock_db).load("owner-1", "plan-1")

    assert plan.plan_id == "plan-1"
    assert plan.vineyards[0].vineyard_id == "v1"
    query = mock_db.plans.find_one.call_args[0][0]
    assert query == {"plan_id": "plan-1", "owner_id": "owner-1", "is_active": True}


@pytest.mark.asyncio
async def test_load_missing_returns_none(mock_db):
    assert await PlanStore(mock_db).load("owner-2", "plan-1") is None


@pytest.mark.asyncio
async def test_save_is_conditional_on_version(mock_db):
    plan = stored_plan(status=PlanStatus.CONFIRMED)

    saved = await PlanStore(mock_db).save(plan)

    assert saved.version == 4
    query, update = mock_db.plans.update_one.call_args[0]
    assert query == {"plan_id": "plan-1", "owner_id": "owner-1", "version": 3}
    assert update["$set"]["version"] == 4
    assert update["$set"]["status"] == PlanStatus.CONFIRMED
    for field in ("plan_id", "owner_id", "created_at"):
        assert field not in update["$set"]


@pytest.mark.asyncio
async def test_save_conflict_when_version_moved(mock_db):
    mock_db.plans.update_one = AsyncMock(return_value=MagicMock(matched_count=0))

    with pytest.raises(ConflictError):
        await PlanStore(mock_db).save(stored_plan())


@pytest.mark.asyncio
async def test_storage_timeout_maps_to_storage_unavailable(mock_db):
    mock_db.plans.find_one = AsyncMock(side_effect=ServerSelectionTimeoutError("no servers"))

    with pytest.raises(StorageUnavailable) as exc:
        await PlanStore(mock_db).load("owner-1", "plan-1")

    assert exc.value.http_status == 503


@pytest.mark.asyncio
async def test_list_for_owner_sorts_newest_first(mock_db):
    cursor = MagicMock()
    cursor.sort.return_value = cursor
    cursor.to_list = AsyncMock(return_value=[stored_plan().to_document()])
    mock_db.plans.find = MagicMock(return_value=cursor)

    plans = await PlanStore(mock_db).list_for_owner("owner-1", PlanStatus.DRAFT)

    assert [p.plan_id for p in plans] == ["plan-1"]
    query = mock_db.plans.find.call_args[0][0]
    assert query == {"owner_id": "owner-1", "is_active": True, "status": "draft"}
    cursor.sort.assert_called_once_with("created_at", -1)


@pytest.mark.asyncio
async def test_expire_due_bulk_update(mock_db):
    mock_db.plans.update_many = AsyncMock(return_value=MagicMock(modified_count=2))

    count = await PlanStore(mock_db).expire_due(NOW)

    assert count == 2
    query, update = mock_db.plans.update_many.call_args[0]
    assert query["expires_at"] == {"$lte": NOW}
    assert update["$set"]["status"] == "expired"
    assert update["$inc"] == {"version": 1}


@pytest.mark.asyncio
async def test_user_insert_duplicate_email_is_conflict(mock_db):
    mock_db.users.insert_one = AsyncMock(side_effect=DuplicateKeyError("dup"))

    with pytest.raises(ConflictError):
        await UserStore(mock_db).insert(User(email="Someone@Example.com"))


@pytest.mark.asyncio
async def test_user_insert_lowercases_email(mock_db):
    user = await UserStore(mock_db).insert(User(email="Someone@Example.com"))

    assert user.email == "someone@example.com"
    assert mock_db.users.insert_one.call_args[0][0]["email"] == "someone@example.com"


@pytest.mark.asyncio
async def test_user_save_conflict(mock_db):
    mock_db.users.update_one = AsyncMock(return_value=MagicMock(matched_count=0))
    with pytest.raises(ConflictError):
        await UserStore(mock_db).save(User(email="a@example.com", version=1))


@pytest.mark.asyncio
async def test_owner_of_reads_only_owner_field(mock_db):
    mock_db.plans.find_one = AsyncMock(return_value={"owner_id": "owner-7"})

    assert await PlanStore(mock_db).owner_of("plan-1") == "owner-7"
    query, projection = mock_db.plans.find_one.call_args[0]
    assert query == {"plan_id": "plan-1", "is_active": True}
    assert projection == {"_id": 0, "owner_id": 1}


@pytest.mark.asyncio
async def test_list_expired_also_matches_due_open_plans(mock_db):
    cursor = MagicMock()
    cursor.sort.return_value = cursor
    cursor.to_list = AsyncMock(return_value=[])
    mock_db.plans.find = MagicMock(return_value=cursor)

    await PlanStore(mock_db).list_for_owner("owner-1", PlanStatus.EXPIRED, NOW)

    query = mock_db.plans.find.call_args[0][0]
    assert query["owner_id"] == "owner-1"
    assert query["$or"] == [
        {"status": "expired"},
        {"status": {"$in": ["draft", "confirmed"]}, "expires_at": {"$lte": NOW}},
    ]
