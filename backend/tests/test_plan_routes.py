"""
HTTP-level tests for plan, user and auth routes using the shared TestClient.
Storage is a MagicMock database; the plan service gets a fixed clock.
"""
import pytest
import sys
from pathlib import Path
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

from auth import create_user_token
from database import get_db
from middleware import require_plan_access
from models import Identity, ItemRef, Plan, PlanRestaurant, PlanStatus, PlanVineyard, User, utc_now
from routes.otp import get_notifier
from routes.plans import get_plan_service
from server import app
from services.plan_service import PlanService
from services.plan_store import PlanStore
from services.email_service import NotificationResult

OWNER = Identity(owner_id="owner-1", email="taster@example.com")


def stored_plan(**kw):
    fields = dict(
        plan_id="plan-1",
        owner_id="owner-1",
        vineyards=[
            PlanVineyard(vineyard_id=f"v-{n}", vineyard={"vineyard": n}) for n in ("A", "B", "C")
        ],
        restaurant=PlanRestaurant(restaurant_id="r-1", restaurant={"name": "Bistro"}),
        custom_order=[ItemRef.vineyard(2), ItemRef.restaurant(), ItemRef.vineyard(0), ItemRef.vineyard(1)],
        expires_at=utc_now() + timedelta(hours=6),
    )
    fields.update(kw)
    return Plan(**fields)


@pytest.fixture
def plan_client(client, mock_db):
    """Client with the access gate satisfied and plans served from mock_db."""
    mock_db.plans.find_one = AsyncMock(return_value=stored_plan().to_document())
    app.dependency_overrides[get_db] = lambda: mock_db
    app.dependency_overrides[require_plan_access] = lambda: OWNER
    app.dependency_overrides[get_plan_service] = lambda: PlanService(PlanStore(mock_db))
    return client


def test_plan_routes_require_authentication(client, mock_db):
    app.dependency_overrides[get_db] = lambda: mock_db

    response = client.get("/api/plans/plan-1")

    assert response.status_code == 401
    body = response.json()
    assert body["success"] is False
    assert body["error"]["type"] == "UNAUTHORIZED"


def test_get_plan_returns_envelope(plan_client, mock_db):
    response = plan_client.get("/api/plans/plan-1")

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"]["plan"]["id"] == "plan-1"
    assert body["data"]["plan"]["status"] == "draft"
    query = mock_db.plans.find_one.call_args[0][0]
    assert query["owner_id"] == "owner-1"


def test_get_missing_plan_is_404(plan_client, mock_db):
    mock_db.plans.find_one = AsyncMock(return_value=None)

    response = plan_client.get("/api/plans/plan-9")

    assert response.status_code == 404
    assert response.json()["error"]["type"] == "NOT_FOUND"


def test_remove_item_accepts_legacy_field_names(plan_client, mock_db):
    response = plan_client.post(
        "/api/plans/remove-item",
        json={"planId": "plan-1", "locationId": "vineyard-1"},
    )

    assert response.status_code == 200
    plan = response.json()["data"]["plan"]
    assert [v["vineyard_id"] for v in plan["vineyards"]] == ["v-A", "v-C"]
    assert [ref["item_id"] for ref in plan["custom_order"]] == ["vineyard-1", "restaurant", "vineyard-0"]
    query, update = mock_db.plans.update_one.call_args[0]
    assert query["version"] == 0
    assert update["$set"]["version"] == 1


def test_remove_item_unknown_target(plan_client):
    response = plan_client.post("/api/plans/remove-item", json={"plan_id": "plan-1", "item_id": "table-3"})

    assert response.status_code == 400
    assert response.json()["error"]["type"] == "INVALID_TARGET"


def test_remove_item_out_of_range(plan_client):
    response = plan_client.post("/api/plans/remove-item", json={"plan_id": "plan-1", "item_id": "vineyard-7"})

    assert response.status_code == 400
    assert response.json()["error"]["type"] == "OUT_OF_RANGE"


def test_update_order_returns_new_order(plan_client):
    response = plan_client.post(
        "/api/plans/update-order",
        json={"planId": "plan-1", "order": [
            {"id": "restaurant", "kind": "restaurant"},
            {"id": "vineyard-1", "kind": "vineyard"},
        ]},
    )

    assert response.status_code == 200
    order = response.json()["data"]["custom_order"]
    assert [entry["item_id"] for entry in order] == ["restaurant", "vineyard-1"]


def test_update_order_kind_mismatch_is_rejected(plan_client, mock_db):
    response = plan_client.post(
        "/api/plans/update-order",
        json={"plan_id": "plan-1", "order": [{"item_id": "vineyard-0", "kind": "restaurant"}]},
    )

    assert response.status_code == 400
    assert response.json()["error"]["type"] == "VALIDATION_ERROR"
    mock_db.plans.update_one.assert_not_called()


def test_update_time(plan_client):
    response = plan_client.post(
        "/api/plans/update-time",
        json={"planId": "plan-1", "locationId": "restaurant-0", "time": "19:00"},
    )

    assert response.status_code == 200
    assert response.json()["data"] == {"item_id": "restaurant", "time": "19:00"}


def test_confirm_confirmed_plan_is_conflict(plan_client, mock_db):
    confirmed = stored_plan(status=PlanStatus.CONFIRMED, confirmed_at=utc_now())
    mock_db.plans.find_one = AsyncMock(return_value=confirmed.to_document())

    response = plan_client.post("/api/plans/plan-1/confirm")

    assert response.status_code == 409
    assert response.json()["error"]["type"] == "INVALID_STATE"


def test_mutating_expired_plan_is_gone(plan_client, mock_db):
    expired = stored_plan(status=PlanStatus.EXPIRED, expires_at=utc_now() - timedelta(hours=1))
    mock_db.plans.find_one = AsyncMock(return_value=expired.to_document())

    response = plan_client.post(
        "/api/plans/update-time",
        json={"plan_id": "plan-1", "item_id": "vineyard-0", "time": "10:00"},
    )

    assert response.status_code == 410
    assert response.json()["error"]["type"] == "EXPIRED"


def test_request_validation_uses_envelope(plan_client):
    response = plan_client.post("/api/plans", json={"vineyards": "not-a-list"})

    assert response.status_code == 422
    body = response.json()
    assert body["success"] is False
    assert body["error"]["type"] == "VALIDATION_ERROR"
    assert body["error"]["details"]["errors"]


def test_expired_subscription_is_denied_with_redirect(client, mock_db):
    user = User(
        user_id="user-1",
        email="taster@example.com",
        selected_plan_tier="plus",
        subscription_expires_at=datetime.now(timezone.utc) - timedelta(minutes=1),
        is_subscription_active=True,
    )
    mock_db.users.find_one = AsyncMock(return_value=user.model_dump())
    app.dependency_overrides[get_db] = lambda: mock_db

    response = client.get("/api/plans", headers={"Authorization": f"Bearer {create_user_token(user)}"})

    assert response.status_code == 403
    body = response.json()
    assert body["error"]["type"] == "FORBIDDEN"
    assert body["error"]["details"]["redirect_to"] == "/plans"
    # The lapsed flag was written back before answering
    update = mock_db.users.update_one.call_args[0][1]
    assert update["$set"]["is_subscription_active"] is False


def test_signup_creates_user(client, mock_db):
    app.dependency_overrides[get_db] = lambda: mock_db

    response = client.post(
        "/api/auth/signup",
        json={"first_name": " Ana ", "last_name": "Lopes", "email": "Ana@Example.com"},
    )

    assert response.status_code == 201
    data = response.json()["data"]
    assert data["email"] == "ana@example.com"
    assert data["full_name"] == "Ana Lopes"
    mock_db.users.insert_one.assert_awaited_once()


def test_otp_send_for_unknown_user_is_404(client, mock_db):
    app.dependency_overrides[get_db] = lambda: mock_db
    app.dependency_overrides[get_notifier] = lambda: MagicMock()

    response = client.post("/api/auth/otp/send", json={"email": "nobody@example.com"})

    assert response.status_code == 404
    assert response.json()["error"]["details"] == {"user_exists": False}


def otp_client(client, mock_db, result):
    mock_db.users.find_one = AsyncMock(return_value=User(user_id="user-1", email="taster@example.com").model_dump())
    notifier = MagicMock()
    notifier.send_login_code = AsyncMock(return_value=result)
    app.dependency_overrides[get_db] = lambda: mock_db
    app.dependency_overrides[get_notifier] = lambda: notifier
    return notifier


def test_otp_send_within_cooldown_is_429(client, mock_db):
    notifier = otp_client(client, mock_db, NotificationResult(success=True))
    mock_db.login_codes.find_one = AsyncMock(return_value={"last_sent_at": utc_now()})

    with patch("services.otp_service.OTP_PEPPER", "p"):
        response = client.post("/api/auth/otp/send", json={"email": "taster@example.com"})

    assert response.status_code == 429
    assert response.json()["error"]["type"] == "RATE_LIMITED"
    notifier.send_login_code.assert_not_awaited()


def test_otp_send_delivery_failure_is_502(client, mock_db):
    otp_client(client, mock_db, NotificationResult(success=False, reason="Please wait for the provider"))

    with patch("services.otp_service.OTP_PEPPER", "p"):
        response = client.post("/api/auth/otp/send", json={"email": "taster@example.com"})

    assert response.status_code == 502
    error = response.json()["error"]
    assert error["type"] == "NOTIFICATION_FAILED"
    assert error["details"] == {"reason": "Please wait for the provider"}
