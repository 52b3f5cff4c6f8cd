"""
Unit tests for email login codes (send + verify).
- Code stored as code_hash only (sha256(code + ":" + OTP_PEPPER)); raw code never persisted.
- Cooldown; max attempts lockout; delivery failures reported with their reason.
"""
import pytest
import sys
from pathlib import Path
from datetime import datetime, timezone, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

from models import AuditAction
from services.email_service import EmailService, NotificationResult

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


def make_notifier(result=None):
    notifier = MagicMock()
    notifier.send_login_code = AsyncMock(return_value=result or NotificationResult(success=True, message_id="m-1"))
    return notifier


@pytest.mark.asyncio
async def test_send_stores_code_hash_only(mock_db):
    from services.otp_service import send_login_code, _code_hash

    notifier = make_notifier()
    with patch("services.otp_service.OTP_PEPPER", "test-pepper"):
        result = await send_login_code(mock_db, notifier, " Taster@Example.com ", now=NOW)
        sent_code = notifier.send_login_code.call_args[0][1]
        expected_hash = _code_hash(sent_code)

    assert result.success is True
    assert notifier.send_login_code.call_args[0][0] == "taster@example.com"
    query, update = mock_db.login_codes.update_one.call_args[0]
    stored = update["$set"]
    assert query == {"email": "taster@example.com"}
    assert stored["code_hash"] == expected_hash
    assert sent_code not in stored.values()
    assert stored["attempts"] == 0
    assert stored["expires_at"] > NOW
    action = mock_db.audit_logs.insert_one.call_args[0][0]["action"]
    assert action == AuditAction.LOGIN_CODE_SENT


@pytest.mark.asyncio
async def test_send_without_pepper_fails_without_writing(mock_db):
    from services.otp_service import send_login_code

    notifier = make_notifier()
    with patch("services.otp_service.OTP_PEPPER", ""):
        result = await send_login_code(mock_db, notifier, "taster@example.com", now=NOW)

    assert result.success is False
    mock_db.login_codes.update_one.assert_not_called()
    notifier.send_login_code.assert_not_awaited()


@pytest.mark.asyncio
async def test_send_within_cooldown_is_refused(mock_db):
    from services.otp_service import COOLDOWN_CODE, send_login_code

    mock_db.login_codes.find_one = AsyncMock(return_value={"last_sent_at": NOW - timedelta(seconds=30)})
    notifier = make_notifier()
    with patch("services.otp_service.OTP_PEPPER", "p"), patch("services.otp_service.OTP_RESEND_COOLDOWN_SECONDS", 60):
        result = await send_login_code(mock_db, notifier, "taster@example.com", now=NOW)

    assert result.success is False
    assert result.code == COOLDOWN_CODE
    mock_db.login_codes.update_one.assert_not_called()


@pytest.mark.asyncio
async def test_delivery_failure_is_returned_with_reason(mock_db):
    from services.otp_service import send_login_code

    notifier = make_notifier(NotificationResult(success=False, reason="Email provider error: TimeoutError"))
    with patch("services.otp_service.OTP_PEPPER", "p"):
        result = await send_login_code(mock_db, notifier, "taster@example.com", now=NOW)

    assert result.success is False
    assert result.reason == "Email provider error: TimeoutError"
    action = mock_db.audit_logs.insert_one.call_args[0][0]["action"]
    assert action == AuditAction.LOGIN_CODE_FAILED


@pytest.mark.asyncio
async def test_verify_valid_code_consumes_it(mock_db):
    from services.otp_service import verify_login_code, _code_hash

    with patch("services.otp_service.OTP_PEPPER", "p"):
        mock_db.login_codes.find_one = AsyncMock(return_value={
            "email": "taster@example.com",
            "code_hash": _code_hash("123456"),
            "expires_at": NOW + timedelta(minutes=5),
            "attempts": 0,
        })
        ok = await verify_login_code(mock_db, "taster@example.com", "123456", now=NOW)

    assert ok is True
    mock_db.login_codes.delete_one.assert_awaited_once_with({"email": "taster@example.com"})


@pytest.mark.asyncio
async def test_verify_wrong_code_counts_attempt(mock_db):
    from services.otp_service import verify_login_code, _code_hash

    with patch("services.otp_service.OTP_PEPPER", "p"):
        mock_db.login_codes.find_one = AsyncMock(return_value={
            "email": "taster@example.com",
            "code_hash": _code_hash("123456"),
            "expires_at": NOW + timedelta(minutes=5),
            "attempts": 1,
        })
        ok = await verify_login_code(mock_db, "taster@example.com", "654321", now=NOW)

    assert ok is False
    mock_db.login_codes.update_one.assert_awaited_once_with(
        {"email": "taster@example.com"}, {"$inc": {"attempts": 1}}
    )
    mock_db.login_codes.delete_one.assert_not_called()


@pytest.mark.asyncio
async def test_verify_expired_or_locked_code_fails(mock_db):
    from services.otp_service import verify_login_code, _code_hash

    with patch("services.otp_service.OTP_PEPPER", "p"), patch("services.otp_service.OTP_MAX_ATTEMPTS", 5):
        base = {"email": "taster@example.com", "code_hash": _code_hash("123456")}
        mock_db.login_codes.find_one = AsyncMock(return_value={
            **base, "expires_at": NOW - timedelta(seconds=1), "attempts": 0,
        })
        expired = await verify_login_code(mock_db, "taster@example.com", "123456", now=NOW)

        mock_db.login_codes.find_one = AsyncMock(return_value={
            **base, "expires_at": NOW + timedelta(minutes=5), "attempts": 5,
        })
        locked = await verify_login_code(mock_db, "taster@example.com", "123456", now=NOW)

    assert expired is False
    assert locked is False
    mock_db.login_codes.delete_one.assert_not_called()


@pytest.mark.asyncio
async def test_email_service_without_token_reports_not_configured():
    with patch.dict("os.environ", {"POSTMARK_SERVER_TOKEN": ""}, clear=False):
        service = EmailService()

    result = await service.send_login_code("taster@example.com", "123456", 10)

    assert result.success is False
    assert result.reason == "Email delivery is not configured"


@pytest.mark.asyncio
async def test_email_service_provider_error_is_reported():
    service = EmailService(server_token="token")
    service.client = MagicMock()
    service.client.emails.send.side_effect = RuntimeError("boom")

    result = await service.send_login_code("taster@example.com", "123456", 10)

    assert result.success is False
    assert result.reason == "Email provider error: RuntimeError"
