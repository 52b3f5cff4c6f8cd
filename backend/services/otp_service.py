"""
One-time login codes delivered by email.
- Code stored as SHA-256 hash: sha256(code + ":" + OTP_PEPPER). Never store the raw code.
- One live code per email; requesting a new one replaces the old one.
- TTL 10 min default (MongoDB TTL index removes stale documents); resend cooldown;
  a code is dead after OTP_MAX_ATTEMPTS wrong guesses.
- Delivery goes through the notification collaborator; a failed delivery is
  returned to the caller with its reason.
"""
import hashlib
import hmac
import logging
import os
import secrets
from datetime import datetime, timedelta
from typing import Optional

from models import AuditAction, as_utc, utc_now
from services.email_service import EmailService, NotificationResult
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

OTP_PEPPER = (os.getenv("OTP_PEPPER") or "").strip()
OTP_TTL_SECONDS = int(os.getenv("OTP_TTL_SECONDS", "600"))
OTP_MAX_ATTEMPTS = int(os.getenv("OTP_MAX_ATTEMPTS", "5"))
OTP_RESEND_COOLDOWN_SECONDS = int(os.getenv("OTP_RESEND_COOLDOWN_SECONDS", "60"))

OTP_LENGTH = 6

# NotificationResult.code when a send is refused inside the resend window
COOLDOWN_CODE = "COOLDOWN"


def _normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def _code_hash(raw_code: str) -> str:
    if not OTP_PEPPER:
        raise ValueError("OTP_PEPPER must be set")
    return hashlib.sha256((raw_code + ":" + OTP_PEPPER).encode()).hexdigest()


def _email_hash_for_log(email: str) -> str:
    """Hash for logging only."""
    return hashlib.sha256(email.encode()).hexdigest()[:16]


def _generate_code() -> str:
    return "".join(secrets.choice("0123456789") for _ in range(OTP_LENGTH))


async def send_login_code(
    db,
    notifier: EmailService,
    email: str,
    now: Optional[datetime] = None,
) -> NotificationResult:
    """Create or replace the login code for email and deliver it."""
    email = _normalize_email(email)
    now = now or utc_now()

    if not OTP_PEPPER:
        logger.error("login_code_send misconfiguration OTP_PEPPER not set")
        return NotificationResult(success=False, reason="Login codes are not configured")

    existing = await db.login_codes.find_one({"email": email}, {"_id": 0, "last_sent_at": 1})
    if existing:
        last_sent = as_utc(existing.get("last_sent_at"))
        if last_sent and now - last_sent < timedelta(seconds=OTP_RESEND_COOLDOWN_SECONDS):
            logger.info(f"login_code_send cooldown email_hash={_email_hash_for_log(email)}")
            return NotificationResult(
                success=False,
                reason="Please wait before requesting another code",
                code=COOLDOWN_CODE,
            )

    raw_code = _generate_code()
    await db.login_codes.update_one(
        {"email": email},
        {"$set": {
            "email": email,
            "code_hash": _code_hash(raw_code),
            "created_at": now,
            "expires_at": now + timedelta(seconds=OTP_TTL_SECONDS),
            "attempts": 0,
            "last_sent_at": now,
        }},
        upsert=True,
    )

    minutes = max(1, OTP_TTL_SECONDS // 60)
    result = await notifier.send_login_code(email, raw_code, minutes)
    await create_audit_log(
        db,
        action=AuditAction.LOGIN_CODE_SENT if result.success else AuditAction.LOGIN_CODE_FAILED,
        resource_type="login_code",
        metadata={"email_hash": _email_hash_for_log(email), "reason": result.reason},
    )
    if not result.success:
        logger.warning(
            f"login_code_send delivery_failed email_hash={_email_hash_for_log(email)} reason={result.reason}"
        )
    return result


async def verify_login_code(db, email: str, code: str, now: Optional[datetime] = None) -> bool:
    """True when code matches the live code for email; the code is consumed on success."""
    email = _normalize_email(email)
    now = now or utc_now()
    if not OTP_PEPPER:
        return False

    doc = await db.login_codes.find_one({"email": email}, {"_id": 0})
    if not doc:
        return False

    expires_at = as_utc(doc.get("expires_at"))
    if expires_at is None or now >= expires_at:
        return False
    if doc.get("attempts", 0) >= OTP_MAX_ATTEMPTS:
        logger.info(f"login_code_verify locked email_hash={_email_hash_for_log(email)}")
        return False

    if not hmac.compare_digest(doc.get("code_hash", ""), _code_hash(code)):
        await db.login_codes.update_one({"email": email}, {"$inc": {"attempts": 1}})
        return False

    await db.login_codes.delete_one({"email": email})
    return True
