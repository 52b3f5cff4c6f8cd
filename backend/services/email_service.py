from postmarker.core import PostmarkClient
from pydantic import BaseModel
from typing import Optional
import os
import logging

logger = logging.getLogger(__name__)

# Verified sender in Postmark
DEFAULT_SENDER = os.getenv("EMAIL_SENDER", "hello@vineyardtourplanner.com")

LOGIN_CODE_SUBJECT = "Your Vineyard Tour Planner Login Code"

LOGIN_CODE_HTML = """
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
  <h2 style="color: #8B5A3C;">Your Login Code</h2>
  <p>Use the code below to sign in to Vineyard Tour Planner:</p>
  <div style="background: #f8f9fa; padding: 20px; border-radius: 8px; text-align: center; margin: 20px 0;">
    <h1 style="color: #8B5A3C; font-size: 32px; margin: 0; letter-spacing: 8px;">{code}</h1>
  </div>
  <p style="color: #666;">This code will expire in {minutes} minutes.</p>
  <p style="color: #666;">If you didn't request this code, please ignore this email.</p>
</div>
"""

LOGIN_CODE_TEXT = (
    "Your Vineyard Tour Planner login code is {code}. "
    "It expires in {minutes} minutes."
)


class NotificationResult(BaseModel):
    success: bool
    reason: Optional[str] = None
    code: Optional[str] = None  # machine-readable reason, e.g. "COOLDOWN"
    message_id: Optional[str] = None


class EmailService:
    """Notification collaborator for one-time login codes.

    Delivery failures are reported through NotificationResult, never raised.
    """

    def __init__(self, server_token: Optional[str] = None, sender: str = DEFAULT_SENDER):
        postmark_token = server_token or os.getenv("POSTMARK_SERVER_TOKEN")
        self.sender = sender
        if not postmark_token:
            logger.warning("POSTMARK_SERVER_TOKEN not set - login codes cannot be delivered")
            self.client = None
        else:
            self.client = PostmarkClient(server_token=postmark_token)
            logger.info("Postmark email client initialized")

    async def send_login_code(self, recipient: str, code: str, minutes: int) -> NotificationResult:
        if not self.client:
            return NotificationResult(success=False, reason="Email delivery is not configured")
        try:
            response = self.client.emails.send(
                From=self.sender,
                To=recipient,
                Subject=LOGIN_CODE_SUBJECT,
                HtmlBody=LOGIN_CODE_HTML.format(code=code, minutes=minutes),
                TextBody=LOGIN_CODE_TEXT.format(code=code, minutes=minutes),
                Tag="login-code",
            )
            return NotificationResult(success=True, message_id=response.get("MessageID"))
        except Exception as e:
            logger.error(f"Login code email failed: {e}")
            return NotificationResult(success=False, reason=f"Email provider error: {type(e).__name__}")
