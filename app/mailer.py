import logging
from html import escape
from typing import Optional

from fastapi_mail import ConnectionConfig, FastMail, MessageSchema

from . import config
from .errors import DeliveryError

logger = logging.getLogger(__name__)


def build_connection_config() -> Optional[ConnectionConfig]:
    if not (config.MAIL_USERNAME and config.MAIL_PASSWORD and config.MAIL_FROM):
        return None

    return ConnectionConfig(
        MAIL_USERNAME=config.MAIL_USERNAME,
        MAIL_PASSWORD=config.MAIL_PASSWORD,
        MAIL_FROM=config.MAIL_FROM,
        MAIL_FROM_NAME=config.APP_NAME,
        MAIL_PORT=config.MAIL_PORT,
        MAIL_SERVER=config.MAIL_SERVER,
        MAIL_STARTTLS=config.MAIL_STARTTLS,
        MAIL_SSL_TLS=config.MAIL_SSL_TLS,
    )


class Mailer:
    """Thin wrapper over FastMail that reports every failure as DeliveryError."""

    def __init__(self, conf: Optional[ConnectionConfig]):
        self.conf = conf

    @property
    def configured(self) -> bool:
        return self.conf is not None

    async def send(self, recipient: str, subject: str, body: str, subtype: str = "html"):
        if self.conf is None:
            raise DeliveryError("Email service not configured")

        message = MessageSchema(
            subject=subject,
            recipients=[recipient],
            body=body,
            subtype=subtype,
        )

        try:
            await FastMail(self.conf).send_message(message)
        except Exception as exc:
            raise DeliveryError(f"Email to {recipient} failed: {exc}") from exc

        logger.info("Email '%s' sent to %s", subject, recipient)


# -------------------- TEMPLATES --------------------

def course_url(course_slug: str) -> str:
    return f"{config.FRONTEND_URL}/courses/{course_slug}"


def _layout(heading: str, content: str) -> str:
    return f"""
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px; background: #f8fafc;">
  <div style="background: white; padding: 30px; border-radius: 12px;">
    <h1 style="color: #2563eb; text-align: center; margin: 0;">{escape(config.APP_NAME)}</h1>
    <h2 style="color: #059669; text-align: center;">{heading}</h2>
    {content}
    <p style="color: #6b7280; font-size: 14px; text-align: center; margin-top: 30px;">
      {escape(config.APP_NAME)} Team
    </p>
  </div>
</div>
"""


def otp_email(otp: str, ttl_minutes: int):
    subject = f"{config.APP_NAME} - OTP code"
    body = _layout(
        "Your OTP code",
        f"""<div style="font-size: 32px; font-weight: bold; color: #059669; letter-spacing: 4px; text-align: center;">{otp}</div>
    <p style="color: #64748b; text-align: center;">This code is valid for {ttl_minutes} minutes.</p>""",
    )
    return subject, body


def course_access_email(name: str, course_title: str, course_slug: str):
    subject = f"{config.APP_NAME} - Course access approved"
    body = _layout(
        "Congratulations!",
        f"""<p>Dear <strong>{escape(name or "student")}</strong>,</p>
    <p>Your payment has been approved and your access to
    <strong>"{escape(course_title)}"</strong> is now active.</p>
    <p style="text-align: center;">
      <a href="{course_url(course_slug)}" style="background: #059669; color: white; padding: 15px 30px; text-decoration: none; border-radius: 8px;">Start the course</a>
    </p>""",
    )
    return subject, body


def payment_rejected_email(name: str, course_title: str, reason: Optional[str]):
    subject = f"{config.APP_NAME} - Payment not approved"
    reason_html = f"<p>Reason: {escape(reason)}</p>" if reason else ""
    body = _layout(
        "Payment not approved",
        f"""<p>Dear <strong>{escape(name or "student")}</strong>,</p>
    <p>We could not approve your payment for <strong>"{escape(course_title)}"</strong>.</p>
    {reason_html}
    <p>Please check the transaction details and submit again, or contact us.</p>""",
    )
    return subject, body


def welcome_email(name: str):
    subject = f"Welcome to {config.APP_NAME}"
    body = _layout(
        f"Welcome, {escape(name)}!",
        f"""<p>Your account is ready. Browse the catalog at
    <a href="{config.FRONTEND_URL}/courses">{config.FRONTEND_URL}/courses</a>.</p>""",
    )
    return subject, body
