"""
Notification dispatch.

NotificationDispatcher is the one place that talks to the outside world on
behalf of the domain services. It offers three capabilities:

- persist_notification: store an in-app Notification row
- send_email: deliver a message through the mail transport
- broadcast_event: push a real-time event to connected clients

notify() combines them and never raises: a failure in any channel is logged
and the caller's operation carries on.
"""

import logging
from datetime import timedelta
from typing import Iterable, Optional, Tuple

from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .config import NOTIFICATION_TTL_DAYS
from .database import utcnow
from .errors import DeliveryError, NotificationNotFoundError
from .models import Notification, NotificationType, User

logger = logging.getLogger(__name__)

# Notification types that disappear after NOTIFICATION_TTL_DAYS.
EXPIRING_TYPES = {
    NotificationType.NEW_PAYMENT.value,
    NotificationType.SYSTEM_ANNOUNCEMENT.value,
    NotificationType.REMINDER.value,
}


class NotificationDispatcher:
    def __init__(self, db: Session, mailer, broadcaster):
        self.db = db
        self.mailer = mailer
        self.broadcaster = broadcaster

    def persist_notification(
        self,
        recipient_id: Optional[int],
        type: str,
        title: str,
        message: str,
        data: Optional[dict] = None,
        channels: Optional[dict] = None,
        priority: str = "normal",
    ) -> Optional[Notification]:
        channels = channels or {}
        type = NotificationType(type).value
        expires_at = None
        if type in EXPIRING_TYPES:
            expires_at = utcnow() + timedelta(days=NOTIFICATION_TTL_DAYS)

        notification = Notification(
            recipient_id=recipient_id,
            type=type,
            title=title[:200],
            message=message[:1000],
            data=data or {},
            priority=priority,
            channel_in_app=channels.get("in_app", True),
            channel_email=channels.get("email", False),
            channel_sms=channels.get("sms", False),
            channel_push=channels.get("push", False),
            expires_at=expires_at,
        )
        try:
            self.db.add(notification)
            self.db.commit()
            self.db.refresh(notification)
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Notification creation failed (%s for recipient %s)", type, recipient_id)
            return None
        return notification

    async def send_email(self, recipient: str, subject: str, body: str, subtype: str = "html"):
        """Raises DeliveryError when the transport fails."""
        await self.mailer.send(recipient, subject, body, subtype=subtype)

    def broadcast_event(self, event: str, payload: dict, rooms: Optional[Iterable[str]] = None):
        try:
            self.broadcaster.emit(event, payload, rooms)
        except Exception:
            logger.exception("Real-time broadcast of %s failed", event)

    async def notify(
        self,
        recipient: Optional[User],
        type: str,
        title: str,
        message: str,
        data: Optional[dict] = None,
        channels: Optional[dict] = None,
        priority: str = "normal",
        email_message: Optional[Tuple[str, str]] = None,
        email_to: Optional[str] = None,
    ) -> Optional[Notification]:
        """
        Store a notification and deliver it on the requested channels.

        Args:
            recipient: target user, or None for the admin feed
            channels: {"email": True, ...}; in-app is always on
            email_message: (subject, html body); defaults to title/message
            email_to: address override, e.g. for a payer without an account
        """
        channels = channels or {}
        notification = self.persist_notification(
            recipient.id if recipient is not None else None,
            type,
            title,
            message,
            data=data,
            channels=channels,
            priority=priority,
        )

        if not channels.get("email"):
            return notification

        to = email_to or (recipient.email if recipient is not None else None)
        if not to:
            return notification

        subject, body = email_message or (title, f"<p>{message}</p>")
        error = None
        try:
            await self.send_email(to, subject, body)
        except DeliveryError as exc:
            error = exc.message
            logger.warning("Email for %s notification not delivered: %s", type, error)
        except Exception as exc:
            error = str(exc)
            logger.exception("Unexpected email failure for %s notification", type)

        if notification is not None:
            self._record_email_delivery(notification, error)
        return notification

    def _record_email_delivery(self, notification: Notification, error: Optional[str]):
        notification.email_sent = error is None
        notification.email_sent_at = utcnow() if error is None else None
        notification.email_error = error[:500] if error else None
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Could not record email delivery for notification %s", notification.id)


# -------------------- QUERIES --------------------

def _active(query):
    now = utcnow()
    return query.filter(or_(Notification.expires_at.is_(None), Notification.expires_at > now))


def list_notifications(db: Session, recipient_id: Optional[int], page: int = 1, limit: int = 20):
    """recipient_id None lists the admin feed."""
    page = max(page, 1)
    limit = min(max(limit, 1), 100)

    if recipient_id is None:
        base = db.query(Notification).filter(Notification.recipient_id.is_(None))
    else:
        base = db.query(Notification).filter(Notification.recipient_id == recipient_id)
    base = _active(base)

    total = base.with_entities(func.count(Notification.id)).scalar()
    unread = base.filter(Notification.is_read.is_(False)).with_entities(func.count(Notification.id)).scalar()
    items = (
        base.order_by(Notification.created_at.desc(), Notification.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )

    return {
        "notifications": [notification_to_dict(n) for n in items],
        "unreadCount": unread,
        "pagination": {
            "current": page,
            "pages": (total + limit - 1) // limit,
            "total": total,
            "limit": limit,
        },
    }


def mark_notification_read(db: Session, notification_id: int, recipient_id: Optional[int]) -> Notification:
    query = db.query(Notification).filter(Notification.id == notification_id)
    if recipient_id is None:
        query = query.filter(Notification.recipient_id.is_(None))
    else:
        query = query.filter(Notification.recipient_id == recipient_id)

    notification = query.first()
    if notification is None:
        raise NotificationNotFoundError()

    if not notification.is_read:
        notification.is_read = True
        notification.read_at = utcnow()
        db.commit()
        db.refresh(notification)
    return notification


def notification_to_dict(n: Notification) -> dict:
    return {
        "id": n.id,
        "recipient": n.recipient_id,
        "type": n.type,
        "title": n.title,
        "message": n.message,
        "data": n.data or {},
        "priority": n.priority,
        "isRead": n.is_read,
        "readAt": n.read_at,
        "channels": {
            "inApp": n.channel_in_app,
            "email": n.channel_email,
            "sms": n.channel_sms,
            "push": n.channel_push,
        },
        "deliveryStatus": {
            "email": {"sent": n.email_sent, "sentAt": n.email_sent_at, "error": n.email_error},
        },
        "expiresAt": n.expires_at,
        "createdAt": n.created_at,
    }
