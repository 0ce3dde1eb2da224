# Overview: Notification decisions, in-app rows and fire-and-forget outbound dispatch.

"""
Notification Service

WHY: Suppliers, customers and admins must hear about POs, delivery codes,
payouts and refunds, but a failing SMS/WhatsApp/email provider must never
undo a payout or a delivery confirmation.

DESIGN:
- In-app Notification rows are written inside the business transaction
- Outbound messages are queued on the unit of work and sent after commit
- The transport is a pluggable Notifier stored in app.extensions["notifier"]
- Send failures are logged and recorded as OrderActivity rows, never raised
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..errors import NotFoundError
from ..extensions import db
from ..models import Notification, User
from ..models.common import dump_json
from ..states import ADMIN_ROLES
from ..time_utils import utcnow
from . import activity_service


CHANNEL_EMAIL = "EMAIL"
CHANNEL_SMS = "SMS"
CHANNEL_WHATSAPP = "WHATSAPP"


@dataclass
class OutboundMessage:
    channel: str
    recipient: str
    body: str
    subject: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)


class Notifier:
    """Transport interface. Implementations may raise on failure."""

    def send(self, message: OutboundMessage) -> None:
        raise NotImplementedError


class LoggingNotifier(Notifier):
    """Default transport: writes the message to the application log."""

    def send(self, message: OutboundMessage) -> None:
        current_app.logger.info(
            "Outbound %s to %s: %s", message.channel, mask_recipient(message.recipient), message.subject or message.body[:60]
        )


def get_notifier() -> Notifier:
    notifier = current_app.extensions.get("notifier")
    if notifier is None:
        notifier = LoggingNotifier()
        current_app.extensions["notifier"] = notifier
    return notifier


def mask_recipient(recipient: str | None) -> str | None:
    """Hint safe to show back to a caller: ***1234 or j***@example.com."""
    if not recipient:
        return None
    if "@" in recipient:
        local, _, domain = recipient.partition("@")
        return f"{local[:1]}***@{domain}"
    digits = "".join(ch for ch in recipient if ch.isdigit())
    return f"***{digits[-4:]}" if digits else "***"


# =============================================================================
# OUTBOUND DISPATCH
# =============================================================================

def dispatch(
    message: OutboundMessage,
    *,
    order_id: int | None = None,
    supplier_id: int | None = None,
    purchase_order_id: int | None = None,
    success_activity: str | None = None,
    error_activity: str = activity_service.ACTIVITY_NOTIFY_ERROR,
) -> bool:
    """
    Send one message now. Never raises.

    Outcome activity rows are written in their own small transaction because
    the business transaction has already committed.
    """
    try:
        get_notifier().send(message)
    except Exception as exc:
        current_app.logger.warning(
            "Notification via %s failed for order %s: %s", message.channel, order_id, exc
        )
        _record_outcome(order_id, error_activity, f"{message.channel} send failed: {exc}",
                        supplier_id=supplier_id, purchase_order_id=purchase_order_id,
                        meta={"channel": message.channel, "error": str(exc)})
        return False

    if success_activity:
        _record_outcome(order_id, success_activity, f"Sent via {message.channel}",
                        supplier_id=supplier_id, purchase_order_id=purchase_order_id,
                        meta={"channel": message.channel, **message.payload})
    return True


def _record_outcome(order_id, activity_type, text, **kwargs) -> None:
    if order_id is None:
        return
    try:
        activity_service.log_order_activity(db.session, order_id, activity_type, text, **kwargs)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Failed to record notification outcome for order %s", order_id)


def queue(uow, message: OutboundMessage, **dispatch_kwargs) -> None:
    """Send message after the unit of work commits."""
    uow.after_commit(lambda: dispatch(message, **dispatch_kwargs))


# =============================================================================
# IN-APP NOTIFICATIONS
# =============================================================================

def notify_user(
    uow,
    user_id: int,
    notification_type: str,
    title: str,
    body: str | None = None,
    data: dict | None = None,
) -> Notification:
    notification = Notification(
        user_id=user_id,
        notification_type=notification_type,
        title=title,
        body=body,
        data_json=dump_json(data),
    )
    uow.session.add(notification)
    return notification


def notify_admins(uow, notification_type: str, title: str, body: str | None = None, data: dict | None = None) -> int:
    admin_ids = [
        row.id
        for row in uow.session.query(User.id)
        .filter(User.role.in_(list(ADMIN_ROLES)), User.is_active.is_(True))
        .all()
    ]
    for admin_id in admin_ids:
        notify_user(uow, admin_id, notification_type, title, body, data)
    return len(admin_ids)


def list_notifications(session, user_id: int, unread_only: bool = False, limit: int = 50) -> list[Notification]:
    query = session.query(Notification).filter(Notification.user_id == user_id)
    if unread_only:
        query = query.filter(Notification.read_at.is_(None))
    return query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit).all()


def mark_notification_read(uow, notification_id: int, user_id: int) -> Notification:
    def _op(uow):
        notification = (
            uow.session.query(Notification)
            .filter(Notification.id == notification_id, Notification.user_id == user_id)
            .first()
        )
        if notification is None:
            raise NotFoundError("Notification not found")
        if notification.read_at is None:
            notification.read_at = utcnow()
        return notification

    return uow.run(_op)
