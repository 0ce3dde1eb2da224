# Overview: Append-only order activity log.

from __future__ import annotations

from ..models import OrderActivity
from ..models.common import dump_json
from ..time_utils import utcnow


# Activity types
ACTIVITY_STATUS_CHANGE = "STATUS_CHANGE"
ACTIVITY_PAYMENT_CONFIRMED = "PAYMENT_CONFIRMED"
ACTIVITY_SUPPLIER_REF_CREATED = "SUPPLIER_REF_CREATED"
ACTIVITY_SUPPLIER_NOTIFIED = "SUPPLIER_NOTIFIED"
ACTIVITY_SUPPLIER_NOTIFY_SKIPPED = "SUPPLIER_NOTIFY_SKIPPED"
ACTIVITY_SUPPLIER_NOTIFY_ERROR = "SUPPLIER_NOTIFY_ERROR"
ACTIVITY_NOTIFY_ERROR = "NOTIFY_ERROR"
ACTIVITY_DELIVERY_CODE_SENT = "DELIVERY_CODE_SENT"
ACTIVITY_DELIVERED = "DELIVERED"
ACTIVITY_PAYOUT_RELEASED = "PAYOUT_RELEASED"
ACTIVITY_REFUND_REQUESTED = "REFUND_REQUESTED"


def log_order_activity(
    session,
    order_id: int,
    activity_type: str,
    message: str | None = None,
    *,
    supplier_id: int | None = None,
    purchase_order_id: int | None = None,
    actor_user_id: int | None = None,
    meta: dict | None = None,
) -> OrderActivity:
    """Add an activity row to the current transaction (flushed, not committed)."""
    activity = OrderActivity(
        order_id=order_id,
        supplier_id=supplier_id,
        purchase_order_id=purchase_order_id,
        activity_type=activity_type,
        message=message,
        meta_json=dump_json(meta),
        actor_user_id=actor_user_id,
        created_at=utcnow(),
    )
    session.add(activity)
    session.flush()
    return activity


def list_order_activities(session, order_id: int, limit: int = 100) -> list[OrderActivity]:
    return (
        session.query(OrderActivity)
        .filter(OrderActivity.order_id == order_id)
        .order_by(OrderActivity.created_at.desc(), OrderActivity.id.desc())
        .limit(limit)
        .all()
    )
