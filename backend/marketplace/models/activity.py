from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z
from .common import load_json


class OrderActivity(db.Model):
    """
    Order-scoped activity log (status changes, supplier notifications,
    notification failures). Append-only.
    """
    __tablename__ = "order_activities"
    __table_args__ = (
        db.Index("ix_order_activities_order_created", "order_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False)
    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id"), nullable=True)
    purchase_order_id = db.Column(db.Integer, db.ForeignKey("purchase_orders.id"), nullable=True)
    activity_type = db.Column(db.String(48), nullable=False, index=True)
    message = db.Column(db.Text, nullable=True)
    meta_json = db.Column(db.Text, nullable=True)
    actor_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "supplier_id": self.supplier_id,
            "purchase_order_id": self.purchase_order_id,
            "type": self.activity_type,
            "message": self.message,
            "meta": load_json(self.meta_json),
            "actor_user_id": self.actor_user_id,
            "created_at": to_utc_z(self.created_at),
        }


class Notification(db.Model):
    """In-app notification; outbound delivery is handled by the notifier."""
    __tablename__ = "notifications"
    __table_args__ = (
        db.Index("ix_notifications_user_read", "user_id", "read_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    notification_type = db.Column(db.String(48), nullable=False)
    title = db.Column(db.String(255), nullable=False)
    body = db.Column(db.Text, nullable=True)
    data_json = db.Column(db.Text, nullable=True)
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.notification_type,
            "title": self.title,
            "body": self.body,
            "data": load_json(self.data_json),
            "read_at": to_utc_z(self.read_at),
            "created_at": to_utc_z(self.created_at),
        }
