from __future__ import annotations

from ..extensions import db
from ..states import RefundStatus
from ..time_utils import to_utc_z
from .common import status_column, enum_value, load_json


class Refund(db.Model):
    """
    Refund case against exactly one PO.

    Amounts are itemized (items, tax, fee components) and frozen at request
    time. The supplier answers in supplier_response/supplier_note; an admin
    closes the case with a resolution.
    """
    __tablename__ = "refunds"
    __table_args__ = (
        db.UniqueConstraint("purchase_order_id", name="uq_refunds_purchase_order"),
        db.Index("ix_refunds_supplier_status", "supplier_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    purchase_order_id = db.Column(db.Integer, db.ForeignKey("purchase_orders.id"), nullable=False)
    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id"), nullable=False)
    requested_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    filed_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    reason = db.Column(db.String(64), nullable=False)
    message = db.Column(db.Text, nullable=True)
    status = status_column(RefundStatus, default=RefundStatus.REQUESTED, index=True)

    items_kobo = db.Column(db.Integer, nullable=False, default=0)
    tax_kobo = db.Column(db.Integer, nullable=False, default=0)
    service_fee_base_kobo = db.Column(db.Integer, nullable=False, default=0)
    service_fee_comms_kobo = db.Column(db.Integer, nullable=False, default=0)
    service_fee_gateway_kobo = db.Column(db.Integer, nullable=False, default=0)
    total_kobo = db.Column(db.Integer, nullable=False, default=0)
    currency = db.Column(db.String(3), nullable=False, default="NGN")

    supplier_response = db.Column(db.String(16), nullable=True)  # ACCEPT, REJECT, DISPUTE
    supplier_note = db.Column(db.Text, nullable=True)
    supplier_responded_at = db.Column(db.DateTime(timezone=True), nullable=True)

    resolution = db.Column(db.String(16), nullable=True)  # APPROVED, DENIED
    admin_note = db.Column(db.Text, nullable=True)
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    closed_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    requested_at = db.Column(db.DateTime(timezone=True), nullable=False)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True, onupdate=db.func.now())

    items = db.relationship("RefundItem", backref="refund", lazy=True, order_by="RefundItem.id")
    events = db.relationship("RefundEvent", backref="refund", lazy=True, order_by="RefundEvent.id")
    purchase_order = db.relationship("PurchaseOrder")

    def to_dict(self, include_children: bool = False) -> dict:
        data = {
            "id": self.id,
            "order_id": self.order_id,
            "purchase_order_id": self.purchase_order_id,
            "supplier_id": self.supplier_id,
            "requested_by_user_id": self.requested_by_user_id,
            "reason": self.reason,
            "message": self.message,
            "status": enum_value(self.status),
            "amounts": {
                "items_kobo": self.items_kobo,
                "tax_kobo": self.tax_kobo,
                "service_fee_base_kobo": self.service_fee_base_kobo,
                "service_fee_comms_kobo": self.service_fee_comms_kobo,
                "service_fee_gateway_kobo": self.service_fee_gateway_kobo,
                "total_kobo": self.total_kobo,
                "currency": self.currency,
            },
            "supplier_response": self.supplier_response,
            "supplier_note": self.supplier_note,
            "supplier_responded_at": to_utc_z(self.supplier_responded_at),
            "resolution": self.resolution,
            "admin_note": self.admin_note,
            "closed_at": to_utc_z(self.closed_at),
            "requested_at": to_utc_z(self.requested_at),
        }
        if include_children:
            data["items"] = [item.to_dict() for item in self.items]
            data["events"] = [evt.to_dict() for evt in self.events]
        return data


class RefundItem(db.Model):
    __tablename__ = "refund_items"
    __table_args__ = (
        db.UniqueConstraint("refund_id", "order_item_id", name="uq_refund_items_refund_item"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    refund_id = db.Column(db.Integer, db.ForeignKey("refunds.id"), nullable=False, index=True)
    order_item_id = db.Column(db.Integer, db.ForeignKey("order_items.id"), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price_kobo = db.Column(db.Integer, nullable=False)
    supplier_unit_cost_kobo = db.Column(db.Integer, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_item_id": self.order_item_id,
            "quantity": self.quantity,
            "unit_price_kobo": self.unit_price_kobo,
        }


class RefundEvent(db.Model):
    """Append-only audit trail of every refund transition."""
    __tablename__ = "refund_events"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id = db.Column(db.Integer, primary_key=True)
    refund_id = db.Column(db.Integer, db.ForeignKey("refunds.id"), nullable=False, index=True)
    event_type = db.Column(db.String(32), nullable=False)
    from_status = db.Column(db.String(32), nullable=True)
    to_status = db.Column(db.String(32), nullable=True)
    message = db.Column(db.Text, nullable=True)
    meta_json = db.Column(db.Text, nullable=True)
    actor_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_type": self.event_type,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "message": self.message,
            "meta": load_json(self.meta_json),
            "actor_user_id": self.actor_user_id,
            "created_at": to_utc_z(self.created_at),
        }
