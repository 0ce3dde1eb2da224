from __future__ import annotations

from ..extensions import db
from ..states import PurchaseOrderStatus, PayoutStatus
from ..time_utils import to_utc_z
from .common import status_column, enum_value


class PurchaseOrder(db.Model):
    """
    One supplier's slice of one order.

    INVARIANTS:
    - At most one PO per (order, supplier) (uq_purchase_orders_order_supplier)
    - supplier_order_ref is generated once and reused for every notification
    - status only moves through states.PURCHASE_ORDER_TRANSITIONS
    - DELIVERED is reached through delivery-code verification, or through the
      admin repair path which also sets delivered_without_verification
    - refund_requested_at flags a refund without touching status
    """
    __tablename__ = "purchase_orders"
    __table_args__ = (
        db.UniqueConstraint("order_id", "supplier_id", name="uq_purchase_orders_order_supplier"),
        db.Index("ix_purchase_orders_supplier_status", "supplier_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id"), nullable=False, index=True)
    supplier_order_ref = db.Column(db.String(32), nullable=True, unique=True)

    # Sum of chosen supplier unit cost x quantity over linked items
    supplier_amount_kobo = db.Column(db.Integer, nullable=False, default=0)
    currency = db.Column(db.String(3), nullable=False, default="NGN")

    status = status_column(PurchaseOrderStatus, default=PurchaseOrderStatus.CREATED, index=True)
    payout_status = status_column(PayoutStatus, default=PayoutStatus.PENDING)

    shipped_at = db.Column(db.DateTime(timezone=True), nullable=True)
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    delivered_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    delivered_without_verification = db.Column(db.Boolean, nullable=False, default=False)
    delivery_verified_at = db.Column(db.DateTime(timezone=True), nullable=True)
    refund_requested_at = db.Column(db.DateTime(timezone=True), nullable=True)
    paid_out_at = db.Column(db.DateTime(timezone=True), nullable=True)
    canceled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True, onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    order = db.relationship("Order", backref=db.backref("purchase_orders", lazy=True))
    supplier = db.relationship("Supplier", backref=db.backref("purchase_orders", lazy=True))
    items = db.relationship("PurchaseOrderItem", backref="purchase_order", lazy=True)
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "supplier_id": self.supplier_id,
            "supplier_order_ref": self.supplier_order_ref,
            "supplier_amount_kobo": self.supplier_amount_kobo,
            "currency": self.currency,
            "status": enum_value(self.status),
            "payout_status": enum_value(self.payout_status),
            "shipped_at": to_utc_z(self.shipped_at),
            "delivered_at": to_utc_z(self.delivered_at),
            "delivered_by_user_id": self.delivered_by_user_id,
            "delivered_without_verification": self.delivered_without_verification,
            "delivery_verified_at": to_utc_z(self.delivery_verified_at),
            "refund_requested": self.refund_requested_at is not None,
            "refund_requested_at": to_utc_z(self.refund_requested_at),
            "paid_out_at": to_utc_z(self.paid_out_at),
            "created_at": to_utc_z(self.created_at),
            "version_id": self.version_id,
        }


class PurchaseOrderItem(db.Model):
    """Link row; an order item belongs to exactly one PO."""
    __tablename__ = "purchase_order_items"
    __table_args__ = (
        db.UniqueConstraint("order_item_id", name="uq_purchase_order_items_order_item"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    purchase_order_id = db.Column(db.Integer, db.ForeignKey("purchase_orders.id"), nullable=False, index=True)
    order_item_id = db.Column(db.Integer, db.ForeignKey("order_items.id"), nullable=False)

    order_item = db.relationship("OrderItem")


class DeliveryChallenge(db.Model):
    """
    One-time delivery confirmation code for a PO.

    Only a bcrypt hash of the code is stored, with its per-issuance salt kept
    alongside for audit. The newest non-superseded row is the active one;
    older rows are retained as history.

    INVARIANT: verified_at, once set, is never cleared or overwritten.
    """
    __tablename__ = "delivery_challenges"
    __table_args__ = (
        db.Index("ix_delivery_challenges_po_created", "purchase_order_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    purchase_order_id = db.Column(db.Integer, db.ForeignKey("purchase_orders.id"), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    issued_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    code_salt = db.Column(db.String(64), nullable=False)
    code_hash = db.Column(db.String(128), nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    locked_until = db.Column(db.DateTime(timezone=True), nullable=True)
    verified_at = db.Column(db.DateTime(timezone=True), nullable=True)
    verified_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    consumed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    superseded_at = db.Column(db.DateTime(timezone=True), nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        # Never include the hash or salt
        return {
            "id": self.id,
            "purchase_order_id": self.purchase_order_id,
            "created_at": to_utc_z(self.created_at),
            "expires_at": to_utc_z(self.expires_at),
            "attempts": self.attempts,
            "locked_until": to_utc_z(self.locked_until),
            "verified_at": to_utc_z(self.verified_at),
        }
