from __future__ import annotations

from ..extensions import db
from ..states import OrderStatus, PaymentStatus, offer_ref
from ..time_utils import to_utc_z
from .common import status_column, enum_value, load_json


class Order(db.Model):
    """
    One customer checkout.

    Money is stored in kobo. The fee breakdown mirrors what the customer was
    charged: total = subtotal + tax + service fees (base, comms, gateway).
    Orders are never deleted, only status-transitioned.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_user_status", "user_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    status = status_column(OrderStatus, default=OrderStatus.CREATED, index=True)

    subtotal_kobo = db.Column(db.Integer, nullable=False, default=0)
    tax_kobo = db.Column(db.Integer, nullable=False, default=0)
    service_fee_base_kobo = db.Column(db.Integer, nullable=False, default=0)
    service_fee_comms_kobo = db.Column(db.Integer, nullable=False, default=0)
    service_fee_gateway_kobo = db.Column(db.Integer, nullable=False, default=0)
    total_kobo = db.Column(db.Integer, nullable=False, default=0)
    currency = db.Column(db.String(3), nullable=False, default="NGN")

    # Shipping destination
    ship_to_name = db.Column(db.String(255), nullable=True)
    ship_to_phone = db.Column(db.String(32), nullable=True)
    ship_to_address = db.Column(db.Text, nullable=True)
    ship_to_city = db.Column(db.String(128), nullable=True)
    ship_to_state = db.Column(db.String(128), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    canceled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    user = db.relationship("User", foreign_keys=[user_id])
    items = db.relationship("OrderItem", backref="order", lazy=True, order_by="OrderItem.id")
    payments = db.relationship("Payment", backref="order", lazy=True, order_by="Payment.id")

    @property
    def service_fee_kobo(self) -> int:
        return (self.service_fee_base_kobo or 0) + (self.service_fee_comms_kobo or 0) + (self.service_fee_gateway_kobo or 0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "status": enum_value(self.status),
            "subtotal_kobo": self.subtotal_kobo,
            "tax_kobo": self.tax_kobo,
            "service_fee_kobo": self.service_fee_kobo,
            "total_kobo": self.total_kobo,
            "currency": self.currency,
            "ship_to": {
                "name": self.ship_to_name,
                "phone": self.ship_to_phone,
                "address": self.ship_to_address,
                "city": self.ship_to_city,
                "state": self.ship_to_state,
            },
            "created_at": to_utc_z(self.created_at),
            "paid_at": to_utc_z(self.paid_at),
            "canceled_at": to_utc_z(self.canceled_at),
        }


class OrderItem(db.Model):
    """
    One line of an order.

    WHY chosen_* snapshot: supplier, cost and offer are frozen at checkout so
    later catalog edits never change what a supplier is owed. The offer is a
    tagged reference (kind + id), see states.offer_ref.
    """
    __tablename__ = "order_items"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=True)
    title = db.Column(db.String(255), nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    unit_price_kobo = db.Column(db.Integer, nullable=False)

    chosen_supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id"), nullable=True, index=True)
    chosen_supplier_unit_cost_kobo = db.Column(db.Integer, nullable=True)
    chosen_offer_kind = db.Column(db.String(16), nullable=True)
    chosen_offer_id = db.Column(db.Integer, nullable=True)

    fulfillment_status = db.Column(db.String(32), nullable=False, default="PENDING")

    @property
    def chosen_offer(self):
        return offer_ref(self.chosen_offer_kind, self.chosen_offer_id)

    @property
    def line_total_kobo(self) -> int:
        return (self.unit_price_kobo or 0) * max(1, self.quantity or 0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "title": self.title,
            "quantity": self.quantity,
            "unit_price_kobo": self.unit_price_kobo,
            "chosen_supplier_id": self.chosen_supplier_id,
            "chosen_supplier_unit_cost_kobo": self.chosen_supplier_unit_cost_kobo,
            "fulfillment_status": self.fulfillment_status,
        }


class Payment(db.Model):
    """Customer payment against an order, as reported by the gateway signal."""
    __tablename__ = "payments"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    reference = db.Column(db.String(64), nullable=False, unique=True)
    provider = db.Column(db.String(32), nullable=True)
    amount_kobo = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="NGN")
    status = status_column(PaymentStatus, default=PaymentStatus.PENDING, index=True)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "reference": self.reference,
            "amount_kobo": self.amount_kobo,
            "currency": self.currency,
            "status": enum_value(self.status),
            "paid_at": to_utc_z(self.paid_at),
        }


class PaymentEvent(db.Model):
    """Append-only audit of what happened downstream of a payment."""
    __tablename__ = "payment_events"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id = db.Column(db.Integer, primary_key=True)
    payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), nullable=False, index=True)
    event_type = db.Column(db.String(64), nullable=False)  # DELIVERY_CONFIRMED, PAYOUT_RELEASED, ...
    data_json = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "payment_id": self.payment_id,
            "event_type": self.event_type,
            "data": load_json(self.data_json),
            "created_at": to_utc_z(self.created_at),
        }


class OrderActionCode(db.Model):
    """
    One-time code authorizing a sensitive admin action on an order
    (currently only CANCEL_ORDER).

    The row id is handed back as the single-use code token after a
    successful verify; consuming it stamps consumed_at.
    """
    __tablename__ = "order_action_codes"
    __table_args__ = (
        db.Index("ix_order_action_codes_lookup", "order_id", "user_id", "purpose"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    purpose = db.Column(db.String(32), nullable=False)
    code_salt = db.Column(db.String(64), nullable=False)
    code_hash = db.Column(db.String(128), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    locked_until = db.Column(db.DateTime(timezone=True), nullable=True)
    verified_at = db.Column(db.DateTime(timezone=True), nullable=True)
    consumed_at = db.Column(db.DateTime(timezone=True), nullable=True)
