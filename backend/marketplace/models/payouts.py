from __future__ import annotations

from sqlalchemy import event

from ..extensions import db
from ..states import AllocationStatus, LedgerEntryType, LedgerReason
from ..time_utils import to_utc_z
from .common import status_column, enum_value, load_json


class SupplierPaymentAllocation(db.Model):
    """
    Money owed to one supplier for one PO, sourced from one order payment.

    LIFECYCLE: PENDING -> APPROVED (delivery verified) -> PAID (released),
    with HELD/FAILED as side exits. A PAID allocation IS the supplier credit;
    there is no separate ledger row for a release.

    INVARIANT: at most one row per (payment, PO, supplier), and the PAID
    transition is a conditional update on the current status.
    """
    __tablename__ = "supplier_payment_allocations"
    __table_args__ = (
        db.UniqueConstraint(
            "payment_id", "purchase_order_id", "supplier_id",
            name="uq_allocations_payment_po_supplier",
        ),
        db.Index("ix_allocations_supplier_status", "supplier_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    purchase_order_id = db.Column(db.Integer, db.ForeignKey("purchase_orders.id"), nullable=False, index=True)
    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id"), nullable=False, index=True)

    amount_kobo = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="NGN")
    status = status_column(AllocationStatus, default=AllocationStatus.PENDING)
    supplier_name_snapshot = db.Column(db.String(255), nullable=True)
    hold_reason = db.Column(db.String(255), nullable=True)

    released_at = db.Column(db.DateTime(timezone=True), nullable=True)
    released_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True, onupdate=db.func.now())

    purchase_order = db.relationship("PurchaseOrder", backref=db.backref("allocations", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "payment_id": self.payment_id,
            "order_id": self.order_id,
            "purchase_order_id": self.purchase_order_id,
            "supplier_id": self.supplier_id,
            "amount_kobo": self.amount_kobo,
            "currency": self.currency,
            "status": enum_value(self.status),
            "supplier_name": self.supplier_name_snapshot,
            "hold_reason": self.hold_reason,
            "released_at": to_utc_z(self.released_at),
            "created_at": to_utc_z(self.created_at),
        }


class SupplierLedgerEntry(db.Model):
    """
    Append-only supplier balance adjustment.

    WHY: Refund debits, penalties and manual corrections must be auditable
    and replayable. Rows are never updated or deleted; a mistake is fixed
    with a compensating entry (REVERSAL).

    amount_kobo is always positive; entry_type carries the sign.
    """
    __tablename__ = "supplier_ledger_entries"
    __table_args__ = (
        db.CheckConstraint("amount_kobo > 0", name="ck_supplier_ledger_amount_positive"),
        db.Index("ix_supplier_ledger_supplier_created", "supplier_id", "created_at"),
        db.Index("ix_supplier_ledger_reference", "reference_type", "reference_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id"), nullable=False, index=True)
    entry_type = status_column(LedgerEntryType)
    reason = status_column(LedgerReason)
    amount_kobo = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="NGN")

    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)
    purchase_order_id = db.Column(db.Integer, db.ForeignKey("purchase_orders.id"), nullable=True, index=True)
    reference_type = db.Column(db.String(32), nullable=True)  # REFUND, ADJUSTMENT, ...
    reference_id = db.Column(db.String(64), nullable=True)
    note = db.Column(db.Text, nullable=True)
    meta_json = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    @property
    def signed_amount_kobo(self) -> int:
        return self.amount_kobo if self.entry_type == LedgerEntryType.CREDIT else -self.amount_kobo

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "supplier_id": self.supplier_id,
            "entry_type": enum_value(self.entry_type),
            "reason": enum_value(self.reason),
            "amount_kobo": self.amount_kobo,
            "signed_amount_kobo": self.signed_amount_kobo,
            "currency": self.currency,
            "order_id": self.order_id,
            "purchase_order_id": self.purchase_order_id,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "note": self.note,
            "meta": load_json(self.meta_json),
            "created_at": to_utc_z(self.created_at),
            "created_by_user_id": self.created_by_user_id,
        }


class LedgerImmutableError(Exception):
    """Raised when code tries to modify or delete a written ledger entry."""


@event.listens_for(SupplierLedgerEntry, "before_update")
def _reject_ledger_update(mapper, connection, target):
    raise LedgerImmutableError(f"Ledger entry {target.id} is append-only")


@event.listens_for(SupplierLedgerEntry, "before_delete")
def _reject_ledger_delete(mapper, connection, target):
    raise LedgerImmutableError(f"Ledger entry {target.id} is append-only")
