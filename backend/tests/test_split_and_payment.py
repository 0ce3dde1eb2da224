"""
Order splitting and payment confirmation tests.

Verifies:
- One purchase order per supplier, funded with supplier cost x quantity
- Replaying the payment signal or the split creates and changes nothing
- Supplier references are stable across re-notification
- A purchase order emptied by reassignment fails its unpaid allocation
- Amount and ownership mismatches are rejected
- A failing notifier never undoes the business change
"""

import pytest

from marketplace.errors import NotFoundError, PreconditionError
from marketplace.models import (
    OrderActivity,
    OrderItem,
    PurchaseOrder,
    PurchaseOrderItem,
    SupplierPaymentAllocation,
)
from marketplace.services import activity_service, purchase_order_service
from marketplace.services.concurrency import UnitOfWork
from marketplace.states import AllocationStatus, OrderStatus, PaymentStatus, PurchaseOrderStatus


def _confirm(db_session, built, amount=None):
    return purchase_order_service.record_payment_confirmed(
        UnitOfWork(db_session),
        payment_id=built.payment.id,
        order_id=built.order.id,
        amount_kobo=built.payment.amount_kobo if amount is None else amount,
        status="PAID",
    )


# =============================================================================
# PAYMENT CONFIRMED
# =============================================================================


class TestPaymentConfirmed:

    def test_creates_funded_po_per_supplier(self, db_session, paid_order, supplier_a, supplier_b):
        assert paid_order.po_a.status == PurchaseOrderStatus.FUNDED
        assert paid_order.po_b.status == PurchaseOrderStatus.FUNDED
        assert paid_order.po_a.supplier_amount_kobo == 800_000
        assert paid_order.po_b.supplier_amount_kobo == 400_000
        assert paid_order.order.status == OrderStatus.PAID
        assert paid_order.payment.status == PaymentStatus.PAID

    def test_allocations_pending_at_supplier_cost(self, db_session, paid_order, supplier_a, supplier_b):
        allocations = paid_order.allocations
        assert allocations[supplier_a.id].status == AllocationStatus.PENDING
        assert allocations[supplier_a.id].amount_kobo == 800_000
        assert allocations[supplier_b.id].amount_kobo == 400_000
        assert allocations[supplier_a.id].supplier_name_snapshot == "A Foods"

    def test_replay_is_idempotent(self, db_session, paid_order, notifier):
        refs = {po.id: po.supplier_order_ref for po in (paid_order.po_a, paid_order.po_b)}
        notifier.reset()

        again = _confirm(db_session, paid_order)

        assert again.split.created_ids == []
        assert again.split.changed_ids == []
        assert db_session.query(PurchaseOrder).count() == 2
        assert db_session.query(PurchaseOrderItem).count() == 2
        assert db_session.query(SupplierPaymentAllocation).count() == 2
        assert {po.id: po.supplier_order_ref for po in again.split.purchase_orders} == refs
        assert notifier.sent == []

    def test_suppliers_notified_once_on_whatsapp(self, db_session, order_factory, notifier):
        built = order_factory()
        _confirm(db_session, built)

        recipients = sorted(m.recipient for m in notifier.sent)
        assert recipients == ["+2348050000001", "+2348050000002"]
        assert all(m.channel == "WHATSAPP" for m in notifier.sent)
        body = next(m.body for m in notifier.sent if m.recipient == "+2348050000001")
        assert "Ofada rice 5kg x1" in body
        assert "NGN 8,000.00" in body

    def test_amount_mismatch_rejected(self, db_session, unpaid_order):
        with pytest.raises(PreconditionError) as exc:
            _confirm(db_session, unpaid_order, amount=1)
        assert exc.value.code == "PAYMENT_AMOUNT_MISMATCH"
        assert db_session.query(PurchaseOrder).count() == 0

    def test_payment_for_other_order_rejected(self, db_session, order_factory):
        first = order_factory()
        second = order_factory()
        with pytest.raises(PreconditionError) as exc:
            purchase_order_service.record_payment_confirmed(
                UnitOfWork(db_session),
                payment_id=first.payment.id,
                order_id=second.order.id,
                amount_kobo=first.payment.amount_kobo,
                status="PAID",
            )
        assert exc.value.code == "PAYMENT_ORDER_MISMATCH"

    def test_unknown_payment(self, db_session, unpaid_order):
        with pytest.raises(NotFoundError):
            purchase_order_service.record_payment_confirmed(
                UnitOfWork(db_session), payment_id=9999, order_id=unpaid_order.order.id,
                amount_kobo=1, status="PAID",
            )

    def test_failed_status_does_not_split(self, db_session, unpaid_order):
        result = purchase_order_service.record_payment_confirmed(
            UnitOfWork(db_session),
            payment_id=unpaid_order.payment.id,
            order_id=unpaid_order.order.id,
            amount_kobo=unpaid_order.payment.amount_kobo,
            status="FAILED",
        )
        assert result.split is None
        assert result.payment.status == PaymentStatus.FAILED
        assert db_session.query(PurchaseOrder).count() == 0


# =============================================================================
# SPLITTING
# =============================================================================


class TestSplit:

    def test_split_twice_changes_nothing(self, db_session, paid_order):
        result = purchase_order_service.split_order(UnitOfWork(db_session), paid_order.order.id)
        assert result.created_ids == []
        assert result.changed_ids == []
        assert len(result.purchase_orders) == 2

    def test_quantity_change_reprices_po(self, db_session, paid_order):
        item = db_session.get(OrderItem, paid_order.item_a.id)
        item.quantity = 2
        db_session.commit()

        result = purchase_order_service.split_order(UnitOfWork(db_session), paid_order.order.id)
        assert result.changed_ids == [paid_order.po_a.id]
        assert db_session.get(PurchaseOrder, paid_order.po_a.id).supplier_amount_kobo == 1_600_000

    def test_emptied_po_fails_its_allocation(self, db_session, paid_order, supplier_a, supplier_b):
        item = db_session.get(OrderItem, paid_order.item_b.id)
        item.chosen_supplier_id = supplier_a.id
        db_session.commit()

        confirmation = _confirm(db_session, paid_order)

        assert db_session.get(PurchaseOrder, paid_order.po_b.id).supplier_amount_kobo == 0
        emptied = db_session.get(SupplierPaymentAllocation, paid_order.allocations[supplier_b.id].id)
        assert emptied.status == AllocationStatus.FAILED
        assert emptied in confirmation.allocations
        moved_to = db_session.get(SupplierPaymentAllocation, paid_order.allocations[supplier_a.id].id)
        assert moved_to.status == AllocationStatus.PENDING
        assert moved_to.amount_kobo == 1_200_000

    def test_item_without_supplier_is_reported(self, db_session, unpaid_order):
        item = db_session.get(OrderItem, unpaid_order.item_b.id)
        item.chosen_supplier_id = None
        db_session.commit()

        result = purchase_order_service.split_order(UnitOfWork(db_session), unpaid_order.order.id)
        assert result.unassigned_item_ids == [unpaid_order.item_b.id]
        assert len(result.purchase_orders) == 1

    def test_supplier_refs_are_unique(self, db_session, paid_order):
        refs = {paid_order.po_a.supplier_order_ref, paid_order.po_b.supplier_order_ref}
        assert len(refs) == 2
        assert None not in refs

    def test_unknown_order(self, db_session):
        with pytest.raises(NotFoundError):
            purchase_order_service.split_order(UnitOfWork(db_session), 4242)


# =============================================================================
# NOTIFICATION FAILURES
# =============================================================================


class TestNotificationFailure:

    def test_failed_send_keeps_split_and_logs_activity(self, db_session, order_factory, notifier):
        notifier.fail = True
        built = order_factory()

        result = _confirm(db_session, built)

        assert len(result.split.purchase_orders) == 2
        errors = (
            db_session.query(OrderActivity)
            .filter(
                OrderActivity.order_id == built.order.id,
                OrderActivity.activity_type == activity_service.ACTIVITY_SUPPLIER_NOTIFY_ERROR,
            )
            .count()
        )
        assert errors == 2

    def test_resend_reuses_references(self, db_session, paid_order, admin_actor, notifier):
        notifier.reset()
        queued = purchase_order_service.resend_supplier_notifications(
            UnitOfWork(db_session), paid_order.order.id, admin_actor
        )
        assert queued == 2
        refs = {m.payload["supplier_order_ref"] for m in notifier.sent}
        assert refs == {paid_order.po_a.supplier_order_ref, paid_order.po_b.supplier_order_ref}
