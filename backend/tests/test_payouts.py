"""
Payout release tests.

Verifies:
- Release is refused until delivery is confirmed by code
- Supplier payout readiness gates release
- Releasing twice pays once
- The conditional PAID update wins exactly once, also against an interleaved release
- Holds block release until lifted
- An open refund blocks release
"""

import pytest

from marketplace.errors import AuthorizationError, NothingToReleaseError, StateConflictError
from marketplace.models import PaymentEvent, PurchaseOrder, Supplier, SupplierPaymentAllocation
from marketplace.services import ledger_service, payout_service, refund_service
from marketplace.services.notification_service import list_notifications
from marketplace.services.concurrency import UnitOfWork
from marketplace.states import AllocationStatus, BankVerificationStatus, PayoutStatus
from marketplace.time_utils import utcnow


def _release(db_session, po_id, actor):
    return payout_service.release_payout(UnitOfWork(db_session), po_id, actor)


# =============================================================================
# PRECONDITIONS
# =============================================================================


class TestReleasePreconditions:

    def test_not_delivered(self, db_session, shipped_order, supplier_a_actor):
        with pytest.raises(StateConflictError) as exc:
            _release(db_session, shipped_order.po_a.id, supplier_a_actor)
        assert exc.value.code == "PO_NOT_DELIVERED"
        assert exc.value.status_code == 409

    def test_other_supplier_forbidden(self, db_session, delivered_order, supplier_b_actor):
        with pytest.raises(AuthorizationError):
            _release(db_session, delivered_order.po_a.id, supplier_b_actor)

    def test_customer_forbidden(self, db_session, delivered_order, customer_actor):
        with pytest.raises(AuthorizationError):
            _release(db_session, delivered_order.po_a.id, customer_actor)

    def test_supplier_not_payout_ready(self, db_session, delivered_order, supplier_a, supplier_a_actor):
        supplier = db_session.get(Supplier, supplier_a.id)
        supplier.bank_verification_status = BankVerificationStatus.PENDING
        db_session.commit()

        with pytest.raises(StateConflictError) as exc:
            _release(db_session, delivered_order.po_a.id, supplier_a_actor)
        assert exc.value.code == "SUPPLIER_NOT_PAYOUT_READY"
        assert "bank_verification" in exc.value.to_dict()["missing"]

    def test_held_allocation(self, db_session, delivered_order, supplier_a, supplier_a_actor, admin_actor):
        allocation_id = delivered_order.allocations[supplier_a.id].id
        payout_service.hold_allocation(UnitOfWork(db_session), allocation_id, admin_actor, reason="KYC review")

        with pytest.raises(StateConflictError) as exc:
            _release(db_session, delivered_order.po_a.id, supplier_a_actor)
        assert exc.value.code == "ALLOCATION_HELD"

    def test_nothing_to_release(self, db_session, delivered_order, supplier_a, supplier_a_actor):
        allocation = db_session.get(SupplierPaymentAllocation, delivered_order.allocations[supplier_a.id].id)
        db_session.delete(allocation)
        db_session.commit()

        with pytest.raises(NothingToReleaseError):
            _release(db_session, delivered_order.po_a.id, supplier_a_actor)

    def test_open_refund_blocks(self, db_session, delivered_order, customer_actor, supplier_a_actor):
        refund_service.request_refund(
            UnitOfWork(db_session), delivered_order.order.id, customer_actor, "Bag was torn",
            refund_service.SinglePurchaseOrder(delivered_order.po_a.id),
        )
        with pytest.raises(StateConflictError) as exc:
            _release(db_session, delivered_order.po_a.id, supplier_a_actor)
        assert exc.value.code == "REFUND_OPEN"


# =============================================================================
# RELEASE
# =============================================================================


class TestRelease:

    def test_release_pays_allocation(self, db_session, delivered_order, supplier_a, supplier_a_actor):
        result = _release(db_session, delivered_order.po_a.id, supplier_a_actor)

        assert result.already_released is False
        allocation = db_session.get(SupplierPaymentAllocation, delivered_order.allocations[supplier_a.id].id)
        assert allocation.status == AllocationStatus.PAID
        assert allocation.released_at is not None
        po = db_session.get(PurchaseOrder, delivered_order.po_a.id)
        assert po.payout_status == PayoutStatus.RELEASED
        assert po.paid_out_at is not None

    def test_release_twice_pays_once(self, db_session, delivered_order, supplier_a, supplier_a_actor, admin_actor):
        _release(db_session, delivered_order.po_a.id, supplier_a_actor)
        again = _release(db_session, delivered_order.po_a.id, admin_actor)

        assert again.already_released is True
        balance = ledger_service.get_supplier_balance(db_session, supplier_a.id)
        assert balance.paid_out_kobo == 800_000
        assert balance.ledger_credits_kobo == 0
        events = db_session.query(PaymentEvent).filter(PaymentEvent.event_type == "PAYOUT_RELEASED").count()
        assert events == 1

    def test_conditional_update_wins_once(self, db_session, delivered_order, supplier_a):
        allocation_id = delivered_order.allocations[supplier_a.id].id
        now = utcnow()
        assert payout_service._mark_allocation_paid(db_session, allocation_id, None, now) is True
        assert payout_service._mark_allocation_paid(db_session, allocation_id, None, now) is False
        db_session.commit()

    def test_interleaved_releases_pay_once(
        self, db_session, delivered_order, supplier_a, supplier_a_actor, admin_actor, monkeypatch
    ):
        # The second release commits after the first has passed every
        # precondition read but before its PAID write.
        real_mark = payout_service._mark_allocation_paid
        interleaved = []
        results = []

        def _mark_after_competitor(session, allocation_id, actor_user_id, now):
            if not interleaved:
                interleaved.append(allocation_id)
                results.append(_release(db_session, delivered_order.po_a.id, admin_actor))
            return real_mark(session, allocation_id, actor_user_id, now)

        monkeypatch.setattr(payout_service, "_mark_allocation_paid", _mark_after_competitor)
        results.append(_release(db_session, delivered_order.po_a.id, supplier_a_actor))

        assert len(results) == 2
        assert sorted(r.already_released for r in results) == [False, True]
        allocation = db_session.get(SupplierPaymentAllocation, delivered_order.allocations[supplier_a.id].id)
        assert allocation.status == AllocationStatus.PAID
        events = db_session.query(PaymentEvent).filter(PaymentEvent.event_type == "PAYOUT_RELEASED").count()
        assert events == 1
        balance = ledger_service.get_supplier_balance(db_session, supplier_a.id)
        assert balance.paid_out_kobo == 800_000

    def test_other_po_unaffected(self, db_session, delivered_order, supplier_b, supplier_a_actor):
        _release(db_session, delivered_order.po_a.id, supplier_a_actor)
        allocation = db_session.get(SupplierPaymentAllocation, delivered_order.allocations[supplier_b.id].id)
        assert allocation.status == AllocationStatus.PENDING

    def test_supplier_notified_in_app(self, db_session, delivered_order, supplier_a_user, supplier_a_actor):
        _release(db_session, delivered_order.po_a.id, supplier_a_actor)
        types = [n.notification_type for n in list_notifications(db_session, supplier_a_user.id)]
        assert "SUPPLIER_PAYOUT_RELEASED" in types


# =============================================================================
# HOLDS
# =============================================================================


class TestHolds:

    def test_hold_is_admin_only(self, db_session, paid_order, supplier_a, supplier_a_actor):
        with pytest.raises(AuthorizationError):
            payout_service.hold_allocation(
                UnitOfWork(db_session), paid_order.allocations[supplier_a.id].id, supplier_a_actor
            )

    def test_hold_sets_po_payout_status(self, db_session, paid_order, supplier_a, admin_actor):
        allocation = payout_service.hold_allocation(
            UnitOfWork(db_session), paid_order.allocations[supplier_a.id].id, admin_actor, reason="KYC review"
        )
        assert allocation.status == AllocationStatus.HELD
        assert allocation.hold_reason == "KYC review"
        assert db_session.get(PurchaseOrder, paid_order.po_a.id).payout_status == PayoutStatus.HELD

    def test_unhold_before_delivery_returns_to_pending(self, db_session, paid_order, supplier_a, admin_actor):
        allocation_id = paid_order.allocations[supplier_a.id].id
        payout_service.hold_allocation(UnitOfWork(db_session), allocation_id, admin_actor)
        allocation = payout_service.release_hold(UnitOfWork(db_session), allocation_id, admin_actor)
        assert allocation.status == AllocationStatus.PENDING
        assert db_session.get(PurchaseOrder, paid_order.po_a.id).payout_status == PayoutStatus.PENDING

    def test_unhold_after_delivery_allows_release(self, db_session, delivered_order, supplier_a, supplier_a_actor, admin_actor):
        allocation_id = delivered_order.allocations[supplier_a.id].id
        payout_service.hold_allocation(UnitOfWork(db_session), allocation_id, admin_actor)
        allocation = payout_service.release_hold(UnitOfWork(db_session), allocation_id, admin_actor)
        assert allocation.status == AllocationStatus.APPROVED

        assert _release(db_session, delivered_order.po_a.id, supplier_a_actor).already_released is False

    def test_unhold_requires_hold(self, db_session, paid_order, supplier_a, admin_actor):
        with pytest.raises(StateConflictError) as exc:
            payout_service.release_hold(UnitOfWork(db_session), paid_order.allocations[supplier_a.id].id, admin_actor)
        assert exc.value.code == "ALLOCATION_NOT_HELD"


# =============================================================================
# READINESS
# =============================================================================


class TestPayoutReadiness:

    def test_ready_supplier(self, supplier_a):
        readiness = payout_service.check_payout_readiness(supplier_a)
        assert readiness.ready is True
        assert readiness.missing == []

    def test_missing_fields_are_listed(self, db_session, supplier_a):
        supplier = db_session.get(Supplier, supplier_a.id)
        supplier.is_payout_enabled = False
        supplier.account_number = None
        supplier.bank_country = None
        db_session.commit()

        readiness = payout_service.check_payout_readiness(supplier)
        assert readiness.ready is False
        assert readiness.missing == ["payout_enabled", "account_number", "bank_country"]
