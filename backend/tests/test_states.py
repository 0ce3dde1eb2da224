"""
State machine tests.

Verifies:
- Allowed transitions return the target state
- Illegal transitions raise IllegalTransitionError (409)
- DELIVERED and CANCELED are terminal for purchase orders
- Offer references round-trip through their persisted columns
"""

import pytest

from marketplace.errors import IllegalTransitionError
from marketplace.states import (
    AllocationStatus,
    BaseOffer,
    OrderStatus,
    PayoutStatus,
    PurchaseOrderStatus,
    RefundStatus,
    VariantOffer,
    can_transition,
    offer_ref,
    transition,
)


class TestPurchaseOrderTransitions:

    @pytest.mark.parametrize(
        "current,target",
        [
            (PurchaseOrderStatus.CREATED, PurchaseOrderStatus.FUNDED),
            (PurchaseOrderStatus.FUNDED, PurchaseOrderStatus.CONFIRMED),
            (PurchaseOrderStatus.CONFIRMED, PurchaseOrderStatus.SHIPPED),
            (PurchaseOrderStatus.SHIPPED, PurchaseOrderStatus.OUT_FOR_DELIVERY),
            (PurchaseOrderStatus.OUT_FOR_DELIVERY, PurchaseOrderStatus.DELIVERED),
        ],
    )
    def test_forward_path(self, current, target):
        assert transition(current, target) == target

    @pytest.mark.parametrize("terminal", [PurchaseOrderStatus.DELIVERED, PurchaseOrderStatus.CANCELED])
    def test_terminal_states(self, terminal):
        for target in PurchaseOrderStatus:
            assert not can_transition(terminal, target)

    def test_cannot_skip_to_delivered_from_funded(self):
        with pytest.raises(IllegalTransitionError) as exc:
            transition(PurchaseOrderStatus.FUNDED, PurchaseOrderStatus.DELIVERED)
        assert exc.value.status_code == 409
        assert exc.value.to_dict()["current"] == "FUNDED"

    def test_shipped_cannot_be_canceled(self):
        assert not can_transition(PurchaseOrderStatus.SHIPPED, PurchaseOrderStatus.CANCELED)

    def test_accepts_raw_string_current(self):
        assert transition("SHIPPED", PurchaseOrderStatus.DELIVERED) == PurchaseOrderStatus.DELIVERED


class TestOtherMachines:

    def test_paid_allocation_is_final(self):
        for target in AllocationStatus:
            assert not can_transition(AllocationStatus.PAID, target)

    def test_held_allocation_can_return(self):
        assert can_transition(AllocationStatus.HELD, AllocationStatus.PENDING)
        assert can_transition(AllocationStatus.HELD, AllocationStatus.APPROVED)
        assert not can_transition(AllocationStatus.HELD, AllocationStatus.PAID)

    def test_released_payout_only_becomes_refunded(self):
        assert can_transition(PayoutStatus.RELEASED, PayoutStatus.REFUNDED)
        assert not can_transition(PayoutStatus.RELEASED, PayoutStatus.PENDING)

    def test_paid_order_cannot_be_canceled(self):
        assert not can_transition(OrderStatus.PAID, OrderStatus.CANCELED)

    def test_refund_closes_only_after_supplier_or_escalation(self):
        assert not can_transition(RefundStatus.SUPPLIER_REVIEW, RefundStatus.CLOSED)
        assert can_transition(RefundStatus.SUPPLIER_ACCEPTED, RefundStatus.CLOSED)
        assert can_transition(RefundStatus.ESCALATED, RefundStatus.CLOSED)


class TestOfferRef:

    def test_base_and_variant(self):
        assert offer_ref("BASE", 7) == BaseOffer(7)
        assert offer_ref("VARIANT", 9) == VariantOffer(9)

    def test_missing_parts(self):
        assert offer_ref(None, 3) is None
        assert offer_ref("BASE", None) is None

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            offer_ref("BUNDLE", 1)
