"""
Delivery code tests.

Verifies:
- Codes go to the customer, only a hash is stored
- Issue is refused before shipment and throttled by the cooldown
- A new issuance supersedes the previous code
- Wrong codes count towards a lockout that survives a rollback
- Expired codes are rejected
- Verifying again after success is a no-op, also when two verifications interleave
- The admin repair path still requires a code before payout
"""

from datetime import timedelta

import pytest

from marketplace.errors import (
    AuthorizationError,
    IllegalTransitionError,
    PreconditionError,
    RateLimitError,
    StateConflictError,
)
from marketplace.models import DeliveryChallenge, PaymentEvent, PurchaseOrder, SupplierPaymentAllocation
from marketplace.services import delivery_challenge_service as challenges
from marketplace.services import one_time_code, payout_service, purchase_order_service
from marketplace.services.concurrency import UnitOfWork
from marketplace.states import AllocationStatus, ChallengeState, PurchaseOrderStatus
from marketplace.time_utils import utcnow


def _issue(db_session, po_id, actor):
    return challenges.issue_delivery_code(UnitOfWork(db_session), po_id, actor)


def _verify(db_session, po_id, code, actor):
    return challenges.verify_delivery_code(UnitOfWork(db_session), po_id, code, actor)


def _wrong(code):
    return "000000" if code != "000000" else "111111"


def _age_challenge(db_session, challenge_id, **fields):
    row = db_session.get(DeliveryChallenge, challenge_id)
    for name, value in fields.items():
        setattr(row, name, value)
    db_session.commit()


# =============================================================================
# ISSUE
# =============================================================================


class TestIssue:

    def test_sends_code_to_customer(self, db_session, shipped_order, supplier_a_actor, notifier):
        notifier.reset()
        issued = _issue(db_session, shipped_order.po_a.id, supplier_a_actor)

        assert len(issued.code) == 6
        assert notifier.last_code("+2348030000001") == issued.code
        assert issued.channel_hint.endswith("0001")
        row = db_session.get(DeliveryChallenge, issued.challenge.id)
        assert row.code_hash != issued.code
        assert issued.code not in str(issued.to_dict())

    def test_refused_before_shipment(self, db_session, paid_order, supplier_a_actor):
        with pytest.raises(PreconditionError) as exc:
            _issue(db_session, paid_order.po_a.id, supplier_a_actor)
        assert exc.value.code == "PO_NOT_DELIVERABLE"

    def test_other_supplier_forbidden(self, db_session, shipped_order, supplier_b_actor):
        with pytest.raises(AuthorizationError):
            _issue(db_session, shipped_order.po_a.id, supplier_b_actor)

    def test_cooldown(self, db_session, shipped_order, supplier_a_actor):
        _issue(db_session, shipped_order.po_a.id, supplier_a_actor)
        with pytest.raises(RateLimitError) as exc:
            _issue(db_session, shipped_order.po_a.id, supplier_a_actor)
        assert exc.value.code == "CODE_COOLDOWN"
        assert exc.value.status_code == 429
        assert "retry_at" in exc.value.to_dict()

    def test_reissue_supersedes_previous(self, db_session, shipped_order, supplier_a_actor):
        po_id = shipped_order.po_a.id
        first = _issue(db_session, po_id, supplier_a_actor)
        _age_challenge(db_session, first.challenge.id, created_at=utcnow() - timedelta(minutes=2))
        second = _issue(db_session, po_id, supplier_a_actor)

        assert db_session.get(DeliveryChallenge, first.challenge.id).superseded_at is not None
        assert db_session.get(DeliveryChallenge, second.challenge.id).attempts == 0

        if first.code != second.code:
            with pytest.raises(PreconditionError) as exc:
                _verify(db_session, po_id, first.code, supplier_a_actor)
            assert exc.value.code == "CODE_INCORRECT"
        result = _verify(db_session, po_id, second.code, supplier_a_actor)
        assert result.already_verified is False

    def test_already_verified_returns_flag(self, db_session, delivered_order, supplier_a_actor, notifier):
        notifier.reset()
        issued = _issue(db_session, delivered_order.po_a.id, supplier_a_actor)
        assert issued.already_verified is True
        assert issued.to_dict() == {"already_verified": True}
        assert notifier.sent == []


# =============================================================================
# VERIFY
# =============================================================================


class TestVerify:

    def test_correct_code_delivers_and_approves(self, db_session, shipped_order, supplier_a, supplier_a_actor):
        po_id = shipped_order.po_a.id
        issued = _issue(db_session, po_id, supplier_a_actor)

        result = _verify(db_session, po_id, issued.code, supplier_a_actor)

        po = db_session.get(PurchaseOrder, po_id)
        assert result.already_verified is False
        assert po.status == PurchaseOrderStatus.DELIVERED
        assert po.delivered_at is not None
        assert po.delivery_verified_at is not None
        allocation = db_session.get(SupplierPaymentAllocation, shipped_order.allocations[supplier_a.id].id)
        assert allocation.status == AllocationStatus.APPROVED
        events = db_session.query(PaymentEvent).filter(PaymentEvent.event_type == "DELIVERY_CONFIRMED").count()
        assert events == 1

    def test_accepts_separators(self, db_session, shipped_order, supplier_a_actor):
        po_id = shipped_order.po_a.id
        issued = _issue(db_session, po_id, supplier_a_actor)
        spaced = f"{issued.code[:3]} {issued.code[3:]}"
        assert _verify(db_session, po_id, spaced, supplier_a_actor).already_verified is False

    @pytest.mark.parametrize("raw", ["12345", "abcdef", "1234567", None])
    def test_bad_format(self, db_session, shipped_order, supplier_a_actor, raw):
        _issue(db_session, shipped_order.po_a.id, supplier_a_actor)
        with pytest.raises(PreconditionError) as exc:
            _verify(db_session, shipped_order.po_a.id, raw, supplier_a_actor)
        assert exc.value.code == "INVALID_CODE_FORMAT"

    def test_no_active_challenge(self, db_session, shipped_order, supplier_a_actor):
        with pytest.raises(PreconditionError) as exc:
            _verify(db_session, shipped_order.po_a.id, "123456", supplier_a_actor)
        assert exc.value.code == "NO_ACTIVE_CHALLENGE"

    def test_second_verify_is_noop(self, db_session, shipped_order, supplier_a_actor):
        po_id = shipped_order.po_a.id
        issued = _issue(db_session, po_id, supplier_a_actor)
        first = _verify(db_session, po_id, issued.code, supplier_a_actor)
        verified_at = first.challenge.verified_at
        delivered_at = db_session.get(PurchaseOrder, po_id).delivered_at

        again = _verify(db_session, po_id, issued.code, supplier_a_actor)

        assert again.already_verified is True
        assert db_session.get(DeliveryChallenge, issued.challenge.id).verified_at == verified_at
        assert db_session.get(PurchaseOrder, po_id).delivered_at == delivered_at
        events = db_session.query(PaymentEvent).filter(PaymentEvent.event_type == "DELIVERY_CONFIRMED").count()
        assert events == 1

    def test_interleaved_verifications_confirm_once(
        self, db_session, shipped_order, supplier_a, supplier_a_actor, admin_actor, monkeypatch
    ):
        po_id = shipped_order.po_a.id
        issued = _issue(db_session, po_id, supplier_a_actor)
        real_matches = one_time_code.code_matches
        interleaved = []
        results = []

        # The admin's verification commits after the supplier's has read the
        # unverified challenge but before it writes verified_at.
        def _matches_after_competitor(code, code_hash):
            if not interleaved:
                interleaved.append(code)
                results.append(_verify(db_session, po_id, issued.code, admin_actor))
            return real_matches(code, code_hash)

        monkeypatch.setattr(one_time_code, "code_matches", _matches_after_competitor)
        results.append(_verify(db_session, po_id, issued.code, supplier_a_actor))

        assert len(results) == 2
        assert sorted(r.already_verified for r in results) == [False, True]
        assert db_session.get(PurchaseOrder, po_id).status == PurchaseOrderStatus.DELIVERED
        allocation = db_session.get(SupplierPaymentAllocation, shipped_order.allocations[supplier_a.id].id)
        assert allocation.status == AllocationStatus.APPROVED
        events = db_session.query(PaymentEvent).filter(PaymentEvent.event_type == "DELIVERY_CONFIRMED").count()
        assert events == 1

    def test_expired_code(self, db_session, shipped_order, supplier_a_actor):
        po_id = shipped_order.po_a.id
        issued = _issue(db_session, po_id, supplier_a_actor)
        _age_challenge(db_session, issued.challenge.id, expires_at=utcnow() - timedelta(seconds=1))

        with pytest.raises(PreconditionError) as exc:
            _verify(db_session, po_id, issued.code, supplier_a_actor)
        assert exc.value.code == "CODE_EXPIRED"
        assert db_session.get(PurchaseOrder, po_id).status == PurchaseOrderStatus.SHIPPED

    def test_wrong_code_counts_attempt(self, db_session, shipped_order, supplier_a_actor):
        po_id = shipped_order.po_a.id
        issued = _issue(db_session, po_id, supplier_a_actor)

        with pytest.raises(PreconditionError) as exc:
            _verify(db_session, po_id, _wrong(issued.code), supplier_a_actor)

        assert exc.value.code == "CODE_INCORRECT"
        assert exc.value.to_dict()["attempts_remaining"] == 4
        assert db_session.get(DeliveryChallenge, issued.challenge.id).attempts == 1


class TestLockout:

    def test_fifth_wrong_code_locks(self, db_session, shipped_order, supplier_a_actor):
        po_id = shipped_order.po_a.id
        issued = _issue(db_session, po_id, supplier_a_actor)
        wrong = _wrong(issued.code)

        for _ in range(5):
            with pytest.raises(PreconditionError):
                _verify(db_session, po_id, wrong, supplier_a_actor)

        row = db_session.get(DeliveryChallenge, issued.challenge.id)
        assert row.attempts == 5
        assert row.locked_until is not None
        assert challenges.challenge_state(row) == ChallengeState.LOCKED

        # Even the right code is refused while locked
        with pytest.raises(RateLimitError) as exc:
            _verify(db_session, po_id, issued.code, supplier_a_actor)
        assert exc.value.code == "CODE_LOCKED"
        assert db_session.get(PurchaseOrder, po_id).status == PurchaseOrderStatus.SHIPPED

    def test_lock_expiry_keeps_counter(self, db_session, shipped_order, supplier_a_actor):
        po_id = shipped_order.po_a.id
        issued = _issue(db_session, po_id, supplier_a_actor)
        wrong = _wrong(issued.code)
        for _ in range(5):
            with pytest.raises(PreconditionError):
                _verify(db_session, po_id, wrong, supplier_a_actor)
        _age_challenge(db_session, issued.challenge.id, locked_until=utcnow() - timedelta(seconds=1))

        with pytest.raises(PreconditionError):
            _verify(db_session, po_id, wrong, supplier_a_actor)

        row = db_session.get(DeliveryChallenge, issued.challenge.id)
        assert row.attempts == 6
        assert challenges.challenge_state(row) == ChallengeState.LOCKED


# =============================================================================
# SUMMARY AND REPAIR PATH
# =============================================================================


class TestSummary:

    def test_summary_never_exposes_hash(self, db_session, shipped_order, supplier_a_actor):
        _issue(db_session, shipped_order.po_a.id, supplier_a_actor)
        summary = challenges.get_challenge_summary(db_session, shipped_order.po_a.id, supplier_a_actor)
        assert summary["state"] == "ISSUED"
        assert summary["attempts_remaining"] == 5
        assert "code_hash" not in summary
        assert "code_salt" not in summary

    def test_summary_without_challenge(self, db_session, paid_order, admin_actor):
        summary = challenges.get_challenge_summary(db_session, paid_order.po_a.id, admin_actor)
        assert summary["state"] == "NONE"
        assert summary["deliverable"] is False


class TestRepairPath:

    def test_mark_delivered_requires_shipment(self, db_session, paid_order, admin_actor):
        with pytest.raises(IllegalTransitionError):
            purchase_order_service.mark_delivered_without_verification(
                UnitOfWork(db_session), paid_order.po_a.id, admin_actor
            )

    def test_mark_delivered_is_admin_only(self, db_session, shipped_order, supplier_a_actor):
        with pytest.raises(AuthorizationError):
            purchase_order_service.mark_delivered_without_verification(
                UnitOfWork(db_session), shipped_order.po_a.id, supplier_a_actor
            )

    def test_status_update_cannot_set_delivered(self, db_session, shipped_order, supplier_a_actor):
        with pytest.raises(PreconditionError) as exc:
            purchase_order_service.update_purchase_order_status(
                UnitOfWork(db_session), shipped_order.po_a.id, "DELIVERED", supplier_a_actor
            )
        assert exc.value.code == "DELIVERY_REQUIRES_CODE"

    def test_repair_then_verify_unblocks_payout(self, db_session, shipped_order, admin_actor, supplier_a_actor):
        po_id = shipped_order.po_a.id
        po = purchase_order_service.mark_delivered_without_verification(UnitOfWork(db_session), po_id, admin_actor)
        assert po.status == PurchaseOrderStatus.DELIVERED
        assert po.delivered_without_verification is True
        delivered_at = po.delivered_at

        with pytest.raises(StateConflictError) as exc:
            payout_service.release_payout(UnitOfWork(db_session), po_id, supplier_a_actor)
        assert exc.value.code == "DELIVERY_NOT_VERIFIED"

        issued = _issue(db_session, po_id, supplier_a_actor)
        _verify(db_session, po_id, issued.code, supplier_a_actor)

        po = db_session.get(PurchaseOrder, po_id)
        assert po.delivered_without_verification is False
        assert po.delivered_at == delivered_at
        assert payout_service.release_payout(UnitOfWork(db_session), po_id, supplier_a_actor).already_released is False
