# Overview: Payout release gate, payout-readiness checks and allocation holds.

"""
Payout Release Service

WHY: This is the only place supplier money moves from "owed" to "paid out".
Double release, or release before proof of delivery, is a direct loss.

RELEASE PRECONDITIONS (checked in one transaction, in this order):
1. PO status is DELIVERED
2. A delivery challenge for the PO was verified before it expired
3. Supplier payout profile is VERIFIED with complete bank details
4. The order has a PAID payment
5. An allocation for (payment, PO, supplier) is PENDING or APPROVED
   - none eligible but one already PAID -> already released (success)
   - none at all -> NothingToReleaseError
Also blocked while a refund on the PO is open or the allocation is HELD.

EFFECT: allocation -> PAID (conditional update on its current status),
released_at stamped, PO payout_status RELEASED and paid_out_at stamped.
No ledger credit is written; the PAID allocation is the credit.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from flask import current_app
from sqlalchemy import update

from ..errors import NotFoundError, NothingToReleaseError, StateConflictError
from ..models import (
    PaymentEvent,
    PurchaseOrder,
    Refund,
    Supplier,
    SupplierPaymentAllocation,
)
from ..models.common import dump_json
from ..states import (
    AllocationStatus,
    BankVerificationStatus,
    OPEN_REFUND_STATUSES,
    PayoutStatus,
    PurchaseOrderStatus,
    RELEASE_ELIGIBLE_ALLOCATION_STATUSES,
    transition,
)
from ..time_utils import utcnow
from . import activity_service, notification_service
from .access_service import Actor, require_admin, require_supplier_or_admin
from .concurrency import lock_for_update
from .delivery_challenge_service import verified_challenge
from .purchase_order_service import get_purchase_order, latest_paid_payment


@dataclass
class PayoutReadiness:
    ready: bool
    missing: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"ready": self.ready, "missing": self.missing}


@dataclass
class ReleaseResult:
    purchase_order: PurchaseOrder
    allocation: SupplierPaymentAllocation
    already_released: bool

    def to_dict(self) -> dict:
        return {
            "released": not self.already_released,
            "already_released": self.already_released,
            "purchase_order": self.purchase_order.to_dict(),
            "allocation": self.allocation.to_dict(),
        }


# =============================================================================
# PAYOUT READINESS
# =============================================================================

def check_payout_readiness(supplier: Supplier) -> PayoutReadiness:
    """List what blocks payouts to a supplier (empty list = ready)."""
    missing = []
    if not supplier.is_payout_enabled:
        missing.append("payout_enabled")
    if supplier.bank_verification_status != BankVerificationStatus.VERIFIED:
        missing.append("bank_verification")
    if not (supplier.bank_code or supplier.bank_name):
        missing.append("bank_code")
    if not supplier.account_number:
        missing.append("account_number")
    if not supplier.account_name:
        missing.append("account_name")
    if not supplier.bank_country:
        missing.append("bank_country")
    return PayoutReadiness(ready=not missing, missing=missing)


# =============================================================================
# RELEASE
# =============================================================================

def _mark_allocation_paid(session, allocation_id: int, actor_user_id: int | None, now) -> bool:
    """
    Conditional PAID transition; True only for the transaction that won.

    The WHERE clause re-checks the status, so two releases that both read
    an eligible row cannot both flip it.
    """
    stmt = (
        update(SupplierPaymentAllocation)
        .where(
            SupplierPaymentAllocation.id == allocation_id,
            SupplierPaymentAllocation.status.in_(list(RELEASE_ELIGIBLE_ALLOCATION_STATUSES)),
        )
        .values(status=AllocationStatus.PAID, released_at=now, released_by_user_id=actor_user_id)
        .execution_options(synchronize_session=False)
    )
    return session.execute(stmt).rowcount == 1


def release_payout(uow, purchase_order_id: int, actor: Actor) -> ReleaseResult:
    """
    Release a PO's supplier allocation.

    Idempotent: calling again after success returns already_released=True.

    Raises:
        NotFoundError: Unknown PO
        AuthorizationError: Not admin or owning supplier
        StateConflictError: Any release precondition fails (specific code)
        NothingToReleaseError: No allocation exists for the PO's payment
    """
    def _op(uow):
        session = uow.session
        po = get_purchase_order(session, purchase_order_id, for_update=True)
        require_supplier_or_admin(actor, po.supplier_id)

        if po.status != PurchaseOrderStatus.DELIVERED:
            raise StateConflictError(
                f"Payout requires a delivered purchase order (current: {po.status.value})",
                code="PO_NOT_DELIVERED",
            )
        if verified_challenge(session, po.id) is None:
            raise StateConflictError("Delivery has not been confirmed with a delivery code", code="DELIVERY_NOT_VERIFIED")

        supplier = lock_for_update(session.query(Supplier).filter(Supplier.id == po.supplier_id)).first()
        readiness = check_payout_readiness(supplier)
        if not readiness.ready:
            raise StateConflictError("Supplier is not payout-ready", code="SUPPLIER_NOT_PAYOUT_READY", missing=readiness.missing)

        payment = latest_paid_payment(session, po.order_id)
        if payment is None:
            raise StateConflictError("Order has no successful payment", code="ORDER_NOT_PAID")

        allocations = lock_for_update(
            session.query(SupplierPaymentAllocation).filter(
                SupplierPaymentAllocation.payment_id == payment.id,
                SupplierPaymentAllocation.purchase_order_id == po.id,
                SupplierPaymentAllocation.supplier_id == po.supplier_id,
            )
        ).all()
        paid = next((a for a in allocations if a.status == AllocationStatus.PAID), None)
        eligible = next((a for a in allocations if a.status in RELEASE_ELIGIBLE_ALLOCATION_STATUSES), None)

        if eligible is None:
            if paid is not None:
                return ReleaseResult(po, paid, already_released=True)
            if any(a.status == AllocationStatus.HELD for a in allocations):
                raise StateConflictError("Payout is on hold", code="ALLOCATION_HELD")
            raise NothingToReleaseError("Nothing to release for this purchase order")

        open_refund = (
            session.query(Refund)
            .filter(Refund.purchase_order_id == po.id, Refund.status.in_(list(OPEN_REFUND_STATUSES)))
            .first()
        )
        if open_refund is not None:
            raise StateConflictError(
                f"Payout blocked: refund is {open_refund.status.value}",
                code="REFUND_OPEN",
            )

        now = utcnow()
        if not _mark_allocation_paid(session, eligible.id, actor.user_id, now):
            # Lost the race: report what the winner left behind
            session.refresh(eligible)
            if eligible.status == AllocationStatus.PAID:
                return ReleaseResult(po, eligible, already_released=True)
            raise NothingToReleaseError("Nothing to release for this purchase order")
        session.refresh(eligible)

        if po.payout_status != PayoutStatus.RELEASED:
            po.payout_status = transition(po.payout_status, PayoutStatus.RELEASED)
        po.paid_out_at = now

        session.add(PaymentEvent(
            payment_id=payment.id,
            event_type="PAYOUT_RELEASED",
            data_json=dump_json({
                "purchase_order_id": po.id,
                "allocation_id": eligible.id,
                "supplier_id": po.supplier_id,
                "amount_kobo": eligible.amount_kobo,
            }),
        ))
        activity_service.log_order_activity(
            session, po.order_id, activity_service.ACTIVITY_PAYOUT_RELEASED,
            f"Payout released for {po.supplier_order_ref}",
            supplier_id=po.supplier_id, purchase_order_id=po.id, actor_user_id=actor.user_id,
            meta={"allocation_id": eligible.id, "amount_kobo": eligible.amount_kobo},
        )
        if supplier.user_id:
            notification_service.notify_user(
                uow, supplier.user_id, "SUPPLIER_PAYOUT_RELEASED", "Payout released",
                f"NGN {eligible.amount_kobo / 100:,.2f} released for {po.supplier_order_ref}",
                {"purchase_order_id": po.id, "allocation_id": eligible.id},
            )
        current_app.logger.info(
            "Payout released: PO %s allocation %s amount %s", po.id, eligible.id, eligible.amount_kobo
        )
        return ReleaseResult(po, eligible, already_released=False)

    return uow.run(_op)


# =============================================================================
# HOLDS
# =============================================================================

def _get_allocation(session, allocation_id: int) -> SupplierPaymentAllocation:
    allocation = lock_for_update(
        session.query(SupplierPaymentAllocation).filter(SupplierPaymentAllocation.id == allocation_id)
    ).first()
    if allocation is None:
        raise NotFoundError(f"Allocation {allocation_id} not found")
    return allocation


def hold_allocation(uow, allocation_id: int, actor: Actor, reason: str | None = None) -> SupplierPaymentAllocation:
    """Admin: block an unpaid allocation from release."""
    require_admin(actor)

    def _op(uow):
        session = uow.session
        allocation = _get_allocation(session, allocation_id)
        if allocation.status == AllocationStatus.HELD:
            return allocation
        allocation.status = transition(allocation.status, AllocationStatus.HELD)
        allocation.hold_reason = reason
        po = session.get(PurchaseOrder, allocation.purchase_order_id)
        if po.payout_status == PayoutStatus.PENDING:
            po.payout_status = transition(po.payout_status, PayoutStatus.HELD)
        return allocation

    return uow.run(_op)


def release_hold(uow, allocation_id: int, actor: Actor) -> SupplierPaymentAllocation:
    """Admin: lift a hold (APPROVED if delivery is verified, else PENDING)."""
    require_admin(actor)

    def _op(uow):
        session = uow.session
        allocation = _get_allocation(session, allocation_id)
        if allocation.status != AllocationStatus.HELD:
            raise StateConflictError(
                f"Allocation is {allocation.status.value}, not HELD", code="ALLOCATION_NOT_HELD"
            )
        target = (
            AllocationStatus.APPROVED
            if verified_challenge(session, allocation.purchase_order_id) is not None
            else AllocationStatus.PENDING
        )
        allocation.status = transition(allocation.status, target)
        allocation.hold_reason = None
        po = session.get(PurchaseOrder, allocation.purchase_order_id)
        if po.payout_status == PayoutStatus.HELD:
            po.payout_status = transition(po.payout_status, PayoutStatus.PENDING)
        return allocation

    return uow.run(_op)
