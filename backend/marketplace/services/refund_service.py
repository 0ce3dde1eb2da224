# Overview: Refund and dispute workflow against supplier purchase orders.

"""
Refund Service

WHY: A customer (or an admin acting for them) can ask for money back on
one supplier's part of an order. The supplier answers first; disputes and
final resolution belong to admins. Money already released to the supplier
is never clawed back by editing the allocation; an approved refund on a
paid PO is recovered through a REFUND_DEBIT ledger entry.

LIFECYCLE:
1. Request -> REQUESTED -> SUPPLIER_REVIEW (PO flagged refund_requested_at)
2. Supplier ACCEPT / REJECT / ESCALATE -> SUPPLIER_ACCEPTED / SUPPLIER_REJECTED / ESCALATED
3. Admin close (APPROVED / DENIED) -> CLOSED
   - APPROVED + allocation PAID     -> ledger DEBIT, PO payout REFUNDED
   - APPROVED + allocation unpaid   -> allocation HELD

INVARIANT: one refund per PO (uq_refunds_purchase_order); a second request
fails and leaves the first untouched.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from flask import current_app

from ..errors import AuthorizationError, NotFoundError, PreconditionError, StateConflictError
from ..models import (
    Order,
    OrderItem,
    PurchaseOrder,
    Refund,
    RefundEvent,
    RefundItem,
    Supplier,
    SupplierPaymentAllocation,
)
from ..models.common import dump_json
from ..states import (
    AllocationStatus,
    LedgerEntryType,
    LedgerReason,
    PayoutStatus,
    PurchaseOrderStatus,
    RefundResolution,
    RefundStatus,
    SupplierRefundAction,
    can_transition,
    transition,
)
from ..time_utils import utcnow
from . import activity_service, ledger_service, notification_service
from .access_service import Actor, require_admin
from .concurrency import lock_for_update
from .purchase_order_service import get_order, items_for_purchase_order


REFUND_REFERENCE_TYPE = "REFUND"

SUPPLIER_ACTIONS = {
    SupplierRefundAction.ACCEPT: (RefundStatus.SUPPLIER_ACCEPTED, "ACCEPT", "SUPPLIER_ACCEPTED"),
    SupplierRefundAction.REJECT: (RefundStatus.SUPPLIER_REJECTED, "REJECT", "SUPPLIER_REJECTED"),
    SupplierRefundAction.ESCALATE: (RefundStatus.ESCALATED, "DISPUTE", "SUPPLIER_ESCALATED"),
}

RESPONDABLE_STATUSES = frozenset({RefundStatus.REQUESTED, RefundStatus.SUPPLIER_REVIEW})


# =============================================================================
# REFUND SCOPE
# =============================================================================

@dataclass(frozen=True)
class RefundLine:
    order_item_id: int
    quantity: int | None = None


@dataclass(frozen=True)
class WholeOrder:
    """Every PO of the order, optionally narrowed to some items."""
    lines: tuple[RefundLine, ...] = ()


@dataclass(frozen=True)
class SinglePurchaseOrder:
    purchase_order_id: int
    lines: tuple[RefundLine, ...] = ()


RefundScope = Union[WholeOrder, SinglePurchaseOrder]


def parse_scope(purchase_order_id=None, items=None) -> RefundScope:
    """Build a scope from request input ([{order_item_id, quantity}] or [id, ...])."""
    lines = []
    for raw in items or []:
        if isinstance(raw, dict):
            item_id = raw.get("order_item_id")
            quantity = raw.get("quantity")
        else:
            item_id, quantity = raw, None
        try:
            lines.append(RefundLine(int(item_id), int(quantity) if quantity is not None else None))
        except (TypeError, ValueError):
            raise PreconditionError("Invalid refund item", code="INVALID_REFUND_ITEM")
    if purchase_order_id is not None:
        try:
            return SinglePurchaseOrder(int(purchase_order_id), tuple(lines))
        except (TypeError, ValueError):
            raise PreconditionError("Invalid purchase_order_id", code="INVALID_PURCHASE_ORDER")
    return WholeOrder(tuple(lines))


# =============================================================================
# HELPERS
# =============================================================================

def _add_event(session, refund: Refund, event_type: str, actor_user_id: int | None,
               from_status=None, to_status=None, message: str | None = None, meta: dict | None = None) -> RefundEvent:
    event = RefundEvent(
        refund_id=refund.id,
        event_type=event_type,
        from_status=from_status.value if from_status is not None else None,
        to_status=to_status.value if to_status is not None else None,
        message=message,
        meta_json=dump_json(meta),
        actor_user_id=actor_user_id,
        created_at=utcnow(),
    )
    session.add(event)
    return event


def _move(session, refund: Refund, target: RefundStatus, event_type: str, actor_user_id: int | None,
          message: str | None = None, meta: dict | None = None) -> None:
    previous = refund.status
    refund.status = transition(refund.status, target)
    _add_event(session, refund, event_type, actor_user_id, previous, target, message, meta)


def _prorated(total: int, part: int, whole: int) -> int:
    if not total or not whole:
        return 0
    return round(total * part / whole)


def compute_refund_amounts(order: Order, lines: list[tuple[OrderItem, int]], all_items: list[OrderItem]) -> dict:
    """
    Itemized refund amount for the selected lines.

    Items are always unit price x quantity. Tax and service fees stay zero
    unless REFUND_PRORATE_FEES is on; then tax and the base fee follow the
    value share, the comms fee follows the unit share, and the gateway fee
    is never refunded.
    """
    items_kobo = sum(item.unit_price_kobo * qty for item, qty in lines)
    amounts = {
        "items_kobo": items_kobo,
        "tax_kobo": 0,
        "service_fee_base_kobo": 0,
        "service_fee_comms_kobo": 0,
        "service_fee_gateway_kobo": 0,
    }
    if current_app.config.get("REFUND_PRORATE_FEES"):
        order_value = sum(item.line_total_kobo for item in all_items)
        order_units = sum(max(1, item.quantity or 0) for item in all_items)
        units = sum(qty for _, qty in lines)
        amounts["tax_kobo"] = _prorated(order.tax_kobo, items_kobo, order_value)
        amounts["service_fee_base_kobo"] = _prorated(order.service_fee_base_kobo, items_kobo, order_value)
        amounts["service_fee_comms_kobo"] = _prorated(order.service_fee_comms_kobo, units, order_units)
    amounts["total_kobo"] = sum(amounts.values())
    return amounts


def _select_lines(po_items: list[OrderItem], requested: tuple[RefundLine, ...]) -> list[tuple[OrderItem, int]]:
    if not requested:
        return [(item, max(1, item.quantity or 0)) for item in po_items]

    by_id = {item.id: item for item in po_items}
    selected = []
    for line in requested:
        item = by_id.get(line.order_item_id)
        if item is None:
            raise PreconditionError("Selected items are not part of this purchase order.", code="ITEMS_NOT_IN_PO")
        ordered = max(1, item.quantity or 0)
        quantity = ordered if line.quantity is None else line.quantity
        if quantity < 1 or quantity > ordered:
            raise PreconditionError(
                f"Refund quantity for item {item.id} must be between 1 and {ordered}",
                code="INVALID_REFUND_QUANTITY",
            )
        selected.append((item, quantity))
    return selected


# =============================================================================
# REQUEST
# =============================================================================

def request_refund(
    uow,
    order_id: int,
    actor: Actor,
    reason: str,
    scope: RefundScope | None = None,
    message: str | None = None,
) -> list[Refund]:
    """
    Open refund cases for an order.

    WholeOrder creates one refund per PO (narrowed to the POs holding the
    selected items, if any). All targets are checked before anything is
    written; one existing refund fails the whole request.

    Raises:
        NotFoundError: Unknown order
        AuthorizationError: Not the order owner or an admin
        PreconditionError: No POs yet, bad PO, refund exists, items not in PO
    """
    scope = scope or WholeOrder()
    reason = (reason or "").strip()
    if not reason:
        raise PreconditionError("reason is required", code="REASON_REQUIRED")

    def _op(uow):
        session = uow.session
        order = get_order(session, order_id, for_update=True)
        if not actor.is_admin and order.user_id != actor.user_id:
            raise AuthorizationError()

        purchase_orders = lock_for_update(
            session.query(PurchaseOrder).filter(PurchaseOrder.order_id == order.id).order_by(PurchaseOrder.id)
        ).all()
        if not purchase_orders:
            raise PreconditionError("No purchase orders found for this order yet.", code="NO_PURCHASE_ORDERS")

        po_items = {po.id: items_for_purchase_order(session, po.id) for po in purchase_orders}

        if isinstance(scope, SinglePurchaseOrder):
            targets = [po for po in purchase_orders if po.id == scope.purchase_order_id]
            if not targets:
                raise PreconditionError("Invalid purchase_order_id", code="INVALID_PURCHASE_ORDER")
            plan = [(targets[0], _select_lines(po_items[targets[0].id], scope.lines))]
        elif isinstance(scope, WholeOrder):
            plan = []
            wanted = {line.order_item_id for line in scope.lines}
            known = {item.id for items in po_items.values() for item in items}
            if wanted - known:
                raise PreconditionError("Selected items are not part of this order.", code="ITEMS_NOT_IN_ORDER")
            for po in purchase_orders:
                lines = tuple(line for line in scope.lines if line.order_item_id in {i.id for i in po_items[po.id]})
                if scope.lines and not lines:
                    continue
                plan.append((po, _select_lines(po_items[po.id], lines)))
        else:
            raise TypeError(f"Unsupported refund scope {scope!r}")

        for po, _ in plan:
            existing = session.query(Refund.id).filter(Refund.purchase_order_id == po.id).first()
            if existing is not None:
                raise PreconditionError(
                    f"Refund already exists for purchase order {po.id}",
                    code="REFUND_EXISTS",
                    refund_id=existing.id,
                )

        all_items = [item for items in po_items.values() for item in items]
        now = utcnow()
        refunds = []
        for po, lines in plan:
            amounts = compute_refund_amounts(order, lines, all_items)
            refund = Refund(
                order_id=order.id,
                purchase_order_id=po.id,
                supplier_id=po.supplier_id,
                requested_by_user_id=order.user_id,
                filed_by_user_id=actor.user_id,
                reason=reason,
                message=message,
                status=RefundStatus.REQUESTED,
                currency=order.currency,
                requested_at=now,
                **amounts,
            )
            session.add(refund)
            session.flush()
            for item, quantity in lines:
                session.add(RefundItem(
                    refund_id=refund.id,
                    order_item_id=item.id,
                    quantity=quantity,
                    unit_price_kobo=item.unit_price_kobo,
                    supplier_unit_cost_kobo=item.chosen_supplier_unit_cost_kobo,
                ))
            _add_event(session, refund, "REQUESTED", actor.user_id, None, RefundStatus.REQUESTED, message,
                       {"reason": reason, "filed_by_admin": actor.is_admin})
            _move(session, refund, RefundStatus.SUPPLIER_REVIEW, "SUPPLIER_REVIEW", actor.user_id)

            if po.status != PurchaseOrderStatus.CANCELED and po.refund_requested_at is None:
                po.refund_requested_at = now

            activity_service.log_order_activity(
                session, order.id, activity_service.ACTIVITY_REFUND_REQUESTED,
                f"Refund requested for {po.supplier_order_ref}",
                supplier_id=po.supplier_id, purchase_order_id=po.id, actor_user_id=actor.user_id,
                meta={"refund_id": refund.id, "total_kobo": refund.total_kobo},
            )
            supplier = session.get(Supplier, po.supplier_id)
            data = {"refund_id": refund.id, "order_id": order.id, "purchase_order_id": po.id}
            if supplier.user_id:
                notification_service.notify_user(
                    uow, supplier.user_id, "SUPPLIER_REFUND_REQUESTED",
                    f"Refund requested for {po.supplier_order_ref}", reason, data,
                )
            notification_service.notify_admins(uow, "ADMIN_REFUND_REQUESTED", f"Refund requested on order {order.id}", reason, data)
            refunds.append(refund)

        session.flush()
        return refunds

    return uow.run(_op)


# =============================================================================
# SUPPLIER RESPONSE
# =============================================================================

def _get_refund(session, refund_id: int, *, for_update: bool = False) -> Refund:
    query = session.query(Refund).filter(Refund.id == refund_id)
    if for_update:
        query = lock_for_update(query)
    refund = query.first()
    if refund is None:
        raise NotFoundError(f"Refund {refund_id} not found")
    return refund


def respond_to_refund(uow, refund_id: int, actor: Actor, action, note: str | None = None) -> Refund:
    """
    Supplier answer to a refund request.

    Raises:
        PreconditionError: Unknown action
        AuthorizationError: Actor is not the supplier that owns the PO
        StateConflictError: Refund already answered or closed
    """
    try:
        action = SupplierRefundAction(str(action).strip().upper())
    except ValueError:
        raise PreconditionError("action must be ACCEPT, REJECT or ESCALATE", code="INVALID_ACTION")
    target, response, event_type = SUPPLIER_ACTIONS[action]

    def _op(uow):
        session = uow.session
        refund = _get_refund(session, refund_id, for_update=True)
        if not actor.is_supplier or actor.supplier_id != refund.supplier_id:
            raise AuthorizationError()
        if refund.status not in RESPONDABLE_STATUSES or not can_transition(refund.status, target):
            raise StateConflictError(
                f"Refund is {refund.status.value}; supplier response not allowed",
                code="REFUND_NOT_RESPONDABLE",
            )

        refund.supplier_response = response
        refund.supplier_note = note
        refund.supplier_responded_at = utcnow()
        _move(session, refund, target, event_type, actor.user_id, note, {"action": action.value})

        data = {"refund_id": refund.id, "order_id": refund.order_id, "status": target.value}
        notification_service.notify_user(
            uow, refund.requested_by_user_id, "REFUND_SUPPLIER_RESPONSE",
            f"Supplier responded to your refund: {response}", note, data,
        )
        notification_service.notify_admins(uow, "ADMIN_REFUND_SUPPLIER_RESPONSE", f"Refund {refund.id}: {response}", note, data)
        return refund

    return uow.run(_op)


# =============================================================================
# ADMIN RESOLUTION
# =============================================================================

def supplier_debit_for_refund(refund: Refund) -> int:
    """What the supplier gives back: its own unit cost for the refunded units."""
    return sum((item.supplier_unit_cost_kobo or 0) * item.quantity for item in refund.items)


def close_refund(uow, refund_id: int, actor: Actor, resolution, note: str | None = None) -> Refund:
    """
    Admin closes a refund the supplier has answered (or that was escalated).

    Raises:
        AuthorizationError: Not an admin
        PreconditionError: Unknown resolution
        StateConflictError: Refund still awaiting supplier or already closed
    """
    require_admin(actor)
    try:
        resolution = RefundResolution(str(resolution).strip().upper())
    except ValueError:
        raise PreconditionError("resolution must be APPROVED or DENIED", code="INVALID_RESOLUTION")

    def _op(uow):
        session = uow.session
        refund = _get_refund(session, refund_id, for_update=True)
        if not can_transition(refund.status, RefundStatus.CLOSED):
            raise StateConflictError(
                f"Refund is {refund.status.value}; it cannot be closed yet",
                code="REFUND_NOT_CLOSABLE",
            )

        meta = {"resolution": resolution.value}
        if resolution == RefundResolution.APPROVED:
            meta.update(_apply_approved_refund(uow, refund, actor))

        now = utcnow()
        refund.resolution = resolution.value
        refund.admin_note = note
        refund.closed_at = now
        refund.closed_by_user_id = actor.user_id
        _move(session, refund, RefundStatus.CLOSED, "CLOSED", actor.user_id, note, meta)

        data = {"refund_id": refund.id, "order_id": refund.order_id, "resolution": resolution.value}
        notification_service.notify_user(
            uow, refund.requested_by_user_id, "REFUND_CLOSED", f"Refund {resolution.value.lower()}", note, data,
        )
        supplier = session.get(Supplier, refund.supplier_id)
        if supplier.user_id:
            notification_service.notify_user(
                uow, supplier.user_id, "SUPPLIER_REFUND_CLOSED", f"Refund {resolution.value.lower()}", note, data,
            )
        return refund

    return uow.run(_op)


def _apply_approved_refund(uow, refund: Refund, actor: Actor) -> dict:
    session = uow.session
    po = lock_for_update(session.query(PurchaseOrder).filter(PurchaseOrder.id == refund.purchase_order_id)).one()
    allocations = lock_for_update(
        session.query(SupplierPaymentAllocation).filter(SupplierPaymentAllocation.purchase_order_id == po.id)
    ).all()
    debit = supplier_debit_for_refund(refund)

    if any(a.status == AllocationStatus.PAID for a in allocations):
        if debit <= 0:
            return {"ledger_entry_id": None}
        entry = ledger_service.find_entry_by_reference(session, refund.supplier_id, REFUND_REFERENCE_TYPE, refund.id)
        if entry is None:
            entry = ledger_service.append_ledger_entry(
                session,
                supplier_id=refund.supplier_id,
                entry_type=LedgerEntryType.DEBIT,
                reason=LedgerReason.REFUND_DEBIT,
                amount_kobo=debit,
                order_id=refund.order_id,
                purchase_order_id=po.id,
                reference_type=REFUND_REFERENCE_TYPE,
                reference_id=refund.id,
                note=f"Refund {refund.id} approved",
                meta={"refund_total_kobo": refund.total_kobo},
                created_by_user_id=actor.user_id,
                currency=refund.currency,
            )
        if po.payout_status == PayoutStatus.RELEASED:
            po.payout_status = transition(po.payout_status, PayoutStatus.REFUNDED)
        return {"ledger_entry_id": entry.id, "debit_kobo": debit}

    held = []
    for allocation in allocations:
        if allocation.status in (AllocationStatus.PENDING, AllocationStatus.APPROVED):
            allocation.status = transition(allocation.status, AllocationStatus.HELD)
            allocation.hold_reason = f"Refund {refund.id} approved"
            held.append(allocation.id)
    if held and po.payout_status == PayoutStatus.PENDING:
        po.payout_status = transition(po.payout_status, PayoutStatus.HELD)
    return {"held_allocation_ids": held}


# =============================================================================
# LISTINGS
# =============================================================================

def get_refund_for_actor(session, refund_id: int, actor: Actor) -> Refund:
    refund = _get_refund(session, refund_id)
    if actor.is_admin:
        return refund
    if actor.is_supplier and actor.supplier_id == refund.supplier_id:
        return refund
    if refund.requested_by_user_id == actor.user_id:
        return refund
    raise AuthorizationError()


def list_refunds_for_customer(session, user_id: int) -> list[Refund]:
    return (
        session.query(Refund)
        .filter(Refund.requested_by_user_id == user_id)
        .order_by(Refund.requested_at.desc(), Refund.id.desc())
        .all()
    )


def list_refunds_for_supplier(session, supplier_id: int, status: RefundStatus | None = None) -> list[Refund]:
    query = session.query(Refund).filter(Refund.supplier_id == supplier_id)
    if status is not None:
        query = query.filter(Refund.status == RefundStatus(status))
    return query.order_by(Refund.requested_at.desc(), Refund.id.desc()).all()


def list_refunds(session, status: RefundStatus | None = None, limit: int = 100) -> list[Refund]:
    query = session.query(Refund)
    if status is not None:
        query = query.filter(Refund.status == RefundStatus(status))
    return query.order_by(Refund.requested_at.desc(), Refund.id.desc()).limit(limit).all()
