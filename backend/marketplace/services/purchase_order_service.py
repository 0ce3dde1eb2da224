# Overview: Splits paid orders into per-supplier purchase orders and drives their shipment lifecycle.

"""
Purchase Order Service

WHY: One customer order can be fulfilled by several independent suppliers.
Each supplier gets its own purchase order (PO) covering only its items and
the amount it is owed, and its own payout allocation from the customer's
single payment.

DESIGN PRINCIPLES:
- Splitting is idempotent: find-or-create per (order, supplier), links are
  created once per order item, amounts are recomputed from linked items
- Owed amount = sum(chosen supplier unit cost x max(1, quantity))
- Supplier reference (SPO-XXXX-XXXX) is generated once per PO and reused by
  every notification
- DELIVERED is never set here except by the admin repair path; normal
  delivery goes through delivery_challenge_service

LIFECYCLE:
1. Payment confirmed -> order PAID, POs split, allocations PENDING, POs FUNDED
2. Supplier updates: CONFIRMED -> PACKED -> SHIPPED -> OUT_FOR_DELIVERY
3. Delivery code verified -> DELIVERED (delivery_challenge_service)
"""

from __future__ import annotations

import secrets
from collections import defaultdict
from dataclasses import dataclass, field

from flask import current_app

from ..errors import NotFoundError, PreconditionError, StateConflictError
from ..models import (
    Order,
    OrderItem,
    Payment,
    PurchaseOrder,
    PurchaseOrderItem,
    Supplier,
    SupplierPaymentAllocation,
)
from ..states import (
    AllocationStatus,
    OrderStatus,
    PaymentStatus,
    PurchaseOrderStatus,
    transition,
)
from ..time_utils import utcnow
from . import activity_service, notification_service
from .access_service import Actor, require_admin, require_supplier_or_admin
from .concurrency import lock_for_update


SUPPLIER_REF_PREFIX = "SPO"
# No 0/O or 1/I so references survive being read over the phone
SUPPLIER_REF_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
SUPPLIER_REF_ATTEMPTS = 8

# Statuses a supplier (or admin) may set directly
SUPPLIER_SETTABLE_STATUSES = frozenset({
    PurchaseOrderStatus.CONFIRMED,
    PurchaseOrderStatus.PACKED,
    PurchaseOrderStatus.SHIPPED,
    PurchaseOrderStatus.OUT_FOR_DELIVERY,
})


@dataclass
class SplitResult:
    order_id: int
    purchase_orders: list[PurchaseOrder]
    created_ids: list[int] = field(default_factory=list)
    changed_ids: list[int] = field(default_factory=list)
    unassigned_item_ids: list[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "purchase_orders": [po.to_dict() for po in self.purchase_orders],
            "created_ids": self.created_ids,
            "changed_ids": self.changed_ids,
            "unassigned_item_ids": self.unassigned_item_ids,
        }


@dataclass
class PaymentConfirmation:
    payment: Payment
    order: Order
    split: SplitResult | None
    allocations: list[SupplierPaymentAllocation]

    def to_dict(self) -> dict:
        return {
            "payment": self.payment.to_dict(),
            "order": self.order.to_dict(),
            "split": self.split.to_dict() if self.split else None,
            "allocations": [a.to_dict() for a in self.allocations],
        }


# =============================================================================
# LOOKUPS
# =============================================================================

def get_purchase_order(session, purchase_order_id: int, *, for_update: bool = False) -> PurchaseOrder:
    query = session.query(PurchaseOrder).filter(PurchaseOrder.id == purchase_order_id)
    if for_update:
        query = lock_for_update(query)
    po = query.first()
    if po is None:
        raise NotFoundError(f"Purchase order {purchase_order_id} not found")
    return po


def get_order(session, order_id: int, *, for_update: bool = False) -> Order:
    query = session.query(Order).filter(Order.id == order_id)
    if for_update:
        query = lock_for_update(query)
    order = query.first()
    if order is None:
        raise NotFoundError(f"Order {order_id} not found")
    return order


def latest_paid_payment(session, order_id: int) -> Payment | None:
    return (
        session.query(Payment)
        .filter(Payment.order_id == order_id, Payment.status == PaymentStatus.PAID)
        .order_by(Payment.paid_at.desc(), Payment.id.desc())
        .first()
    )


def items_for_purchase_order(session, purchase_order_id: int) -> list[OrderItem]:
    return (
        session.query(OrderItem)
        .join(PurchaseOrderItem, PurchaseOrderItem.order_item_id == OrderItem.id)
        .filter(PurchaseOrderItem.purchase_order_id == purchase_order_id)
        .order_by(OrderItem.id)
        .all()
    )


# =============================================================================
# SUPPLIER REFERENCE
# =============================================================================

def generate_supplier_ref() -> str:
    chunk = lambda: "".join(secrets.choice(SUPPLIER_REF_ALPHABET) for _ in range(4))  # noqa: E731
    return f"{SUPPLIER_REF_PREFIX}-{chunk()}-{chunk()}"


def ensure_supplier_ref(session, po: PurchaseOrder) -> str:
    """Assign the PO's supplier reference once; later calls return it unchanged."""
    if po.supplier_order_ref:
        return po.supplier_order_ref

    for _ in range(SUPPLIER_REF_ATTEMPTS):
        candidate = generate_supplier_ref()
        taken = session.query(PurchaseOrder.id).filter(PurchaseOrder.supplier_order_ref == candidate).first()
        if not taken:
            po.supplier_order_ref = candidate
            activity_service.log_order_activity(
                session,
                po.order_id,
                activity_service.ACTIVITY_SUPPLIER_REF_CREATED,
                f"Supplier reference {candidate} created",
                supplier_id=po.supplier_id,
                purchase_order_id=po.id,
                meta={"supplier_order_ref": candidate},
            )
            return candidate
    raise StateConflictError("Could not allocate a unique supplier reference", code="SUPPLIER_REF_EXHAUSTED")


# =============================================================================
# SPLITTING
# =============================================================================

def _split_order(uow, order: Order) -> SplitResult:
    session = uow.session
    items = session.query(OrderItem).filter(OrderItem.order_id == order.id).order_by(OrderItem.id).all()

    groups: dict[int, list[OrderItem]] = defaultdict(list)
    unassigned = []
    for item in items:
        if item.chosen_supplier_id is None:
            unassigned.append(item.id)
            continue
        groups[item.chosen_supplier_id].append(item)

    existing = {
        po.supplier_id: po
        for po in lock_for_update(
            session.query(PurchaseOrder).filter(PurchaseOrder.order_id == order.id)
        ).all()
    }
    links = {
        link.order_item_id: link
        for link in session.query(PurchaseOrderItem)
        .filter(PurchaseOrderItem.order_item_id.in_([item.id for item in items] or [0]))
        .all()
    }

    result = SplitResult(order_id=order.id, purchase_orders=[], unassigned_item_ids=unassigned)

    for supplier_id in sorted(groups):
        po = existing.get(supplier_id)
        if po is None:
            po = PurchaseOrder(
                order_id=order.id,
                supplier_id=supplier_id,
                status=PurchaseOrderStatus.CREATED,
                supplier_amount_kobo=0,
                currency=order.currency,
            )
            session.add(po)
            session.flush()
            existing[supplier_id] = po
            result.created_ids.append(po.id)
        ensure_supplier_ref(session, po)

        for item in groups[supplier_id]:
            link = links.get(item.id)
            if link is None:
                link = PurchaseOrderItem(purchase_order_id=po.id, order_item_id=item.id)
                session.add(link)
                links[item.id] = link
            elif link.purchase_order_id != po.id:
                # Item was reassigned to another supplier before fulfillment
                link.purchase_order_id = po.id

    session.flush()

    item_by_id = {item.id: item for item in items}
    owed: dict[int, int] = defaultdict(int)
    for link in links.values():
        item = item_by_id.get(link.order_item_id)
        if item is None:
            continue
        owed[link.purchase_order_id] += (item.chosen_supplier_unit_cost_kobo or 0) * max(1, item.quantity or 0)

    for po in sorted(existing.values(), key=lambda p: p.id):
        amount = owed.get(po.id, 0)
        if po.supplier_amount_kobo != amount:
            po.supplier_amount_kobo = amount
            if po.id not in result.created_ids:
                result.changed_ids.append(po.id)
        result.purchase_orders.append(po)

    session.flush()
    return result


def split_order(uow, order_id: int) -> SplitResult:
    """
    Materialize one PO per supplier for an order.

    WHY idempotent: payment webhooks and admin retries call this repeatedly.
    A second run with unchanged items creates nothing and changes nothing.
    Suppliers are notified only for POs created (or re-priced) by this run.

    Raises:
        NotFoundError: If the order does not exist
    """
    def _op(uow):
        order = get_order(uow.session, order_id, for_update=True)
        result = _split_order(uow, order)
        _queue_supplier_notifications(uow, order, result.created_ids + result.changed_ids)
        return result
    return uow.run(_op)


# =============================================================================
# PAYMENT CONFIRMED
# =============================================================================

UNPAID_ALLOCATION_STATUSES = (AllocationStatus.PENDING, AllocationStatus.APPROVED)


def _ensure_allocations(uow, order: Order, payment: Payment, purchase_orders) -> list[SupplierPaymentAllocation]:
    """
    One allocation per funded PO for this payment, priced at the PO amount.

    A PO whose items all moved to another supplier has nothing left to pay;
    its unpaid allocation is failed instead of being left at the old price.
    """
    session = uow.session
    allocations = []
    for po in purchase_orders:
        if po.status == PurchaseOrderStatus.CANCELED:
            continue
        allocation = (
            session.query(SupplierPaymentAllocation)
            .filter(
                SupplierPaymentAllocation.payment_id == payment.id,
                SupplierPaymentAllocation.purchase_order_id == po.id,
                SupplierPaymentAllocation.supplier_id == po.supplier_id,
            )
            .first()
        )
        if po.supplier_amount_kobo <= 0:
            if allocation is not None and allocation.status in UNPAID_ALLOCATION_STATUSES:
                allocation.status = transition(allocation.status, AllocationStatus.FAILED)
                current_app.logger.info("Allocation %s failed: PO %s amount dropped to zero", allocation.id, po.id)
                allocations.append(allocation)
            continue

        if allocation is None:
            supplier = session.get(Supplier, po.supplier_id)
            allocation = SupplierPaymentAllocation(
                payment_id=payment.id,
                order_id=order.id,
                purchase_order_id=po.id,
                supplier_id=po.supplier_id,
                amount_kobo=po.supplier_amount_kobo,
                currency=po.currency,
                status=AllocationStatus.PENDING,
                supplier_name_snapshot=supplier.name if supplier else None,
            )
            session.add(allocation)
        elif allocation.status == AllocationStatus.PENDING and allocation.amount_kobo != po.supplier_amount_kobo:
            allocation.amount_kobo = po.supplier_amount_kobo

        if po.status == PurchaseOrderStatus.CREATED:
            po.status = transition(po.status, PurchaseOrderStatus.FUNDED)
        allocations.append(allocation)
    session.flush()
    return allocations


def record_payment_confirmed(
    uow,
    *,
    payment_id: int,
    order_id: int,
    amount_kobo: int,
    status: PaymentStatus | str,
) -> PaymentConfirmation:
    """
    Consume the gateway's "payment confirmed" signal.

    Safe to replay: a PAID payment stays PAID, the split is idempotent and
    allocations are found-or-created per (payment, PO, supplier).

    Raises:
        NotFoundError: Unknown payment or order
        PreconditionError: Payment/order mismatch, amount mismatch, canceled order
    """
    status = PaymentStatus(status)

    def _op(uow):
        session = uow.session
        payment = lock_for_update(session.query(Payment).filter(Payment.id == payment_id)).first()
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found")
        if payment.order_id != order_id:
            raise PreconditionError("Payment does not belong to this order", code="PAYMENT_ORDER_MISMATCH")
        order = get_order(session, order_id, for_update=True)

        if status != PaymentStatus.PAID:
            if payment.status != PaymentStatus.PAID:
                payment.status = status
            return PaymentConfirmation(payment=payment, order=order, split=None, allocations=[])

        if int(amount_kobo) != payment.amount_kobo:
            raise PreconditionError(
                f"Paid amount {amount_kobo} does not match expected {payment.amount_kobo}",
                code="PAYMENT_AMOUNT_MISMATCH",
            )
        if order.status == OrderStatus.CANCELED:
            raise PreconditionError("Order is canceled", code="ORDER_CANCELED")

        now = utcnow()
        if payment.status != PaymentStatus.PAID:
            payment.status = PaymentStatus.PAID
            payment.paid_at = now
        if order.status != OrderStatus.PAID and order.status != OrderStatus.COMPLETED:
            order.status = transition(order.status, OrderStatus.PAID)
            order.paid_at = now
            activity_service.log_order_activity(
                session, order.id, activity_service.ACTIVITY_PAYMENT_CONFIRMED,
                f"Payment {payment.reference} confirmed", meta={"payment_id": payment.id, "amount_kobo": amount_kobo},
            )

        split = _split_order(uow, order)
        allocations = _ensure_allocations(uow, order, payment, split.purchase_orders)
        _queue_supplier_notifications(uow, order, split.created_ids + split.changed_ids)
        return PaymentConfirmation(payment=payment, order=order, split=split, allocations=allocations)

    return uow.run(_op)


# =============================================================================
# SUPPLIER NOTIFICATION
# =============================================================================

def render_supplier_message(po: PurchaseOrder, order: Order, items: list[OrderItem]) -> str:
    lines = [f"New order {po.supplier_order_ref}", "Items:"]
    for item in items:
        lines.append(f"- {item.title} x{max(1, item.quantity or 0)}")
    lines.append(f"Amount due to you: NGN {po.supplier_amount_kobo / 100:,.2f}")
    destination = ", ".join(part for part in (order.ship_to_city, order.ship_to_state) if part)
    if destination:
        lines.append(f"Deliver to: {destination}")
    return "\n".join(lines)


def _queue_supplier_notifications(uow, order: Order, purchase_order_ids) -> int:
    session = uow.session
    queued = 0
    for po_id in sorted(set(purchase_order_ids)):
        po = session.get(PurchaseOrder, po_id)
        supplier = session.get(Supplier, po.supplier_id)
        items = items_for_purchase_order(session, po.id)
        body = render_supplier_message(po, order, items)

        if supplier.user_id:
            notification_service.notify_user(
                uow, supplier.user_id, "SUPPLIER_NEW_ORDER", f"New order {po.supplier_order_ref}", body,
                {"purchase_order_id": po.id, "order_id": order.id},
            )

        if not supplier.whatsapp_phone:
            activity_service.log_order_activity(
                session, order.id, activity_service.ACTIVITY_SUPPLIER_NOTIFY_SKIPPED,
                "Supplier has no WhatsApp number", supplier_id=supplier.id, purchase_order_id=po.id,
            )
            continue

        notification_service.queue(
            uow,
            notification_service.OutboundMessage(
                channel=notification_service.CHANNEL_WHATSAPP,
                recipient=supplier.whatsapp_phone,
                body=body,
                payload={"supplier_order_ref": po.supplier_order_ref},
            ),
            order_id=order.id,
            supplier_id=supplier.id,
            purchase_order_id=po.id,
            success_activity=activity_service.ACTIVITY_SUPPLIER_NOTIFIED,
            error_activity=activity_service.ACTIVITY_SUPPLIER_NOTIFY_ERROR,
        )
        queued += 1
    return queued


def resend_supplier_notifications(uow, order_id: int, actor: Actor) -> int:
    """Admin re-notify: same references, one message per PO."""
    require_admin(actor)

    def _op(uow):
        order = get_order(uow.session, order_id)
        po_ids = [po.id for po in uow.session.query(PurchaseOrder.id).filter(PurchaseOrder.order_id == order.id)]
        if not po_ids:
            raise PreconditionError("No purchase orders found for this order yet.", code="NO_PURCHASE_ORDERS")
        return _queue_supplier_notifications(uow, order, po_ids)
    return uow.run(_op)


# =============================================================================
# SHIPMENT UPDATES
# =============================================================================

def update_purchase_order_status(uow, purchase_order_id: int, target, actor: Actor, note: str | None = None) -> PurchaseOrder:
    """
    Move a PO along its shipment lifecycle.

    Raises:
        NotFoundError: Unknown PO
        AuthorizationError: Not admin or owning supplier
        PreconditionError: DELIVERED requested directly, or unknown status
        IllegalTransitionError: Transition not allowed from current status
    """
    try:
        target = PurchaseOrderStatus(str(target).strip().upper())
    except ValueError:
        raise PreconditionError(f"Unknown purchase order status {target!r}", code="INVALID_STATUS")

    if target == PurchaseOrderStatus.DELIVERED:
        raise PreconditionError(
            "Delivery is confirmed with the customer's delivery code", code="DELIVERY_REQUIRES_CODE"
        )
    if target == PurchaseOrderStatus.CANCELED:
        require_admin(actor)
    elif target not in SUPPLIER_SETTABLE_STATUSES:
        raise PreconditionError(f"Status {target.value} cannot be set directly", code="INVALID_STATUS")

    def _op(uow):
        session = uow.session
        po = get_purchase_order(session, purchase_order_id, for_update=True)
        require_supplier_or_admin(actor, po.supplier_id)
        if po.status == target:
            return po

        previous = po.status
        po.status = transition(po.status, target)
        now = utcnow()
        if target == PurchaseOrderStatus.SHIPPED:
            po.shipped_at = now
        elif target == PurchaseOrderStatus.CANCELED:
            po.canceled_at = now
            (
                session.query(SupplierPaymentAllocation)
                .filter(
                    SupplierPaymentAllocation.purchase_order_id == po.id,
                    SupplierPaymentAllocation.status.in_(UNPAID_ALLOCATION_STATUSES),
                )
                .update({SupplierPaymentAllocation.status: AllocationStatus.FAILED}, synchronize_session="fetch")
            )

        for item in items_for_purchase_order(session, po.id):
            item.fulfillment_status = target.value

        activity_service.log_order_activity(
            session, po.order_id, activity_service.ACTIVITY_STATUS_CHANGE,
            note or f"Purchase order {po.supplier_order_ref} {previous.value} -> {target.value}",
            supplier_id=po.supplier_id, purchase_order_id=po.id, actor_user_id=actor.user_id,
            meta={"from": previous.value, "to": target.value},
        )
        if target in (PurchaseOrderStatus.SHIPPED, PurchaseOrderStatus.OUT_FOR_DELIVERY):
            order = session.get(Order, po.order_id)
            notification_service.notify_user(
                uow, order.user_id, f"ORDER_{target.value}",
                "Your order is on its way" if target == PurchaseOrderStatus.SHIPPED else "Your order is out for delivery",
                data={"order_id": order.id, "purchase_order_id": po.id},
            )
        return po

    return uow.run(_op)


def mark_delivered_without_verification(uow, purchase_order_id: int, actor: Actor, note: str | None = None) -> PurchaseOrder:
    """
    Admin repair: record a delivery that happened without a verified code.

    The PO becomes DELIVERED with delivered_without_verification set. Payout
    stays blocked until a delivery code is issued and verified for it.
    """
    require_admin(actor)

    def _op(uow):
        session = uow.session
        po = get_purchase_order(session, purchase_order_id, for_update=True)
        if po.status == PurchaseOrderStatus.DELIVERED:
            return po
        po.status = transition(po.status, PurchaseOrderStatus.DELIVERED)
        po.delivered_at = utcnow()
        po.delivered_by_user_id = actor.user_id
        po.delivered_without_verification = True
        activity_service.log_order_activity(
            session, po.order_id, activity_service.ACTIVITY_STATUS_CHANGE,
            note or "Marked delivered by admin without delivery code",
            supplier_id=po.supplier_id, purchase_order_id=po.id, actor_user_id=actor.user_id,
            meta={"delivered_without_verification": True},
        )
        current_app.logger.info("PO %s marked delivered without verification by user %s", po.id, actor.user_id)
        return po

    return uow.run(_op)


def list_purchase_orders_for_order(session, order_id: int) -> list[PurchaseOrder]:
    return session.query(PurchaseOrder).filter(PurchaseOrder.order_id == order_id).order_by(PurchaseOrder.id).all()
