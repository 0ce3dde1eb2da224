# Overview: Admin order cancellation with inventory restock.

"""
Order Cancellation

WHY: An unpaid order holds supplier stock. Canceling it must put that stock
back and recompute the catalog's in-stock flags. Once any payment has
succeeded the order can no longer be canceled here; money movement goes
through refunds instead.

Canceling an already-canceled order returns it unchanged.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from ..errors import PreconditionError
from ..models import Order, OrderItem, Payment, PurchaseOrder, SupplierPaymentAllocation
from ..states import (
    AllocationStatus,
    OrderStatus,
    PurchaseOrderStatus,
    SUCCESSFUL_PAYMENT_STATUSES,
    can_transition,
    transition,
)
from ..time_utils import utcnow
from . import activity_service, inventory_service, order_code_service
from .access_service import Actor, require_admin
from .purchase_order_service import get_order


@dataclass
class CancellationResult:
    order: Order
    already_canceled: bool = False
    restocked: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "order": self.order.to_dict(),
            "already_canceled": self.already_canceled,
            "restocked": self.restocked,
        }


def _assert_cancellable(session, order: Order) -> None:
    paid = (
        session.query(Payment.id)
        .filter(Payment.order_id == order.id, Payment.status.in_(list(SUCCESSFUL_PAYMENT_STATUSES)))
        .first()
    )
    if paid is not None or order.status in (OrderStatus.PAID, OrderStatus.COMPLETED):
        raise PreconditionError("Cannot cancel an order that has been paid/completed.", code="ORDER_ALREADY_PAID")

    paid_allocations = (
        session.query(SupplierPaymentAllocation.id)
        .filter(
            SupplierPaymentAllocation.order_id == order.id,
            SupplierPaymentAllocation.status == AllocationStatus.PAID,
        )
        .first()
    )
    if paid_allocations is not None:
        raise PreconditionError("Cannot cancel an order with released supplier payouts.", code="ORDER_ALREADY_PAID")


def _cancel(uow, order: Order, actor: Actor, reason: str | None) -> CancellationResult:
    session = uow.session
    if order.status == OrderStatus.CANCELED:
        return CancellationResult(order=order, already_canceled=True)
    _assert_cancellable(session, order)

    restocked = []
    touched_products = set()
    items = session.query(OrderItem).filter(OrderItem.order_id == order.id).order_by(OrderItem.id).all()
    for item in items:
        ref = item.chosen_offer
        if ref is None or (item.quantity or 0) <= 0:
            continue
        offer = inventory_service.restock_offer(session, ref, item.quantity)
        if offer is None:
            continue
        touched_products.add(offer.product_id)
        restocked.append({
            "order_item_id": item.id,
            "offer_kind": ref.kind.value,
            "offer_id": ref.id,
            "quantity": item.quantity,
            "available_qty": offer.available_qty,
        })

    for product_id in sorted(touched_products):
        inventory_service.recompute_product_stock(session, product_id)

    now = utcnow()
    for po in session.query(PurchaseOrder).filter(PurchaseOrder.order_id == order.id).all():
        if can_transition(po.status, PurchaseOrderStatus.CANCELED):
            po.status = transition(po.status, PurchaseOrderStatus.CANCELED)
            po.canceled_at = now

    previous = order.status
    order.status = transition(order.status, OrderStatus.CANCELED)
    order.canceled_at = now
    activity_service.log_order_activity(
        session, order.id, activity_service.ACTIVITY_STATUS_CHANGE,
        reason or "Order canceled by admin",
        actor_user_id=actor.user_id,
        meta={"from": previous.value, "to": OrderStatus.CANCELED.value, "restocked": len(restocked)},
    )
    return CancellationResult(order=order, restocked=restocked)


def cancel_order(uow, order_id: int, actor: Actor, reason: str | None = None) -> CancellationResult:
    """
    Cancel an unpaid order and restock its reserved supplier inventory.

    Raises:
        AuthorizationError: Not an admin
        NotFoundError: Unknown order
        PreconditionError: A payment succeeded or the order is paid/completed
    """
    require_admin(actor)

    def _op(uow):
        order = get_order(uow.session, order_id, for_update=True)
        return _cancel(uow, order, actor, reason)

    return uow.run(_op)


def cancel_order_with_code(uow, order_id: int, actor: Actor, code_token, reason: str | None = None) -> CancellationResult:
    """Cancel after spending a verified CANCEL_ORDER code token, atomically."""
    require_admin(actor)

    def _op(uow):
        order = get_order(uow.session, order_id, for_update=True)
        if order.status == OrderStatus.CANCELED:
            return CancellationResult(order=order, already_canceled=True)
        _assert_cancellable(uow.session, order)
        order_code_service.consume_order_code(
            uow.session, order.id, actor, code_token, order_code_service.PURPOSE_CANCEL_ORDER
        )
        return _cancel(uow, order, actor, reason)

    return uow.run(_op)
