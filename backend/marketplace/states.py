# Overview: Closed status enumerations and their transition tables.

"""
State machines for orders, purchase orders, allocations and refunds.

WHY: Status values are compared in many services. Keeping each machine as an
Enum with an explicit transition table means an illegal move fails loudly at
the point it is attempted instead of being written as a stray string.

Every table lists all members as keys (checked at import by
`_check_complete`).
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Union

from .errors import IllegalTransitionError


class OrderStatus(str, Enum):
    CREATED = "CREATED"
    PENDING = "PENDING"
    PAID = "PAID"
    COMPLETED = "COMPLETED"
    CANCELED = "CANCELED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


# Money has moved once a payment reaches one of these
SUCCESSFUL_PAYMENT_STATUSES = frozenset({PaymentStatus.PAID, PaymentStatus.REFUNDED})


class PurchaseOrderStatus(str, Enum):
    CREATED = "CREATED"
    FUNDED = "FUNDED"
    CONFIRMED = "CONFIRMED"
    PACKED = "PACKED"
    SHIPPED = "SHIPPED"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    DELIVERED = "DELIVERED"
    CANCELED = "CANCELED"


class PayoutStatus(str, Enum):
    PENDING = "PENDING"
    HELD = "HELD"
    RELEASED = "RELEASED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class AllocationStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    PAID = "PAID"
    FAILED = "FAILED"
    HELD = "HELD"


RELEASE_ELIGIBLE_ALLOCATION_STATUSES = frozenset({AllocationStatus.PENDING, AllocationStatus.APPROVED})


class RefundStatus(str, Enum):
    REQUESTED = "REQUESTED"
    SUPPLIER_REVIEW = "SUPPLIER_REVIEW"
    SUPPLIER_ACCEPTED = "SUPPLIER_ACCEPTED"
    SUPPLIER_REJECTED = "SUPPLIER_REJECTED"
    ESCALATED = "ESCALATED"
    CLOSED = "CLOSED"


# A refund in any of these blocks payout release for its PO
OPEN_REFUND_STATUSES = frozenset({
    RefundStatus.REQUESTED,
    RefundStatus.SUPPLIER_REVIEW,
    RefundStatus.SUPPLIER_ACCEPTED,
    RefundStatus.ESCALATED,
})


class SupplierRefundAction(str, Enum):
    ACCEPT = "ACCEPT"
    REJECT = "REJECT"
    ESCALATE = "ESCALATE"


class RefundResolution(str, Enum):
    APPROVED = "APPROVED"
    DENIED = "DENIED"


class ChallengeState(str, Enum):
    """Derived from a DeliveryChallenge row; never stored."""
    NONE = "NONE"
    ISSUED = "ISSUED"
    VERIFIED = "VERIFIED"
    EXPIRED = "EXPIRED"
    LOCKED = "LOCKED"


class BankVerificationStatus(str, Enum):
    UNVERIFIED = "UNVERIFIED"
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"


class LedgerEntryType(str, Enum):
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"


class LedgerReason(str, Enum):
    ADJUSTMENT = "ADJUSTMENT"
    REVERSAL = "REVERSAL"
    REFUND_DEBIT = "REFUND_DEBIT"
    WITHDRAWAL = "WITHDRAWAL"
    PENALTY = "PENALTY"


class UserRole(str, Enum):
    SHOPPER = "SHOPPER"
    SUPPLIER = "SUPPLIER"
    ADMIN = "ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"


ADMIN_ROLES = frozenset({UserRole.ADMIN, UserRole.SUPER_ADMIN})


# =============================================================================
# OFFER REFERENCE (tagged variant)
# =============================================================================

class OfferKind(str, Enum):
    BASE = "BASE"
    VARIANT = "VARIANT"


@dataclass(frozen=True)
class BaseOffer:
    """Supplier offer on a product without variants."""
    id: int
    kind = OfferKind.BASE


@dataclass(frozen=True)
class VariantOffer:
    """Supplier offer on one product variant."""
    id: int
    kind = OfferKind.VARIANT


OfferRef = Union[BaseOffer, VariantOffer]


def offer_ref(kind: OfferKind | str | None, offer_id: int | None) -> OfferRef | None:
    """Rebuild the tagged offer reference from its two persisted columns."""
    if kind is None or offer_id is None:
        return None
    kind = OfferKind(kind)
    if kind is OfferKind.BASE:
        return BaseOffer(offer_id)
    if kind is OfferKind.VARIANT:
        return VariantOffer(offer_id)
    raise ValueError(f"Unknown offer kind {kind!r}")


# =============================================================================
# TRANSITION TABLES
# =============================================================================

ORDER_TRANSITIONS = {
    OrderStatus.CREATED: {OrderStatus.PENDING, OrderStatus.PAID, OrderStatus.CANCELED},
    OrderStatus.PENDING: {OrderStatus.PAID, OrderStatus.CANCELED},
    OrderStatus.PAID: {OrderStatus.COMPLETED},
    OrderStatus.COMPLETED: set(),
    OrderStatus.CANCELED: set(),
}

PURCHASE_ORDER_TRANSITIONS = {
    PurchaseOrderStatus.CREATED: {
        PurchaseOrderStatus.FUNDED,
        PurchaseOrderStatus.CONFIRMED,
        PurchaseOrderStatus.CANCELED,
    },
    PurchaseOrderStatus.FUNDED: {PurchaseOrderStatus.CONFIRMED, PurchaseOrderStatus.CANCELED},
    PurchaseOrderStatus.CONFIRMED: {
        PurchaseOrderStatus.PACKED,
        PurchaseOrderStatus.SHIPPED,
        PurchaseOrderStatus.CANCELED,
    },
    PurchaseOrderStatus.PACKED: {PurchaseOrderStatus.SHIPPED, PurchaseOrderStatus.CANCELED},
    PurchaseOrderStatus.SHIPPED: {PurchaseOrderStatus.OUT_FOR_DELIVERY, PurchaseOrderStatus.DELIVERED},
    PurchaseOrderStatus.OUT_FOR_DELIVERY: {PurchaseOrderStatus.DELIVERED},
    PurchaseOrderStatus.DELIVERED: set(),
    PurchaseOrderStatus.CANCELED: set(),
}

PAYOUT_TRANSITIONS = {
    PayoutStatus.PENDING: {PayoutStatus.HELD, PayoutStatus.RELEASED, PayoutStatus.FAILED},
    PayoutStatus.HELD: {PayoutStatus.PENDING, PayoutStatus.RELEASED},
    PayoutStatus.RELEASED: {PayoutStatus.REFUNDED},
    PayoutStatus.FAILED: {PayoutStatus.PENDING},
    PayoutStatus.REFUNDED: set(),
}

ALLOCATION_TRANSITIONS = {
    AllocationStatus.PENDING: {
        AllocationStatus.APPROVED,
        AllocationStatus.PAID,
        AllocationStatus.HELD,
        AllocationStatus.FAILED,
    },
    AllocationStatus.APPROVED: {AllocationStatus.PAID, AllocationStatus.HELD, AllocationStatus.FAILED},
    AllocationStatus.HELD: {AllocationStatus.PENDING, AllocationStatus.APPROVED},
    AllocationStatus.PAID: set(),
    AllocationStatus.FAILED: set(),
}

REFUND_TRANSITIONS = {
    RefundStatus.REQUESTED: {
        RefundStatus.SUPPLIER_REVIEW,
        RefundStatus.SUPPLIER_ACCEPTED,
        RefundStatus.SUPPLIER_REJECTED,
        RefundStatus.ESCALATED,
    },
    RefundStatus.SUPPLIER_REVIEW: {
        RefundStatus.SUPPLIER_ACCEPTED,
        RefundStatus.SUPPLIER_REJECTED,
        RefundStatus.ESCALATED,
    },
    RefundStatus.SUPPLIER_ACCEPTED: {RefundStatus.CLOSED},
    RefundStatus.SUPPLIER_REJECTED: {RefundStatus.CLOSED},
    RefundStatus.ESCALATED: {RefundStatus.CLOSED},
    RefundStatus.CLOSED: set(),
}

_TABLES = {
    OrderStatus: ORDER_TRANSITIONS,
    PurchaseOrderStatus: PURCHASE_ORDER_TRANSITIONS,
    PayoutStatus: PAYOUT_TRANSITIONS,
    AllocationStatus: ALLOCATION_TRANSITIONS,
    RefundStatus: REFUND_TRANSITIONS,
}


def _check_complete() -> None:
    for enum_cls, table in _TABLES.items():
        missing = set(enum_cls) - set(table)
        if missing:
            raise KeyError(f"{enum_cls.__name__} transition table missing {sorted(m.value for m in missing)}")


_check_complete()


def can_transition(current: Enum, target: Enum) -> bool:
    enum_cls = type(target)
    return target in _TABLES[enum_cls][enum_cls(current)]


def transition(current: Enum, target: Enum) -> Enum:
    """
    Validate a state change and return the target state.

    Raises:
        IllegalTransitionError: If the table does not allow current -> target
    """
    enum_cls = type(target)
    current = enum_cls(current)
    if target not in _TABLES[enum_cls][current]:
        raise IllegalTransitionError(
            f"Cannot move {enum_cls.__name__} from {current.value} to {target.value}",
            current=current.value,
            target=target.value,
        )
    return target
