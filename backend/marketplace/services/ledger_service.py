# Overview: Supplier ledger entries and balance computation.

"""
Supplier Ledger Service

WHY: A supplier's balance must be explainable line by line. It is replayed
from two tables on every read instead of being kept in a running-total
column that could drift:

- supplier_payment_allocations: PAID rows are released payouts (credits)
- supplier_ledger_entries: append-only manual adjustments, refund debits,
  withdrawals and penalties

BALANCE:
    credits = paid_out + ledger_credits
    debits  = ledger_debits
    net     = credits - debits
    available_balance = max(0, net)
    outstanding_debt  = max(0, -net)

Payout release never writes a ledger credit; the PAID allocation already
is the credit.
"""

from __future__ import annotations

from dataclasses import dataclass, asdict

from sqlalchemy import func

from ..errors import PreconditionError
from ..models import SupplierLedgerEntry, SupplierPaymentAllocation
from ..models.common import dump_json
from ..states import AllocationStatus, LedgerEntryType, LedgerReason
from ..time_utils import utcnow


DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


@dataclass
class SupplierBalance:
    supplier_id: int
    currency: str
    paid_out_kobo: int
    ledger_credits_kobo: int
    ledger_debits_kobo: int
    credits_kobo: int
    debits_kobo: int
    net_kobo: int
    available_balance_kobo: int
    outstanding_debt_kobo: int
    pending_kobo: int
    approved_kobo: int
    held_kobo: int
    failed_kobo: int

    def to_dict(self) -> dict:
        data = asdict(self)
        data["by_allocation_status"] = {
            "pending": self.pending_kobo,
            "approved": self.approved_kobo,
            "held": self.held_kobo,
            "paid_out": self.paid_out_kobo,
            "failed": self.failed_kobo,
        }
        return data


# =============================================================================
# BALANCE
# =============================================================================

def get_supplier_balance(session, supplier_id: int, currency: str = "NGN") -> SupplierBalance:
    """
    Compute a supplier's balance from allocations and ledger entries.

    Read-only: safe to call inside or outside a unit of work.
    """
    by_status = {status: 0 for status in AllocationStatus}
    rows = (
        session.query(SupplierPaymentAllocation.status, func.coalesce(func.sum(SupplierPaymentAllocation.amount_kobo), 0))
        .filter(
            SupplierPaymentAllocation.supplier_id == supplier_id,
            SupplierPaymentAllocation.currency == currency,
        )
        .group_by(SupplierPaymentAllocation.status)
        .all()
    )
    for status, total in rows:
        by_status[AllocationStatus(status)] = int(total or 0)

    ledger_totals = {entry_type: 0 for entry_type in LedgerEntryType}
    rows = (
        session.query(SupplierLedgerEntry.entry_type, func.coalesce(func.sum(SupplierLedgerEntry.amount_kobo), 0))
        .filter(
            SupplierLedgerEntry.supplier_id == supplier_id,
            SupplierLedgerEntry.currency == currency,
        )
        .group_by(SupplierLedgerEntry.entry_type)
        .all()
    )
    for entry_type, total in rows:
        ledger_totals[LedgerEntryType(entry_type)] = int(total or 0)

    paid_out = by_status[AllocationStatus.PAID]
    ledger_credits = ledger_totals[LedgerEntryType.CREDIT]
    ledger_debits = ledger_totals[LedgerEntryType.DEBIT]
    credits = paid_out + ledger_credits
    debits = ledger_debits
    net = credits - debits

    return SupplierBalance(
        supplier_id=supplier_id,
        currency=currency,
        paid_out_kobo=paid_out,
        ledger_credits_kobo=ledger_credits,
        ledger_debits_kobo=ledger_debits,
        credits_kobo=credits,
        debits_kobo=debits,
        net_kobo=net,
        available_balance_kobo=max(0, net),
        outstanding_debt_kobo=max(0, -net),
        pending_kobo=by_status[AllocationStatus.PENDING],
        approved_kobo=by_status[AllocationStatus.APPROVED],
        held_kobo=by_status[AllocationStatus.HELD],
        failed_kobo=by_status[AllocationStatus.FAILED],
    )


# =============================================================================
# LEDGER ENTRIES
# =============================================================================

def append_ledger_entry(
    session,
    *,
    supplier_id: int,
    entry_type: LedgerEntryType,
    reason: LedgerReason,
    amount_kobo: int,
    order_id: int | None = None,
    purchase_order_id: int | None = None,
    reference_type: str | None = None,
    reference_id: str | int | None = None,
    note: str | None = None,
    meta: dict | None = None,
    created_by_user_id: int | None = None,
    currency: str = "NGN",
) -> SupplierLedgerEntry:
    """
    Append a ledger entry (no commit). Entries are never edited.

    Raises:
        PreconditionError: If amount is not a positive integer
    """
    if not isinstance(amount_kobo, int) or isinstance(amount_kobo, bool) or amount_kobo <= 0:
        raise PreconditionError("Ledger amount must be a positive integer (kobo)", code="INVALID_AMOUNT")

    entry = SupplierLedgerEntry(
        supplier_id=supplier_id,
        entry_type=LedgerEntryType(entry_type),
        reason=LedgerReason(reason),
        amount_kobo=amount_kobo,
        currency=currency,
        order_id=order_id,
        purchase_order_id=purchase_order_id,
        reference_type=reference_type,
        reference_id=str(reference_id) if reference_id is not None else None,
        note=note,
        meta_json=dump_json(meta),
        created_at=utcnow(),
        created_by_user_id=created_by_user_id,
    )
    session.add(entry)
    session.flush()
    return entry


def find_entry_by_reference(session, supplier_id: int, reference_type: str, reference_id) -> SupplierLedgerEntry | None:
    return (
        session.query(SupplierLedgerEntry)
        .filter(
            SupplierLedgerEntry.supplier_id == supplier_id,
            SupplierLedgerEntry.reference_type == reference_type,
            SupplierLedgerEntry.reference_id == str(reference_id),
        )
        .first()
    )


def record_adjustment(uow, *, supplier_id: int, entry_type: LedgerEntryType, reason: LedgerReason,
                      amount_kobo: int, note: str | None, actor) -> SupplierLedgerEntry:
    """Admin manual balance adjustment in its own transaction."""
    def _op(uow):
        return append_ledger_entry(
            uow.session,
            supplier_id=supplier_id,
            entry_type=entry_type,
            reason=reason,
            amount_kobo=amount_kobo,
            reference_type="ADJUSTMENT",
            note=note,
            created_by_user_id=actor.user_id,
        )
    return uow.run(_op)


# =============================================================================
# HISTORY
# =============================================================================

def clamp_page(take, skip) -> tuple[int, int]:
    try:
        take = int(take) if take is not None else DEFAULT_PAGE_SIZE
        skip = int(skip) if skip is not None else 0
    except (TypeError, ValueError):
        raise PreconditionError("take and skip must be integers", code="INVALID_PAGINATION")
    return max(1, min(take, MAX_PAGE_SIZE)), max(0, skip)


def list_allocations(session, supplier_id: int, *, status: AllocationStatus | None = None,
                     take=None, skip=None) -> tuple[list[SupplierPaymentAllocation], int]:
    take, skip = clamp_page(take, skip)
    query = session.query(SupplierPaymentAllocation).filter(SupplierPaymentAllocation.supplier_id == supplier_id)
    if status is not None:
        query = query.filter(SupplierPaymentAllocation.status == AllocationStatus(status))
    total = query.count()
    rows = (
        query.order_by(
            SupplierPaymentAllocation.released_at.is_(None),
            SupplierPaymentAllocation.released_at.desc(),
            SupplierPaymentAllocation.created_at.desc(),
            SupplierPaymentAllocation.id.desc(),
        )
        .offset(skip)
        .limit(take)
        .all()
    )
    return rows, total


def list_ledger_entries(session, supplier_id: int, *, take=None, skip=None) -> tuple[list[SupplierLedgerEntry], int]:
    take, skip = clamp_page(take, skip)
    query = session.query(SupplierLedgerEntry).filter(SupplierLedgerEntry.supplier_id == supplier_id)
    total = query.count()
    rows = (
        query.order_by(SupplierLedgerEntry.created_at.desc(), SupplierLedgerEntry.id.desc())
        .offset(skip)
        .limit(take)
        .all()
    )
    return rows, total
