# Overview: Flask API routes for supplier balances, payout history and ledger adjustments.

# backend/marketplace/routes/payouts.py
"""
Payout API Routes

DESIGN:
- Suppliers read their own balance; admins pass ?supplier_id=
- Balance is replayed from allocations + ledger on every read
- Ledger adjustments and allocation holds are admin-only writes

SECURITY:
- A supplier can never read another supplier's balance (403)
- Admins without a supplier_id get 403 SUPPLIER_CONTEXT_REQUIRED
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import DomainError
from ..extensions import db
from ..services import ledger_service, payout_service
from ..services.access_service import resolve_supplier_scope
from ..services.concurrency import UnitOfWork
from ..states import AllocationStatus, LedgerEntryType, LedgerReason
from ..decorators import require_auth, require_role
from ..models import Supplier


payouts_bp = Blueprint("payouts", __name__, url_prefix="/api")


def _supplier_scope() -> int:
    return resolve_supplier_scope(g.actor, request.args.get("supplier_id", type=int))


# =============================================================================
# SUPPLIER READS
# =============================================================================

@payouts_bp.get("/payouts/summary")
@require_auth
@require_role("SUPPLIER", "ADMIN")
def payout_summary_route():
    """
    Supplier balance summary.

    Query params:
    - supplier_id: required for admins; suppliers may only pass their own

    Returns:
        200: {"balance": {...}, "payout_readiness": {...}}
        403: No supplier context / another supplier's data
    """
    try:
        supplier_id = _supplier_scope()
        balance = ledger_service.get_supplier_balance(db.session, supplier_id, current_app.config["CURRENCY"])
        supplier = db.session.get(Supplier, supplier_id)
        readiness = payout_service.check_payout_readiness(supplier) if supplier else None
        return jsonify({
            "balance": balance.to_dict(),
            "payout_readiness": readiness.to_dict() if readiness else None,
        }), 200

    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to load payout summary")
        return jsonify({"error": "Internal server error"}), 500


@payouts_bp.get("/payouts/history")
@require_auth
@require_role("SUPPLIER", "ADMIN")
def payout_history_route():
    """
    Paginated allocation history.

    Query params:
    - take (default 20, max 100), skip
    - status: PENDING | APPROVED | PAID | FAILED | HELD
    """
    try:
        supplier_id = _supplier_scope()
        status = request.args.get("status")
        if status:
            try:
                status = AllocationStatus(status.upper())
            except ValueError:
                return jsonify({"error": f"Unknown status {status}"}), 400

        take, skip = ledger_service.clamp_page(request.args.get("take"), request.args.get("skip"))
        rows, total = ledger_service.list_allocations(
            db.session, supplier_id, status=status or None, take=take, skip=skip
        )
        return jsonify({
            "allocations": [row.to_dict() for row in rows],
            "total": total,
            "take": take,
            "skip": skip,
        }), 200

    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to load payout history")
        return jsonify({"error": "Internal server error"}), 500


@payouts_bp.get("/payouts/ledger")
@require_auth
@require_role("SUPPLIER", "ADMIN")
def ledger_history_route():
    try:
        supplier_id = _supplier_scope()
        take, skip = ledger_service.clamp_page(request.args.get("take"), request.args.get("skip"))
        rows, total = ledger_service.list_ledger_entries(db.session, supplier_id, take=take, skip=skip)
        return jsonify({
            "entries": [row.to_dict() for row in rows],
            "total": total,
            "take": take,
            "skip": skip,
        }), 200

    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to load ledger history")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# ADMIN WRITES
# =============================================================================

@payouts_bp.post("/admin/payouts/ledger-entries")
@require_auth
@require_role("ADMIN")
def create_ledger_entry_route():
    """
    Manual balance adjustment.

    Request body:
    {
        "supplier_id": 3,
        "entry_type": "DEBIT",
        "reason": "PENALTY",
        "amount_kobo": 20000,
        "note": "Late dispatch"  (optional)
    }
    """
    try:
        data = request.get_json() or {}
        try:
            supplier_id = int(data["supplier_id"])
            entry_type = LedgerEntryType(str(data["entry_type"]).upper())
            reason = LedgerReason(str(data.get("reason") or LedgerReason.ADJUSTMENT.value).upper())
        except (KeyError, TypeError, ValueError):
            return jsonify({"error": "supplier_id, entry_type (CREDIT|DEBIT) and a valid reason required"}), 400

        if db.session.get(Supplier, supplier_id) is None:
            return jsonify({"error": "Supplier not found"}), 404

        entry = ledger_service.record_adjustment(
            UnitOfWork(),
            supplier_id=supplier_id,
            entry_type=entry_type,
            reason=reason,
            amount_kobo=data.get("amount_kobo"),
            note=data.get("note"),
            actor=g.actor,
        )
        return jsonify({"entry": entry.to_dict()}), 201

    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create ledger entry")
        return jsonify({"error": "Internal server error"}), 500


@payouts_bp.post("/admin/payouts/allocations/<int:allocation_id>/hold")
@require_auth
@require_role("ADMIN")
def hold_allocation_route(allocation_id: int):
    try:
        data = request.get_json(silent=True) or {}
        allocation = payout_service.hold_allocation(UnitOfWork(), allocation_id, g.actor, reason=data.get("reason"))
        return jsonify({"allocation": allocation.to_dict()}), 200

    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to hold allocation")
        return jsonify({"error": "Internal server error"}), 500


@payouts_bp.post("/admin/payouts/allocations/<int:allocation_id>/unhold")
@require_auth
@require_role("ADMIN")
def release_hold_route(allocation_id: int):
    try:
        allocation = payout_service.release_hold(UnitOfWork(), allocation_id, g.actor)
        return jsonify({"allocation": allocation.to_dict()}), 200

    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to release allocation hold")
        return jsonify({"error": "Internal server error"}), 500
