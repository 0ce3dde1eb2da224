# Overview: Flask API routes for refund requests, supplier responses and admin resolution.

# backend/marketplace/routes/refunds.py
"""
Refund API Routes

DESIGN:
- Customers (or admins on their behalf) open refunds per purchase order
- The owning supplier answers ACCEPT / REJECT / ESCALATE
- Admins close with APPROVED / DENIED; approval on a paid PO debits the ledger

SECURITY:
- Only the order owner or an admin can file a refund
- Only the owning supplier can answer it
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import DomainError
from ..extensions import db
from ..services import refund_service
from ..services.concurrency import UnitOfWork
from ..states import RefundStatus
from ..decorators import require_auth, require_role


refunds_bp = Blueprint("refunds", __name__, url_prefix="/api")


def _status_filter():
    raw = request.args.get("status")
    if not raw:
        return None
    return RefundStatus(raw.strip().upper())


# =============================================================================
# CUSTOMER
# =============================================================================

@refunds_bp.post("/refunds")
@require_auth
def request_refund_route():
    """
    Request a refund.

    Request body:
    {
        "order_id": 34,
        "reason": "Item arrived damaged",
        "purchase_order_id": 7,          (optional, else one refund per PO)
        "items": [{"order_item_id": 91, "quantity": 1}],  (optional)
        "message": "Photos attached"     (optional)
    }

    Returns:
        201: {"refunds": [...]}
        400: No POs yet, refund exists, items not in PO, reason missing
        403: Not the order owner
        404: Unknown order
    """
    try:
        data = request.get_json() or {}
        if data.get("order_id") is None:
            return jsonify({"error": "order_id required"}), 400
        try:
            order_id = int(data["order_id"])
        except (TypeError, ValueError):
            return jsonify({"error": "order_id must be an integer"}), 400

        scope = refund_service.parse_scope(data.get("purchase_order_id"), data.get("items"))
        refunds = refund_service.request_refund(
            UnitOfWork(), order_id, g.actor, data.get("reason"), scope, message=data.get("message")
        )
        return jsonify({"refunds": [refund.to_dict(include_children=True) for refund in refunds]}), 201

    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to request refund")
        return jsonify({"error": "Internal server error"}), 500


@refunds_bp.get("/refunds/mine")
@require_auth
def my_refunds_route():
    try:
        refunds = refund_service.list_refunds_for_customer(db.session, g.actor.user_id)
        return jsonify({"refunds": [refund.to_dict() for refund in refunds]}), 200

    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list refunds")
        return jsonify({"error": "Internal server error"}), 500


@refunds_bp.get("/refunds/<int:refund_id>")
@require_auth
def get_refund_route(refund_id: int):
    try:
        refund = refund_service.get_refund_for_actor(db.session, refund_id, g.actor)
        return jsonify({"refund": refund.to_dict(include_children=True)}), 200

    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to load refund")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# SUPPLIER
# =============================================================================

@refunds_bp.get("/supplier/refunds")
@require_auth
@require_role("SUPPLIER")
def supplier_refunds_route():
    try:
        if g.actor.supplier_id is None:
            return jsonify({"error": "Supplier access required", "code": "SUPPLIER_CONTEXT_REQUIRED"}), 403
        try:
            status = _status_filter()
        except ValueError:
            return jsonify({"error": "Unknown refund status"}), 400

        refunds = refund_service.list_refunds_for_supplier(db.session, g.actor.supplier_id, status)
        return jsonify({"refunds": [refund.to_dict() for refund in refunds]}), 200

    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list supplier refunds")
        return jsonify({"error": "Internal server error"}), 500


@refunds_bp.patch("/supplier/refunds/<int:refund_id>")
@require_auth
@require_role("SUPPLIER")
def supplier_respond_route(refund_id: int):
    """
    Supplier answer.

    Request body:
    {
        "action": "ACCEPT" | "REJECT" | "ESCALATE",
        "note": "Will replace the item"  (optional)
    }

    Returns:
        200: Updated refund
        400: Unknown action
        403: Not the owning supplier
        409: Refund already answered or closed
    """
    try:
        data = request.get_json() or {}
        refund = refund_service.respond_to_refund(
            UnitOfWork(), refund_id, g.actor, data.get("action"), note=data.get("note")
        )
        return jsonify({"refund": refund.to_dict(include_children=True)}), 200

    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to respond to refund")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# ADMIN
# =============================================================================

@refunds_bp.get("/admin/refunds")
@require_auth
@require_role("ADMIN")
def admin_refunds_route():
    try:
        try:
            status = _status_filter()
        except ValueError:
            return jsonify({"error": "Unknown refund status"}), 400
        limit = min(max(request.args.get("limit", 100, type=int), 1), 500)

        refunds = refund_service.list_refunds(db.session, status, limit)
        return jsonify({"refunds": [refund.to_dict() for refund in refunds]}), 200

    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list refunds")
        return jsonify({"error": "Internal server error"}), 500


@refunds_bp.post("/admin/refunds/<int:refund_id>/close")
@require_auth
@require_role("ADMIN")
def close_refund_route(refund_id: int):
    """
    Admin resolution.

    Request body:
    {
        "resolution": "APPROVED" | "DENIED",
        "note": "Supplier confirmed damage"  (optional)
    }
    """
    try:
        data = request.get_json() or {}
        refund = refund_service.close_refund(
            UnitOfWork(), refund_id, g.actor, data.get("resolution"), note=data.get("note")
        )
        return jsonify({"refund": refund.to_dict(include_children=True)}), 200

    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to close refund")
        return jsonify({"error": "Internal server error"}), 500
