# Overview: Flask API routes for payment signals, order splitting and admin cancellation.

# backend/marketplace/routes/orders.py
"""
Order API Routes

DESIGN:
- Payment confirmed signal materializes POs and allocations (idempotent)
- Admin split / re-notify for repair
- Cancellation requires a verified one-time code token (CANCEL_ORDER)

SECURITY:
- All endpoints are admin-only
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import DomainError
from ..extensions import db
from ..services import (
    activity_service,
    cancellation_service,
    order_code_service,
    purchase_order_service,
)
from ..services.concurrency import UnitOfWork
from ..decorators import require_auth, require_role


orders_bp = Blueprint("orders", __name__, url_prefix="/api")


# =============================================================================
# PAYMENT CONFIRMED
# =============================================================================

@orders_bp.post("/payments/confirmed")
@require_auth
@require_role("ADMIN")
def payment_confirmed_route():
    """
    Consume a "payment confirmed" signal.

    Request body:
    {
        "payment_id": 12,
        "order_id": 34,
        "amount_kobo": 1500000,
        "status": "PAID"
    }

    Returns:
        200: Payment recorded; split result and allocations
        400: Missing fields, amount mismatch, canceled order
        404: Unknown payment or order
    """
    try:
        data = request.get_json() or {}
        required = ("payment_id", "order_id", "amount_kobo", "status")
        if any(data.get(key) is None for key in required):
            return jsonify({"error": "payment_id, order_id, amount_kobo and status required"}), 400

        result = purchase_order_service.record_payment_confirmed(
            UnitOfWork(),
            payment_id=int(data["payment_id"]),
            order_id=int(data["order_id"]),
            amount_kobo=int(data["amount_kobo"]),
            status=str(data["status"]).upper(),
        )
        return jsonify(result.to_dict()), 200

    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to record payment confirmation")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# SPLITTING
# =============================================================================

@orders_bp.post("/admin/orders/<int:order_id>/split")
@require_auth
@require_role("ADMIN")
def split_order_route(order_id: int):
    """
    Split an order into per-supplier purchase orders (idempotent).

    Returns:
        200: Purchase orders for the order
        404: Order not found
    """
    try:
        result = purchase_order_service.split_order(UnitOfWork(), order_id)
        return jsonify(result.to_dict()), 200

    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to split order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/admin/orders/<int:order_id>/notify-suppliers")
@require_auth
@require_role("ADMIN")
def notify_suppliers_route(order_id: int):
    """Re-send supplier notifications with the existing supplier references."""
    try:
        queued = purchase_order_service.resend_supplier_notifications(UnitOfWork(), order_id, g.actor)
        return jsonify({"queued": queued}), 200

    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to notify suppliers")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/admin/orders/<int:order_id>/purchase-orders")
@require_auth
@require_role("ADMIN")
def list_order_purchase_orders_route(order_id: int):
    try:
        purchase_order_service.get_order(db.session, order_id)
        pos = purchase_order_service.list_purchase_orders_for_order(db.session, order_id)
        return jsonify({"purchase_orders": [po.to_dict() for po in pos]}), 200

    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list purchase orders")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/admin/orders/<int:order_id>/activities")
@require_auth
@require_role("ADMIN")
def list_order_activities_route(order_id: int):
    try:
        purchase_order_service.get_order(db.session, order_id)
        limit = min(request.args.get("limit", 100, type=int), 500)
        activities = activity_service.list_order_activities(db.session, order_id, limit=limit)
        return jsonify({"activities": [a.to_dict() for a in activities]}), 200

    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list order activities")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# CANCELLATION
# =============================================================================

@orders_bp.post("/admin/orders/<int:order_id>/cancel-code/request")
@require_auth
@require_role("ADMIN")
def request_cancel_code_route(order_id: int):
    """
    Send a CANCEL_ORDER code to the requesting admin.

    Returns:
        200: Code sent (expires_at, channel_hint)
        404: Order not found
        429: Cooldown (retry_at)
    """
    try:
        issued = order_code_service.request_order_code(UnitOfWork(), order_id, g.actor)
        return jsonify(issued.to_dict()), 200

    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to request cancel code")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/admin/orders/<int:order_id>/cancel-code/verify")
@require_auth
@require_role("ADMIN")
def verify_cancel_code_route(order_id: int):
    """
    Verify a CANCEL_ORDER code.

    Request body: {"code": "123456"}

    Returns:
        200: {"code_token": 17}
        400: Invalid format, not requested, expired, incorrect
        429: Locked
    """
    try:
        data = request.get_json() or {}
        token = order_code_service.verify_order_code(UnitOfWork(), order_id, g.actor, data.get("code"))
        return jsonify({"code_token": token}), 200

    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to verify cancel code")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/admin/orders/<int:order_id>/cancel")
@require_auth
@require_role("ADMIN")
def cancel_order_route(order_id: int):
    """
    Cancel an unpaid order.

    Request body:
    {
        "code_token": 17,
        "reason": "Customer asked to cancel"  (optional)
    }

    Returns:
        200: Order canceled (or already canceled)
        400: Order already paid/completed
        403: Missing or invalid code token
        404: Order not found
    """
    try:
        data = request.get_json() or {}
        result = cancellation_service.cancel_order_with_code(
            UnitOfWork(), order_id, g.actor, data.get("code_token"), reason=data.get("reason")
        )
        return jsonify(result.to_dict()), 200

    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to cancel order")
        return jsonify({"error": "Internal server error"}), 500
