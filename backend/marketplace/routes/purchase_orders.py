# Overview: Flask API routes for purchase order shipment, delivery codes and payout release.

# backend/marketplace/routes/purchase_orders.py
"""
Purchase Order API Routes

DESIGN:
- Suppliers move their POs through CONFIRMED / PACKED / SHIPPED / OUT_FOR_DELIVERY
- Delivery is confirmed only with the customer's delivery code
- Payout release is the last step after verified delivery

SECURITY:
- Supplier endpoints accept the owning supplier or an admin
- The plaintext delivery code never appears in a response
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import DomainError
from ..extensions import db
from ..services import delivery_challenge_service, payout_service, purchase_order_service
from ..services.access_service import require_supplier_or_admin
from ..services.concurrency import UnitOfWork
from ..decorators import require_auth, require_role


purchase_orders_bp = Blueprint("purchase_orders", __name__, url_prefix="/api/purchase-orders")


@purchase_orders_bp.get("/<int:purchase_order_id>")
@require_auth
@require_role("SUPPLIER", "ADMIN")
def get_purchase_order_route(purchase_order_id: int):
    try:
        po = purchase_order_service.get_purchase_order(db.session, purchase_order_id)
        require_supplier_or_admin(g.actor, po.supplier_id)
        items = purchase_order_service.items_for_purchase_order(db.session, po.id)
        return jsonify({
            "purchase_order": po.to_dict(),
            "items": [item.to_dict() for item in items],
        }), 200

    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to load purchase order")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# SHIPMENT
# =============================================================================

@purchase_orders_bp.patch("/<int:purchase_order_id>/status")
@require_auth
@require_role("SUPPLIER", "ADMIN")
def update_status_route(purchase_order_id: int):
    """
    Update shipment status.

    Request body:
    {
        "status": "SHIPPED",
        "note": "Dispatched with GIG"  (optional)
    }

    Returns:
        200: Updated purchase order
        400: Unknown status or DELIVERED requested directly
        403: Not the owning supplier
        409: Transition not allowed
    """
    try:
        data = request.get_json() or {}
        if not data.get("status"):
            return jsonify({"error": "status required"}), 400

        po = purchase_order_service.update_purchase_order_status(
            UnitOfWork(), purchase_order_id, data["status"], g.actor, note=data.get("note")
        )
        return jsonify({"purchase_order": po.to_dict()}), 200

    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update purchase order status")
        return jsonify({"error": "Internal server error"}), 500


@purchase_orders_bp.post("/<int:purchase_order_id>/mark-delivered")
@require_auth
@require_role("ADMIN")
def mark_delivered_route(purchase_order_id: int):
    """
    Admin repair: mark delivered without a delivery code.

    Payout stays blocked until a delivery code is verified for the PO.
    """
    try:
        data = request.get_json(silent=True) or {}
        po = purchase_order_service.mark_delivered_without_verification(
            UnitOfWork(), purchase_order_id, g.actor, note=data.get("note")
        )
        return jsonify({"purchase_order": po.to_dict()}), 200

    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to mark purchase order delivered")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# DELIVERY CODE
# =============================================================================

@purchase_orders_bp.get("/<int:purchase_order_id>/delivery-code")
@require_auth
@require_role("SUPPLIER", "ADMIN")
def delivery_code_state_route(purchase_order_id: int):
    try:
        summary = delivery_challenge_service.get_challenge_summary(db.session, purchase_order_id, g.actor)
        return jsonify(summary), 200

    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to load delivery code state")
        return jsonify({"error": "Internal server error"}), 500


@purchase_orders_bp.post("/<int:purchase_order_id>/delivery-code/request")
@require_auth
@require_role("SUPPLIER", "ADMIN")
def request_delivery_code_route(purchase_order_id: int):
    """
    Send a delivery code to the customer.

    Returns:
        200: {"already_verified": bool, "expires_at": ..., "channel_hint": "***1234"}
        400: Purchase order not in a deliverable state
        403: Not the owning supplier
        404: Purchase order not found
        429: Cooldown (retry_at)
    """
    try:
        issued = delivery_challenge_service.issue_delivery_code(UnitOfWork(), purchase_order_id, g.actor)
        return jsonify(issued.to_dict()), 200

    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to issue delivery code")
        return jsonify({"error": "Internal server error"}), 500


@purchase_orders_bp.post("/<int:purchase_order_id>/delivery-code/verify")
@require_auth
@require_role("SUPPLIER", "ADMIN")
def verify_delivery_code_route(purchase_order_id: int):
    """
    Verify the customer's delivery code.

    Request body: {"code": "123456"}

    Returns:
        200: Delivery confirmed (or already confirmed)
        400: Invalid format, no active code, expired, incorrect
        429: Locked after too many incorrect attempts
    """
    try:
        data = request.get_json() or {}
        result = delivery_challenge_service.verify_delivery_code(
            UnitOfWork(), purchase_order_id, data.get("code"), g.actor
        )
        return jsonify(result.to_dict()), 200

    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to verify delivery code")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# PAYOUT
# =============================================================================

@purchase_orders_bp.post("/<int:purchase_order_id>/payout/release")
@require_auth
@require_role("SUPPLIER", "ADMIN")
def release_payout_route(purchase_order_id: int):
    """
    Release the supplier allocation for a delivered purchase order.

    Returns:
        200: Released (or already released)
        403: Not the owning supplier
        404: Purchase order not found
        409: Not delivered / not verified / not payout-ready / refund open / nothing to release
    """
    try:
        result = payout_service.release_payout(UnitOfWork(), purchase_order_id, g.actor)
        return jsonify(result.to_dict()), 200

    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to release payout")
        return jsonify({"error": "Internal server error"}), 500
