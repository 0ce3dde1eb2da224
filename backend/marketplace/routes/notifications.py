# Overview: Flask API routes for in-app notifications.

# backend/marketplace/routes/notifications.py
"""
In-app notification inbox for the authenticated user.
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import DomainError
from ..extensions import db
from ..services import notification_service
from ..services.concurrency import UnitOfWork
from ..decorators import require_auth


notifications_bp = Blueprint("notifications", __name__, url_prefix="/api/notifications")


@notifications_bp.get("")
@require_auth
def list_notifications_route():
    try:
        unread_only = request.args.get("unread", "false").lower() == "true"
        limit = min(max(request.args.get("limit", 50, type=int), 1), 200)
        rows = notification_service.list_notifications(db.session, g.actor.user_id, unread_only, limit)
        return jsonify({"notifications": [row.to_dict() for row in rows]}), 200

    except Exception:
        current_app.logger.exception("Failed to list notifications")
        return jsonify({"error": "Internal server error"}), 500


@notifications_bp.post("/<int:notification_id>/read")
@require_auth
def mark_read_route(notification_id: int):
    try:
        notification = notification_service.mark_notification_read(UnitOfWork(), notification_id, g.actor.user_id)
        return jsonify({"notification": notification.to_dict()}), 200

    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to mark notification read")
        return jsonify({"error": "Internal server error"}), 500
