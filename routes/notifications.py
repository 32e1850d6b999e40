# routes/notifications.py
from flask import Blueprint, jsonify, request
from flask_jwt_extended import jwt_required

from routes.applications import current_actor
from services.notification_dispatcher import NotificationDispatcher, candidate_recipient, role_recipient

notifications_bp = Blueprint("notifications_bp", __name__, url_prefix="/api/me")


def _recipients(actor):
    """当前用户能看到的收件人：本人 + 所持角色的队列。"""
    recipients = [candidate_recipient(actor.id)]
    recipients.extend(role_recipient(r) for r in sorted(actor.roles, key=lambda r: r.value))
    return recipients


@notifications_bp.get("/notifications")
@jwt_required()
def list_notifications():
    actor = current_actor()
    unread_only = str(request.args.get("unread") or "") == "1"
    items = NotificationDispatcher().list_for_recipients(_recipients(actor), unread_only=unread_only)
    return jsonify({
        "items": [n.to_dict() for n in items],
        "unread": sum(1 for n in items if not n.is_read),
    })


@notifications_bp.put("/notifications/<int:notification_id>/read")
@jwt_required()
def mark_read(notification_id):
    actor = current_actor()
    n = NotificationDispatcher().mark_read(notification_id, _recipients(actor))
    if n is None:
        return jsonify({"error": "NOT_FOUND"}), 404
    return jsonify({"ok": True, "item": n.to_dict()})
