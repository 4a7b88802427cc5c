from __future__ import annotations

from flask import Blueprint, jsonify, request

from app.extensions import db
from app.models import Notification
from app.utils.auth import require_user

notifications_bp = Blueprint("notifications_bp", __name__, url_prefix="/api")


@notifications_bp.get("/notifications")
def list_notifications():
    user = require_user()
    q = Notification.query.filter_by(user_id=user.id)
    if (request.args.get("unread") or "").strip().lower() in ("1", "true", "yes"):
        q = q.filter(Notification.read.is_(False))
    rows = q.order_by(Notification.created_at.desc()).limit(80).all()
    return jsonify({"ok": True, "items": [x.to_dict() for x in rows]}), 200


@notifications_bp.post("/notifications/<notification_id>/read")
def mark_notification_read(notification_id: str):
    user = require_user()
    try:
        notif_id = int(str(notification_id).strip())
    except ValueError:
        return jsonify({"ok": False, "error": "NOT_FOUND", "message": "Not found"}), 404

    row = Notification.query.filter_by(id=notif_id, user_id=user.id).first()
    if not row:
        return jsonify({"ok": False, "error": "NOT_FOUND", "message": "Not found"}), 404

    stamped = row.mark_read()
    db.session.commit()
    return jsonify({"ok": True, "id": int(row.id), "read": True, "read_at": stamped.isoformat()}), 200
