from __future__ import annotations

import json

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from app.extensions import db
from app.models import Notification


def queue_notification(
    user_id: str,
    *,
    type: str,
    title: str,
    message: str,
    order_id: str | None = None,
    meta: dict | None = None,
) -> Notification | None:
    """Insert one in-app notification. Fire-and-forget: failures are logged, not raised."""
    if not user_id:
        return None
    try:
        row = Notification(
            user_id=str(user_id),
            order_id=order_id,
            type=(type or "info")[:48],
            title=(title or "")[:160],
            message=message or "",
            meta=json.dumps(meta, separators=(",", ":")) if meta else None,
        )
        with db.session.begin_nested():
            db.session.add(row)
        return row
    except SQLAlchemyError as e:
        current_app.logger.warning("notification_insert_failed user_id=%s type=%s err=%s", user_id, type, e)
        return None
