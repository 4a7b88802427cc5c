from __future__ import annotations

import hashlib
import hmac
import os
from datetime import datetime

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy.exc import IntegrityError

from app.extensions import db
from app.models import WebhookEvent
from app.services.delivery_service import handle_courier_event, verify_courier_signature
from app.services.errors import WorkflowError
from app.services.refund_service import apply_refund_event
from app.utils.observability import get_request_id
from app.utils.settings import get_settings

webhooks_bp = Blueprint("webhooks_bp", __name__, url_prefix="/api/webhooks")


def _secret(name: str) -> str:
    return str(current_app.config.get(name) or os.getenv(name) or "").strip()


def _flag(name: str) -> bool:
    return (os.getenv(name) or "").strip().lower() in ("1", "true", "yes", "on")


def verify_paystack_signature(raw: bytes, signature: str | None, secret: str) -> bool:
    """Hex HMAC-SHA512 of the raw body, keyed with the Paystack secret key."""
    if not secret or not signature:
        return False
    expected = hmac.new(secret.encode("utf-8"), raw or b"", hashlib.sha512).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


def _check_signature(provider: str, secret_name: str, header: str, verifier) -> tuple[dict, int] | None:
    secret = _secret(secret_name)
    if not secret:
        if get_settings().integrations_mode == "live":
            return {"ok": False, "error": "INTEGRATION_MISCONFIGURED", "message": f"missing {secret_name}"}, 400
        return None
    if not verifier(request.get_data() or b"", request.headers.get(header), secret):
        current_app.logger.warning("webhook_signature_invalid provider=%s request_id=%s", provider, get_request_id())
        return {"ok": False, "error": "INVALID_SIGNATURE"}, 401
    return None


def _claim(provider: str, payload: dict, raw: bytes) -> WebhookEvent | None:
    """Record the delivery once; None means it was already handled.

    A delivery whose earlier attempt failed is claimed again so the
    provider's retry gets processed.
    """
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    payload_hash = hashlib.sha256(raw or b"").hexdigest()
    event_id = str(payload.get("id") or payload.get("event_id") or data.get("event_id") or "").strip() or payload_hash[:32]
    existing = WebhookEvent.query.filter_by(provider=provider, event_id=event_id).first()
    if existing is not None:
        return _reclaim_failed(existing)
    row = WebhookEvent(
        provider=provider,
        event_id=event_id,
        event_type=str(payload.get("event") or payload.get("type") or "")[:64],
        reference=str(data.get("reference") or data.get("tracking_number") or "")[:128] or None,
        payload_hash=payload_hash,
    )
    try:
        with db.session.begin_nested():
            db.session.add(row)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return None
    return row


def _reclaim_failed(row: WebhookEvent) -> WebhookEvent | None:
    if row.status != "failed":
        return None
    claimed = (
        WebhookEvent.query.filter_by(id=row.id, status="failed")
        .update({"status": "received", "error": None, "processed_at": None}, synchronize_session=False)
    )
    db.session.commit()
    if claimed != 1:
        return None
    db.session.refresh(row)
    current_app.logger.info("webhook_retry_claimed provider=%s event_id=%s", row.provider, row.event_id)
    return row


def _finish(row: WebhookEvent, status: str, error: str = "") -> None:
    row.status = status
    row.error = error[:2000] or None
    row.processed_at = datetime.utcnow()
    db.session.commit()


@webhooks_bp.post("/courier")
def courier_webhook():
    rejected = _check_signature("courier", "COURIER_WEBHOOK_SECRET", "X-Courier-Signature", verify_courier_signature)
    if rejected is not None:
        body, status = rejected
        return jsonify(body), status

    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return jsonify({"ok": False, "error": "INVALID_PAYLOAD", "message": "payload must be an object"}), 400

    row = _claim("courier", payload, request.get_data() or b"")
    if row is None:
        return jsonify({"ok": True, "replayed": True}), 200

    if _flag("COURIER_WEBHOOK_QUEUE"):
        from app.tasks.workflow_tasks import process_courier_event_task

        process_courier_event_task.delay(payload=payload, trace_id=get_request_id())
        _finish(row, "queued")
        return jsonify({"ok": True, "queued": True, "trace_id": get_request_id()}), 200

    try:
        result = handle_courier_event(payload)
    except WorkflowError as e:
        db.session.rollback()
        _finish(row, "failed", e.message)
        current_app.logger.error("courier_webhook_failed event_id=%s kind=%s", row.event_id, e.kind.value)
        raise
    _finish(row, "ignored" if result.get("ignored") else "processed")
    return jsonify(result), 200


@webhooks_bp.post("/paystack")
def paystack_webhook():
    rejected = _check_signature("paystack", "PAYSTACK_SECRET_KEY", "X-Paystack-Signature", verify_paystack_signature)
    if rejected is not None:
        body, status = rejected
        return jsonify(body), status

    payload = request.get_json(silent=True)
    if not isinstance(payload, dict) or not str(payload.get("event") or "").strip():
        return jsonify({"ok": False, "error": "INVALID_PAYLOAD", "message": "event is required"}), 400

    row = _claim("paystack", payload, request.get_data() or b"")
    if row is None:
        return jsonify({"ok": True, "replayed": True}), 200

    event = str(payload.get("event")).strip()
    if not event.startswith("refund."):
        _finish(row, "ignored")
        return jsonify({"ok": True, "ignored": True, "event": event}), 200

    try:
        refund = apply_refund_event(event, payload.get("data") or {})
    except WorkflowError as e:
        db.session.rollback()
        _finish(row, "failed", e.message)
        current_app.logger.error("paystack_webhook_failed event_id=%s kind=%s", row.event_id, e.kind.value)
        raise
    _finish(row, "processed" if refund is not None else "ignored")
    return jsonify({"ok": True, "event": event, "refund": refund.to_dict() if refund is not None else None}), 200
