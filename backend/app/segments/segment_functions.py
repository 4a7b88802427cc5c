from __future__ import annotations

import os

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy import text

from app.extensions import db
from app.services.banking_service import decrypt_banking_details
from app.services.cancel_service import cancel_order
from app.services.commit_service import CommitCommand, commit_to_sale
from app.services.container import get_order_store
from app.services.decline_service import decline_commit
from app.services.delivery_service import mark_collected, schedule_pickup
from app.services.errors import ErrorKind, WorkflowError
from app.services.order_service import create_order_from_payment
from app.services.refund_service import check_refund_status, process_refund
from app.utils.auth import require_admin, require_user
from app.utils.crypto import BankingCipherError
from app.utils.observability import get_request_id

functions_bp = Blueprint("functions_bp", __name__, url_prefix="/functions/v1")


def _payload() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _acting_seller(data: dict) -> str:
    user = require_user()
    seller_id = str(data.get("seller_id") or user.id).strip()
    if seller_id != user.id and not user.is_admin:
        raise WorkflowError(ErrorKind.FORBIDDEN, "You can only act on your own sales")
    return seller_id


def _queue_enabled() -> bool:
    return (os.getenv("PICKUP_QUEUE") or "").strip().lower() in ("1", "true", "yes", "on")


def _dispatch_pickup(order_id: str) -> None:
    """Hand home-delivery pickup to the worker, or book it inline."""
    if _queue_enabled():
        from app.tasks.workflow_tasks import schedule_pickup_task

        schedule_pickup_task.delay(order_id, trace_id=get_request_id())
        return
    try:
        schedule_pickup(order_id)
    except WorkflowError as e:
        # order stays committed; the pickup scheduler job retries it
        current_app.logger.warning("inline_pickup_failed order_id=%s kind=%s", order_id, e.kind.value)


@functions_bp.route("/health-test", methods=["GET", "POST"])
def health_test():
    try:
        with db.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as e:
        current_app.logger.error("health_test_db_failed err=%s", e)
        return jsonify({"success": False, "error": ErrorKind.NETWORK_ERROR.value, "message": "database unavailable"}), 503
    return jsonify({"success": True, "status": "ok"}), 200


@functions_bp.post("/commit-to-sale")
def commit_to_sale_route():
    data = _payload()
    seller_id = _acting_seller(data)
    order_id = str(data.get("order_id") or "").strip()
    # the buyer chose the delivery method at checkout
    order = get_order_store().get(order_id, seller_id=seller_id) if order_id else None
    command = CommitCommand.from_payload(
        {
            "order_id": order_id,
            "delivery_method": (order.delivery_method if order is not None else None) or "home",
            "locker_id": data.get("locker_id") or (order.locker_id if order is not None else None),
        },
        seller_id=seller_id,
    )
    outcome = commit_to_sale(command, via="primary")
    if command.delivery_method == "home":
        _dispatch_pickup(command.order_id)
    return jsonify({"success": True, "data": outcome.order, "message": "Order committed"}), 200


@functions_bp.post("/enhanced-commit-to-sale")
def enhanced_commit_to_sale_route():
    data = _payload()
    seller_id = _acting_seller(data)
    if not str(data.get("delivery_method") or "").strip():
        raise WorkflowError(ErrorKind.VALIDATION_ERROR, "delivery_method is required", details={"missing": ["delivery_method"]})
    command = CommitCommand.from_payload(data, seller_id=seller_id)
    outcome = commit_to_sale(command, via="primary")
    if command.delivery_method == "home":
        _dispatch_pickup(command.order_id)
    return jsonify(outcome.to_dict()), 200


@functions_bp.post("/decline-commit")
def decline_commit_route():
    data = _payload()
    seller_id = _acting_seller(data)
    outcome = decline_commit(str(data.get("order_id") or ""), seller_id, str(data.get("reason") or ""), actor_user_id=seller_id)
    return jsonify(outcome.to_dict()), 200


@functions_bp.post("/refund-management")
def refund_management_route():
    admin = require_admin()
    data = _payload()
    order_id = str(data.get("order_id") or "").strip()
    if not order_id:
        raise WorkflowError(ErrorKind.VALIDATION_ERROR, "order_id is required")
    action = str(data.get("action") or "process").strip().lower()
    if action == "status":
        row = check_refund_status(order_id)
        return jsonify({"success": True, "data": row.to_dict() if row is not None else None}), 200
    amount = data.get("amount")
    try:
        amount = float(amount) if amount not in (None, "") else None
    except (TypeError, ValueError):
        raise WorkflowError(ErrorKind.VALIDATION_ERROR, "amount must be a number")
    outcome = process_refund(order_id, str(data.get("reason") or "Refund by admin"), amount=amount, actor_user_id=admin.id)
    body = outcome.to_dict()
    return jsonify(body), 200 if outcome.success else 502


@functions_bp.post("/cancel-order-with-refund")
def cancel_order_route():
    user = require_user()
    data = _payload()
    result = cancel_order(str(data.get("order_id") or ""), user.id, str(data.get("reason") or ""))
    return jsonify(result), 200


@functions_bp.post("/mark-collected")
def mark_collected_route():
    admin = require_admin()
    data = _payload()
    order = mark_collected(str(data.get("order_id") or ""), actor_user_id=admin.id)
    return jsonify({"success": True, "order": order.to_dict()}), 200


@functions_bp.post("/create-order")
def create_order_route():
    user = require_user()
    data = _payload()
    try:
        delivery_fee = float(data.get("delivery_fee") or 0.0)
    except (TypeError, ValueError):
        raise WorkflowError(ErrorKind.VALIDATION_ERROR, "delivery_fee must be a number")
    order = create_order_from_payment(
        buyer_id=user.id,
        book_id=str(data.get("book_id") or ""),
        payment_reference=str(data.get("payment_reference") or ""),
        delivery_method=str(data.get("delivery_method") or "home").strip().lower(),
        delivery_fee=delivery_fee,
        locker_id=str(data.get("locker_id") or "").strip() or None,
    )
    return jsonify({"success": True, "order": order.to_dict()}), 201


@functions_bp.post("/decrypt-banking-details")
def decrypt_banking_details_route():
    user = require_user()
    try:
        details = decrypt_banking_details(user.id)
    except BankingCipherError as e:
        current_app.logger.error("banking_decrypt_failed user_id=%s err=%s", user.id, e)
        return jsonify({"success": False, "error": "DECRYPTION_FAILED", "message": "Banking details could not be decrypted"}), 500
    return jsonify({"success": True, "data": details}), 200
