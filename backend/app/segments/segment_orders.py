from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy import or_

from app.integrations.common import GatewayError
from app.jobs.commit_expiry_runner import run_commit_expiry
from app.jobs.escrow_runner import run_escrow_settlement
from app.jobs.pickup_runner import run_pickup_scheduler
from app.models import Order
from app.services.commit_service import commit_deadline
from app.services.container import get_courier, get_order_store
from app.services.dispute_service import open_dispute, resolve_dispute
from app.services.errors import ErrorKind, WorkflowError
from app.services.escrow_service import release_escrow
from app.services.payment_split import calculate_payment_split
from app.services.refund_service import list_user_refunds
from app.utils.auth import require_admin, require_user
from app.utils.settings import get_settings

orders_bp = Blueprint("orders_bp", __name__, url_prefix="/api")


def _visible_order(order_id: str, user) -> Order:
    order = get_order_store().get(order_id)
    if order is None or (not user.is_admin and user.id not in (order.buyer_id, order.seller_id)):
        raise WorkflowError(ErrorKind.NOT_FOUND, "Order not found", details={"order_id": order_id})
    return order


def _limit(default: int, cap: int) -> int:
    try:
        value = int(request.args.get("limit") or default)
    except (TypeError, ValueError):
        value = default
    return max(1, min(value, cap))


@orders_bp.get("/orders")
def list_orders():
    user = require_user()
    role = (request.args.get("role") or "").strip().lower()
    q = Order.query
    if role == "seller":
        q = q.filter(Order.seller_id == user.id)
    elif role == "buyer":
        q = q.filter(Order.buyer_id == user.id)
    else:
        q = q.filter(or_(Order.buyer_id == user.id, Order.seller_id == user.id))
    status = (request.args.get("status") or "").strip().lower()
    if status:
        q = q.filter(Order.status == status)
    rows = q.order_by(Order.created_at.desc()).limit(_limit(50, 200)).all()
    return jsonify({"ok": True, "items": [o.to_dict() for o in rows]}), 200


@orders_bp.get("/orders/<order_id>")
def get_order(order_id: str):
    user = require_user()
    order = _visible_order(order_id, user)
    deadline = commit_deadline(order)
    payload = order.to_dict()
    payload["commit_deadline"] = deadline.isoformat() if deadline else None
    return jsonify({"ok": True, "order": payload}), 200


@orders_bp.get("/orders/<order_id>/timeline")
def order_timeline(order_id: str):
    user = require_user()
    order = _visible_order(order_id, user)
    events = get_order_store().events(order.id)
    return jsonify({"ok": True, "order_id": order.id, "items": [e.to_dict() for e in events]}), 200


@orders_bp.get("/orders/<order_id>/split")
def order_split(order_id: str):
    user = require_user()
    order = _visible_order(order_id, user)
    split = calculate_payment_split(
        order.amount,
        order.delivery_fee,
        platform_commission_bps=get_settings().platform_commission_bps,
    )
    return jsonify({"ok": True, "order_id": order.id, "split": split.to_dict()}), 200


@orders_bp.post("/orders/<order_id>/dispute")
def dispute_order(order_id: str):
    user = require_user()
    data = request.get_json(silent=True) or {}
    order = open_dispute(order_id, user.id, str(data.get("reason") or ""))
    return jsonify({"ok": True, "order": order.to_dict()}), 200


@orders_bp.get("/refunds")
def my_refunds():
    user = require_user()
    rows = list_user_refunds(user.id)
    return jsonify({"ok": True, "items": [r.to_dict() for r in rows]}), 200


@orders_bp.get("/lockers")
def list_lockers():
    require_user()

    def _coord(name: str):
        raw = request.args.get(name)
        if raw in (None, ""):
            return None
        try:
            return float(raw)
        except ValueError:
            raise WorkflowError(ErrorKind.VALIDATION_ERROR, f"{name} must be a number")

    try:
        lockers = get_courier().list_lockers(
            latitude=_coord("lat"),
            longitude=_coord("lng"),
            radius_km=_coord("radius_km"),
        )
    except GatewayError as e:
        current_app.logger.warning("locker_list_failed failure=%s err=%s", e.failure.value, e.message)
        raise WorkflowError(ErrorKind.GATEWAY_ERROR, "Locker list unavailable", details=e.to_dict()) from e
    return jsonify({"ok": True, "items": lockers}), 200


@orders_bp.post("/admin/orders/<order_id>/dispute/resolve")
def admin_resolve_dispute(order_id: str):
    admin = require_admin()
    data = request.get_json(silent=True) or {}
    if "seller_at_fault" not in data:
        raise WorkflowError(ErrorKind.VALIDATION_ERROR, "seller_at_fault is required")
    result = resolve_dispute(
        order_id,
        seller_at_fault=bool(data.get("seller_at_fault")),
        admin_id=admin.id,
        note=str(data.get("note") or ""),
    )
    return jsonify(result), 200


@orders_bp.post("/admin/orders/<order_id>/release-escrow")
def admin_release_escrow(order_id: str):
    admin = require_admin()
    order = get_order_store().get(order_id)
    if order is None:
        raise WorkflowError(ErrorKind.NOT_FOUND, "Order not found", details={"order_id": order_id})
    row = release_escrow(order, actor={"type": "admin", "id": admin.id})
    return jsonify({"ok": True, "transition": row.to_dict(), "order": order.to_dict()}), 200


@orders_bp.post("/admin/jobs/expire-commits")
def admin_run_commit_expiry():
    require_admin()
    return jsonify(run_commit_expiry(limit=_limit(200, 1000))), 200


@orders_bp.post("/admin/jobs/escrow")
def admin_run_escrow():
    require_admin()
    return jsonify(run_escrow_settlement(limit=_limit(500, 2000))), 200


@orders_bp.post("/admin/jobs/pickups")
def admin_run_pickups():
    require_admin()
    return jsonify(run_pickup_scheduler(limit=_limit(200, 1000))), 200
