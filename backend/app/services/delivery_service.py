from __future__ import annotations

import hashlib
import hmac
import json
from datetime import datetime

from flask import current_app
from sqlalchemy import or_

from app.integrations.common import GatewayError
from app.integrations.courier.base import CourierClient
from app.models import Order
from app.services.commit_service import contact_for
from app.services.container import get_courier, get_order_store
from app.services.decline_service import relist_book
from app.services.errors import ErrorKind, WorkflowError
from app.services.order_state import OrderStatus
from app.services.refund_service import process_refund, settle_refunded_escrow
from app.services.stores import OrderStore
from app.utils.events import log_event
from app.utils.notify import queue_notification

COLLECTED_STATES = {"collected", "picked_up", "in_transit", "out_for_delivery", "at_hub"}
DELIVERED_STATES = {"delivered", "collected_by_recipient", "completed"}


def verify_courier_signature(raw: bytes, signature: str | None, secret: str) -> bool:
    """Hex HMAC-SHA256 of the raw request body."""
    if not secret or not signature:
        return False
    expected = hmac.new(secret.encode("utf-8"), raw or b"", hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


def _require(store: OrderStore, order_id: str) -> Order:
    order = store.get(order_id)
    if order is None:
        raise WorkflowError(ErrorKind.NOT_FOUND, "Order not found", details={"order_id": order_id})
    return order


def schedule_pickup(order_id: str, *, store: OrderStore | None = None, courier: CourierClient | None = None) -> Order:
    """Book the courier collection for a committed home-delivery order."""
    store = store or get_order_store()
    order = _require(store, order_id)
    if order.status == OrderStatus.COURIER_SCHEDULED:
        return order
    if order.status != OrderStatus.COMMITTED or order.delivery_method != "home":
        raise WorkflowError(
            ErrorKind.INVALID_STATUS,
            "Pickup is scheduled only for committed home deliveries",
            details={"order_id": order.id, "status": order.status},
        )

    courier = courier or get_courier()
    try:
        shipment = courier.create_shipment(
            reference=f"ORDER-{order.id}",
            collection=contact_for(order.seller_id),
            delivery=contact_for(order.buyer_id),
        )
    except GatewayError as e:
        current_app.logger.warning("pickup_schedule_failed order_id=%s failure=%s", order.id, e.failure.value)
        raise WorkflowError(ErrorKind.GATEWAY_ERROR, f"Courier booking failed: {e.message}", details=e.to_dict()) from e

    values = {
        "tracking_number": shipment.tracking_number,
        "shipment_id": shipment.shipment_id,
        "waybill_url": shipment.waybill_url,
        "delivery_status": "pickup_scheduled",
    }
    if not store.transition(order.id, [OrderStatus.COMMITTED], OrderStatus.COURIER_SCHEDULED, values):
        store.rollback()
        try:
            courier.cancel_shipment(shipment.tracking_number, reason="order no longer awaiting pickup")
        except GatewayError as e:
            current_app.logger.error("orphan_pickup_cancel_failed order_id=%s err=%s", order.id, e)
        raise WorkflowError(ErrorKind.INVALID_STATUS, "Order changed while scheduling pickup", details={"order_id": order.id})

    store.add_event(order.id, "courier_scheduled", note=f"tracking={shipment.tracking_number}")
    queue_notification(
        order.seller_id,
        type="pickup_scheduled",
        title="Courier pickup booked",
        message=f"A courier will collect order {order.id}. Tracking: {shipment.tracking_number}",
        order_id=order.id,
        meta={"waybill_url": shipment.waybill_url},
    )
    store.commit()
    current_app.logger.info("pickup_scheduled order_id=%s tracking=%s", order.id, shipment.tracking_number)
    return store.get(order.id)


def mark_collected(order_id: str, *, actor_user_id: str | None = None, collected_at: datetime | None = None, store: OrderStore | None = None) -> Order:
    store = store or get_order_store()
    order = _require(store, order_id)
    if order.status in (OrderStatus.SHIPPED, OrderStatus.COMPLETED):
        return order
    stamp = collected_at or datetime.utcnow()
    moved = store.transition(
        order.id,
        [OrderStatus.COMMITTED, OrderStatus.COURIER_SCHEDULED],
        OrderStatus.SHIPPED,
        {"collected_at": stamp, "delivery_status": "collected"},
    )
    if not moved:
        store.rollback()
        raise WorkflowError(
            ErrorKind.INVALID_STATUS,
            f"Order cannot be marked collected from status {order.status}",
            details={"order_id": order.id, "status": order.status},
        )
    store.add_event(order.id, "collected", actor_user_id=actor_user_id)
    queue_notification(
        order.buyer_id,
        type="order_shipped",
        title="Your book is on its way",
        message="The courier has collected your order." + (f" Tracking: {order.tracking_number}" if order.tracking_number else ""),
        order_id=order.id,
    )
    store.commit()
    return store.get(order.id)


def mark_delivered(order_id: str, *, delivered_at: datetime | None = None, store: OrderStore | None = None) -> Order:
    store = store or get_order_store()
    order = _require(store, order_id)
    if order.status == OrderStatus.COMPLETED:
        return order
    if order.status in (OrderStatus.COMMITTED, OrderStatus.COURIER_SCHEDULED):
        order = mark_collected(order.id, collected_at=delivered_at, store=store)
    stamp = delivered_at or datetime.utcnow()
    if not store.transition(order.id, [OrderStatus.SHIPPED], OrderStatus.COMPLETED, {"delivered_at": stamp, "delivery_status": "delivered"}):
        store.rollback()
        raise WorkflowError(
            ErrorKind.INVALID_STATUS,
            f"Order cannot be completed from status {order.status}",
            details={"order_id": order.id, "status": order.status},
        )
    store.add_event(order.id, "delivered")
    queue_notification(
        order.buyer_id,
        type="order_delivered",
        title="Order delivered",
        message="Your order has been delivered. Open a dispute within 48 hours if something is wrong.",
        order_id=order.id,
    )
    queue_notification(
        order.seller_id,
        type="order_delivered",
        title="Order delivered",
        message="Your book was delivered. Your payout will be released once the hold period ends.",
        order_id=order.id,
    )
    log_event("order_delivered", subject_type="order", subject_id=order.id, idempotency_key=f"order_delivered:{order.id}")
    store.commit()
    return store.get(order.id)


def _cancelled_by_courier(order: Order, store: OrderStore) -> None:
    if order.status not in OrderStatus.CANCELLABLE:
        store.update_fields(order.id, {"delivery_status": "cancelled"})
        store.commit()
        current_app.logger.warning("courier_cancel_after_collection order_id=%s status=%s", order.id, order.status)
        return
    refund_status = "not_required"
    refund_reference = None
    if (order.payment_reference or "").strip():
        outcome = process_refund(order.id, "Shipment cancelled by courier", mark_order_refunded=False, store=store)
        if not outcome.success:
            store.update_fields(order.id, {"delivery_status": "cancelled"})
            store.commit()
            current_app.logger.error("courier_cancel_refund_failed order_id=%s", order.id)
            return
        refund_status = outcome.refund.status
        refund_reference = outcome.refund_reference or None
    now = datetime.utcnow()
    values = {
        "cancelled_at": now,
        "cancellation_reason": "Shipment cancelled by courier",
        "delivery_status": "cancelled",
        "refund_status": refund_status,
        "refund_reference": refund_reference,
    }
    if store.transition(order.id, OrderStatus.CANCELLABLE, OrderStatus.CANCELLED, values):
        settle_refunded_escrow(order, refund_status, reason="shipment cancelled by courier")
        relist_book(order)
        store.add_event(order.id, "cancelled_by_courier")
        queue_notification(
            order.buyer_id,
            type="order_cancelled",
            title="Order cancelled",
            message="The courier cancelled your shipment." + (" Your payment has been refunded." if refund_status == "success" else " Your refund is being processed." if refund_status != "not_required" else ""),
            order_id=order.id,
        )
    store.commit()


def _find_order(data: dict) -> Order | None:
    tracking = str(data.get("tracking_number") or data.get("tracking_reference") or "").strip()
    shipment_id = str(data.get("shipment_id") or data.get("id") or "").strip()
    order_id = str(data.get("order_id") or "").strip()
    clauses = []
    if order_id:
        clauses.append(Order.id == order_id)
    if tracking:
        clauses.append(Order.tracking_number == tracking)
    if shipment_id:
        clauses.append(Order.shipment_id == shipment_id)
    if not clauses:
        return None
    return Order.query.filter(or_(*clauses)).first()


def handle_courier_event(payload: dict, *, store: OrderStore | None = None) -> dict:
    """Apply one courier webhook event to its order."""
    payload = payload if isinstance(payload, dict) else {}
    event = str(payload.get("event") or payload.get("type") or "").strip().lower()
    data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
    store = store or get_order_store()

    order = _find_order(data)
    if order is None:
        current_app.logger.info("courier_event_unmatched event=%s", event)
        return {"ok": True, "ignored": True, "reason": "order_not_found"}

    courier_status = str(data.get("status") or "").strip().lower()
    if event == "shipment.created":
        values = {}
        for col in ("tracking_number", "shipment_id", "waybill_url"):
            incoming = data.get(col) or (data.get("tracking_reference") if col == "tracking_number" else None)
            if incoming and not getattr(order, col):
                values[col] = str(incoming)
        if values:
            store.update_fields(order.id, values)
            store.commit()
    elif event == "tracking.updated":
        store.update_fields(
            order.id,
            {"delivery_status": courier_status or order.delivery_status, "tracking_data_json": json.dumps(data, default=str)[:8000]},
        )
        store.commit()
        if courier_status in DELIVERED_STATES:
            mark_delivered(order.id, store=store)
        elif courier_status in COLLECTED_STATES and order.status in (OrderStatus.COMMITTED, OrderStatus.COURIER_SCHEDULED):
            mark_collected(order.id, store=store)
    elif event == "shipment.delivered":
        mark_delivered(order.id, store=store)
    elif event == "shipment.cancelled":
        _cancelled_by_courier(order, store)
    else:
        return {"ok": True, "ignored": True, "reason": "unsupported_event", "order_id": order.id}

    current = store.get(order.id)
    return {"ok": True, "order_id": order.id, "event": event, "status": current.status if current else None}
