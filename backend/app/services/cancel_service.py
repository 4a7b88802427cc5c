from __future__ import annotations

from datetime import datetime

from flask import current_app

from app.integrations.common import GatewayError
from app.integrations.courier.base import CourierClient
from app.integrations.payments.base import PaymentsProvider
from app.models import Order
from app.services.container import get_courier, get_order_store
from app.services.decline_service import relist_book
from app.services.errors import ErrorKind, WorkflowError
from app.services.order_state import OrderStatus
from app.services.refund_service import process_refund, refund_message, settle_refunded_escrow
from app.services.stores import OrderStore
from app.utils.events import log_event
from app.utils.notify import queue_notification


def _cancel_shipment(order: Order, reason: str, courier: CourierClient | None) -> None:
    if not order.tracking_number:
        return
    courier = courier or get_courier()
    try:
        result = courier.cancel_shipment(order.tracking_number, reason=reason)
    except GatewayError as e:
        raise WorkflowError(ErrorKind.GATEWAY_ERROR, f"Shipment cancellation failed: {e.message}", details=e.to_dict()) from e
    if result.too_late:
        raise WorkflowError(
            ErrorKind.INVALID_STATUS,
            "The parcel is already with the courier and can no longer be cancelled",
            details={"order_id": order.id, "tracking_number": order.tracking_number},
        )


def cancel_order(
    order_id: str,
    buyer_id: str,
    reason: str,
    *,
    store: OrderStore | None = None,
    payments: PaymentsProvider | None = None,
    courier: CourierClient | None = None,
) -> dict:
    """Buyer cancels before the parcel is collected; shipment first, then refund."""
    order_id = (order_id or "").strip()
    reason = (reason or "").strip() or "Cancelled by buyer"
    if not order_id or not buyer_id:
        raise WorkflowError(ErrorKind.VALIDATION_ERROR, "order_id is required")

    store = store or get_order_store()
    order = store.get(order_id, buyer_id=buyer_id)
    if order is None:
        raise WorkflowError(ErrorKind.NOT_FOUND, "Order not found", details={"order_id": order_id})
    if order.status not in OrderStatus.CANCELLABLE or order.collected_at is not None:
        raise WorkflowError(
            ErrorKind.INVALID_STATUS,
            f"Order can no longer be cancelled (status is {order.status})",
            details={"order_id": order.id, "status": order.status},
        )

    _cancel_shipment(order, reason, courier)

    refund_status = "not_required"
    refund_reference = None
    refund_amount = 0.0
    if (order.payment_reference or "").strip():
        outcome = process_refund(
            order.id,
            f"Order cancelled by buyer: {reason}",
            mark_order_refunded=False,
            actor_user_id=buyer_id,
            store=store,
            payments=payments,
        )
        if not outcome.success:
            current_app.logger.error("buyer_cancel_refund_failed order_id=%s shipment_cancelled=%s", order.id, bool(order.tracking_number))
            raise WorkflowError(ErrorKind.GATEWAY_ERROR, f"Refund failed, order not cancelled: {outcome.error}", details={"order_id": order.id})
        refund_status = outcome.refund.status
        refund_reference = outcome.refund_reference or None
        refund_amount = float(outcome.refund.amount or 0.0)

    now = datetime.utcnow()
    values = {
        "cancelled_at": now,
        "cancellation_reason": reason[:500],
        "refund_status": refund_status,
        "refund_reference": refund_reference,
        "delivery_status": "cancelled" if order.tracking_number else order.delivery_status,
    }
    if refund_status == "success":
        values["refunded_at"] = now
    if not store.transition(order.id, OrderStatus.CANCELLABLE, OrderStatus.CANCELLED, values):
        store.rollback()
        raise WorkflowError(ErrorKind.INVALID_STATUS, "Order changed while cancelling", details={"order_id": order.id})

    settle_refunded_escrow(order, refund_status, actor_user_id=buyer_id, reason=reason)
    relist_book(order)
    store.add_event(order.id, "cancelled_by_buyer", actor_user_id=buyer_id, note=reason)
    queue_notification(
        order.seller_id,
        type="order_cancelled",
        title="Order cancelled",
        message=f"The buyer cancelled order {order.id}. Reason: {reason}",
        order_id=order.id,
    )
    queue_notification(
        order.buyer_id,
        type="order_cancelled",
        title="Order cancelled",
        message="Your order was cancelled." + (" " + refund_message(refund_amount, refund_status) if refund_amount else ""),
        order_id=order.id,
    )
    log_event(
        "order_cancelled_by_buyer",
        actor_user_id=buyer_id,
        subject_type="order",
        subject_id=order.id,
        idempotency_key=f"order_cancelled:{order.id}",
        metadata={"reason": reason, "refund_status": refund_status},
    )
    store.commit()
    cancelled = store.get(order.id)
    return {
        "success": True,
        "refund_amount": refund_amount,
        "refund_status": refund_status,
        "order": cancelled.to_dict() if cancelled is not None else {"id": order.id},
    }
