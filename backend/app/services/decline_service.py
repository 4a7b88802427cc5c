from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from flask import current_app

from app.integrations.payments.base import PaymentsProvider
from app.models import Book, Order
from app.services.container import get_order_store
from app.services.errors import ErrorKind, WorkflowError
from app.services.order_state import OrderStatus
from app.services.refund_service import process_refund, refund_message, settle_refunded_escrow
from app.services.stores import OrderStore
from app.utils.events import log_event
from app.utils.notify import queue_notification


@dataclass
class DeclineOutcome:
    order: dict
    refund_amount: float
    refund_reference: str = ""
    refund_status: str = "not_required"

    def to_dict(self) -> dict:
        return {
            "success": True,
            "refund_amount": self.refund_amount,
            "refund_reference": self.refund_reference,
            "refund_status": self.refund_status,
            "order": self.order,
        }


def relist_book(order: Order) -> None:
    if not order.book_id:
        return
    book = Book.query.get(order.book_id)
    if book is not None and book.sold:
        book.sold = False


def decline_commit(
    order_id: str,
    seller_id: str,
    reason: str,
    *,
    actor_user_id: str | None = None,
    store: OrderStore | None = None,
    payments: PaymentsProvider | None = None,
) -> DeclineOutcome:
    """Seller declines a pending order: refund first, cancel only after.

    If the refund cannot be issued the order stays pending_commit and the
    call fails with GATEWAY_ERROR, so a retry can pick it up again. A refund
    the gateway accepted but has not settled still cancels the order; escrow
    stays HELD until the refund webhook or a status poll confirms it.
    """
    order_id = (order_id or "").strip()
    seller_id = (seller_id or "").strip()
    reason = (reason or "").strip()
    missing = [name for name, value in (("order_id", order_id), ("seller_id", seller_id), ("reason", reason)) if not value]
    if missing:
        raise WorkflowError(ErrorKind.VALIDATION_ERROR, f"Missing required fields: {', '.join(missing)}", details={"missing": missing})

    store = store or get_order_store()
    order = store.get(order_id, seller_id=seller_id)
    if order is None:
        raise WorkflowError(ErrorKind.NOT_FOUND, "Order not found or not owned by seller", details={"order_id": order_id})
    if order.status != OrderStatus.PENDING_COMMIT:
        raise WorkflowError(
            ErrorKind.INVALID_STATUS,
            f"Only pending orders can be declined (status is {order.status})",
            details={"order_id": order.id, "status": order.status},
        )

    refund_amount = 0.0
    refund_reference = ""
    refund_status = "not_required"
    if (order.payment_reference or "").strip():
        outcome = process_refund(
            order.id,
            f"Order declined by seller: {reason}",
            mark_order_refunded=False,
            actor_user_id=actor_user_id,
            store=store,
            payments=payments,
        )
        if not outcome.success:
            raise WorkflowError(
                ErrorKind.GATEWAY_ERROR,
                f"Refund failed, order not declined: {outcome.error}",
                details={"order_id": order.id, "refund_status": "failed"},
            )
        refund_amount = float(outcome.refund.amount or 0.0)
        refund_reference = outcome.refund_reference
        refund_status = outcome.refund.status

    now = datetime.utcnow()
    values = {
        "declined_at": now,
        "cancelled_at": now,
        "decline_reason": reason[:500],
        "cancellation_reason": reason[:500],
        "refund_status": refund_status,
        "refund_reference": refund_reference or None,
    }
    if refund_status == "success":
        values["refunded_at"] = now
    if not store.transition(order.id, [OrderStatus.PENDING_COMMIT], OrderStatus.CANCELLED, values):
        store.rollback()
        log_event(
            "decline_after_refund_lost_race",
            actor_user_id=actor_user_id,
            subject_type="order",
            subject_id=order.id,
            severity="CRITICAL",
            metadata={"refund_reference": refund_reference, "refund_amount": refund_amount},
        )
        store.commit()
        current_app.logger.error("decline_transition_lost order_id=%s refund_ref=%s", order.id, refund_reference)
        raise WorkflowError(ErrorKind.UPDATE_FAILED, "Order changed while declining", details={"order_id": order.id})

    settle_refunded_escrow(order, refund_status, actor_user_id=actor_user_id, reason=reason)
    relist_book(order)
    store.add_event(order.id, "declined", actor_user_id=actor_user_id, note=reason)
    queue_notification(
        order.buyer_id,
        type="order_declined",
        title="Order declined",
        message=f"The seller could not fulfil your order. Reason: {reason}. "
        + (refund_message(refund_amount, refund_status) if refund_amount else "No payment was taken."),
        order_id=order.id,
        meta={"refund_reference": refund_reference},
    )
    queue_notification(
        order.seller_id,
        type="order_declined",
        title="Order declined",
        message=f"You declined order {order.id}." + (" The buyer has been refunded." if refund_status == "success" else " The buyer's refund is being processed." if refund_amount else ""),
        order_id=order.id,
    )
    log_event(
        "order_declined",
        actor_user_id=actor_user_id,
        subject_type="order",
        subject_id=order.id,
        idempotency_key=f"order_declined:{order.id}",
        metadata={"reason": reason, "refund_amount": refund_amount, "refund_status": refund_status},
    )
    store.commit()
    current_app.logger.info("order_declined order_id=%s refund_amount=%s", order.id, refund_amount)

    declined = store.get(order.id)
    return DeclineOutcome(
        order=declined.to_dict() if declined is not None else {"id": order.id},
        refund_amount=refund_amount,
        refund_reference=refund_reference,
        refund_status=refund_status,
    )
