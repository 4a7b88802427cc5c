from __future__ import annotations

from datetime import datetime

from flask import current_app

from app.extensions import db
from app.integrations.common import GatewayError
from app.integrations.payments.base import PaymentsProvider
from app.models import Book, Order
from app.services.commit_service import commit_deadline
from app.services.container import get_order_store, get_payments
from app.services.errors import ErrorKind, WorkflowError
from app.services.escrow_service import hold_escrow
from app.services.order_state import OrderStatus
from app.services.payment_split import calculate_payment_split, money_major_to_minor
from app.utils.events import log_event
from app.utils.notify import queue_notification
from app.utils.settings import get_settings


def create_order_from_payment(
    *,
    buyer_id: str,
    book_id: str,
    payment_reference: str,
    delivery_method: str = "home",
    delivery_fee: float = 0.0,
    locker_id: str | None = None,
    verify_payment: bool = True,
    payments: PaymentsProvider | None = None,
) -> Order:
    """Open a pending_commit order once checkout payment succeeded.

    Replays with the same payment reference return the existing order.
    """
    payment_reference = (payment_reference or "").strip()
    if not buyer_id or not book_id or not payment_reference:
        raise WorkflowError(ErrorKind.VALIDATION_ERROR, "buyer_id, book_id and payment_reference are required")
    if delivery_method not in ("home", "locker"):
        raise WorkflowError(ErrorKind.VALIDATION_ERROR, "delivery_method must be home or locker")
    locker_id = ((locker_id or "").strip() or None) if delivery_method == "locker" else None

    existing = Order.query.filter_by(payment_reference=payment_reference).first()
    if existing is not None:
        return existing

    book = Book.query.get(str(book_id))
    if book is None:
        raise WorkflowError(ErrorKind.NOT_FOUND, "Book not found", details={"book_id": book_id})
    if book.sold:
        raise WorkflowError(ErrorKind.INVALID_STATUS, "Book has already been sold", details={"book_id": book.id})
    if book.seller_id == str(buyer_id):
        raise WorkflowError(ErrorKind.VALIDATION_ERROR, "Sellers cannot buy their own books")

    split = calculate_payment_split(book.price, delivery_fee, platform_commission_bps=get_settings().platform_commission_bps)
    if verify_payment:
        payments = payments or get_payments()
        try:
            verified = payments.verify(payment_reference)
        except GatewayError as e:
            raise WorkflowError(ErrorKind.GATEWAY_ERROR, f"Payment verification failed: {e.message}", details=e.to_dict()) from e
        if verified.status != "success":
            raise WorkflowError(ErrorKind.VALIDATION_ERROR, f"Payment not successful (status {verified.status})")
        if verified.amount and money_major_to_minor(verified.amount) != split.total_minor:
            raise WorkflowError(
                ErrorKind.VALIDATION_ERROR,
                "Paid amount does not match order total",
                details={"paid": verified.amount, "expected": split.total_amount},
            )

    order = Order(
        buyer_id=str(buyer_id),
        seller_id=book.seller_id,
        book_id=book.id,
        status=OrderStatus.PENDING_COMMIT,
        delivery_method=delivery_method,
        locker_id=locker_id,
        amount=float(book.price or 0.0),
        delivery_fee=split.delivery_amount,
        total_amount=split.total_amount,
        payment_reference=payment_reference,
        created_at=datetime.utcnow(),
    )
    db.session.add(order)
    db.session.flush()
    hold_escrow(order, actor={"type": "user", "id": buyer_id})
    book.sold = True

    store = get_order_store()
    store.add_event(order.id, "created", actor_user_id=buyer_id, note=f"payment={payment_reference}")
    deadline = commit_deadline(order)
    queue_notification(
        order.seller_id,
        type="new_order",
        title="New order: commit within 48 hours",
        message=f"'{book.title}' was bought. Commit to the sale before {deadline:%Y-%m-%d %H:%M} UTC or it will be cancelled.",
        order_id=order.id,
        meta={"commit_deadline": deadline.isoformat() if deadline else None},
    )
    log_event(
        "order_created",
        actor_user_id=buyer_id,
        subject_type="order",
        subject_id=order.id,
        idempotency_key=f"order_created:{payment_reference}",
        metadata={"total": split.total_amount, "seller_minor": split.seller_minor, "platform_minor": split.platform_minor},
    )
    store.commit()
    current_app.logger.info("order_created order_id=%s seller_id=%s total=%s", order.id, order.seller_id, order.total_amount)
    return order
