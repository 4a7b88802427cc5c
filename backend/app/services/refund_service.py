from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime

from flask import current_app
from sqlalchemy import or_

from app.extensions import db
from app.integrations.common import GatewayError
from app.integrations.payments.base import PaymentsProvider
from app.integrations.payments.paystack_provider import map_refund_status
from app.models import Order, RefundTransaction
from app.services.container import get_order_store, get_payments
from app.services.errors import ErrorKind, WorkflowError
from app.services.escrow_service import refund_escrow
from app.services.order_state import EscrowStatus, OrderStatus, sources_for
from app.services.stores import OrderStore
from app.utils.events import log_event
from app.utils.notify import queue_notification

IN_FLIGHT = ("pending", "processing")


@dataclass
class RefundOutcome:
    success: bool
    refund: RefundTransaction | None
    already_processed: bool = False
    error: str = ""

    @property
    def refund_reference(self) -> str:
        return (self.refund.refund_reference or "") if self.refund is not None else ""

    def to_dict(self) -> dict:
        out = {
            "success": self.success,
            "already_processed": self.already_processed,
            "refund_reference": self.refund_reference,
            "data": self.refund.to_dict() if self.refund is not None else None,
        }
        if self.error:
            out["error"] = self.error
        return out


def existing_refund(order_id: str) -> RefundTransaction | None:
    """The order's successful refund, else one still in flight."""
    success = (
        RefundTransaction.query.filter_by(order_id=str(order_id), status="success")
        .order_by(RefundTransaction.id.asc())
        .first()
    )
    if success is not None:
        return success
    return (
        RefundTransaction.query.filter(
            RefundTransaction.order_id == str(order_id),
            RefundTransaction.status.in_(IN_FLIGHT),
        )
        .order_by(RefundTransaction.id.desc())
        .first()
    )


def refund_message(amount: float, status: str) -> str:
    if status == "success":
        return f"A refund of R{amount:.2f} has been issued for your order."
    return f"A refund of R{amount:.2f} is being processed for your order."


def _json(raw: dict | None) -> str | None:
    if not raw:
        return None
    return json.dumps(raw, separators=(",", ":"), default=str)[:8000]


def process_refund(
    order_id: str,
    reason: str,
    *,
    amount: float | None = None,
    mark_order_refunded: bool = True,
    actor_user_id: str | None = None,
    store: OrderStore | None = None,
    payments: PaymentsProvider | None = None,
) -> RefundOutcome:
    """Refund the buyer for an order, at most once.

    A prior success (or an in-flight pending/processing row) is returned
    as-is with no gateway call. A gateway failure is recorded as a failed row
    and reported with success=False; the order is left untouched.
    """
    store = store or get_order_store()
    order = store.get(order_id)
    if order is None:
        raise WorkflowError(ErrorKind.NOT_FOUND, "Order not found", details={"order_id": order_id})

    prior = existing_refund(order.id)
    if prior is not None:
        current_app.logger.info("refund_already_exists order_id=%s status=%s", order.id, prior.status)
        return RefundOutcome(success=True, refund=prior, already_processed=True)

    if not (order.payment_reference or "").strip():
        raise WorkflowError(ErrorKind.VALIDATION_ERROR, "Order has no payment reference to refund", details={"order_id": order.id})

    refund_amount = float(amount) if amount is not None else float(order.total_amount or 0.0)
    if refund_amount <= 0 or refund_amount > float(order.total_amount or 0.0) + 1e-9:
        raise WorkflowError(ErrorKind.VALIDATION_ERROR, "Refund amount must be positive and not exceed the order total")

    payments = payments or get_payments()
    reason = (reason or "Refund").strip()[:500]
    try:
        result = payments.refund(transaction_reference=order.payment_reference, amount=refund_amount, reason=reason)
    except GatewayError as e:
        failed = RefundTransaction(
            order_id=order.id,
            transaction_reference=order.payment_reference,
            amount=refund_amount,
            reason=reason,
            status="failed",
            error_message=e.message[:2000],
            gateway_response=_json(e.to_dict()),
            completed_at=datetime.utcnow(),
        )
        db.session.add(failed)
        db.session.flush()
        store.add_event(order.id, "refund_failed", actor_user_id=actor_user_id, note=e.message, idempotency_key=f"refund_failed:{failed.id}")
        log_event(
            "refund_failed",
            actor_user_id=actor_user_id,
            subject_type="order",
            subject_id=order.id,
            severity="ERROR",
            metadata={"failure": e.failure.value, "message": e.message, "amount": refund_amount},
        )
        store.commit()
        current_app.logger.error("refund_gateway_failed order_id=%s failure=%s err=%s", order.id, e.failure.value, e.message)
        return RefundOutcome(success=False, refund=failed, error=e.message)

    now = datetime.utcnow()
    row = RefundTransaction(
        order_id=order.id,
        transaction_reference=order.payment_reference,
        refund_reference=result.refund_reference,
        amount=refund_amount,
        reason=reason,
        status=result.status,
        gateway_response=_json(result.raw),
        completed_at=now if result.status in ("success", "failed") else None,
    )
    db.session.add(row)

    order_values = {"refund_status": result.status, "refund_reference": result.refund_reference}
    if result.status == "success":
        order_values["refunded_at"] = now
    if mark_order_refunded and result.status != "failed":
        if not store.transition(order.id, sources_for(OrderStatus.REFUNDED), OrderStatus.REFUNDED, order_values):
            current_app.logger.warning("refund_order_not_transitioned order_id=%s status=%s", order.id, order.status)
            store.update_fields(order.id, order_values)
        settle_refunded_escrow(order, result.status, actor_user_id=actor_user_id, reason=reason)
    else:
        store.update_fields(order.id, order_values)

    store.add_event(order.id, "refund_" + result.status, actor_user_id=actor_user_id, note=reason)

    if result.status == "failed":
        store.commit()
        return RefundOutcome(success=False, refund=row, error="Refund rejected by payment gateway")

    if mark_order_refunded:
        queue_notification(
            order.buyer_id,
            type="refund_processed",
            title="Refund processed",
            message=refund_message(refund_amount, result.status),
            order_id=order.id,
            meta={"refund_reference": result.refund_reference},
        )
    log_event(
        "refund_processed",
        actor_user_id=actor_user_id,
        subject_type="order",
        subject_id=order.id,
        idempotency_key=f"refund_processed:{order.id}",
        metadata={"amount": refund_amount, "status": result.status, "refund_reference": result.refund_reference},
    )
    store.commit()
    current_app.logger.info("refund_processed order_id=%s ref=%s status=%s", order.id, result.refund_reference, result.status)
    return RefundOutcome(success=True, refund=row)


def settle_refunded_escrow(order: Order, refund_status: str, *, actor_user_id: str | None = None, reason: str = "") -> bool:
    """Move escrow to REFUNDED once the gateway confirms the money went back.

    Pending and processing refunds leave escrow where it is; the refund
    webhook or a status poll finishes the move. The caller commits.
    """
    if refund_status != "success":
        return False
    if (order.escrow_status or EscrowStatus.NONE) not in (EscrowStatus.HELD, EscrowStatus.DISPUTED):
        return False
    refund_escrow(order, actor={"type": "user" if actor_user_id else "system", "id": actor_user_id}, reason=reason)
    return True


def check_refund_status(order_id: str, *, payments: PaymentsProvider | None = None) -> RefundTransaction | None:
    """Poll the gateway for an in-flight refund and store the answer."""
    row = (
        RefundTransaction.query.filter(
            RefundTransaction.order_id == str(order_id),
            RefundTransaction.refund_reference.isnot(None),
        )
        .order_by(RefundTransaction.id.desc())
        .first()
    )
    if row is None:
        return None
    if row.status not in IN_FLIGHT:
        return row
    payments = payments or get_payments()
    try:
        result = payments.fetch_refund(row.refund_reference)
    except GatewayError as e:
        raise WorkflowError(ErrorKind.GATEWAY_ERROR, f"Refund status check failed: {e.message}", details=e.to_dict()) from e
    return apply_refund_status(row, result.status, raw=result.raw)


def apply_refund_status(row: RefundTransaction, status: str, *, raw: dict | None = None) -> RefundTransaction:
    store = get_order_store()
    if row.status == "success" or status == row.status:
        return row
    row.status = status
    if raw:
        row.gateway_response = _json(raw)
    if status in ("success", "failed"):
        row.completed_at = datetime.utcnow()
    values = {"refund_status": status}
    if status == "success":
        values["refunded_at"] = row.completed_at
    store.update_fields(row.order_id, values)
    store.add_event(row.order_id, "refund_" + status, note=f"refund {row.refund_reference} -> {status}", idempotency_key=f"refund:{row.refund_reference}:{status}")

    order = store.get(row.order_id)
    if order is not None and order.status in (OrderStatus.CANCELLED, OrderStatus.REFUNDED):
        if status == "success":
            settle_refunded_escrow(order, status, reason=f"refund {row.refund_reference} confirmed")
        elif status == "failed":
            _refund_failed_after_close(order, row)
    store.commit()
    current_app.logger.info("refund_status_updated order_id=%s ref=%s status=%s", row.order_id, row.refund_reference, status)
    return row


def _refund_failed_after_close(order: Order, row: RefundTransaction) -> None:
    # order is already closed but the buyer still holds no money; escrow stays
    # HELD/DISPUTED so reconciliation finds it
    log_event(
        "refund_failed_after_close",
        subject_type="order",
        subject_id=order.id,
        severity="CRITICAL",
        idempotency_key=f"refund_failed_after_close:{row.id}",
        metadata={
            "refund_reference": row.refund_reference,
            "amount": float(row.amount or 0.0),
            "order_status": order.status,
            "escrow_status": order.escrow_status,
        },
    )
    queue_notification(
        order.buyer_id,
        type="refund_failed",
        title="Refund delayed",
        message="Your refund could not be completed by the bank. Our team has been alerted and will retry it.",
        order_id=order.id,
        meta={"refund_reference": row.refund_reference},
    )
    current_app.logger.critical(
        "refund_failed_after_close order_id=%s ref=%s escrow=%s", order.id, row.refund_reference, order.escrow_status
    )


def apply_refund_event(event_type: str, data: dict) -> RefundTransaction | None:
    """Gateway webhook: refund.processed | refund.failed | refund.pending."""
    data = data if isinstance(data, dict) else {}
    ref = str(data.get("id") or data.get("refund_reference") or "").strip()
    transaction = data.get("transaction")
    if isinstance(transaction, dict):
        transaction = transaction.get("reference")
    transaction = str(transaction or data.get("transaction_reference") or "").strip()
    if not ref and not transaction:
        return None
    clauses = []
    if ref:
        clauses.append(RefundTransaction.refund_reference == ref)
    if transaction:
        clauses.append(RefundTransaction.transaction_reference == transaction)
    row = (
        RefundTransaction.query.filter(or_(*clauses), RefundTransaction.status != "failed")
        .order_by(RefundTransaction.id.desc())
        .first()
    )
    if row is None:
        current_app.logger.warning("refund_event_unmatched type=%s ref=%s", event_type, ref)
        return None
    status = map_refund_status(data.get("status") or (event_type or "").split(".")[-1])
    return apply_refund_status(row, status, raw=data)


def list_user_refunds(user_id: str) -> list[RefundTransaction]:
    return (
        RefundTransaction.query.join(Order, Order.id == RefundTransaction.order_id)
        .filter(or_(Order.buyer_id == str(user_id), Order.seller_id == str(user_id)))
        .order_by(RefundTransaction.created_at.desc())
        .all()
    )
