from __future__ import annotations

from dataclasses import dataclass

from flask import current_app

from app.extensions import db
from app.integrations.payments.base import PaymentsProvider
from app.models import Order, SellerFine, User
from app.services.container import get_order_store
from app.services.errors import ErrorKind, WorkflowError
from app.services.escrow_service import transition_escrow
from app.services.order_state import EscrowStatus, OrderStatus
from app.services.refund_service import process_refund
from app.services.stores import OrderStore
from app.utils.events import log_event
from app.utils.notify import queue_notification

SECOND_OFFENSE_SURCHARGE = 100.0
THIRD_OFFENSE_SURCHARGE = 250.0


@dataclass(frozen=True)
class FineDecision:
    offense_number: int
    amount: float
    suspension_review: bool


def compute_fine(offense_number: int, delivery_fee: float) -> FineDecision:
    """1st: delivery fee. 2nd: fee + R100. 3rd and later: fee + R250 and a suspension review."""
    n = max(1, int(offense_number))
    fee = round(float(delivery_fee or 0.0), 2)
    if n == 1:
        return FineDecision(n, fee, False)
    if n == 2:
        return FineDecision(n, round(fee + SECOND_OFFENSE_SURCHARGE, 2), False)
    return FineDecision(n, round(fee + THIRD_OFFENSE_SURCHARGE, 2), True)


def record_fine(order: Order, *, reason: str = "") -> SellerFine:
    existing = SellerFine.query.filter_by(order_id=order.id).first()
    if existing is not None:
        return existing
    prior = SellerFine.query.filter_by(seller_id=order.seller_id).count()
    decision = compute_fine(prior + 1, order.delivery_fee)
    fine = SellerFine(
        seller_id=order.seller_id,
        order_id=order.id,
        offense_number=decision.offense_number,
        amount=decision.amount,
        reason=(reason or "Listing misrepresented")[:240],
    )
    db.session.add(fine)
    if decision.suspension_review:
        seller = User.query.get(order.seller_id)
        if seller is not None:
            seller.suspension_review = True
        current_app.logger.warning("seller_flagged_for_suspension seller_id=%s offenses=%s", order.seller_id, decision.offense_number)
    queue_notification(
        order.seller_id,
        type="seller_fined",
        title="Penalty applied",
        message=f"A fine of R{decision.amount:.2f} was applied for order {order.id} (offense {decision.offense_number})."
        + (" Your account is under review." if decision.suspension_review else ""),
        order_id=order.id,
        meta={"offense_number": decision.offense_number, "amount": decision.amount},
    )
    return fine


def open_dispute(order_id: str, buyer_id: str, reason: str, *, store: OrderStore | None = None) -> Order:
    reason = (reason or "").strip()
    if not reason:
        raise WorkflowError(ErrorKind.VALIDATION_ERROR, "reason is required")
    store = store or get_order_store()
    order = store.get(order_id, buyer_id=buyer_id)
    if order is None:
        raise WorkflowError(ErrorKind.NOT_FOUND, "Order not found", details={"order_id": order_id})
    if order.status not in OrderStatus.POST_COMMIT:
        raise WorkflowError(ErrorKind.INVALID_STATUS, f"Order cannot be disputed from status {order.status}", details={"order_id": order.id})
    if order.dispute_status == "open":
        return order
    if order.escrow_status != EscrowStatus.HELD:
        raise WorkflowError(ErrorKind.INVALID_STATUS, "Funds have already been released or refunded", details={"order_id": order.id})

    transition_escrow(
        order,
        EscrowStatus.DISPUTED,
        idempotency_key=f"escrow:dispute:{order.id}",
        actor={"type": "user", "id": buyer_id},
        reason=reason,
    )
    store.update_fields(order.id, {"dispute_status": "open", "dispute_reason": reason[:500]})
    store.add_event(order.id, "dispute_opened", actor_user_id=buyer_id, note=reason)
    queue_notification(
        order.seller_id,
        type="dispute_opened",
        title="Payment dispute opened",
        message=f"The buyer opened a dispute on order {order.id}: {reason}. Payout is on hold.",
        order_id=order.id,
    )
    log_event("dispute_opened", actor_user_id=buyer_id, subject_type="order", subject_id=order.id, metadata={"reason": reason})
    store.commit()
    return store.get(order.id)


def resolve_dispute(
    order_id: str,
    *,
    seller_at_fault: bool,
    admin_id: str,
    note: str = "",
    store: OrderStore | None = None,
    payments: PaymentsProvider | None = None,
) -> dict:
    store = store or get_order_store()
    order = store.get(order_id)
    if order is None:
        raise WorkflowError(ErrorKind.NOT_FOUND, "Order not found", details={"order_id": order_id})
    if order.dispute_status != "open":
        raise WorkflowError(ErrorKind.INVALID_STATUS, "Order has no open dispute", details={"order_id": order.id})

    fine = None
    if seller_at_fault:
        outcome = process_refund(
            order.id,
            f"Dispute resolved for buyer: {order.dispute_reason or note}",
            mark_order_refunded=True,
            actor_user_id=admin_id,
            store=store,
            payments=payments,
        )
        if not outcome.success:
            raise WorkflowError(ErrorKind.GATEWAY_ERROR, f"Refund failed, dispute left open: {outcome.error}", details={"order_id": order.id})
        order = store.get(order.id)
        fine = record_fine(order, reason=order.dispute_reason or note)
        store.update_fields(order.id, {"dispute_status": "resolved_refund"})
        resolution = "refund"
    else:
        transition_escrow(
            order,
            EscrowStatus.HELD,
            idempotency_key=f"escrow:dispute_release:{order.id}",
            actor={"type": "admin", "id": admin_id},
            reason=note or "dispute rejected",
        )
        store.update_fields(order.id, {"dispute_status": "resolved_release"})
        resolution = "release"

    store.add_event(order.id, f"dispute_resolved_{resolution}", actor_user_id=admin_id, note=note)
    queue_notification(
        order.buyer_id,
        type="dispute_resolved",
        title="Dispute resolved",
        message="Your dispute was upheld and you have been refunded." if seller_at_fault else "Your dispute was reviewed and closed.",
        order_id=order.id,
    )
    log_event(
        "dispute_resolved",
        actor_user_id=admin_id,
        subject_type="order",
        subject_id=order.id,
        idempotency_key=f"dispute_resolved:{order.id}",
        metadata={"resolution": resolution, "fine": fine.amount if fine is not None else None},
    )
    store.commit()
    current = store.get(order.id)
    return {
        "success": True,
        "resolution": resolution,
        "order": current.to_dict() if current is not None else {"id": order.id},
        "fine": fine.to_dict() if fine is not None else None,
    }
