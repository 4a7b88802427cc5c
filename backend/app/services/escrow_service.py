from __future__ import annotations

import json
from datetime import datetime

from flask import current_app

from app.extensions import db
from app.integrations.common import GatewayError
from app.integrations.payments.base import PaymentsProvider
from app.models import BankingSubaccount, EscrowTransition, Order
from app.services.container import get_order_store, get_payments
from app.services.errors import ErrorKind, WorkflowError
from app.services.order_state import EscrowStatus, OrderStatus
from app.services.payment_split import calculate_payment_split
from app.utils.events import log_event
from app.utils.notify import queue_notification
from app.utils.settings import get_settings


def _parse_actor(actor) -> tuple[str, str | None]:
    if isinstance(actor, dict):
        actor_id = actor.get("id")
        return str(actor.get("type") or "system"), str(actor_id) if actor_id is not None else None
    return "system", None


def transition_escrow(
    order: Order,
    to_state: str,
    *,
    idempotency_key: str,
    actor=None,
    reason: str = "",
    metadata: dict | None = None,
) -> EscrowTransition:
    """Append to the escrow ledger and move the order's escrow status.

    Replays with the same key return the first row. The caller owns the commit.
    """
    if order is None:
        raise ValueError("order required")
    key = (idempotency_key or "").strip()[:160]
    if not key:
        raise ValueError("idempotency_key required")

    existing = EscrowTransition.query.filter_by(order_id=order.id, idempotency_key=key).first()
    if existing:
        return existing

    current = (order.escrow_status or EscrowStatus.NONE).strip().upper()
    target = (to_state or EscrowStatus.NONE).strip().upper()
    if target not in EscrowStatus.ALLOWED.get(current, {current}):
        raise WorkflowError(
            ErrorKind.INVALID_STATUS,
            f"invalid_escrow_transition {current}->{target}",
            details={"order_id": order.id, "escrow_status": current},
        )

    actor_type, actor_id = _parse_actor(actor)
    now = datetime.utcnow()
    row = EscrowTransition(
        order_id=order.id,
        from_status=current,
        to_status=target,
        actor_type=actor_type[:32],
        actor_id=actor_id,
        idempotency_key=key,
        reason=(reason or "")[:240],
        metadata_json=json.dumps(metadata or {}, default=str)[:4000],
        created_at=now,
    )
    db.session.add(row)
    order.escrow_status = target
    if target == EscrowStatus.HELD and order.escrow_held_at is None:
        order.escrow_held_at = now
    if target == EscrowStatus.RELEASED:
        order.escrow_released_at = now
    db.session.flush()
    return row


def hold_escrow(order: Order, *, actor=None) -> EscrowTransition:
    split = calculate_payment_split(order.amount, order.delivery_fee, platform_commission_bps=get_settings().platform_commission_bps)
    order.seller_amount_minor = split.seller_minor
    order.platform_fee_minor = split.platform_minor
    return transition_escrow(
        order,
        EscrowStatus.HELD,
        idempotency_key=f"escrow:hold:{order.id}",
        actor=actor,
        reason="payment captured",
        metadata=split.to_dict(),
    )


def seller_payout_account(seller_id: str) -> BankingSubaccount | None:
    return (
        BankingSubaccount.query.filter_by(user_id=str(seller_id), status="active")
        .order_by(BankingSubaccount.id.desc())
        .first()
    )


def release_escrow(order: Order, *, actor=None, payments: PaymentsProvider | None = None) -> EscrowTransition:
    """Pay the seller share out of escrow; on any failure escrow stays HELD."""
    if (order.escrow_status or EscrowStatus.NONE) == EscrowStatus.RELEASED:
        return transition_escrow(order, EscrowStatus.RELEASED, idempotency_key=f"escrow:release:{order.id}", actor=actor)
    if order.escrow_status != EscrowStatus.HELD:
        raise WorkflowError(ErrorKind.INVALID_STATUS, f"Escrow is {order.escrow_status}, not HELD", details={"order_id": order.id})
    if order.status != OrderStatus.COMPLETED:
        raise WorkflowError(ErrorKind.INVALID_STATUS, "Escrow is released only for completed orders", details={"order_id": order.id})

    account = seller_payout_account(order.seller_id)
    if account is None or not account.recipient_code:
        raise WorkflowError(ErrorKind.VALIDATION_ERROR, "Seller has no active payout account", details={"order_id": order.id})

    seller_minor = int(order.seller_amount_minor or 0)
    if seller_minor <= 0:
        split = calculate_payment_split(order.amount, order.delivery_fee, platform_commission_bps=get_settings().platform_commission_bps)
        order.seller_amount_minor = split.seller_minor
        order.platform_fee_minor = split.platform_minor
        seller_minor = split.seller_minor

    payments = payments or get_payments()
    reference = f"payout-{order.id}"
    try:
        transfer = payments.transfer(
            amount_minor=seller_minor,
            recipient_code=account.recipient_code,
            reference=reference,
            reason=f"Payout for order {order.id}",
        )
    except GatewayError as e:
        db.session.rollback()
        current_app.logger.error("escrow_release_failed order_id=%s failure=%s err=%s", order.id, e.failure.value, e.message)
        raise WorkflowError(ErrorKind.GATEWAY_ERROR, f"Payout transfer failed: {e.message}", details=e.to_dict()) from e

    order.payout_reference = transfer.transfer_code or reference
    row = transition_escrow(
        order,
        EscrowStatus.RELEASED,
        idempotency_key=f"escrow:release:{order.id}",
        actor=actor,
        reason="delivery confirmed",
        metadata={"seller_minor": seller_minor, "platform_minor": int(order.platform_fee_minor or 0), "transfer": transfer.transfer_code},
    )
    store = get_order_store()
    store.add_event(order.id, "escrow_released", note=f"seller_minor={seller_minor}")
    queue_notification(
        order.seller_id,
        type="payout_released",
        title="Payout on its way",
        message=f"R{seller_minor / 100:.2f} for your sale has been sent to your bank account.",
        order_id=order.id,
        meta={"payout_reference": order.payout_reference},
    )
    log_event(
        "escrow_released",
        subject_type="order",
        subject_id=order.id,
        idempotency_key=f"escrow_released:{order.id}",
        metadata={"seller_minor": seller_minor, "payout_reference": order.payout_reference},
    )
    store.commit()
    return row


def refund_escrow(order: Order, *, actor=None, reason: str = "") -> EscrowTransition:
    return transition_escrow(
        order,
        EscrowStatus.REFUNDED,
        idempotency_key=f"escrow:refund:{order.id}",
        actor=actor,
        reason=reason or "refunded to buyer",
    )
