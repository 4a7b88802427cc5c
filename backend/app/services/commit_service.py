from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta

from flask import current_app

from app.integrations.common import GatewayError
from app.integrations.courier.base import CourierClient, ShipmentResult
from app.models import Order, User
from app.services.container import get_courier, get_order_store
from app.services.errors import ErrorKind, WorkflowError
from app.services.order_state import OrderStatus
from app.services.stores import OrderStore
from app.utils.events import log_event
from app.utils.notify import queue_notification
from app.utils.settings import WorkflowSettings, get_settings

DELIVERY_METHODS = ("home", "locker")


def _truthy(value, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class CommitCommand:
    order_id: str
    seller_id: str
    delivery_method: str = "home"
    locker_id: str | None = None
    use_locker_api: bool = True

    @classmethod
    def from_payload(cls, data: dict, *, seller_id: str | None = None) -> "CommitCommand":
        data = data if isinstance(data, dict) else {}
        return cls(
            order_id=str(data.get("order_id") or "").strip(),
            seller_id=str(seller_id or data.get("seller_id") or "").strip(),
            delivery_method=str(data.get("delivery_method") or "home").strip().lower(),
            locker_id=(str(data.get("locker_id")).strip() or None) if data.get("locker_id") else None,
            use_locker_api=_truthy(data.get("use_locker_api"), default=True),
        )

    def validate(self) -> None:
        missing = [name for name in ("order_id", "seller_id") if not getattr(self, name)]
        if missing:
            raise WorkflowError(ErrorKind.VALIDATION_ERROR, f"Missing required fields: {', '.join(missing)}", details={"missing": missing})
        if self.delivery_method not in DELIVERY_METHODS:
            raise WorkflowError(ErrorKind.VALIDATION_ERROR, "delivery_method must be home or locker")
        if self.delivery_method == "locker" and not self.locker_id:
            raise WorkflowError(ErrorKind.VALIDATION_ERROR, "locker_id is required for locker delivery")

    def to_payload(self) -> dict:
        payload = {
            "order_id": self.order_id,
            "seller_id": self.seller_id,
            "delivery_method": self.delivery_method,
            "use_locker_api": self.use_locker_api,
        }
        if self.locker_id:
            payload["locker_id"] = self.locker_id
        return payload


@dataclass
class CommitOutcome:
    order: dict
    shipment: dict | None = None
    via: str = "direct"
    warnings: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "success": True,
            "order": self.order,
            "shipment": self.shipment,
            "via": self.via,
            "warnings": list(self.warnings),
        }


def commit_deadline(order: Order, settings: WorkflowSettings | None = None) -> datetime | None:
    if order is None or order.created_at is None:
        return None
    settings = settings or get_settings()
    return order.created_at + timedelta(hours=int(settings.commit_window_hours))


def estimated_payment_date(delivery_method: str, now: datetime, settings: WorkflowSettings) -> datetime:
    days = settings.locker_payment_days if delivery_method == "locker" else settings.standard_payment_days
    return now + timedelta(days=days)


def reject_unless_pending(order: Order) -> None:
    status = (order.status or "").strip().lower()
    if status in OrderStatus.POST_COMMIT:
        raise WorkflowError(
            ErrorKind.ALREADY_COMMITTED,
            "Order has already been committed",
            details={"order_id": order.id, "status": status},
        )
    if status != OrderStatus.PENDING_COMMIT:
        raise WorkflowError(
            ErrorKind.INVALID_STATUS,
            f"Order cannot be committed from status {status}",
            details={"order_id": order.id, "status": status},
        )


def contact_for(user_id: str | None) -> dict:
    user = User.query.get(user_id) if user_id else None
    if user is None:
        return {"id": user_id}
    return {"id": user.id, "name": user.name or "", "email": user.email or "", "phone": user.phone or ""}


def _cancel_orphan_shipment(courier: CourierClient | None, shipment: ShipmentResult | None, order_id: str) -> None:
    if courier is None or shipment is None:
        return
    try:
        courier.cancel_shipment(shipment.tracking_number, reason="commit not applied")
    except GatewayError as e:
        current_app.logger.error(
            "orphan_shipment_cancel_failed order_id=%s tracking=%s err=%s",
            order_id,
            shipment.tracking_number,
            e,
        )


def commit_to_sale(
    command: CommitCommand,
    *,
    use_courier: bool = True,
    store: OrderStore | None = None,
    courier: CourierClient | None = None,
    settings: WorkflowSettings | None = None,
    now: datetime | None = None,
    via: str = "direct",
) -> CommitOutcome:
    """Move a seller's pending order to committed.

    With `use_courier` and locker delivery the locker shipment is booked first,
    so a courier failure leaves the order untouched. The status change itself
    is one conditional update; losing that race reports ALREADY_COMMITTED and
    releases the shipment booked for this attempt.
    """
    command.validate()
    store = store or get_order_store()
    settings = settings or get_settings()
    now = now or datetime.utcnow()

    order = store.get(command.order_id, seller_id=command.seller_id)
    if order is None:
        raise WorkflowError(ErrorKind.NOT_FOUND, "Order not found or not owned by seller", details={"order_id": command.order_id})
    reject_unless_pending(order)

    deadline = commit_deadline(order, settings)
    if deadline is not None and now > deadline:
        raise WorkflowError(
            ErrorKind.INVALID_STATUS,
            "Commit window has expired",
            details={"order_id": order.id, "deadline": deadline.isoformat()},
        )

    warnings = []
    shipment: ShipmentResult | None = None
    booked_with: CourierClient | None = None
    if command.delivery_method == "locker":
        if use_courier and command.use_locker_api:
            booked_with = courier or get_courier()
            try:
                shipment = booked_with.create_locker_shipment(
                    reference=f"ORDER-{order.id}",
                    locker_id=command.locker_id,
                    collection=contact_for(order.seller_id),
                    recipient=contact_for(order.buyer_id),
                )
            except GatewayError as e:
                current_app.logger.warning("locker_shipment_failed order_id=%s failure=%s err=%s", order.id, e.failure.value, e)
                raise WorkflowError(ErrorKind.GATEWAY_ERROR, f"Locker shipment failed: {e.message}", details=e.to_dict()) from e
        else:
            warnings.append("locker_shipment_not_created")

    values = {
        "committed_at": now,
        "delivery_method": command.delivery_method,
        "locker_id": command.locker_id if command.delivery_method == "locker" else None,
        "estimated_payment_date": estimated_payment_date(command.delivery_method, now, settings),
        "delivery_status": "awaiting_locker_dropoff" if command.delivery_method == "locker" else "awaiting_pickup",
    }
    if shipment is not None:
        values.update(
            tracking_number=shipment.tracking_number,
            shipment_id=shipment.shipment_id,
            waybill_url=shipment.waybill_url,
            qr_code_url=shipment.qr_code_url,
        )

    try:
        moved = store.transition(order.id, [OrderStatus.PENDING_COMMIT], OrderStatus.COMMITTED, values)
    except WorkflowError:
        _cancel_orphan_shipment(booked_with, shipment, order.id)
        raise
    if not moved:
        store.rollback()
        _cancel_orphan_shipment(booked_with, shipment, order.id)
        current = store.get(order.id)
        if current is not None:
            reject_unless_pending(current)
        raise WorkflowError(ErrorKind.UPDATE_FAILED, "Order was not updated", details={"order_id": order.id})

    store.add_event(order.id, "committed", actor_user_id=command.seller_id, note=f"delivery={command.delivery_method}")
    payment_date = values["estimated_payment_date"].date().isoformat()
    if command.delivery_method == "locker":
        message = f"The seller has committed to your order and will drop it at locker {command.locker_id}."
    else:
        message = "The seller has committed to your order. A courier will collect it shortly."
    queue_notification(
        order.buyer_id,
        type="order_committed",
        title="Order confirmed by seller",
        message=message,
        order_id=order.id,
        meta={"delivery_method": command.delivery_method, "tracking_number": values.get("tracking_number")},
    )
    log_event(
        "order_committed",
        actor_user_id=command.seller_id,
        subject_type="order",
        subject_id=order.id,
        idempotency_key=f"order_committed:{order.id}",
        metadata={"delivery_method": command.delivery_method, "via": via, "estimated_payment_date": payment_date},
    )
    store.commit()
    current_app.logger.info("order_committed order_id=%s method=%s via=%s", order.id, command.delivery_method, via)

    committed = store.get(order.id)
    return CommitOutcome(
        order=committed.to_dict() if committed is not None else {"id": order.id},
        shipment=shipment.to_dict() if shipment is not None else None,
        via=via,
        warnings=warnings,
    )
