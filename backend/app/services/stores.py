from __future__ import annotations

from datetime import datetime
from typing import Iterable

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from app.extensions import db
from app.models import Order, OrderEvent
from app.services.errors import ErrorKind, WorkflowError


class OrderStore:
    """Persistence capability the order workflows depend on."""

    def get(self, order_id: str, *, seller_id: str | None = None, buyer_id: str | None = None) -> Order | None:
        raise NotImplementedError

    def transition(self, order_id: str, from_statuses: Iterable[str], to_status: str, values: dict | None = None) -> bool:
        raise NotImplementedError

    def update_fields(self, order_id: str, values: dict) -> bool:
        raise NotImplementedError

    def add_event(self, order_id: str, event: str, *, actor_user_id: str | None = None, note: str = "", idempotency_key: str | None = None) -> OrderEvent | None:
        raise NotImplementedError

    def events(self, order_id: str) -> list[OrderEvent]:
        raise NotImplementedError

    def commit(self) -> None:
        raise NotImplementedError

    def rollback(self) -> None:
        raise NotImplementedError


class SqlOrderStore(OrderStore):
    def get(self, order_id: str, *, seller_id: str | None = None, buyer_id: str | None = None) -> Order | None:
        if not order_id:
            return None
        q = Order.query.filter(Order.id == str(order_id))
        if seller_id is not None:
            q = q.filter(Order.seller_id == str(seller_id))
        if buyer_id is not None:
            q = q.filter(Order.buyer_id == str(buyer_id))
        try:
            return q.first()
        except SQLAlchemyError as e:
            db.session.rollback()
            raise WorkflowError(ErrorKind.UPDATE_FAILED, "order lookup failed") from e

    def transition(self, order_id: str, from_statuses: Iterable[str], to_status: str, values: dict | None = None) -> bool:
        """Single conditional UPDATE; True only when exactly one row moved."""
        sources = [s for s in from_statuses]
        payload = dict(values or {})
        payload["status"] = to_status
        payload["version"] = Order.version + 1
        payload["updated_at"] = datetime.utcnow()
        stmt = (
            update(Order)
            .where(Order.id == str(order_id), Order.status.in_(sources))
            .values(**payload)
            .execution_options(synchronize_session=False)
        )
        try:
            result = db.session.execute(stmt)
        except SQLAlchemyError as e:
            db.session.rollback()
            current_app.logger.error("order_transition_failed order_id=%s to=%s err=%s", order_id, to_status, e)
            raise WorkflowError(ErrorKind.UPDATE_FAILED, "order update failed", details={"order_id": order_id}) from e
        self._expire(order_id)
        return int(result.rowcount or 0) == 1

    @staticmethod
    def _expire(order_id: str) -> None:
        # the UPDATE bypasses the identity map; reload the row on next access
        obj = db.session.identity_map.get(db.session.identity_key(Order, str(order_id)))
        if obj is not None:
            db.session.expire(obj)

    def update_fields(self, order_id: str, values: dict) -> bool:
        payload = dict(values or {})
        payload["version"] = Order.version + 1
        payload["updated_at"] = datetime.utcnow()
        stmt = (
            update(Order)
            .where(Order.id == str(order_id))
            .values(**payload)
            .execution_options(synchronize_session=False)
        )
        try:
            result = db.session.execute(stmt)
        except SQLAlchemyError as e:
            db.session.rollback()
            raise WorkflowError(ErrorKind.UPDATE_FAILED, "order update failed", details={"order_id": order_id}) from e
        self._expire(order_id)
        return int(result.rowcount or 0) == 1

    def add_event(self, order_id: str, event: str, *, actor_user_id: str | None = None, note: str = "", idempotency_key: str | None = None) -> OrderEvent | None:
        key = (idempotency_key or f"order:{order_id}:{event}:{actor_user_id or 'system'}")[:160]
        existing = OrderEvent.query.filter_by(idempotency_key=key).first()
        if existing:
            return existing
        row = OrderEvent(
            order_id=str(order_id),
            actor_user_id=str(actor_user_id) if actor_user_id else None,
            event=event[:64],
            note=(note or "")[:240],
            idempotency_key=key,
        )
        try:
            with db.session.begin_nested():
                db.session.add(row)
        except IntegrityError:
            return OrderEvent.query.filter_by(idempotency_key=key).first()
        return row

    def events(self, order_id: str) -> list[OrderEvent]:
        return (
            OrderEvent.query.filter_by(order_id=str(order_id))
            .order_by(OrderEvent.created_at.asc(), OrderEvent.id.asc())
            .all()
        )

    def commit(self) -> None:
        try:
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            current_app.logger.error("order_commit_failed err=%s", e)
            raise WorkflowError(ErrorKind.UPDATE_FAILED, "database commit failed") from e

    def rollback(self) -> None:
        db.session.rollback()
