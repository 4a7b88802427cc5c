from __future__ import annotations

from datetime import datetime

from flask import current_app

from app.models import Order
from app.services.delivery_service import schedule_pickup
from app.services.errors import WorkflowError
from app.services.order_state import OrderStatus
from app.utils.job_runs import record_job_run


def run_pickup_scheduler(*, limit: int = 200) -> dict:
    """Book courier collection for committed home orders still without a shipment."""
    started_at = datetime.utcnow()
    rows = (
        Order.query.filter(
            Order.status == OrderStatus.COMMITTED,
            Order.delivery_method == "home",
            Order.tracking_number.is_(None),
        )
        .order_by(Order.committed_at.asc())
        .limit(int(limit))
        .all()
    )
    order_ids = [o.id for o in rows]

    scheduled = 0
    errors = 0
    for order_id in order_ids:
        try:
            schedule_pickup(order_id)
            scheduled += 1
        except WorkflowError as e:
            errors += 1
            current_app.logger.warning("pickup_runner_failed order_id=%s kind=%s err=%s", order_id, e.kind.value, e.message)

    record_job_run(
        job_name="pickup_scheduler",
        ok=errors == 0,
        started_at=started_at,
        processed=len(order_ids),
        error=None if errors == 0 else f"errors={errors}",
    )
    return {"ok": errors == 0, "processed": len(order_ids), "scheduled": scheduled, "errors": errors, "ts": datetime.utcnow().isoformat()}
