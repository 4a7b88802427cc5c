from __future__ import annotations

from datetime import datetime, timedelta

from flask import current_app

from app.models import Order
from app.services.errors import ErrorKind, WorkflowError
from app.services.escrow_service import release_escrow
from app.services.order_state import EscrowStatus, OrderStatus
from app.utils.job_runs import record_job_run
from app.utils.settings import get_settings


def _now():
    return datetime.utcnow()


def run_escrow_settlement(*, limit: int = 500, now: datetime | None = None) -> dict:
    """Release HELD escrow for completed orders past the post-delivery hold.

    Orders with an open dispute are DISPUTED, not HELD, so they are never
    picked up here.
    """
    started_at = _now()
    now = now or started_at
    hold = timedelta(hours=int(get_settings().escrow_release_hold_hours))
    cutoff = now - hold

    rows = (
        Order.query.filter(
            Order.status == OrderStatus.COMPLETED,
            Order.escrow_status == EscrowStatus.HELD,
            Order.delivered_at.isnot(None),
            Order.delivered_at <= cutoff,
        )
        .order_by(Order.delivered_at.asc())
        .limit(int(limit))
        .all()
    )

    processed = 0
    released = 0
    skipped = 0
    errors = 0
    for o in rows:
        processed += 1
        try:
            release_escrow(o)
            released += 1
        except WorkflowError as e:
            if e.kind == ErrorKind.VALIDATION_ERROR:
                skipped += 1
            else:
                errors += 1
            current_app.logger.warning("escrow_release_skipped order_id=%s kind=%s err=%s", o.id, e.kind.value, e.message)

    result = {
        "ok": errors == 0,
        "processed": processed,
        "released": released,
        "skipped": skipped,
        "errors": errors,
        "ts": _now().isoformat(),
    }
    record_job_run(
        job_name="escrow_runner",
        ok=errors == 0,
        started_at=started_at,
        processed=processed,
        error=None if errors == 0 else f"errors={errors}",
    )
    return result
