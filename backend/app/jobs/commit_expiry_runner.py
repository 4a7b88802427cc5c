from __future__ import annotations

from datetime import datetime, timedelta

from flask import current_app

from app.models import Order
from app.services.decline_service import decline_commit
from app.services.errors import WorkflowError
from app.services.order_state import OrderStatus
from app.utils.job_runs import record_job_run
from app.utils.settings import get_settings

AUTO_EXPIRE_REASON = "Auto-expired: seller did not commit within 48 hours"


def _now():
    return datetime.utcnow()


def run_commit_expiry(*, limit: int = 200, now: datetime | None = None) -> dict:
    """Decline every pending_commit order older than the commit window."""
    started_at = _now()
    now = now or started_at
    settings = get_settings()
    cutoff = now - timedelta(hours=int(settings.commit_window_hours))

    rows = (
        Order.query.filter(Order.status == OrderStatus.PENDING_COMMIT, Order.created_at < cutoff)
        .order_by(Order.created_at.asc())
        .limit(int(limit))
        .all()
    )
    order_refs = [(o.id, o.seller_id) for o in rows]

    processed = 0
    expired = 0
    errors = 0
    failures = []
    for order_id, seller_id in order_refs:
        processed += 1
        try:
            decline_commit(order_id, seller_id, AUTO_EXPIRE_REASON)
            expired += 1
        except WorkflowError as e:
            errors += 1
            failures.append({"order_id": order_id, "error": e.kind.value, "message": e.message})
            current_app.logger.warning("commit_expiry_failed order_id=%s kind=%s err=%s", order_id, e.kind.value, e.message)

    result = {
        "ok": errors == 0,
        "processed": processed,
        "expired": expired,
        "errors": errors,
        "failures": failures,
        "cutoff": cutoff.isoformat(),
        "ts": _now().isoformat(),
    }
    record_job_run(
        job_name="commit_expiry",
        ok=errors == 0,
        started_at=started_at,
        processed=processed,
        error=None if errors == 0 else f"errors={errors}",
    )
    return result
