from __future__ import annotations

import json
import time
from datetime import datetime

from celery import shared_task
from flask import current_app

from app.jobs.commit_expiry_runner import run_commit_expiry as _run_commit_expiry
from app.jobs.escrow_runner import run_escrow_settlement as _run_escrow_settlement
from app.jobs.pickup_runner import run_pickup_scheduler as _run_pickup_scheduler
from app.services.delivery_service import handle_courier_event, schedule_pickup
from app.services.errors import ErrorKind, WorkflowError

# kinds worth another attempt; everything else is final
RETRYABLE = {ErrorKind.GATEWAY_ERROR, ErrorKind.NETWORK_ERROR, ErrorKind.UPDATE_FAILED}


def _task_log(task_name: str, *, status: str, started_at: float, trace_id: str = "", **extra):
    payload = {
        "task_name": task_name,
        "status": status,
        "duration_ms": int(max(0.0, time.perf_counter() - float(started_at)) * 1000.0),
        "trace_id": str(trace_id or ""),
        "timestamp": datetime.utcnow().isoformat(),
    }
    payload.update(extra or {})
    current_app.logger.info(json.dumps(payload, default=str))


def _retry_countdown(retries: int) -> int:
    return int(min(900, max(5, 5 * (2 ** int(max(0, retries))))))


@shared_task(bind=True, name="app.tasks.workflow_tasks.schedule_pickup", max_retries=5)
def schedule_pickup_task(self, order_id: str, *, trace_id: str = ""):
    started = time.perf_counter()
    try:
        order = schedule_pickup(order_id)
    except WorkflowError as exc:
        if exc.kind in RETRYABLE and int(self.request.retries or 0) < int(self.max_retries or 0):
            countdown = _retry_countdown(int(self.request.retries or 0))
            _task_log("schedule_pickup", status="retrying", started_at=started, trace_id=trace_id, order_id=order_id, error=exc.kind.value, countdown=countdown)
            raise self.retry(exc=exc, countdown=countdown)
        _task_log("schedule_pickup", status="failed", started_at=started, trace_id=trace_id, order_id=order_id, error=exc.kind.value)
        return {"ok": False, "error": exc.kind.value, "message": exc.message}
    _task_log("schedule_pickup", status="ok", started_at=started, trace_id=trace_id, order_id=order_id)
    return {"ok": True, "order_id": order_id, "tracking_number": order.tracking_number}


@shared_task(bind=True, name="app.tasks.workflow_tasks.process_courier_event", max_retries=5)
def process_courier_event_task(self, *, payload: dict, trace_id: str = ""):
    started = time.perf_counter()
    try:
        result = handle_courier_event(payload)
    except WorkflowError as exc:
        if exc.kind in RETRYABLE and int(self.request.retries or 0) < int(self.max_retries or 0):
            raise self.retry(exc=exc, countdown=_retry_countdown(int(self.request.retries or 0)))
        _task_log("process_courier_event", status="failed", started_at=started, trace_id=trace_id, error=exc.kind.value)
        return {"ok": False, "error": exc.kind.value}
    _task_log("process_courier_event", status="ok", started_at=started, trace_id=trace_id, order_id=result.get("order_id"))
    return result


@shared_task(name="app.tasks.workflow_tasks.run_commit_expiry")
def run_commit_expiry():
    return _run_commit_expiry()


@shared_task(name="app.tasks.workflow_tasks.run_pickup_scheduler")
def run_pickup_scheduler():
    return _run_pickup_scheduler()


@shared_task(name="app.tasks.workflow_tasks.run_escrow_settlement")
def run_escrow_settlement():
    return _run_escrow_settlement()
