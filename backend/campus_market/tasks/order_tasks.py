from __future__ import annotations

import json
import os
import time
from datetime import datetime

from celery import shared_task
from flask import current_app


def _task_log(task_name: str, *, status: str, started_at: float, trace_id: str = "", **extra):
    duration_ms = int(max(0.0, (time.perf_counter() - float(started_at))) * 1000.0)
    payload = {
        "task_name": task_name,
        "status": status,
        "duration_ms": duration_ms,
        "trace_id": str(trace_id or ""),
        "timestamp": datetime.utcnow().isoformat(),
    }
    payload.update(extra or {})
    current_app.logger.info(json.dumps(payload, default=str))


def _retry_countdown(retries: int) -> int:
    # Exponential backoff with cap.
    return int(min(900, max(5, 5 * (2 ** int(max(0, retries))))))


def _env_limit(name: str, default: int) -> int:
    try:
        value = int((os.getenv(name) or str(default)).strip() or default)
    except ValueError:
        value = default
    return max(1, min(value, 500))


@shared_task(
    bind=True,
    name="campus_market.tasks.order_tasks.dispatch_order_event",
    max_retries=5,
)
def dispatch_order_event_task(self, *, event_id: int, trace_id: str = ""):
    from campus_market.services.order_events import dispatch_outbox_event

    started = time.perf_counter()
    if dispatch_outbox_event(int(event_id)):
        _task_log("dispatch_order_event", status="ok", started_at=started, trace_id=trace_id, event_id=event_id)
        return {"ok": True, "event_id": int(event_id)}
    if int(self.request.retries or 0) < int(self.max_retries or 0):
        countdown = _retry_countdown(int(self.request.retries or 0))
        _task_log(
            "dispatch_order_event",
            status="retrying",
            started_at=started,
            trace_id=trace_id,
            event_id=event_id,
            countdown=countdown,
        )
        raise self.retry(exc=RuntimeError(f"order_event_dispatch_failed:{event_id}"), countdown=countdown)
    # Left undispatched; flush_order_outbox picks it up again.
    _task_log("dispatch_order_event", status="failed", started_at=started, trace_id=trace_id, event_id=event_id)
    return {"ok": False, "event_id": int(event_id)}


@shared_task(
    bind=True,
    name="campus_market.tasks.order_tasks.flush_order_outbox",
    max_retries=3,
)
def flush_order_outbox(self, *, trace_id: str = ""):
    from campus_market.jobs.outbox_runner import run_outbox_flush

    started = time.perf_counter()
    limit = _env_limit("ORDER_OUTBOX_FLUSH_LIMIT", 200)
    result = run_outbox_flush(limit=limit)
    _task_log(
        "flush_order_outbox",
        status="ok" if result.get("ok") else "partial",
        started_at=started,
        trace_id=trace_id,
        processed=result.get("processed"),
        failed=result.get("failed"),
    )
    return result


@shared_task(
    bind=True,
    name="campus_market.tasks.order_tasks.settle_confirmed_orders",
    max_retries=5,
)
def settle_confirmed_orders(self, *, trace_id: str = ""):
    from campus_market.jobs.order_settlement_runner import run_order_settlement

    started = time.perf_counter()
    limit = _env_limit("ORDER_SETTLEMENT_LIMIT", 200)
    try:
        result = run_order_settlement(limit=limit)
    except Exception as exc:
        if int(self.request.retries or 0) < int(self.max_retries or 0):
            countdown = _retry_countdown(int(self.request.retries or 0))
            _task_log(
                "settle_confirmed_orders",
                status="retrying",
                started_at=started,
                trace_id=trace_id,
                detail=str(exc),
                countdown=countdown,
            )
            raise self.retry(exc=exc, countdown=countdown)
        _task_log("settle_confirmed_orders", status="failed", started_at=started, trace_id=trace_id, detail=str(exc))
        raise
    _task_log(
        "settle_confirmed_orders",
        status="ok" if result.get("ok") else "partial",
        started_at=started,
        trace_id=trace_id,
        completed=result.get("completed"),
    )
    return result


@shared_task(
    bind=True,
    name="campus_market.tasks.order_tasks.process_squad_webhook",
    max_retries=5,
)
def process_squad_webhook_task(self, *, payload: dict, raw_text: str = "", trace_id: str = ""):
    from campus_market.services.payment_service import process_webhook

    started = time.perf_counter()
    try:
        body, status = process_webhook(payload, (raw_text or "").encode("utf-8"), source="api/squad/webhook:queued")
    except Exception as exc:
        if int(self.request.retries or 0) < int(self.max_retries or 0):
            countdown = _retry_countdown(int(self.request.retries or 0))
            _task_log(
                "process_squad_webhook",
                status="retrying",
                started_at=started,
                trace_id=trace_id,
                detail=str(exc),
                countdown=countdown,
            )
            raise self.retry(exc=exc, countdown=countdown)
        _task_log("process_squad_webhook", status="failed", started_at=started, trace_id=trace_id, detail=str(exc))
        raise
    _task_log("process_squad_webhook", status="ok", started_at=started, trace_id=trace_id, http_status=status)
    return body
