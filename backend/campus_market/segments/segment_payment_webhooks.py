from __future__ import annotations

import json
import os

from flask import Blueprint, current_app, jsonify, request

from campus_market.extensions import db
from campus_market.integrations.payments.factory import get_payments_provider
from campus_market.services.payment_service import process_webhook
from campus_market.utils.observability import get_request_id


webhooks_bp = Blueprint("webhooks_bp", __name__, url_prefix="/api/squad")


def _queue_enabled() -> bool:
    if current_app.config.get("TESTING"):
        return False
    return (os.getenv("SQUAD_WEBHOOK_QUEUE") or "true").strip().lower() in ("1", "true", "yes", "on")


@webhooks_bp.post("/webhook")
def squad_webhook():
    raw = request.get_data() or b""
    signature = request.headers.get("squad-signature") or request.headers.get("x-squad-encrypted-body")
    provider = get_payments_provider()
    if not provider.verify_webhook_signature(raw, signature):
        current_app.logger.warning("squad_webhook_bad_signature request_id=%s", get_request_id())
        return jsonify({"ok": False, "error": "Unauthorized", "message": "Invalid signature", "status": 401}), 401

    try:
        payload = json.loads(raw.decode("utf-8") or "{}")
    except (UnicodeDecodeError, json.JSONDecodeError):
        return jsonify({"ok": False, "error": "INVALID_PAYLOAD", "message": "Body must be JSON"}), 400

    if _queue_enabled():
        try:
            from campus_market.tasks.order_tasks import process_squad_webhook_task

            process_squad_webhook_task.delay(
                payload=payload if isinstance(payload, dict) else {},
                raw_text=raw.decode("utf-8", errors="ignore"),
                trace_id=get_request_id(),
            )
            return jsonify({"ok": True, "queued": True, "trace_id": get_request_id()}), 200
        except Exception:
            db.session.rollback()
            current_app.logger.exception("squad_webhook_enqueue_failed; processing inline")

    body, status = process_webhook(payload, raw, source="api/squad/webhook")
    return jsonify(body), int(status)
