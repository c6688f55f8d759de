from __future__ import annotations

import os
from datetime import datetime, timedelta

from flask import current_app

from campus_market.errors import MarketError
from campus_market.extensions import db
from campus_market.models import Order
from campus_market.services.order_lifecycle import OrderStatus, apply_system_transition


def _now():
    return datetime.utcnow()


def _grace_hours() -> int:
    raw = (os.getenv("ORDER_AUTO_COMPLETE_HOURS") or "0").strip()
    try:
        value = int(raw)
    except ValueError:
        value = 0
    return max(0, value)


def run_order_settlement(*, limit: int = 200) -> dict:
    """Complete buyer-confirmed orders whose grace period has passed.

    Completion releases the seller's escrow through the system transition path.
    """
    cutoff = _now() - timedelta(hours=_grace_hours())
    rows = (
        Order.query.filter_by(status=OrderStatus.BUYER_CONFIRMED)
        .filter(Order.updated_at <= cutoff)
        .order_by(Order.id.asc())
        .limit(int(limit))
        .all()
    )
    processed = 0
    completed = 0
    errors = 0
    for order in rows:
        processed += 1
        try:
            apply_system_transition(order, OrderStatus.COMPLETED, note="Auto-completed after buyer confirmation", source="settlement")
            completed += 1
        except MarketError as exc:
            errors += 1
            db.session.rollback()
            current_app.logger.warning("order_settlement_skipped order_id=%s err=%s", int(order.id), exc.message)
    return {
        "ok": errors == 0,
        "processed": processed,
        "completed": completed,
        "errors": errors,
        "ts": _now().isoformat(),
    }
