from __future__ import annotations

from datetime import datetime

from campus_market.services.order_events import dispatch_outbox_event, pending_outbox_events


def run_outbox_flush(*, limit: int = 200) -> dict:
    """Re-deliver order events whose first dispatch never landed."""
    rows = pending_outbox_events(limit=limit)
    delivered = 0
    failed = 0
    for event in rows:
        if dispatch_outbox_event(int(event.id)):
            delivered += 1
        else:
            failed += 1
    return {
        "ok": failed == 0,
        "processed": len(rows),
        "delivered": delivered,
        "failed": failed,
        "ts": datetime.utcnow().isoformat(),
    }
