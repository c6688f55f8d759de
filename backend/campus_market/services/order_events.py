from __future__ import annotations

import json
import os
import smtplib
from datetime import datetime

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from campus_market.extensions import db
from campus_market.models import Notification, Order, OrderOutboxEvent, Product, User
from campus_market.utils.mailer import email_template_for_status, send_order_email
from campus_market.utils.observability import get_request_id

ORDER_PLACED = "order_placed"
STATUS_CHANGED = "status_changed"

MAX_DISPATCH_ATTEMPTS = 8


def enqueue_order_event(order: Order, event_type: str, *, status: str, payload: dict | None = None) -> OrderOutboxEvent:
    """Stage a side-effect event in the caller's transaction."""
    row = OrderOutboxEvent(
        order_id=int(order.id),
        event_type=event_type,
        status=status,
        payload_json=json.dumps(payload or {}, separators=(",", ":")),
    )
    db.session.add(row)
    db.session.flush()
    return row


def _display_name(user: User | None) -> str:
    if user is None:
        return ""
    return (user.name or "").strip() or (user.email or "")


def _notify(user_id: int, title: str, message: str, link: str) -> None:
    db.session.add(
        Notification(
            user_id=int(user_id),
            channel="in_app",
            title=title[:160],
            message=message,
            link=link[:255],
            status="sent",
            sent_at=datetime.utcnow(),
        )
    )


def _email_party(event: OrderOutboxEvent, to: str, **fields) -> None:
    """Send one party's status email; a refused recipient does not fail the event."""
    try:
        send_order_email(to, **fields)
    except (smtplib.SMTPException, OSError):
        current_app.logger.exception(
            "order_email_failed event_id=%s order_id=%s to=%s", int(event.id), int(event.order_id), to
        )


def _deliver(event: OrderOutboxEvent) -> None:
    order = db.session.get(Order, int(event.order_id))
    if order is None:
        return
    buyer = db.session.get(User, int(order.buyer_id))
    seller = db.session.get(User, int(order.seller_id))
    product = db.session.get(Product, int(order.product_id))
    product_name = product.title if product is not None else "your item"
    link = f"/orders/{int(order.id)}"

    if event.event_type == ORDER_PLACED:
        _notify(
            int(order.seller_id),
            "New Order Received!",
            f"You have a new order for {product_name}. Order #{order.order_number}",
            link,
        )
        return

    _notify(
        int(order.buyer_id),
        "Order Updated",
        f"Order #{order.order_number} is now {event.status.replace('_', ' ')}",
        link,
    )
    _notify(
        int(order.seller_id),
        "Order Updated",
        f"Order #{order.order_number} is now {event.status.replace('_', ' ')}",
        link,
    )
    if buyer is None or seller is None or product is None:
        return
    template = email_template_for_status(event.status)
    total = f"{order.total_amount:,.2f}"
    _email_party(
        event,
        buyer.email,
        order_number=order.order_number,
        product_name=product_name,
        total_amount=total,
        counterparty_name=_display_name(seller),
        template=template,
    )
    _email_party(
        event,
        seller.email,
        order_number=order.order_number,
        product_name=product_name,
        total_amount=total,
        counterparty_name=_display_name(buyer),
        template=template,
    )


def dispatch_outbox_event(event_id: int) -> bool:
    """Deliver one outbox event. Returns True when it is (or already was) dispatched.

    Delivery errors are recorded on the row and returned as False so the
    caller decides whether to retry; the order itself is never touched.
    """
    event = db.session.get(OrderOutboxEvent, int(event_id))
    if event is None:
        return False
    if event.dispatched_at is not None:
        return True
    event.attempts = int(event.attempts or 0) + 1
    try:
        _deliver(event)
        event.dispatched_at = datetime.utcnow()
        event.last_error = None
        db.session.add(event)
        db.session.commit()
        current_app.logger.info(
            "order_event_dispatched event_id=%s order_id=%s type=%s status=%s",
            int(event.id),
            int(event.order_id),
            event.event_type,
            event.status,
        )
        return True
    except Exception as exc:
        db.session.rollback()
        current_app.logger.warning("order_event_dispatch_failed event_id=%s err=%s", int(event_id), exc)
        try:
            failed = db.session.get(OrderOutboxEvent, int(event_id))
            if failed is not None:
                failed.attempts = int(failed.attempts or 0) + 1
                failed.last_error = str(exc)[:2000]
                db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
        return False


def _queue_enabled() -> bool:
    if current_app.config.get("TESTING"):
        return False
    return (os.getenv("ORDER_EVENTS_QUEUE") or "true").strip().lower() in ("1", "true", "yes", "on")


def schedule_dispatch(event_ids: list[int]) -> None:
    """Hand committed outbox events to the worker, delivering inline when the queue is unavailable.

    Never raises: a failed notification must not surface as a failed transition.
    """
    for event_id in event_ids:
        if _queue_enabled():
            try:
                from campus_market.tasks.order_tasks import dispatch_order_event_task

                dispatch_order_event_task.delay(event_id=int(event_id), trace_id=get_request_id())
                continue
            except Exception:
                current_app.logger.warning("order_event_queue_unavailable event_id=%s", int(event_id))
        try:
            dispatch_outbox_event(int(event_id))
        except Exception:
            db.session.rollback()
            current_app.logger.exception("order_event_inline_dispatch_failed event_id=%s", int(event_id))


def pending_outbox_events(*, limit: int = 200) -> list[OrderOutboxEvent]:
    return (
        OrderOutboxEvent.query.filter(OrderOutboxEvent.dispatched_at.is_(None))
        .filter(OrderOutboxEvent.attempts < MAX_DISPATCH_ATTEMPTS)
        .order_by(OrderOutboxEvent.id.asc())
        .limit(int(limit))
        .all()
    )
