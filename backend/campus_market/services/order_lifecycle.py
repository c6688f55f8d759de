from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from flask import current_app
from sqlalchemy import update

from campus_market.errors import ForbiddenError, InvalidTransitionError, NotFoundError, ValidationError
from campus_market.extensions import db
from campus_market.models import Order, OrderStatusHistory
from campus_market.services import order_events
from campus_market.services.wallet_service import TxnType, record_transaction, update_wallet_balance
from campus_market.utils.events import log_event
from campus_market.utils.money import round2


class OrderStatus:
    PENDING = "pending"
    PAID = "paid"
    SELLER_CONFIRMED = "seller_confirmed"
    PREPARING = "preparing"
    READY_FOR_PICKUP = "ready_for_pickup"
    SHIPPED = "shipped"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    BUYER_CONFIRMED = "buyer_confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"
    REFUNDED = "refunded"

    ALL = (
        PENDING,
        PAID,
        SELLER_CONFIRMED,
        PREPARING,
        READY_FOR_PICKUP,
        SHIPPED,
        OUT_FOR_DELIVERY,
        DELIVERED,
        BUYER_CONFIRMED,
        COMPLETED,
        CANCELLED,
        DISPUTED,
        REFUNDED,
    )
    INITIAL = PENDING
    TERMINAL = frozenset({COMPLETED, CANCELLED, REFUNDED})
    # Statuses at which the buyer's payment is held by the platform.
    FUNDED = frozenset(
        {
            PAID,
            SELLER_CONFIRMED,
            PREPARING,
            READY_FOR_PICKUP,
            SHIPPED,
            OUT_FOR_DELIVERY,
            DELIVERED,
            BUYER_CONFIRMED,
            DISPUTED,
        }
    )


class Actor:
    BUYER = "buyer"
    SELLER = "seller"
    BOTH = "both"
    SYSTEM = "system"


@dataclass(frozen=True)
class OrderTransition:
    from_status: str
    to_status: str
    actor: str


_S = OrderStatus


def _edges(from_status: str, seller_targets=(), *, cancellable=True, disputable=True) -> list[OrderTransition]:
    rows = [OrderTransition(from_status, target, Actor.SELLER) for target in seller_targets]
    if cancellable:
        rows.append(OrderTransition(from_status, _S.CANCELLED, Actor.BOTH))
    if disputable:
        rows.append(OrderTransition(from_status, _S.DISPUTED, Actor.BOTH))
    return rows


# Single source of truth for legality and for who may trigger each move.
TRANSITIONS: tuple[OrderTransition, ...] = tuple(
    [
        OrderTransition(_S.PENDING, _S.PAID, Actor.SYSTEM),
        OrderTransition(_S.PENDING, _S.CANCELLED, Actor.BOTH),
        *_edges(_S.PAID, (_S.SELLER_CONFIRMED,)),
        *_edges(_S.SELLER_CONFIRMED, (_S.PREPARING,)),
        *_edges(_S.PREPARING, (_S.READY_FOR_PICKUP, _S.SHIPPED)),
        *_edges(_S.READY_FOR_PICKUP, (_S.SHIPPED, _S.OUT_FOR_DELIVERY, _S.DELIVERED)),
        *_edges(_S.SHIPPED, (_S.OUT_FOR_DELIVERY, _S.DELIVERED)),
        *_edges(_S.OUT_FOR_DELIVERY, (_S.DELIVERED,)),
        OrderTransition(_S.DELIVERED, _S.BUYER_CONFIRMED, Actor.BUYER),
        OrderTransition(_S.DELIVERED, _S.DISPUTED, Actor.BOTH),
        OrderTransition(_S.BUYER_CONFIRMED, _S.COMPLETED, Actor.SYSTEM),
        OrderTransition(_S.DISPUTED, _S.REFUNDED, Actor.SYSTEM),
        OrderTransition(_S.DISPUTED, _S.COMPLETED, Actor.SYSTEM),
    ]
)


def _build_tables(transitions) -> tuple[dict[str, frozenset], dict[str, str]]:
    allowed: dict[str, set] = {status: set() for status in OrderStatus.ALL}
    actors: dict[str, str] = {}
    for t in transitions:
        if t.from_status not in allowed or t.to_status not in allowed:
            raise ValueError(f"unknown status in transition {t}")
        prior = actors.setdefault(t.to_status, t.actor)
        if prior != t.actor:
            raise ValueError(f"conflicting actors for {t.to_status}: {prior} vs {t.actor}")
        allowed[t.from_status].add(t.to_status)
    return {k: frozenset(v) for k, v in allowed.items()}, actors


ALLOWED_TRANSITIONS, REQUIRED_ACTOR = _build_tables(TRANSITIONS)


def allowed_transitions(status: str) -> frozenset:
    return ALLOWED_TRANSITIONS.get((status or "").strip().lower(), frozenset())


def required_actor(status: str) -> str | None:
    return REQUIRED_ACTOR.get((status or "").strip().lower())


def _role_for(order: Order, user_id: int) -> str | None:
    if int(order.seller_id) == int(user_id):
        return Actor.SELLER
    if int(order.buyer_id) == int(user_id):
        return Actor.BUYER
    return None


def _compare_and_set(order: Order, current: str, new_status: str) -> None:
    result = db.session.execute(
        update(Order)
        .where(Order.id == order.id, Order.status == current)
        .values(status=new_status, updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    if int(result.rowcount or 0) != 1:
        db.session.rollback()
        db.session.refresh(order)
        raise InvalidTransitionError(
            f"Order status changed concurrently (now '{order.status}')",
            allowed_transitions=allowed_transitions(order.status),
            currentStatus=order.status,
        )
    db.session.refresh(order)


def _move(user_id: int, amount, operation: str, *, bucket: str = "balance") -> None:
    # A full-commission order leaves the seller nothing; the ledger row is still written.
    if round2(amount or 0) <= 0:
        return
    update_wallet_balance(int(user_id), amount, operation, bucket=bucket)


def _release_escrow(order: Order) -> None:
    amount = order.seller_receives
    _move(int(order.seller_id), amount, "subtract", bucket="escrow_balance")
    _move(int(order.seller_id), amount, "add")
    record_transaction(
        int(order.seller_id),
        TxnType.ESCROW_RELEASE,
        amount,
        description=f"Escrow released for order #{order.order_number}",
        reference_id=order.order_number,
    )


def _refund_escrow(order: Order) -> None:
    _move(int(order.seller_id), order.seller_receives, "subtract", bucket="escrow_balance")
    _move(int(order.buyer_id), order.total_amount, "add")
    record_transaction(
        int(order.buyer_id),
        TxnType.ESCROW_REFUND,
        order.total_amount,
        description=f"Refund for order #{order.order_number}",
        reference_id=order.order_number,
    )


def _hold_escrow(order: Order) -> None:
    _move(int(order.seller_id), order.seller_receives, "add", bucket="escrow_balance")
    record_transaction(
        int(order.buyer_id),
        TxnType.ESCROW_HOLD,
        order.total_amount,
        description=f"Payment held in escrow for order #{order.order_number}",
        reference_id=order.order_number,
    )


def _apply_money_effects(order: Order, previous: str, new_status: str) -> None:
    if new_status == OrderStatus.PAID:
        _hold_escrow(order)
    elif new_status == OrderStatus.COMPLETED:
        _release_escrow(order)
    elif new_status in (OrderStatus.REFUNDED, OrderStatus.CANCELLED) and previous in OrderStatus.FUNDED:
        _refund_escrow(order)


def _apply(order: Order, new_status: str, *, changed_by: int | None, actor_type: str, note: str | None) -> int:
    """CAS the status, money movements, history and outbox row, all in one commit."""
    previous = order.status
    try:
        _compare_and_set(order, previous, new_status)
        _apply_money_effects(order, previous, new_status)
        db.session.add(
            OrderStatusHistory(
                order_id=int(order.id),
                status=new_status,
                changed_by=changed_by,
                actor_type=actor_type,
                note=(note or "")[:500] or None,
            )
        )
        event = order_events.enqueue_order_event(
            order,
            order_events.STATUS_CHANGED,
            status=new_status,
            payload={"from": previous, "to": new_status, "changed_by": changed_by, "actor": actor_type},
        )
        event_id = int(event.id)
        if new_status in (OrderStatus.PAID, OrderStatus.COMPLETED, OrderStatus.REFUNDED) or (
            new_status == OrderStatus.CANCELLED and previous in OrderStatus.FUNDED
        ):
            log_event(
                f"order_{new_status}",
                actor_user_id=changed_by,
                subject_type="order",
                subject_id=int(order.id),
                amount=order.total_amount,
                idempotency_key=f"order:{int(order.id)}:{new_status}",
                metadata={"from": previous, "actor": actor_type},
            )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    current_app.logger.info(
        "order_transition order_id=%s from=%s to=%s actor=%s changed_by=%s",
        int(order.id),
        previous,
        new_status,
        actor_type,
        changed_by,
    )
    return event_id


def transition_order(order_id: int, requested_by: int, new_status: str, note: str | None = None) -> Order:
    """User-facing transition: ownership, then legality, then role.

    System-only targets are always refused here; they belong to the payment
    webhook and settlement paths (``apply_system_transition``).
    """
    order = db.session.get(Order, int(order_id))
    if order is None:
        raise NotFoundError("Order not found")

    role = _role_for(order, requested_by)
    if role is None:
        raise ForbiddenError("You don't have permission to update this order")

    target = (new_status or "").strip().lower()
    if target not in OrderStatus.ALL:
        raise ValidationError(f"Unknown order status '{new_status}'")
    if note is not None and len(note) > 500:
        raise ValidationError("note must be at most 500 characters")

    current = order.status
    allowed = allowed_transitions(current)
    if target not in allowed:
        raise InvalidTransitionError(
            f"Cannot transition from '{current}' to '{target}'",
            allowed_transitions=allowed,
            currentStatus=current,
        )

    needed = REQUIRED_ACTOR.get(target)
    if needed == Actor.SYSTEM:
        raise ForbiddenError("This status can only be set by the system")
    if needed == Actor.SELLER and role != Actor.SELLER:
        raise ForbiddenError("Only the seller can set this status")
    if needed == Actor.BUYER and role != Actor.BUYER:
        raise ForbiddenError("Only the buyer can set this status")

    event_id = _apply(order, target, changed_by=int(requested_by), actor_type=role, note=note)
    order_events.schedule_dispatch([event_id])
    return order


def apply_system_transition(order: Order, new_status: str, *, note: str | None = None, source: str = "system") -> Order:
    """Webhook / settlement / admin-resolution path for system-or-both targets.

    Idempotent when the order already sits at ``new_status``.
    """
    target = (new_status or "").strip().lower()
    if order.status == target:
        return order
    allowed = allowed_transitions(order.status)
    if target not in allowed:
        raise InvalidTransitionError(
            f"Cannot transition from '{order.status}' to '{target}'",
            allowed_transitions=allowed,
            currentStatus=order.status,
        )
    if REQUIRED_ACTOR.get(target) not in (Actor.SYSTEM, Actor.BOTH):
        raise ForbiddenError(f"'{target}' must be set by a party to the order")

    event_id = _apply(order, target, changed_by=None, actor_type=Actor.SYSTEM, note=note or source)
    order_events.schedule_dispatch([event_id])
    return order


def order_history(order: Order) -> list[OrderStatusHistory]:
    return (
        OrderStatusHistory.query.filter_by(order_id=int(order.id))
        .order_by(OrderStatusHistory.created_at.asc(), OrderStatusHistory.id.asc())
        .all()
    )
