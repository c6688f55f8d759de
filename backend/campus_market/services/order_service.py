from __future__ import annotations

import os
import secrets
import time

from flask import current_app

from campus_market.errors import ForbiddenError, NotFoundError, ValidationError
from campus_market.extensions import db
from campus_market.integrations.common import B36_ALPHABET, base36
from campus_market.models import Negotiation, Order, OrderStatusHistory, Product
from campus_market.services import order_events
from campus_market.services.order_lifecycle import OrderStatus
from campus_market.services.pricing import get_pricing_engine

DELIVERY_METHODS = ("pickup", "delivery", "meetup")


def generate_order_number() -> str:
    prefix = (os.getenv("ORDER_NUMBER_PREFIX") or "EKSU").strip().upper() or "EKSU"
    rand = "".join(secrets.choice(B36_ALPHABET) for _ in range(4))
    return f"{prefix}-{base36(int(time.time() * 1000))}-{rand}"


def _negotiated_price(negotiation_id, buyer_id: int, product: Product):
    if not negotiation_id:
        return None
    try:
        nid = int(negotiation_id)
    except (TypeError, ValueError):
        raise ValidationError("negotiationId must be an integer")
    negotiation = db.session.get(Negotiation, nid)
    if negotiation is None:
        return None
    if negotiation.status != "accepted" or int(negotiation.buyer_id) != int(buyer_id):
        return None
    if int(negotiation.product_id) != int(product.id):
        return None
    return negotiation.agreed_price()


def create_order(
    *,
    buyer_id: int,
    product_id: int,
    delivery_method: str | None = None,
    delivery_address: str | None = None,
    notes: str | None = None,
    quantity: int = 1,
    payment_method: str | None = None,
    negotiation_id=None,
) -> Order:
    """Price the purchase once and snapshot it on a new ``pending`` order."""
    product = db.session.get(Product, int(product_id))
    if product is None:
        raise NotFoundError("Product not found")
    if not product.is_available or product.is_sold:
        raise ValidationError("Product is not available")
    if int(product.seller_id) == int(buyer_id):
        raise ValidationError("You cannot purchase your own product")

    method = (delivery_method or "meetup").strip().lower()
    if method not in DELIVERY_METHODS:
        raise ValidationError(f"deliveryMethod must be one of {', '.join(DELIVERY_METHODS)}")
    if method == "delivery" and not (delivery_address or "").strip():
        raise ValidationError("deliveryAddress is required for delivery")
    try:
        qty = int(quantity or 1)
    except (TypeError, ValueError):
        raise ValidationError("quantity must be an integer")
    if qty < 1:
        raise ValidationError("quantity must be at least 1")

    unit_price = _negotiated_price(negotiation_id, buyer_id, product)
    linked_negotiation = int(negotiation_id) if unit_price is not None else None
    if unit_price is None:
        unit_price = product.price
    pricing = get_pricing_engine().calculate_pricing_from_seller_price(unit_price * qty, payment_method)

    order = Order(
        order_number=generate_order_number(),
        buyer_id=int(buyer_id),
        seller_id=int(product.seller_id),
        product_id=int(product.id),
        negotiation_id=linked_negotiation,
        quantity=qty,
        total_amount=pricing.buyer_pays,
        seller_price=pricing.seller_price,
        platform_commission=pricing.platform_commission,
        payment_fee=pricing.payment_fee,
        seller_receives=pricing.seller_receives,
        commission_rate=pricing.commission_rate,
        payment_method=pricing.payment_method,
        status=OrderStatus.INITIAL,
        delivery_method=method,
        delivery_address=(delivery_address or "").strip()[:500] or None,
        notes=(notes or "").strip() or None,
    )
    try:
        db.session.add(order)
        db.session.flush()
        db.session.add(
            OrderStatusHistory(
                order_id=int(order.id),
                status=OrderStatus.INITIAL,
                changed_by=int(buyer_id),
                actor_type="buyer",
                note="Order created",
            )
        )
        event = order_events.enqueue_order_event(
            order,
            order_events.ORDER_PLACED,
            status=OrderStatus.INITIAL,
            payload={"buyer_id": int(buyer_id), "total_amount": str(pricing.buyer_pays)},
        )
        event_id = int(event.id)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    current_app.logger.info(
        "order_created order_id=%s number=%s buyer_id=%s seller_id=%s total=%s",
        int(order.id),
        order.order_number,
        int(buyer_id),
        int(product.seller_id),
        pricing.buyer_pays,
    )
    order_events.schedule_dispatch([event_id])
    return order


def get_order_for_party(order_id: int, user_id: int) -> Order:
    order = db.session.get(Order, int(order_id))
    if order is None:
        raise NotFoundError("Order not found")
    if int(user_id) not in (int(order.buyer_id), int(order.seller_id)):
        raise ForbiddenError("You don't have permission to view this order")
    return order


def list_orders(*, buyer_id: int | None = None, seller_id: int | None = None, limit: int = 200) -> list[Order]:
    q = Order.query
    if buyer_id is not None:
        q = q.filter_by(buyer_id=int(buyer_id))
    if seller_id is not None:
        q = q.filter_by(seller_id=int(seller_id))
    return q.order_by(Order.created_at.desc(), Order.id.desc()).limit(int(limit)).all()
