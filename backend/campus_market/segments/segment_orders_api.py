from __future__ import annotations

from flask import Blueprint, jsonify, request

from campus_market.errors import ForbiddenError, NotFoundError, ValidationError
from campus_market.extensions import db
from campus_market.models import Order, Product
from campus_market.services.order_lifecycle import allowed_transitions, order_history, transition_order
from campus_market.services.order_service import create_order, get_order_for_party, list_orders
from campus_market.utils.auth import require_user


orders_bp = Blueprint("orders_bp", __name__, url_prefix="/api/orders")


def _order_payload(order: Order) -> dict:
    body = order.to_dict()
    body["allowed_transitions"] = sorted(allowed_transitions(order.status))
    product = db.session.get(Product, int(order.product_id))
    body["product"] = {"id": int(product.id), "title": product.title} if product is not None else None
    return body


@orders_bp.post("")
def create():
    user = require_user()
    payload = request.get_json(silent=True) or {}
    product_id = payload.get("productId")
    if not product_id:
        raise ValidationError("Product ID is required")
    try:
        product_id = int(product_id)
    except (TypeError, ValueError):
        raise ValidationError("Product ID must be an integer")
    order = create_order(
        buyer_id=int(user.id),
        product_id=product_id,
        delivery_method=payload.get("deliveryMethod"),
        delivery_address=payload.get("deliveryAddress"),
        notes=payload.get("notes"),
        quantity=payload.get("quantity") or 1,
        payment_method=payload.get("paymentMethod"),
        negotiation_id=payload.get("negotiationId"),
    )
    return jsonify({"ok": True, "message": "Order created successfully", "order": _order_payload(order)}), 201


@orders_bp.get("/buyer")
def buyer_orders():
    user = require_user()
    rows = list_orders(buyer_id=int(user.id))
    return jsonify({"ok": True, "orders": [_order_payload(o) for o in rows]}), 200


@orders_bp.get("/seller")
def seller_orders():
    user = require_user()
    rows = list_orders(seller_id=int(user.id))
    return jsonify({"ok": True, "orders": [_order_payload(o) for o in rows]}), 200


@orders_bp.get("/<int:order_id>")
def get_order(order_id: int):
    user = require_user()
    order = get_order_for_party(order_id, int(user.id))
    return jsonify({"ok": True, "order": _order_payload(order)}), 200


@orders_bp.put("/<int:order_id>/status")
def update_status(order_id: int):
    user = require_user()
    payload = request.get_json(silent=True) or {}
    status = (payload.get("status") or "").strip()
    if not status:
        raise ValidationError("status is required")
    order = transition_order(order_id, int(user.id), status, payload.get("note"))
    return jsonify({"ok": True, "message": "Order status updated", "order": _order_payload(order)}), 200


@orders_bp.get("/<int:order_id>/history")
def history(order_id: int):
    user = require_user()
    order = db.session.get(Order, int(order_id))
    if order is None:
        raise NotFoundError("Order not found")
    if int(user.id) not in (int(order.buyer_id), int(order.seller_id)):
        raise ForbiddenError("You don't have permission to view this order history")
    return jsonify({"ok": True, "history": [row.to_dict() for row in order_history(order)]}), 200
