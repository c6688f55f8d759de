from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from campus_market.errors import NotFoundError, ValidationError
from campus_market.extensions import db
from campus_market.models import Order
from campus_market.services.order_lifecycle import OrderStatus, apply_system_transition
from campus_market.utils.auth import require_admin


admin_orders_bp = Blueprint("admin_orders_bp", __name__, url_prefix="/api/admin/orders")

_OUTCOMES = (OrderStatus.REFUNDED, OrderStatus.COMPLETED)


@admin_orders_bp.post("/<int:order_id>/resolve")
def resolve_dispute(order_id: int):
    admin = require_admin()
    payload = request.get_json(silent=True) or {}
    outcome = (payload.get("outcome") or "").strip().lower()
    if outcome not in _OUTCOMES:
        raise ValidationError("outcome must be one of refunded, completed")
    order = db.session.get(Order, int(order_id))
    if order is None:
        raise NotFoundError("Order not found")
    if order.status != OrderStatus.DISPUTED:
        raise ValidationError("Only disputed orders can be resolved")
    note = (payload.get("note") or "").strip() or f"Dispute resolved by admin #{int(admin.id)}"
    apply_system_transition(order, outcome, note=note[:500], source="admin_resolution")
    current_app.logger.info("order_dispute_resolved order_id=%s outcome=%s admin_id=%s", int(order.id), outcome, int(admin.id))
    return jsonify({"ok": True, "order": order.to_dict()}), 200
