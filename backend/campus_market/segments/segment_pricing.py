from __future__ import annotations

from decimal import InvalidOperation

from flask import Blueprint, jsonify, request

from campus_market.errors import ValidationError
from campus_market.services.pricing import get_pricing_engine
from campus_market.utils.money import to_decimal


pricing_bp = Blueprint("pricing_bp", __name__, url_prefix="/api/pricing")


def _positive(raw, message: str):
    try:
        value = to_decimal(raw)
    except InvalidOperation:
        raise ValidationError(message)
    if not value.is_finite() or value <= 0:
        raise ValidationError(message)
    return value


@pricing_bp.post("/calculate")
def calculate():
    payload = request.get_json(silent=True) or {}
    seller_price = _positive(payload.get("sellerPrice"), "Valid seller price is required")
    method = (payload.get("paymentMethod") or "CARD").strip() or "CARD"
    pricing = get_pricing_engine().calculate_pricing_from_seller_price(seller_price, method)
    return jsonify({"ok": True, "pricing": pricing.to_dict()}), 200


@pricing_bp.post("/reverse")
def reverse():
    payload = request.get_json(silent=True) or {}
    buyer_price = _positive(payload.get("buyerPrice"), "Valid buyer price is required")
    method = (payload.get("paymentMethod") or "CARD").strip() or "CARD"
    pricing = get_pricing_engine().calculate_pricing_from_buyer_price(buyer_price, method)
    return jsonify({"ok": True, "pricing": pricing.to_dict()}), 200


@pricing_bp.get("/config")
def config():
    engine = get_pricing_engine()
    return jsonify(
        {
            "ok": True,
            "commissionRate": float(engine.get_commission_rate()),
            "securityDepositAmount": float(engine.get_security_deposit_amount()),
            "unverifiedWithdrawalLimit": float(engine.config.unverified_withdrawal_limit),
            "defaultPaymentMethod": engine.config.default_payment_method,
        }
    ), 200


@pricing_bp.get("/fees")
def fees():
    engine = get_pricing_engine()
    schedule = engine.config.fee_schedule
    amount = request.args.get("amount")
    body = {"ok": True, "schedule": schedule.to_dict()}
    if amount:
        value = _positive(amount, "amount must be a positive number")
        body["quote"] = {
            method: engine.calculate_gateway_fee(value, method).to_dict() for method in schedule.methods()
        }
    return jsonify(body), 200
