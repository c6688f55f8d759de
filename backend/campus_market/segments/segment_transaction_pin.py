from __future__ import annotations

from flask import Blueprint, jsonify, request

from campus_market.services.withdrawal_guard import (
    change_transaction_pin,
    enforce_pin,
    pin_status,
    set_transaction_pin,
)
from campus_market.utils.auth import require_user
from campus_market.utils.rate_limit import rate_limit


pin_bp = Blueprint("pin_bp", __name__, url_prefix="/api/auth/pin")


def _pin_field(payload: dict, key: str):
    value = payload.get(key)
    return str(value) if value is not None else None


@pin_bp.get("/status")
def status():
    user = require_user()
    return jsonify({"ok": True, **pin_status(user)}), 200


@pin_bp.post("/setup")
@rate_limit("pin_setup", per_seconds=300, limit=5)
def setup():
    user = require_user()
    payload = request.get_json(silent=True) or {}
    set_transaction_pin(user, _pin_field(payload, "pin"), _pin_field(payload, "confirmPin"))
    return jsonify({"ok": True, "message": "Transaction PIN set successfully"}), 200


@pin_bp.post("/change")
@rate_limit("pin_change", per_seconds=300, limit=5)
def change():
    user = require_user()
    payload = request.get_json(silent=True) or {}
    change_transaction_pin(
        user,
        _pin_field(payload, "currentPin"),
        _pin_field(payload, "newPin"),
        _pin_field(payload, "confirmPin"),
    )
    return jsonify({"ok": True, "message": "Transaction PIN changed successfully"}), 200


@pin_bp.post("/verify")
@rate_limit("pin_verify", per_seconds=60, limit=10)
def verify():
    user = require_user()
    payload = request.get_json(silent=True) or {}
    enforce_pin(user, _pin_field(payload, "pin"))
    return jsonify({"ok": True, "verified": True}), 200
