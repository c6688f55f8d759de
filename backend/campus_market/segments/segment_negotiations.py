from __future__ import annotations

from flask import Blueprint, jsonify, request

from campus_market.services.negotiation_service import (
    NegotiationStatus,
    accept_negotiation,
    cancel_negotiation,
    counter_negotiation,
    create_negotiation,
    get_negotiation_for_party,
    list_received,
    list_sent,
    negotiation_payload,
    reject_negotiation,
)
from campus_market.errors import ValidationError
from campus_market.utils.auth import require_user


negotiations_bp = Blueprint("negotiations_bp", __name__, url_prefix="/api/negotiations")


@negotiations_bp.post("")
def create():
    user = require_user()
    payload = request.get_json(silent=True) or {}
    negotiation = create_negotiation(
        int(user.id),
        product_id=payload.get("productId"),
        offer_price=payload.get("offerPrice"),
        message=payload.get("message"),
    )
    return (
        jsonify({"ok": True, "message": "Offer sent successfully", "negotiation": negotiation_payload(negotiation)}),
        201,
    )


@negotiations_bp.get("/received")
def received():
    user = require_user()
    status = (request.args.get("status") or "").strip().lower() or None
    if status is not None and status not in NegotiationStatus.ALL:
        raise ValidationError(f"status must be one of {', '.join(NegotiationStatus.ALL)}")
    rows = list_received(int(user.id), status)
    return jsonify({"ok": True, "negotiations": [negotiation_payload(n) for n in rows]}), 200


@negotiations_bp.get("/sent")
def sent():
    user = require_user()
    rows = list_sent(int(user.id))
    return jsonify({"ok": True, "negotiations": [negotiation_payload(n) for n in rows]}), 200


@negotiations_bp.get("/<int:negotiation_id>")
def detail(negotiation_id: int):
    user = require_user()
    negotiation = get_negotiation_for_party(negotiation_id, int(user.id))
    return jsonify({"ok": True, "negotiation": negotiation_payload(negotiation, detail=True)}), 200


@negotiations_bp.post("/<int:negotiation_id>/accept")
def accept(negotiation_id: int):
    user = require_user()
    negotiation = accept_negotiation(negotiation_id, int(user.id))
    return jsonify({"ok": True, "message": "Offer accepted", "negotiation": negotiation_payload(negotiation)}), 200


@negotiations_bp.post("/<int:negotiation_id>/reject")
def reject(negotiation_id: int):
    user = require_user()
    negotiation = reject_negotiation(negotiation_id, int(user.id))
    return jsonify({"ok": True, "message": "Offer rejected", "negotiation": negotiation_payload(negotiation)}), 200


@negotiations_bp.post("/<int:negotiation_id>/counter")
def counter(negotiation_id: int):
    user = require_user()
    payload = request.get_json(silent=True) or {}
    negotiation = counter_negotiation(
        negotiation_id,
        int(user.id),
        counter_price=payload.get("counterPrice"),
        counter_message=payload.get("message"),
    )
    return jsonify({"ok": True, "message": "Counter offer sent", "negotiation": negotiation_payload(negotiation)}), 200


@negotiations_bp.post("/<int:negotiation_id>/cancel")
def cancel(negotiation_id: int):
    user = require_user()
    negotiation = cancel_negotiation(negotiation_id, int(user.id))
    return jsonify({"ok": True, "message": "Offer cancelled", "negotiation": negotiation_payload(negotiation)}), 200
