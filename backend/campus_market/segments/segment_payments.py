from __future__ import annotations

import re

from flask import Blueprint, current_app, jsonify, request

from campus_market.errors import GatewayError, ValidationError
from campus_market.integrations.payments.factory import get_payments_provider, payment_health
from campus_market.services.payment_service import initialize_payment, list_payments, verify_payment
from campus_market.services.withdrawal_guard import initiate_gateway_withdrawal
from campus_market.utils.auth import require_user
from campus_market.utils.rate_limit import rate_limit


payments_bp = Blueprint("payments_bp", __name__, url_prefix="/api/squad")

_ACCOUNT_RE = re.compile(r"^\d{10}$")


@payments_bp.get("/status")
def status():
    health = payment_health()
    return jsonify({"ok": True, **health}), 200


@payments_bp.post("/initialize")
@rate_limit("squad_initialize", per_seconds=60, limit=10)
def initialize():
    user = require_user()
    payload = request.get_json(silent=True) or {}
    provider = get_payments_provider()
    payment = initialize_payment(
        user,
        provider,
        amount=payload.get("amount"),
        purpose=payload.get("purpose") or "wallet_deposit",
        payment_channel=payload.get("paymentChannel"),
        description=payload.get("description"),
        order_id=payload.get("orderId"),
    )
    return (
        jsonify(
            {
                "ok": True,
                "message": "Payment initialized successfully",
                "checkoutUrl": payment.checkout_url,
                "reference": payment.transaction_ref,
                "amount": float(payment.amount),
                "payment": payment.to_dict(),
            }
        ),
        200,
    )


@payments_bp.get("/verify/<reference>")
def verify(reference: str):
    user = require_user()
    result = verify_payment(user, get_payments_provider(), reference)
    return jsonify({"ok": True, **result}), 200


@payments_bp.get("/payments")
def payments():
    user = require_user()
    rows = list_payments(int(user.id))
    return jsonify({"ok": True, "payments": [p.to_dict() for p in rows]}), 200


@payments_bp.get("/banks")
def banks():
    require_user()
    rows = get_payments_provider().get_bank_list()
    return jsonify({"ok": True, "banks": [b.to_dict() for b in rows]}), 200


@payments_bp.post("/verify-bank")
@rate_limit("squad_verify_bank", per_seconds=60, limit=20)
def verify_bank():
    require_user()
    payload = request.get_json(silent=True) or {}
    account_number = str(payload.get("accountNumber") or "").strip()
    bank_code = str(payload.get("bankCode") or "").strip()
    if not account_number or not bank_code:
        raise ValidationError("Account number and bank code are required")
    if not _ACCOUNT_RE.match(account_number):
        raise ValidationError("Account number must be 10 digits")
    account = get_payments_provider().verify_bank_account(account_number, bank_code)
    return jsonify({"ok": True, "account": account.to_dict()}), 200


@payments_bp.post("/withdraw")
@rate_limit("squad_withdraw", per_seconds=60, limit=5, message="Too many withdrawal attempts. Please wait.")
def withdraw():
    user = require_user()
    payload = request.get_json(silent=True) or {}
    bank_code = str(payload.get("bankCode") or "").strip()
    bank_name = str(payload.get("bankName") or "").strip()
    account_number = str(payload.get("accountNumber") or "").strip()
    account_name = str(payload.get("accountName") or "").strip()
    try:
        outcome = initiate_gateway_withdrawal(
            user,
            get_payments_provider(),
            amount=payload.get("amount"),
            bank_code=bank_code,
            bank_name=bank_name,
            account_number=account_number,
            account_name=account_name,
            pin=payload.get("pin"),
        )
    except GatewayError as exc:
        current_app.logger.warning(
            "squad_withdraw_failed user_id=%s type=%s detail=%s", int(user.id), exc.error_type, exc.detail
        )
        raise
    transfer = outcome.transfer
    return (
        jsonify(
            {
                "ok": True,
                "message": outcome.message,
                "reference": transfer.transaction_ref,
                "status": transfer.status,
                "amount": float(transfer.amount),
                "bankDetails": {
                    "bankName": bank_name,
                    "accountNumber": account_number,
                    "accountName": account_name,
                },
                "manualProcessing": bool(outcome.manual_processing),
            }
        ),
        200,
    )
