from __future__ import annotations

from flask import Blueprint, jsonify, request

from campus_market.extensions import db
from campus_market.services.pricing import get_pricing_engine
from campus_market.services.wallet_service import get_or_create_wallet, initiate_deposit, list_transactions
from campus_market.services.withdrawal_guard import request_withdrawal
from campus_market.utils.auth import require_user
from campus_market.utils.rate_limit import rate_limit


wallet_bp = Blueprint("wallet_bp", __name__, url_prefix="/api/wallet")


def _to_int(value, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return int(default)


@wallet_bp.get("")
def get_wallet():
    user = require_user()
    wallet = get_or_create_wallet(int(user.id))
    db.session.commit()
    deposit = get_pricing_engine().calculate_security_deposit_required(wallet.escrow_balance)
    return (
        jsonify(
            {
                "ok": True,
                "wallet": wallet.to_dict(),
                "securityDeposit": {k: float(v) for k, v in deposit.items()},
                "isVerified": bool(user.is_verified),
                "pinSet": bool(user.transaction_pin_set),
            }
        ),
        200,
    )


@wallet_bp.get("/transactions")
def transactions():
    user = require_user()
    limit = _to_int(request.args.get("limit"), 50)
    rows = list_transactions(int(user.id), limit=limit)
    return jsonify({"ok": True, "transactions": [t.to_dict() for t in rows]}), 200


@wallet_bp.post("/deposit")
@rate_limit("wallet_deposit", per_seconds=60, limit=10)
def deposit():
    user = require_user()
    payload = request.get_json(silent=True) or {}
    txn = initiate_deposit(int(user.id), payload.get("amount"))
    return (
        jsonify(
            {
                "ok": True,
                "message": "Deposit initiated. Complete payment to credit your wallet.",
                "transaction": txn.to_dict(),
            }
        ),
        201,
    )


@wallet_bp.post("/withdraw")
@rate_limit("wallet_withdraw", per_seconds=60, limit=5, message="Too many withdrawal attempts. Please wait.")
def withdraw():
    user = require_user()
    payload = request.get_json(silent=True) or {}
    txn = request_withdrawal(
        user,
        amount=payload.get("amount"),
        bank_name=payload.get("bankName"),
        account_number=payload.get("accountNumber"),
        account_name=payload.get("accountName"),
        pin=payload.get("pin"),
    )
    wallet = get_or_create_wallet(int(user.id))
    return (
        jsonify(
            {
                "ok": True,
                "message": "Withdrawal request submitted",
                "transaction": txn.to_dict(),
                "wallet": wallet.to_dict(),
            }
        ),
        201,
    )
