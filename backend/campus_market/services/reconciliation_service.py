from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import func

from campus_market.extensions import db
from campus_market.models import Order, Transaction, Wallet
from campus_market.services.order_lifecycle import OrderStatus
from campus_market.services.wallet_service import TxnStatus, TxnType
from campus_market.utils.money import ZERO, money_float, round2

_CREDITS = (
    TxnType.DEPOSIT,
    TxnType.SALE,
    TxnType.REFUND,
    TxnType.ESCROW_RELEASE,
    TxnType.ESCROW_REFUND,
    TxnType.REFERRAL_BONUS,
    TxnType.WELCOME_BONUS,
)
# Withdrawals debit at request time, so pending rows already count.
_DEBITS = (TxnType.WITHDRAWAL, TxnType.PURCHASE)


def _signed_amount(txn: Transaction) -> Decimal:
    amount = round2(txn.amount or 0)
    if txn.type in _CREDITS:
        return amount if txn.status == TxnStatus.COMPLETED else ZERO
    if txn.type in _DEBITS:
        return ZERO if txn.status == TxnStatus.FAILED else -amount
    return ZERO


def _expected_escrow() -> dict[int, Decimal]:
    rows = (
        db.session.query(Order.seller_id, func.coalesce(func.sum(Order.seller_receives), 0))
        .filter(Order.status.in_(sorted(OrderStatus.FUNDED)))
        .group_by(Order.seller_id)
        .all()
    )
    return {int(seller_id): round2(total) for seller_id, total in rows}


def recompute_wallet_balances(*, since: str | None = None, tolerance: Decimal = Decimal("0.01")) -> dict:
    """Rebuild each wallet from its ledger rows and funded orders and report drift."""
    wallets = Wallet.query.order_by(Wallet.user_id.asc()).all()
    escrow_by_seller = _expected_escrow()
    drift_items = []

    for wallet in wallets:
        txns = Transaction.query.filter_by(wallet_id=int(wallet.id)).order_by(Transaction.created_at.asc()).all()
        computed = sum((_signed_amount(t) for t in txns), ZERO)
        stored = round2(wallet.balance or 0)
        stored_escrow = round2(wallet.escrow_balance or 0)
        computed_escrow = escrow_by_seller.get(int(wallet.user_id), ZERO)
        drift = stored - computed
        escrow_drift = stored_escrow - computed_escrow
        if abs(drift) > tolerance or abs(escrow_drift) > tolerance:
            drift_items.append(
                {
                    "wallet_id": int(wallet.id),
                    "user_id": int(wallet.user_id),
                    "stored_balance": money_float(stored),
                    "computed_balance": money_float(computed),
                    "drift": money_float(drift),
                    "stored_escrow": money_float(stored_escrow),
                    "computed_escrow": money_float(computed_escrow),
                    "escrow_drift": money_float(escrow_drift),
                }
            )

    return {
        "ok": True,
        "scope": "wallet_ledger",
        "since": since or "",
        "wallet_count": len(wallets),
        "drift_count": len(drift_items),
        "drift_items": drift_items,
        "generated_at": datetime.utcnow().isoformat(),
    }
