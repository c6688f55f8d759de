from __future__ import annotations

from decimal import Decimal

from sqlalchemy import update

from campus_market.errors import InsufficientFundsError, ValidationError
from campus_market.extensions import db
from campus_market.models import Transaction, Wallet
from campus_market.utils.money import parse_amount, round2


class TxnType:
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    SALE = "sale"
    PURCHASE = "purchase"
    REFUND = "refund"
    ESCROW_HOLD = "escrow_hold"
    ESCROW_RELEASE = "escrow_release"
    ESCROW_REFUND = "escrow_refund"
    REFERRAL_BONUS = "referral_bonus"
    WELCOME_BONUS = "welcome_bonus"

    ALL = {
        DEPOSIT,
        WITHDRAWAL,
        SALE,
        PURCHASE,
        REFUND,
        ESCROW_HOLD,
        ESCROW_RELEASE,
        ESCROW_REFUND,
        REFERRAL_BONUS,
        WELCOME_BONUS,
    }


class TxnStatus:
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

    ALL = {PENDING, COMPLETED, FAILED}


_BUCKETS = {"balance": Wallet.balance, "escrow_balance": Wallet.escrow_balance}


def get_wallet(user_id: int) -> Wallet | None:
    return Wallet.query.filter_by(user_id=int(user_id)).first()


def get_or_create_wallet(user_id: int) -> Wallet:
    wallet = get_wallet(user_id)
    if wallet is not None:
        return wallet
    wallet = Wallet(user_id=int(user_id), balance=Decimal("0"), escrow_balance=Decimal("0"))
    db.session.add(wallet)
    db.session.flush()
    return wallet


def update_wallet_balance(user_id: int, amount, operation: str, *, bucket: str = "balance") -> Wallet:
    """Add to or subtract from a wallet bucket with a single conditional UPDATE.

    A subtract that would take the bucket below zero matches no row and raises
    ``InsufficientFundsError``; the caller owns the commit.
    """
    value = round2(amount)
    if value <= 0:
        raise ValidationError("Amount must be greater than zero")
    column = _BUCKETS.get(bucket)
    if column is None:
        raise ValueError(f"unknown wallet bucket {bucket}")
    op = (operation or "").strip().lower()
    if op not in ("add", "subtract"):
        raise ValueError(f"unknown wallet operation {operation}")

    wallet = get_or_create_wallet(user_id)
    stmt = update(Wallet).where(Wallet.id == wallet.id)
    if op == "add":
        stmt = stmt.values({column: column + value})
    else:
        stmt = stmt.where(column >= value).values({column: column - value})
    result = db.session.execute(stmt.execution_options(synchronize_session=False))
    if op == "subtract" and int(result.rowcount or 0) == 0:
        raise InsufficientFundsError("Insufficient balance")
    db.session.refresh(wallet)
    return wallet


def record_transaction(
    user_id: int,
    txn_type: str,
    amount,
    *,
    status: str = TxnStatus.COMPLETED,
    description: str = "",
    reference_id: str | None = None,
    external_reference: str | None = None,
) -> Transaction:
    if txn_type not in TxnType.ALL:
        raise ValueError(f"unknown transaction type {txn_type}")
    if status not in TxnStatus.ALL:
        raise ValueError(f"unknown transaction status {status}")
    wallet = get_or_create_wallet(user_id)
    txn = Transaction(
        wallet_id=int(wallet.id),
        type=txn_type,
        amount=round2(amount),
        status=status,
        description=(description or "")[:255],
        reference_id=(reference_id or "")[:64] or None,
        external_reference=(external_reference or "")[:128] or None,
    )
    db.session.add(txn)
    db.session.flush()
    return txn


def set_transaction_status(txn: Transaction, status: str) -> Transaction:
    # Ledger rows are append-only apart from their status.
    if status not in TxnStatus.ALL:
        raise ValueError(f"unknown transaction status {status}")
    txn.status = status
    db.session.add(txn)
    return txn


def find_transaction(*, external_reference: str, txn_type: str | None = None) -> Transaction | None:
    q = Transaction.query.filter_by(external_reference=external_reference)
    if txn_type:
        q = q.filter_by(type=txn_type)
    return q.order_by(Transaction.id.desc()).first()


def list_transactions(user_id: int, *, limit: int = 50) -> list[Transaction]:
    wallet = get_wallet(user_id)
    if wallet is None:
        return []
    return (
        Transaction.query.filter_by(wallet_id=int(wallet.id))
        .order_by(Transaction.created_at.desc(), Transaction.id.desc())
        .limit(max(1, min(int(limit), 200)))
        .all()
    )


MIN_DEPOSIT = Decimal("100")


def initiate_deposit(user_id: int, raw_amount) -> Transaction:
    """Record a pending deposit; the gateway payment flow credits the wallet."""
    amount = parse_amount(raw_amount, "deposit", minimum=MIN_DEPOSIT)
    try:
        txn = record_transaction(
            int(user_id),
            TxnType.DEPOSIT,
            amount,
            status=TxnStatus.PENDING,
            description="Wallet deposit",
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return txn
