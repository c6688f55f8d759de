from __future__ import annotations

import math
import os
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

import bcrypt
from flask import current_app
from sqlalchemy import update

from campus_market.errors import (
    GatewayError,
    GatewayErrorType,
    InsufficientFundsError,
    InvalidPinError,
    PinLockedError,
    ValidationError,
)
from campus_market.extensions import db
from campus_market.integrations.common import generate_transfer_reference
from campus_market.integrations.payments.base import PaymentsProvider
from campus_market.models import GatewayTransfer, Transaction, User
from campus_market.services.pricing import get_pricing_engine
from campus_market.services.wallet_service import (
    TxnStatus,
    TxnType,
    get_or_create_wallet,
    record_transaction,
    set_transaction_status,
    update_wallet_balance,
)
from campus_market.utils.events import log_event
from campus_market.utils.money import parse_amount

MAX_PIN_ATTEMPTS = 5
PIN_LOCK_MINUTES = 30
MIN_WITHDRAWAL = Decimal("500")
BCRYPT_ROUNDS = 10

_PIN_RE = re.compile(r"^\d{4,6}$")

MANUAL_REVIEW_REASON = "Merchant account requires transfer activation - manual payout required"
MANUAL_REVIEW_MESSAGE = (
    "Withdrawal request accepted. Due to a temporary system issue, your withdrawal will be processed "
    "manually within 24 hours. You will receive a notification when complete."
)


@dataclass(frozen=True)
class PinCheck:
    ok: bool
    locked: bool = False
    remaining_attempts: int = MAX_PIN_ATTEMPTS
    remaining_minutes: int = 0
    message: str = ""


@dataclass
class WithdrawalOutcome:
    transfer: GatewayTransfer
    manual_processing: bool
    message: str


def _valid_pin(pin) -> bool:
    return isinstance(pin, str) and bool(_PIN_RE.match(pin))


def hash_pin(pin: str) -> str:
    return bcrypt.hashpw(pin.encode("utf-8"), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("utf-8")


def _pin_matches(pin: str, pin_hash: str | None) -> bool:
    if not pin_hash:
        return False
    try:
        return bcrypt.checkpw(pin.encode("utf-8"), pin_hash.encode("utf-8"))
    except ValueError:
        return False


def _minutes_left(lock_until: datetime, now: datetime) -> int:
    return max(1, math.ceil((lock_until - now).total_seconds() / 60))


def pin_status(user: User, now: datetime | None = None) -> dict:
    now = now or datetime.utcnow()
    locked = user.pin_lock_until is not None and user.pin_lock_until > now
    return {
        "pinSet": bool(user.transaction_pin_set),
        "isLocked": locked,
        "lockRemainingMinutes": _minutes_left(user.pin_lock_until, now) if locked else 0,
        "attemptsRemaining": max(0, MAX_PIN_ATTEMPTS - int(user.pin_attempts or 0)) if not locked else 0,
    }


def verify_transaction_pin(user: User, pin, now: datetime | None = None) -> PinCheck:
    """Check a PIN against the lockout policy and persist the attempt counter.

    While locked every attempt is refused, including the correct PIN. An
    expired lock is cleared before the attempt is evaluated, so the counter
    restarts from zero.
    """
    now = now or datetime.utcnow()
    if not _valid_pin(pin):
        raise ValidationError("PIN must be 4-6 digits")
    if not user.transaction_pin_set or not user.transaction_pin_hash:
        raise ValidationError("No transaction PIN set", pinRequired=False)

    if user.pin_lock_until is not None:
        if user.pin_lock_until > now:
            minutes = _minutes_left(user.pin_lock_until, now)
            return PinCheck(
                ok=False,
                locked=True,
                remaining_attempts=0,
                remaining_minutes=minutes,
                message=f"PIN is temporarily locked. Try again in {minutes} minutes.",
            )
        db.session.execute(
            update(User).where(User.id == user.id).values(pin_attempts=0, pin_lock_until=None)
        )

    if _pin_matches(pin, user.transaction_pin_hash):
        db.session.execute(
            update(User).where(User.id == user.id).values(pin_attempts=0, pin_lock_until=None)
        )
        db.session.commit()
        db.session.refresh(user)
        return PinCheck(ok=True, message="PIN verified successfully")

    db.session.execute(
        update(User).where(User.id == user.id).values(pin_attempts=User.pin_attempts + 1)
    )
    db.session.flush()
    db.session.refresh(user)
    remaining = MAX_PIN_ATTEMPTS - int(user.pin_attempts or 0)
    if remaining <= 0:
        db.session.execute(
            update(User)
            .where(User.id == user.id)
            .values(pin_lock_until=now + timedelta(minutes=PIN_LOCK_MINUTES))
        )
        db.session.commit()
        db.session.refresh(user)
        current_app.logger.warning("pin_locked user_id=%s minutes=%s", int(user.id), PIN_LOCK_MINUTES)
        return PinCheck(
            ok=False,
            locked=True,
            remaining_attempts=0,
            remaining_minutes=PIN_LOCK_MINUTES,
            message=f"Too many failed attempts. PIN is locked for {PIN_LOCK_MINUTES} minutes.",
        )
    db.session.commit()
    return PinCheck(
        ok=False,
        remaining_attempts=remaining,
        message=f"Incorrect PIN. {remaining} attempts remaining.",
    )


def enforce_pin(user: User, pin, now: datetime | None = None) -> None:
    check = verify_transaction_pin(user, pin, now)
    if check.ok:
        return
    if check.locked:
        raise PinLockedError(check.message, remaining_minutes=check.remaining_minutes)
    raise InvalidPinError(check.message, remaining_attempts=check.remaining_attempts)


def set_transaction_pin(user: User, pin, confirm_pin) -> None:
    if not _valid_pin(pin):
        raise ValidationError("PIN must be 4-6 digits")
    if pin != confirm_pin:
        raise ValidationError("PINs do not match")
    if user.transaction_pin_set:
        raise ValidationError("Transaction PIN is already set. Use change PIN instead.")
    user.transaction_pin_hash = hash_pin(pin)
    user.transaction_pin_set = True
    user.pin_attempts = 0
    user.pin_lock_until = None
    db.session.add(user)
    db.session.commit()
    current_app.logger.info("pin_set user_id=%s", int(user.id))


def change_transaction_pin(user: User, current_pin, new_pin, confirm_pin, now: datetime | None = None) -> None:
    if not _valid_pin(current_pin):
        raise ValidationError("Current PIN must be 4-6 digits")
    if not _valid_pin(new_pin):
        raise ValidationError("New PIN must be 4-6 digits")
    if new_pin != confirm_pin:
        raise ValidationError("New PINs do not match")
    if not user.transaction_pin_set:
        raise ValidationError("No transaction PIN set. Use setup PIN instead.")
    enforce_pin(user, current_pin, now)
    user.transaction_pin_hash = hash_pin(new_pin)
    db.session.add(user)
    db.session.commit()
    current_app.logger.info("pin_changed user_id=%s", int(user.id))


def _withdrawal_amount(raw) -> Decimal:
    amount = parse_amount(raw, "amount")
    if amount < MIN_WITHDRAWAL:
        raise ValidationError(f"Minimum withdrawal is ₦{MIN_WITHDRAWAL:,.0f}")
    return amount


def _check_policy(user: User, amount: Decimal) -> None:
    wallet = get_or_create_wallet(int(user.id))
    decision = get_pricing_engine().is_withdrawal_allowed(amount, bool(user.is_verified), wallet.balance)
    if decision.allowed:
        return
    if decision.reason == "Insufficient balance":
        raise InsufficientFundsError(decision.reason)
    raise ValidationError(decision.reason)


def _pin_gate(user: User, pin) -> None:
    if not user.transaction_pin_set:
        return
    if not pin:
        raise ValidationError("Transaction PIN is required for withdrawals", pinRequired=True)
    enforce_pin(user, str(pin))


def request_withdrawal(user: User, *, amount, bank_name, account_number, account_name, pin=None) -> Transaction:
    """Debit the wallet now and leave a pending withdrawal for payout."""
    value = _withdrawal_amount(amount)
    if not bank_name or not account_number or not account_name:
        raise ValidationError("Bank details are required")
    _pin_gate(user, pin)
    _check_policy(user, value)
    try:
        update_wallet_balance(int(user.id), value, "subtract")
        txn = record_transaction(
            int(user.id),
            TxnType.WITHDRAWAL,
            value,
            status=TxnStatus.PENDING,
            description=f"Withdrawal to {bank_name} - {account_number}",
        )
        log_event(
            "withdrawal_requested",
            actor_user_id=int(user.id),
            subject_type="transaction",
            subject_id=int(txn.id),
            amount=value,
            metadata={"bank_name": bank_name},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    current_app.logger.info("withdrawal_requested user_id=%s amount=%s txn_id=%s", int(user.id), value, int(txn.id))
    return txn


def _manual_review_markers() -> tuple[str, ...]:
    raw = os.getenv("TRANSFER_MANUAL_REVIEW_MARKERS") or "not eligible,merchant"
    return tuple(m.strip().lower() for m in raw.split(",") if m.strip())


def needs_manual_review(exc: Exception) -> bool:
    """Gateway refusals that mean the merchant account cannot pay out yet."""
    if not isinstance(exc, GatewayError):
        return False
    if exc.error_type == GatewayErrorType.INVALID_CREDENTIALS:
        return True
    text = f"{exc.detail} {exc.message}".lower()
    return any(marker in text for marker in _manual_review_markers())


def _finish_transfer(transfer: GatewayTransfer, txn: Transaction, status: str) -> None:
    if status == "success":
        transfer.status = "successful"
        transfer.completed_at = datetime.utcnow()
        set_transaction_status(txn, TxnStatus.COMPLETED)
    else:
        transfer.status = "processing"
    db.session.add(transfer)
    db.session.commit()


def _refund_transfer(user: User, transfer: GatewayTransfer, txn: Transaction, reason: str) -> None:
    try:
        update_wallet_balance(int(user.id), transfer.amount, "add")
        transfer.status = "failed"
        transfer.failure_reason = reason[:2000]
        transfer.completed_at = datetime.utcnow()
        set_transaction_status(txn, TxnStatus.FAILED)
        db.session.add(transfer)
        db.session.commit()
    except Exception:
        db.session.rollback()
        current_app.logger.exception("withdrawal_refund_failed ref=%s", transfer.transaction_ref)
        raise
    current_app.logger.warning("withdrawal_refunded ref=%s reason=%s", transfer.transaction_ref, reason)


def initiate_gateway_withdrawal(
    user: User,
    provider: PaymentsProvider,
    *,
    amount,
    bank_code,
    bank_name,
    account_number,
    account_name,
    pin=None,
) -> WithdrawalOutcome:
    """Pay out through the gateway, debiting before the transfer call.

    A merchant-eligibility refusal keeps the debit and parks the transfer in
    ``manual_review``; any other failure refunds the wallet and re-raises.
    """
    value = _withdrawal_amount(amount)
    if not bank_code or not bank_name or not account_number or not account_name:
        raise ValidationError("Bank details are required")
    _pin_gate(user, pin)
    _check_policy(user, value)

    reference = generate_transfer_reference()
    try:
        transfer = GatewayTransfer(
            user_id=int(user.id),
            provider=provider.name,
            transaction_ref=reference,
            amount=value,
            bank_code=str(bank_code),
            account_number=str(account_number),
            account_name=str(account_name)[:160],
            narration=f"Withdrawal to {bank_name} - {account_number}",
            status="pending",
        )
        db.session.add(transfer)
        update_wallet_balance(int(user.id), value, "subtract")
        txn = record_transaction(
            int(user.id),
            TxnType.WITHDRAWAL,
            value,
            status=TxnStatus.PENDING,
            description=f"Withdrawal to {bank_name} - {account_number}",
            external_reference=reference,
        )
        log_event(
            "gateway_withdrawal_initiated",
            actor_user_id=int(user.id),
            subject_type="gateway_transfer",
            subject_id=reference,
            amount=value,
            idempotency_key=f"transfer:{reference}",
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    try:
        result = provider.initiate_transfer(
            reference=reference,
            amount=value,
            bank_code=str(bank_code),
            account_number=str(account_number),
            account_name=str(account_name),
            remark=f"Campus Market withdrawal - {user.name or user.email}",
        )
    except Exception as exc:
        if needs_manual_review(exc):
            transfer.status = "manual_review"
            transfer.failure_reason = MANUAL_REVIEW_REASON
            db.session.add(transfer)
            db.session.commit()
            current_app.logger.warning("withdrawal_manual_review ref=%s user_id=%s", reference, int(user.id))
            return WithdrawalOutcome(transfer=transfer, manual_processing=True, message=MANUAL_REVIEW_MESSAGE)
        _refund_transfer(user, transfer, txn, str(exc))
        raise

    if result.status == "failed":
        _refund_transfer(user, transfer, txn, result.description or "Transfer failed")
        raise GatewayError(
            f"Transfer failed: {result.description}",
            error_type=GatewayErrorType.UNKNOWN,
            user_message="Withdrawal could not be completed. Your wallet has been refunded.",
            raw=result.raw,
        )
    _finish_transfer(transfer, txn, result.status)
    current_app.logger.info(
        "withdrawal_initiated ref=%s user_id=%s amount=%s status=%s", reference, int(user.id), value, transfer.status
    )
    return WithdrawalOutcome(transfer=transfer, manual_processing=False, message="Withdrawal initiated successfully")
